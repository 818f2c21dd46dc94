from __future__ import annotations

import io

from mdpublish.config import settings


def test_editor_uploads_image(client, project, editor, as_user, mock_s3):
    response = client.post(
        f"/projects/{project.id}/assets",
        files={"file": ("Diagram.PNG", io.BytesIO(b"\x89PNG\r\n\x1a\n"), "image/png")},
        headers=as_user(editor),
    )

    assert response.status_code == 201, response.text
    key = response.json()["key"]
    assert key.startswith(f"{project.id}/")
    assert key.endswith(".png")
    assert key in response.json()["url"]
    head = mock_s3.head_object(Bucket=settings.aws.assets_bucket, Key=key)
    assert head["ContentType"] == "image/png"


def test_viewer_cannot_upload(client, project, viewer, as_user, mock_s3):
    response = client.post(
        f"/projects/{project.id}/assets",
        files={"file": ("a.png", io.BytesIO(b"x"), "image/png")},
        headers=as_user(viewer),
    )
    assert response.status_code == 403


def test_non_images_and_oversized_files_are_rejected(client, project, editor, as_user, mock_s3, monkeypatch):
    not_image = client.post(
        f"/projects/{project.id}/assets",
        files={"file": ("notes.txt", io.BytesIO(b"hello"), "text/plain")},
        headers=as_user(editor),
    )
    assert not_image.status_code == 400

    monkeypatch.setattr(settings, "max_asset_bytes", 4)
    too_big = client.post(
        f"/projects/{project.id}/assets",
        files={"file": ("big.png", io.BytesIO(b"12345"), "image/png")},
        headers=as_user(editor),
    )
    assert too_big.status_code == 400
    assert too_big.json()["detail"] == "File too large"
