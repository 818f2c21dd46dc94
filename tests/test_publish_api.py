from __future__ import annotations

import io
import zipfile

from mdpublish.config import settings


def _publishable(client, project, headers, titles):
    for title in titles:
        doc = client.post(
            f"/projects/{project.id}/documents", json={"title": title, "content": f"# {title}"}, headers=headers
        ).json()
        client.post(f"/documents/{doc['id']}/publish-toggle", headers=headers)


def test_publish_flow(client, project, editor, viewer, as_user, mock_s3):
    _publishable(client, project, as_user(editor), ["Intro", "Getting Started!!", "FAQ"])

    response = client.post("/publish", json={"projectId": str(project.id)}, headers=as_user(editor))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["version"].startswith("v")
    assert body["documentCount"] == 3
    assert body["previewUrl"]

    archive = mock_s3.get_object(Bucket=settings.aws.sites_bucket, Key=body["storagePath"])["Body"].read()
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        assert sorted(zf.namelist()) == [
            "faq.html",
            "getting-started.html",
            "index.html",
            "intro.html",
            "styles.css",
        ]

    history = client.get(f"/projects/{project.id}/publishes", headers=as_user(viewer)).json()["publishes"]
    assert [p["version"] for p in history] == [body["version"]]
    assert history[0]["metadata"]["document_count"] == 3

    detail = client.get(f"/publishes/{body['publishId']}", headers=as_user(viewer)).json()
    assert detail["storage_path"] == body["storagePath"]

    download = client.get(f"/publishes/{body['publishId']}/download", headers=as_user(viewer)).json()
    assert body["storagePath"] in download["download_url"]


def test_publish_errors_use_publish_envelope(client, project, editor, viewer, as_user, mock_s3):
    empty = client.post("/publish", json={"projectId": str(project.id)}, headers=as_user(editor))
    assert empty.status_code == 400
    assert empty.json() == {"success": False, "error": "No published documents found"}

    _publishable(client, project, as_user(editor), ["Only"])
    denied = client.post("/publish", json={"projectId": str(project.id)}, headers=as_user(viewer))
    assert denied.status_code == 403
    assert denied.json()["success"] is False

    bad_template = client.post(
        "/publish", json={"projectId": str(project.id), "template": "neon"}, headers=as_user(editor)
    )
    assert bad_template.status_code == 400
    assert bad_template.json()["error"] == "Unknown template 'neon'"


def test_upload_failure_is_reported_generically(client, project, editor, as_user, mock_s3):
    _publishable(client, project, as_user(editor), ["Only"])
    mock_s3.delete_bucket(Bucket=settings.aws.sites_bucket)

    response = client.post("/publish", json={"projectId": str(project.id)}, headers=as_user(editor))

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Failed to publish site"}
    history = client.get(f"/projects/{project.id}/publishes", headers=as_user(editor)).json()["publishes"]
    assert history == []
