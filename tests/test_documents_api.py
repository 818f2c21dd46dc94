from __future__ import annotations

import uuid


def _create(client, project, user_headers, **payload):
    response = client.post(f"/projects/{project.id}/documents", json=payload, headers=user_headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_document_lifecycle(client, project, editor, viewer, as_user):
    headers = as_user(editor)
    folder = _create(client, project, headers, title="Guides", is_folder=True)
    page = _create(client, project, headers, title="Install", parent_id=folder["id"], content="# Install")
    assert page["sort_order"] == 0

    tree = client.get(f"/projects/{project.id}/documents/tree", headers=as_user(viewer)).json()["tree"]
    assert tree[0]["title"] == "Guides"
    assert tree[0]["children"][0]["id"] == page["id"]

    flat = client.get(f"/projects/{project.id}/documents", headers=as_user(viewer)).json()["documents"]
    assert {doc["title"] for doc in flat} == {"Guides", "Install"}
    assert "content" not in flat[0]

    renamed = client.patch(f"/documents/{page['id']}", json={"title": "Installation"}, headers=headers)
    assert renamed.json()["title"] == "Installation"

    saved = client.put(f"/documents/{page['id']}/content", json={"content": "Updated"}, headers=headers)
    assert saved.status_code == 200
    assert client.get(f"/documents/{page['id']}", headers=as_user(viewer)).json()["content"] == "Updated"

    toggled = client.post(f"/documents/{page['id']}/publish-toggle", headers=headers)
    assert toggled.json()["is_published"] is True

    moved = client.post(f"/documents/{page['id']}/move", json={"parent_id": None}, headers=headers)
    assert moved.json()["parent_id"] is None
    assert moved.json()["sort_order"] == 1

    deleted = client.delete(f"/documents/{folder['id']}", headers=headers)
    assert deleted.json() == {"deleted": [folder["id"]]}


def test_cycle_and_parent_errors(client, project, editor, as_user):
    headers = as_user(editor)
    outer = _create(client, project, headers, title="Outer", is_folder=True)
    inner = _create(client, project, headers, title="Inner", is_folder=True, parent_id=outer["id"])
    page = _create(client, project, headers, title="Page")

    cycle = client.post(f"/documents/{outer['id']}/move", json={"parent_id": inner["id"]}, headers=headers)
    assert cycle.status_code == 409

    not_folder = client.post(
        f"/projects/{project.id}/documents", json={"title": "x", "parent_id": page["id"]}, headers=headers
    )
    assert not_folder.status_code == 400

    folder_content = client.put(f"/documents/{outer['id']}/content", json={"content": "x"}, headers=headers)
    assert folder_content.status_code == 400


def test_debounced_content_is_saved_on_flush(client, project, editor, viewer, as_user):
    page = _create(client, project, as_user(editor), title="Notes", content="start")

    denied = client.put(
        f"/documents/{page['id']}/content", json={"content": "x", "debounce": True}, headers=as_user(viewer)
    )
    assert denied.status_code == 403

    scheduled = client.put(
        f"/documents/{page['id']}/content", json={"content": "typed", "debounce": True}, headers=as_user(editor)
    )
    assert scheduled.status_code == 202
    assert scheduled.json()["scheduled"] is True

    autosave = client.app.state.autosave
    assert autosave.flush(uuid.UUID(page["id"])) is True
    assert client.get(f"/documents/{page['id']}", headers=as_user(editor)).json()["content"] == "typed"


def test_versions_endpoints(client, project, editor, viewer, as_user):
    page = _create(client, project, as_user(editor), title="Notes", content="first draft")

    checkpoint = client.post(f"/documents/{page['id']}/versions", json={}, headers=as_user(editor))
    assert checkpoint.status_code == 201
    assert checkpoint.json()["version_number"] == 1
    assert checkpoint.json()["content"] == "first draft"

    client.post(f"/documents/{page['id']}/versions", json={"content": "second"}, headers=as_user(editor))

    history = client.get(f"/documents/{page['id']}/versions", headers=as_user(viewer)).json()["versions"]
    assert [v["version_number"] for v in history] == [2, 1]

    denied = client.post(f"/documents/{page['id']}/versions", json={}, headers=as_user(viewer))
    assert denied.status_code == 403
