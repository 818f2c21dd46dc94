from __future__ import annotations

import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from mdpublish.models import Document, DocumentVersion
from mdpublish.services.errors import (
    CycleDetected,
    InvalidOperation,
    InvalidParent,
    NotAuthorized,
    NotFound,
)
from mdpublish.services.tree import DELETE_CHUNK_SIZE, DocumentTree
from mdpublish.services.versions import VersionLog


@pytest.fixture()
def tree(db) -> DocumentTree:
    return DocumentTree(db)


def test_create_appends_after_last_sibling(tree, project, editor) -> None:
    first = tree.create(project.id, editor.id, title="First")
    second = tree.create(project.id, editor.id, title="Second")
    folder = tree.create_folder(project.id, editor.id, "Guides")
    nested = tree.create(project.id, editor.id, title="Nested", parent_id=folder.id)

    assert [first.sort_order, second.sort_order, folder.sort_order] == [0, 1, 2]
    assert nested.sort_order == 0
    assert first.is_published is False


def test_create_defaults_title_and_clears_folder_content(tree, project, editor) -> None:
    untitled = tree.create(project.id, editor.id, title="   ")
    folder = tree.create(project.id, editor.id, title="Folder", is_folder=True, content="ignored")

    assert untitled.title == "Untitled"
    assert folder.content == ""


def test_create_rejects_overlong_title(tree, project, editor) -> None:
    with pytest.raises(InvalidOperation):
        tree.create(project.id, editor.id, title="x" * 256)


def test_create_requires_editor(tree, project, viewer, outsider) -> None:
    with pytest.raises(NotAuthorized):
        tree.create(project.id, viewer.id, title="Nope")
    with pytest.raises(NotAuthorized):
        tree.create(project.id, outsider.id, title="Nope")


def test_create_under_missing_foreign_or_non_folder_parent(tree, db, project, editor, owner) -> None:
    from mdpublish.services.projects import ProjectService

    other = ProjectService(db).create_project(owner.id, "Other")
    foreign_folder = tree.create_folder(other.id, owner.id, "Elsewhere")
    page = tree.create(project.id, editor.id, title="Page")

    with pytest.raises(InvalidParent):
        tree.create(project.id, editor.id, title="Lost", parent_id=uuid.uuid4())
    with pytest.raises(InvalidParent):
        tree.create(project.id, editor.id, title="Smuggled", parent_id=foreign_folder.id)
    with pytest.raises(InvalidParent):
        tree.create(project.id, editor.id, title="Under page", parent_id=page.id)


def test_create_in_unknown_project(tree, editor) -> None:
    with pytest.raises(NotFound):
        tree.create(uuid.uuid4(), editor.id, title="Ghost")


def test_list_and_tree_are_viewer_readable(tree, project, editor, viewer, outsider) -> None:
    folder = tree.create_folder(project.id, editor.id, "Guides")
    tree.create(project.id, editor.id, title="Install", parent_id=folder.id)
    tree.create(project.id, editor.id, title="Intro")

    listed = tree.list(project.id, viewer.id)
    assert sorted(doc.title for doc in listed) == ["Guides", "Install", "Intro"]
    assert [doc.sort_order for doc in listed] == sorted(doc.sort_order for doc in listed)
    roots = tree.tree(project.id, viewer.id)
    assert [node.title for node in roots] == ["Guides", "Intro"]
    assert [node.title for node in roots[0].children] == ["Install"]

    with pytest.raises(NotAuthorized):
        tree.list(project.id, outsider.id)


def test_move_into_own_subtree_is_a_cycle(tree, project, editor) -> None:
    a = tree.create_folder(project.id, editor.id, "A")
    b = tree.create_folder(project.id, editor.id, "B", parent_id=a.id)
    c = tree.create_folder(project.id, editor.id, "C", parent_id=b.id)

    with pytest.raises(CycleDetected):
        tree.move(a.id, c.id, None, editor.id)
    with pytest.raises(CycleDetected):
        tree.move(a.id, a.id, None, editor.id)
    assert tree.get(a.id, editor.id).parent_id is None


def test_move_reparents_and_appends(tree, project, editor) -> None:
    a = tree.create_folder(project.id, editor.id, "A")
    b = tree.create_folder(project.id, editor.id, "B")
    existing = tree.create(project.id, editor.id, title="Existing", parent_id=b.id)
    page = tree.create(project.id, editor.id, title="Page", parent_id=a.id)

    moved = tree.move(page.id, b.id, None, editor.id)

    assert moved.parent_id == b.id
    assert moved.sort_order == existing.sort_order + 1

    to_root = tree.move(page.id, None, 7, editor.id)
    assert to_root.parent_id is None
    assert to_root.sort_order == 7


def test_move_rejects_bad_targets(tree, db, project, editor, owner) -> None:
    from mdpublish.services.projects import ProjectService

    other = ProjectService(db).create_project(owner.id, "Other")
    foreign = tree.create_folder(other.id, owner.id, "Foreign")
    page = tree.create(project.id, editor.id, title="Page")
    leaf = tree.create(project.id, editor.id, title="Leaf")

    with pytest.raises(InvalidParent):
        tree.move(page.id, foreign.id, None, editor.id)
    with pytest.raises(InvalidParent):
        tree.move(page.id, uuid.uuid4(), None, editor.id)
    with pytest.raises(InvalidParent):
        tree.move(page.id, leaf.id, None, editor.id)


def test_set_content_round_trips_and_rejects_folders(tree, project, editor, viewer) -> None:
    page = tree.create(project.id, editor.id, title="Page")
    folder = tree.create_folder(project.id, editor.id, "Folder")

    tree.set_content(page.id, "# Hello\n\n<b>kept verbatim</b>", editor.id)

    assert tree.get(page.id, viewer.id).content == "# Hello\n\n<b>kept verbatim</b>"
    with pytest.raises(InvalidOperation):
        tree.set_content(folder.id, "nope", editor.id)
    with pytest.raises(NotAuthorized):
        tree.set_content(page.id, "nope", viewer.id)


def test_rename(tree, project, editor) -> None:
    page = tree.create(project.id, editor.id, title="Draft")

    assert tree.rename(page.id, "  Final  ", editor.id).title == "Final"


def test_toggle_publish_flips_and_rejects_folders(tree, project, editor) -> None:
    page = tree.create(project.id, editor.id, title="Page")
    folder = tree.create_folder(project.id, editor.id, "Folder")

    assert tree.toggle_publish(page.id, editor.id).is_published is True
    assert tree.toggle_publish(page.id, editor.id).is_published is False
    with pytest.raises(InvalidOperation):
        tree.toggle_publish(folder.id, editor.id)


def test_delete_removes_subtree_and_versions(tree, db, project, editor) -> None:
    folder = tree.create_folder(project.id, editor.id, "Folder")
    child = tree.create_folder(project.id, editor.id, "Child", parent_id=folder.id)
    grandchild = tree.create(project.id, editor.id, title="Grandchild", parent_id=child.id)
    survivor = tree.create(project.id, editor.id, title="Survivor")
    VersionLog(db).append(grandchild.id, "v1", editor.id)
    VersionLog(db).append(survivor.id, "v1", editor.id)

    removed = tree.delete(folder.id, editor.id)

    assert removed == [folder.id, child.id, grandchild.id]
    remaining = db.execute(select(Document.id).where(Document.project_id == project.id)).scalars().all()
    assert remaining == [survivor.id]
    versions = db.execute(select(func.count()).select_from(DocumentVersion)).scalar_one()
    assert versions == 1
    with pytest.raises(NotFound):
        tree.get(folder.id, editor.id)


def test_delete_requires_editor(tree, project, editor, viewer) -> None:
    page = tree.create(project.id, editor.id, title="Page")

    with pytest.raises(NotAuthorized):
        tree.delete(page.id, viewer.id)


def test_delete_wide_subtree_spanning_several_chunks(tree, db, project, editor) -> None:
    root = tree.create_folder(project.id, editor.id, "Archive")
    sections = [
        Document(
            project_id=project.id,
            parent_id=root.id,
            title=f"Section {i}",
            is_folder=True,
            sort_order=i,
            created_by=editor.id,
        )
        for i in range(3)
    ]
    db.add_all(sections)
    db.flush()
    db.add_all(
        Document(project_id=project.id, parent_id=section.id, title=f"Page {i}", sort_order=i, created_by=editor.id)
        for section in sections
        for i in range(250)
    )
    db.commit()
    assert DELETE_CHUNK_SIZE < 754

    removed = tree.delete(root.id, editor.id)

    assert len(removed) == 754
    remaining = db.execute(select(func.count()).select_from(Document)).scalar_one()
    assert remaining == 0


def test_parent_reference_is_enforced(db, project, editor) -> None:
    db.add(Document(project_id=project.id, parent_id=uuid.uuid4(), title="Dangling", created_by=editor.id))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
