from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..db.session import atomic
from ..models import Document, DocumentVersion, MemberRole, Project
from .access import AccessControl
from .errors import CycleDetected, InvalidOperation, InvalidParent, NotFound
from .locks import KeyedLocks, project_locks
from .metrics import record_document_created, record_documents_deleted

logger = logging.getLogger(__name__)

DELETE_CHUNK_SIZE = 500


class TreeDocument(Protocol):
    id: uuid.UUID
    project_id: uuid.UUID
    parent_id: Optional[uuid.UUID]
    title: str
    is_folder: bool
    is_published: bool
    sort_order: int
    created_at: Optional[datetime]


@dataclass(frozen=True)
class TreeNode:
    id: uuid.UUID
    project_id: uuid.UUID
    parent_id: Optional[uuid.UUID]
    title: str
    is_folder: bool
    is_published: bool
    sort_order: int
    children: tuple["TreeNode", ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "parent_id": str(self.parent_id) if self.parent_id else None,
            "title": self.title,
            "is_folder": self.is_folder,
            "is_published": self.is_published,
            "sort_order": self.sort_order,
            "children": [child.to_dict() for child in self.children],
        }


def _created_ts(doc: TreeDocument) -> float:
    created_at = getattr(doc, "created_at", None)
    return created_at.timestamp() if created_at is not None else 0.0


def sibling_key(doc: TreeDocument) -> tuple[int, float, str]:
    """Ascending sort_order, then creation time, then id."""
    return (doc.sort_order or 0, _created_ts(doc), str(doc.id))


def build_tree(documents: Iterable[TreeDocument]) -> list[TreeNode]:
    """Derive a forest from a flat document set.

    Documents whose parent is missing from the set, or lives in another
    project, become roots. Every input document appears exactly once; a
    corrupt parent cycle is broken at its first member by ``sibling_key``.
    The input is never mutated.
    """
    by_id: dict[uuid.UUID, TreeDocument] = {}
    for doc in documents:
        by_id.setdefault(doc.id, doc)
    ordered = sorted(by_id.values(), key=sibling_key)

    children: dict[uuid.UUID, list[TreeDocument]] = defaultdict(list)
    roots: list[TreeDocument] = []
    for doc in ordered:
        parent = by_id.get(doc.parent_id) if doc.parent_id is not None else None
        if parent is None or parent.id == doc.id or parent.project_id != doc.project_id:
            roots.append(doc)
        else:
            children[parent.id].append(doc)

    visited: set[uuid.UUID] = set()

    def assemble(root: TreeDocument) -> TreeNode:
        visited.add(root.id)
        taken: dict[uuid.UUID, list[uuid.UUID]] = {}
        built: dict[uuid.UUID, TreeNode] = {}
        stack: list[tuple[TreeDocument, bool]] = [(root, False)]
        while stack:
            doc, expanded = stack.pop()
            if expanded:
                kids = tuple(built.pop(child_id) for child_id in taken.pop(doc.id))
                built[doc.id] = _node(doc, kids)
                continue
            kids = [child for child in children.get(doc.id, ()) if child.id not in visited]
            visited.update(child.id for child in kids)
            taken[doc.id] = [child.id for child in kids]
            stack.append((doc, True))
            stack.extend((child, False) for child in reversed(kids))
        return built.pop(root.id)

    forest = [assemble(root) for root in roots]
    for doc in ordered:
        if doc.id not in visited:
            forest.append(assemble(doc))
    return forest


def _node(doc: TreeDocument, children: tuple[TreeNode, ...]) -> TreeNode:
    return TreeNode(
        id=doc.id,
        project_id=doc.project_id,
        parent_id=doc.parent_id,
        title=doc.title,
        is_folder=bool(doc.is_folder),
        is_published=bool(doc.is_published),
        sort_order=doc.sort_order or 0,
        children=children,
    )


def collect_subtree(root_id: uuid.UUID, documents: Iterable[TreeDocument]) -> list[uuid.UUID]:
    """Return ``root_id`` followed by every transitive descendant, breadth first."""
    children: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    for doc in documents:
        if doc.parent_id is not None:
            children[doc.parent_id].append(doc.id)

    collected = [root_id]
    seen = {root_id}
    index = 0
    while index < len(collected):
        for child_id in children.get(collected[index], ()):
            if child_id not in seen:
                seen.add(child_id)
                collected.append(child_id)
        index += 1
    return collected


def _clean_title(title: Optional[str]) -> str:
    value = (title or "").strip()
    if len(value) > 255:
        raise InvalidOperation("Title must be 255 characters or fewer")
    return value or "Untitled"


class DocumentTree:
    """Owns one project's documents and keeps the tree invariants."""

    def __init__(self, db: Session, access: AccessControl | None = None, locks: KeyedLocks = project_locks) -> None:
        self.db = db
        self.access = access or AccessControl(db)
        self.locks = locks

    # --- Reads ------------------------------------------------------------
    def list(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> list[Document]:
        self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.VIEWER, "view documents")
        stmt = select(Document).where(Document.project_id == project_id)
        stmt = self.access.scoped(stmt, Document.project_id, actor_id)
        stmt = stmt.order_by(Document.sort_order, Document.created_at, Document.id)
        return list(self.db.execute(stmt).scalars())

    def tree(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> list[TreeNode]:
        return build_tree(self.list(project_id, actor_id))

    def get(self, document_id: uuid.UUID, actor_id: uuid.UUID) -> Document:
        document = self._document(document_id)
        self.access.ensure_role(document.project_id, actor_id, MemberRole.VIEWER, "view documents")
        return document

    # --- Mutations --------------------------------------------------------
    def create(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        title: Optional[str] = None,
        parent_id: Optional[uuid.UUID] = None,
        is_folder: bool = False,
        content: str = "",
    ) -> Document:
        self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.EDITOR, "create documents")
        clean_title = _clean_title(title)

        with self.locks.hold(project_id), atomic(self.db):
            self._lock_project_row(project_id)
            if parent_id is not None:
                parent = self.db.get(Document, parent_id)
                if parent is None or parent.project_id != project_id:
                    raise InvalidParent("Parent document does not belong to this project")
                if not parent.is_folder:
                    raise InvalidParent("Documents can only be nested inside folders")

            document = Document(
                project_id=project_id,
                parent_id=parent_id,
                title=clean_title,
                content="" if is_folder else (content or ""),
                is_folder=is_folder,
                is_published=False,
                sort_order=self._next_sort_order(project_id, parent_id),
                created_by=actor_id,
            )
            self.db.add(document)
            self.db.flush()

        record_document_created(is_folder)
        logger.info(
            "document_created project_id=%s document_id=%s parent_id=%s is_folder=%s sort_order=%s",
            project_id,
            document.id,
            parent_id,
            is_folder,
            document.sort_order,
        )
        return document

    def create_folder(
        self, project_id: uuid.UUID, actor_id: uuid.UUID, title: str, parent_id: Optional[uuid.UUID] = None
    ) -> Document:
        return self.create(project_id, actor_id, title=title, parent_id=parent_id, is_folder=True)

    def rename(self, document_id: uuid.UUID, title: str, actor_id: uuid.UUID) -> Document:
        document = self._editable(document_id, actor_id, "rename documents")
        with atomic(self.db):
            document.title = _clean_title(title)
        return document

    def set_content(self, document_id: uuid.UUID, content: str, actor_id: uuid.UUID) -> Document:
        document = self._editable(document_id, actor_id, "edit documents")
        if document.is_folder:
            raise InvalidOperation("Folders have no content")
        with atomic(self.db):
            document.content = content
        return document

    def move(
        self,
        document_id: uuid.UUID,
        new_parent_id: Optional[uuid.UUID],
        new_sort_order: Optional[int],
        actor_id: uuid.UUID,
    ) -> Document:
        document = self._editable(document_id, actor_id, "move documents")
        project_id = document.project_id

        with self.locks.hold(project_id), atomic(self.db):
            self._lock_project_row(project_id)
            if new_parent_id is not None:
                parents = dict(
                    self.db.execute(
                        select(Document.id, Document.parent_id).where(Document.project_id == project_id)
                    ).all()
                )
                if new_parent_id != document.id and new_parent_id not in parents:
                    raise InvalidParent("Parent document does not belong to this project")
                self._ensure_not_descendant(document.id, new_parent_id, parents)
                parent = self.db.get(Document, new_parent_id)
                if not parent.is_folder:
                    raise InvalidParent("Documents can only be nested inside folders")

            if new_sort_order is None:
                new_sort_order = self._next_sort_order(project_id, new_parent_id, exclude=document.id)
            document.parent_id = new_parent_id
            document.sort_order = new_sort_order

        logger.info(
            "document_moved project_id=%s document_id=%s parent_id=%s sort_order=%s",
            project_id,
            document.id,
            new_parent_id,
            new_sort_order,
        )
        return document

    def delete(self, document_id: uuid.UUID, actor_id: uuid.UUID) -> list[uuid.UUID]:
        document = self._editable(document_id, actor_id, "delete documents")
        project_id = document.project_id

        with self.locks.hold(project_id), atomic(self.db):
            self._lock_project_row(project_id)
            rows = self.db.execute(
                select(Document.id, Document.parent_id).where(Document.project_id == project_id)
            ).all()
            doomed = collect_subtree(document.id, rows)
            for start in range(0, len(doomed), DELETE_CHUNK_SIZE):
                chunk = doomed[start : start + DELETE_CHUNK_SIZE]
                self.db.execute(delete(DocumentVersion).where(DocumentVersion.document_id.in_(chunk)))
            # Children before parents, so no chunk leaves a parent_id dangling.
            deepest_first = doomed[::-1]
            for start in range(0, len(deepest_first), DELETE_CHUNK_SIZE):
                chunk = deepest_first[start : start + DELETE_CHUNK_SIZE]
                self.db.execute(delete(Document).where(Document.id.in_(chunk)))

        record_documents_deleted(len(doomed))
        logger.info(
            "document_deleted project_id=%s document_id=%s removed=%s", project_id, document_id, len(doomed)
        )
        return doomed

    def toggle_publish(self, document_id: uuid.UUID, actor_id: uuid.UUID) -> Document:
        document = self._editable(document_id, actor_id, "publish documents")
        if document.is_folder:
            raise InvalidOperation("Folders cannot be published")
        with atomic(self.db):
            document.is_published = not document.is_published
        return document

    # --- Helpers ----------------------------------------------------------
    def _project(self, project_id: uuid.UUID) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def _document(self, document_id: uuid.UUID) -> Document:
        document = self.db.get(Document, document_id)
        if document is None:
            raise NotFound("Document not found")
        return document

    def _editable(self, document_id: uuid.UUID, actor_id: uuid.UUID, action: str) -> Document:
        document = self._document(document_id)
        self.access.ensure_role(document.project_id, actor_id, MemberRole.EDITOR, action)
        return document

    def _lock_project_row(self, project_id: uuid.UUID) -> None:
        locked = self.db.execute(
            select(Project.id).where(Project.id == project_id).with_for_update()
        ).scalar_one_or_none()
        if locked is None:
            raise NotFound("Project not found")

    def _next_sort_order(
        self, project_id: uuid.UUID, parent_id: Optional[uuid.UUID], exclude: Optional[uuid.UUID] = None
    ) -> int:
        stmt = select(func.max(Document.sort_order)).where(Document.project_id == project_id)
        if parent_id is None:
            stmt = stmt.where(Document.parent_id.is_(None))
        else:
            stmt = stmt.where(Document.parent_id == parent_id)
        if exclude is not None:
            stmt = stmt.where(Document.id != exclude)
        current = self.db.execute(stmt).scalar_one_or_none()
        return 0 if current is None else current + 1

    @staticmethod
    def _ensure_not_descendant(
        document_id: uuid.UUID, new_parent_id: uuid.UUID, parents: dict[uuid.UUID, Optional[uuid.UUID]]
    ) -> None:
        cursor: Optional[uuid.UUID] = new_parent_id
        seen: set[uuid.UUID] = set()
        while cursor is not None and cursor not in seen:
            if cursor == document_id:
                raise CycleDetected()
            seen.add(cursor)
            cursor = parents.get(cursor)
