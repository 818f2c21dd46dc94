from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Document, DocumentVersion, MemberRole
from .access import AccessControl
from .errors import Conflict, NotFound
from .locks import KeyedLocks, document_locks
from .metrics import record_version_appended

logger = logging.getLogger(__name__)

APPEND_ATTEMPTS = 3


class VersionLog:
    """Append-only history of document content snapshots.

    Numbers are assigned as ``1 + max(existing)`` while holding the
    document's lock and its row lock; the unique constraint on
    ``(document_id, version_number)`` backs this up across processes, and a
    collision there is retried.
    """

    def __init__(self, db: Session, access: AccessControl | None = None, locks: KeyedLocks = document_locks) -> None:
        self.db = db
        self.access = access or AccessControl(db)
        self.locks = locks

    def append(self, document_id: uuid.UUID, content: str, actor_id: uuid.UUID) -> DocumentVersion:
        document = self._document(document_id)
        self.access.ensure_role(document.project_id, actor_id, MemberRole.EDITOR, "save document versions")

        with self.locks.hold(document_id):
            for attempt in range(1, APPEND_ATTEMPTS + 1):
                try:
                    version = self._append_once(document_id, content, actor_id)
                except IntegrityError:
                    self.db.rollback()
                    logger.warning(
                        "version_number_collision document_id=%s attempt=%s", document_id, attempt
                    )
                    continue
                except Exception:
                    self.db.rollback()
                    raise
                record_version_appended()
                logger.info(
                    "document_version_appended document_id=%s version_number=%s",
                    document_id,
                    version.version_number,
                )
                return version

        raise Conflict("Could not assign a version number, please retry")

    def history(self, document_id: uuid.UUID, actor_id: uuid.UUID) -> list[DocumentVersion]:
        document = self._document(document_id)
        self.access.ensure_role(document.project_id, actor_id, MemberRole.VIEWER, "view document history")
        stmt = (
            select(DocumentVersion)
            .join(Document, Document.id == DocumentVersion.document_id)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
        )
        stmt = self.access.scoped(stmt, Document.project_id, actor_id)
        return list(self.db.execute(stmt).scalars())

    def _append_once(self, document_id: uuid.UUID, content: str, actor_id: uuid.UUID) -> DocumentVersion:
        self.db.execute(select(Document.id).where(Document.id == document_id).with_for_update())
        current = self.db.execute(
            select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
        ).scalar_one_or_none()
        version = DocumentVersion(
            document_id=document_id,
            content=content,
            version_number=(current or 0) + 1,
            created_by=actor_id,
        )
        self.db.add(version)
        self.db.commit()
        return version

    def _document(self, document_id: uuid.UUID) -> Document:
        document = self.db.get(Document, document_id)
        if document is None:
            raise NotFound("Document not found")
        return document
