from __future__ import annotations

import logging
import uuid
from typing import BinaryIO

from sqlalchemy.orm import Session

from ..config import settings
from ..models import MemberRole, Project
from .access import AccessControl
from .errors import InvalidOperation, NotFound
from .storage import StorageService, StoredFile

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = frozenset(
    {"image/png", "image/jpeg", "image/gif", "image/webp", "image/svg+xml"}
)
_CHUNK_SIZE = 1024 * 1024


class AssetService:
    """Image uploads that documents reference by public URL."""

    def __init__(self, db: Session, storage: StorageService, access: AccessControl | None = None) -> None:
        self.db = db
        self.storage = storage
        self.access = access or AccessControl(db)

    def upload(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        file_obj: BinaryIO,
        filename: str,
        content_type: str | None,
        max_bytes: int | None = None,
    ) -> StoredFile:
        if self.db.get(Project, project_id) is None:
            raise NotFound("Project not found")
        self.access.ensure_role(project_id, actor_id, MemberRole.EDITOR, "upload assets")
        if not filename:
            raise InvalidOperation("Filename required")
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidOperation("Only image uploads are supported")

        limit = max_bytes if max_bytes is not None else settings.max_asset_bytes
        data = bytearray()
        while True:
            chunk = file_obj.read(_CHUNK_SIZE)
            if not chunk:
                break
            data.extend(chunk)
            if len(data) > limit:
                raise InvalidOperation("File too large")

        stored = self.storage.upload_fileobj(project_id, bytes(data), filename=filename, content_type=content_type)
        logger.info(
            "asset_uploaded project_id=%s key=%s bytes=%s by=%s", project_id, stored.key, len(data), actor_id
        )
        return stored
