from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, NoReturn, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Document, MemberRole, Project, Publish
from .access import AccessControl
from .errors import (
    InvalidOperation,
    NothingToPublish,
    NotAuthorized,
    NotFound,
    PublishCancelled,
    PublishFailed,
)
from .locks import KeyedLocks, publish_locks
from .metrics import record_publish_failed, record_publish_succeeded
from .site_bundle import AVAILABLE_TEMPLATES, PageSource, SiteBuilder, SiteBundle
from .slugs import assign_slugs
from .storage import StorageService, StoredFile

logger = logging.getLogger(__name__)

BUNDLE_CONTENT_TYPE = "application/zip"
_VERSION_PATTERN = re.compile(r"^v(\d+)$")

RECORD_ATTEMPTS = 3

_upload_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="publish-upload")
# Newest token handed out per project, including runs still uploading.
_reserved_versions: dict[uuid.UUID, str] = {}


@dataclass(frozen=True)
class PublishResult:
    publish_id: uuid.UUID
    version: str
    storage_path: str
    preview_url: Optional[str]
    document_count: int
    success: bool = True

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "version": self.version,
            "previewUrl": self.preview_url,
            "storagePath": self.storage_path,
            "documentCount": self.document_count,
            "publishId": str(self.publish_id),
        }


def bundle_key(project_id: uuid.UUID, version: str) -> str:
    return f"{project_id}/{version}/site.zip"


def next_version_token(now_ms: int, latest: Optional[str]) -> str:
    """``v<epoch millis>``, bumped past the project's latest token if the clock lags."""
    if latest:
        match = _VERSION_PATTERN.match(latest)
        if match and int(match.group(1)) >= now_ms:
            now_ms = int(match.group(1)) + 1
    return f"v{now_ms}"


def _newest_token(*tokens: Optional[str]) -> Optional[str]:
    newest, newest_ms = None, -1
    for token in tokens:
        match = _VERSION_PATTERN.match(token or "")
        if match and int(match.group(1)) > newest_ms:
            newest, newest_ms = token, int(match.group(1))
    return newest


class PublishPipeline:
    """Turns a project's published documents into a site bundle and a Publish record.

    The document snapshot is read once at the start of a run. Nothing is
    recorded unless rendering, upload and the record insert all succeed; an
    uploaded bundle whose run fails afterwards is deleted again.
    """

    def __init__(
        self,
        db: Session,
        storage: StorageService,
        *,
        builder: SiteBuilder | None = None,
        access: AccessControl | None = None,
        upload_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
        locks: KeyedLocks = publish_locks,
    ) -> None:
        self.db = db
        self.storage = storage
        self.builder = builder or SiteBuilder()
        self.access = access or AccessControl(db)
        self.upload_timeout = upload_timeout if upload_timeout is not None else settings.publish_upload_timeout_seconds
        self.clock = clock
        self.locks = locks

    def run(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        template: str = "default",
        published_by: Optional[uuid.UUID] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PublishResult:
        project = self.db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        self.access.ensure_role(project_id, actor_id, MemberRole.EDITOR, "publish")
        if published_by is not None and published_by != actor_id:
            raise NotAuthorized("Cannot publish on behalf of another user")
        if template not in AVAILABLE_TEMPLATES:
            raise InvalidOperation(f"Unknown template '{template}'")

        pages = self.snapshot(project_id)
        if not pages:
            record_publish_failed("nothing_to_publish")
            raise NothingToPublish()

        try:
            bundle = self.builder.build(project.name, pages, template=template)
        except Exception as exc:
            self._fail("render", project_id, exc)

        publish = self._store(project_id, actor_id, pages, bundle, template, cancel_event)

        record_publish_succeeded(len(bundle.archive))
        logger.info(
            "publish_completed project_id=%s publish_id=%s version=%s documents=%s bytes=%s",
            project_id,
            publish.id,
            publish.version,
            len(pages),
            len(bundle.archive),
        )
        return PublishResult(
            publish_id=publish.id,
            version=publish.version,
            storage_path=publish.storage_path,
            preview_url=publish.preview_url,
            document_count=len(pages),
        )

    def snapshot(self, project_id: uuid.UUID) -> list[PageSource]:
        rows = self.db.execute(
            select(Document.id, Document.title, Document.content)
            .where(
                Document.project_id == project_id,
                Document.is_folder.is_(False),
                Document.is_published.is_(True),
            )
            .order_by(Document.sort_order, Document.created_at, Document.id)
        ).all()
        slugs = assign_slugs(row.title for row in rows)
        return [
            PageSource(id=str(row.id), title=row.title, slug=slug, content=row.content or "")
            for row, slug in zip(rows, slugs)
        ]

    def _store(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        pages: list[PageSource],
        bundle: SiteBundle,
        template: str,
        cancel_event: Optional[threading.Event],
    ) -> Publish:
        collision: Optional[IntegrityError] = None
        for attempt in range(1, RECORD_ATTEMPTS + 1):
            self._check_cancelled(cancel_event, project_id)
            version = self._reserve_version(project_id)
            key = bundle_key(project_id, version)
            stored = self._upload(key, bundle, project_id)

            try:
                self._check_cancelled(cancel_event, project_id)
                publish = Publish(
                    project_id=project_id,
                    version=version,
                    storage_path=stored.key,
                    preview_url=stored.public_url,
                    published_by=actor_id,
                    meta={
                        "document_count": len(pages),
                        "template": template,
                        "documents": [entry.to_dict() for entry in bundle.nav],
                        "files": list(bundle.files),
                    },
                )
                self.db.add(publish)
                self.db.commit()
                return publish
            except PublishCancelled:
                self._discard(key)
                raise
            except IntegrityError as exc:
                # Another process recorded the same token first.
                self.db.rollback()
                self._discard(key)
                collision = exc
                logger.warning(
                    "publish_version_collision project_id=%s version=%s attempt=%s", project_id, version, attempt
                )
            except Exception as exc:
                self.db.rollback()
                self._discard(key)
                self._fail("record", project_id, exc)
        self._fail("record", project_id, collision)

    def _reserve_version(self, project_id: uuid.UUID) -> str:
        """Pick the next token. The lock covers only this read, never the upload."""
        with self.locks.hold(project_id):
            latest = _newest_token(self._latest_version(project_id), _reserved_versions.get(project_id))
            version = next_version_token(int(self.clock() * 1000), latest)
            _reserved_versions[project_id] = version
        return version

    def _latest_version(self, project_id: uuid.UUID) -> Optional[str]:
        return self.db.execute(
            select(Publish.version)
            .where(Publish.project_id == project_id)
            .order_by(Publish.published_at.desc(), Publish.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _upload(self, key: str, bundle: SiteBundle, project_id: uuid.UUID) -> StoredFile:
        future: Future = _upload_executor.submit(self.storage.put_bytes, key, bundle.archive, BUNDLE_CONTENT_TYPE)
        try:
            return future.result(timeout=self.upload_timeout)
        except FutureTimeout as exc:
            future.add_done_callback(lambda done: self._discard_late(key, done))
            self._fail("timeout", project_id, exc)
        except Exception as exc:
            self._fail("upload", project_id, exc)

    def _check_cancelled(self, cancel_event: Optional[threading.Event], project_id: uuid.UUID) -> None:
        if cancel_event is not None and cancel_event.is_set():
            record_publish_failed("cancelled")
            logger.info("publish_cancelled project_id=%s", project_id)
            raise PublishCancelled()

    def _discard(self, key: str) -> None:
        try:
            self.storage.delete(key)
        except Exception:
            logger.exception("publish_bundle_cleanup_failed key=%s", key)

    def _discard_late(self, key: str, future: Future) -> None:
        if future.exception() is None:
            logger.info("publish_bundle_discarded_after_timeout key=%s", key)
            self._discard(key)

    @staticmethod
    def _fail(reason: str, project_id: uuid.UUID, exc: BaseException) -> NoReturn:
        record_publish_failed(reason)
        logger.error("publish_failed project_id=%s stage=%s error=%s", project_id, reason, exc, exc_info=exc)
        raise PublishFailed(cause=exc) from exc


class PublishLog:
    """Read side of the publish history."""

    def __init__(self, db: Session, storage: StorageService, access: AccessControl | None = None) -> None:
        self.db = db
        self.storage = storage
        self.access = access or AccessControl(db)

    def history(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> list[Publish]:
        if self.db.get(Project, project_id) is None:
            raise NotFound("Project not found")
        self.access.ensure_role(project_id, actor_id, MemberRole.VIEWER, "view publishes")
        stmt = (
            select(Publish)
            .where(Publish.project_id == project_id)
            .order_by(Publish.published_at.desc(), Publish.version.desc())
        )
        stmt = self.access.scoped(stmt, Publish.project_id, actor_id)
        return list(self.db.execute(stmt).scalars())

    def get(self, publish_id: uuid.UUID, actor_id: uuid.UUID) -> Publish:
        publish = self.db.get(Publish, publish_id)
        if publish is None:
            raise NotFound("Publish not found")
        self.access.ensure_role(publish.project_id, actor_id, MemberRole.VIEWER, "view publishes")
        return publish

    def download_url(self, publish_id: uuid.UUID, actor_id: uuid.UUID, ttl: timedelta = timedelta(hours=1)) -> str:
        publish = self.get(publish_id, actor_id)
        return self.storage.generate_presigned_url(publish.storage_path, ttl)
