from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..db.session import session_scope
from ..services.errors import PublishingError
from ..services.tree import DocumentTree

logger = logging.getLogger(__name__)


def _job_id(document_id: uuid.UUID) -> str:
    return f"autosave:{document_id}"


class AutosaveScheduler:
    """Persists a document's content once edits to it stop arriving.

    Each ``schedule`` call replaces the pending save for that document, so only
    the latest content is written, ``delay_seconds`` after the last edit.
    """

    def __init__(
        self,
        delay_seconds: float | None = None,
        session_factory: sessionmaker[Session] | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self.delay = timedelta(
            seconds=delay_seconds if delay_seconds is not None else settings.autosave_delay_seconds
        )
        self.session_factory = session_factory
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._pending: dict[uuid.UUID, tuple[str, uuid.UUID]] = {}
        self._guard = threading.Lock()

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("autosave_scheduler_started delay_seconds=%s", self.delay.total_seconds())

    def shutdown(self, flush: bool = True) -> None:
        if flush:
            for document_id in self.pending_documents():
                self.flush(document_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def pending_documents(self) -> list[uuid.UUID]:
        with self._guard:
            return list(self._pending)

    def schedule(self, document_id: uuid.UUID, content: str, actor_id: uuid.UUID) -> datetime:
        run_at = datetime.now(timezone.utc) + self.delay
        with self._guard:
            self._pending[document_id] = (content, actor_id)
            self.scheduler.add_job(
                self._run,
                DateTrigger(run_date=run_at),
                args=[document_id],
                id=_job_id(document_id),
                replace_existing=True,
                misfire_grace_time=None,
            )
        logger.debug("autosave_scheduled document_id=%s run_at=%s", document_id, run_at.isoformat())
        return run_at

    def flush(self, document_id: uuid.UUID) -> bool:
        """Write the pending content now. Returns False when nothing was pending."""
        entry = self._take(document_id)
        if entry is None:
            return False
        content, actor_id = entry
        self._save(document_id, content, actor_id)
        return True

    def cancel(self, document_id: uuid.UUID) -> bool:
        cancelled = self._take(document_id) is not None
        if cancelled:
            logger.info("autosave_cancelled document_id=%s", document_id)
        return cancelled

    def _take(self, document_id: uuid.UUID) -> Optional[tuple[str, uuid.UUID]]:
        with self._guard:
            try:
                self.scheduler.remove_job(_job_id(document_id))
            except JobLookupError:
                pass
            return self._pending.pop(document_id, None)

    def _run(self, document_id: uuid.UUID) -> None:
        with self._guard:
            entry = self._pending.pop(document_id, None)
        if entry is None:
            return
        content, actor_id = entry
        try:
            self._save(document_id, content, actor_id)
        except PublishingError as exc:
            # The document may have been deleted or the actor demoted since the edit.
            logger.warning("autosave_skipped document_id=%s reason=%s", document_id, exc.message)

    def _save(self, document_id: uuid.UUID, content: str, actor_id: uuid.UUID) -> None:
        with session_scope(self.session_factory) as session:
            DocumentTree(session).set_content(document_id, content, actor_id)
        logger.info("autosave_written document_id=%s chars=%s", document_id, len(content))
