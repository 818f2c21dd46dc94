from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from .base import Base, utcnow


class Publish(Base):
    __tablename__ = "publishes"
    __table_args__ = (UniqueConstraint("project_id", "version", name="uq_publishes_project_version"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(
        Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version = Column(String(50), nullable=False)
    storage_path = Column(Text, nullable=False)
    preview_url = Column(Text, nullable=True)
    published_by = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    published_at = Column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False, index=True
    )
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
