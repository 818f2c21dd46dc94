from __future__ import annotations

import logging
import re
import threading
import uuid
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.session import atomic
from ..models import Document, DocumentVersion, MemberRole, Project, ProjectMember, Publish, User
from .access import AccessControl, check_invite, check_removal, check_role_change
from .errors import Conflict, InvalidOperation, NotFound
from .publish import PublishPipeline, PublishResult
from .slugs import slug_base
from .storage import StorageService

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class ProjectService:
    def __init__(self, db: Session, access: AccessControl | None = None) -> None:
        self.db = db
        self.access = access or AccessControl(db)

    # --- Projects ---------------------------------------------------------
    def create_project(
        self,
        actor_id: uuid.UUID,
        name: str,
        description: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Project:
        clean_name = (name or "").strip()
        if not clean_name:
            raise InvalidOperation("Project name is required")
        if self.db.get(User, actor_id) is None:
            raise NotFound("User not found")

        with atomic(self.db):
            project = Project(
                name=clean_name,
                description=description,
                slug=self._claim_slug(slug, clean_name),
                created_by=actor_id,
            )
            self.db.add(project)
            self.db.flush()
            self.db.add(
                ProjectMember(project_id=project.id, user_id=actor_id, role=MemberRole.OWNER, invited_by=actor_id)
            )
            self._flush_unique("Project slug already in use")

        logger.info("project_created project_id=%s slug=%s created_by=%s", project.id, project.slug, actor_id)
        return project

    def list_projects(self, actor_id: uuid.UUID) -> list[tuple[Project, MemberRole]]:
        rows = self.db.execute(
            select(Project, ProjectMember.role)
            .join(ProjectMember, ProjectMember.project_id == Project.id)
            .where(ProjectMember.user_id == actor_id)
            .order_by(Project.created_at.desc())
        ).all()
        return [(project, role) for project, role in rows]

    def get_project(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> tuple[Project, MemberRole]:
        project = self._project(project_id)
        role = self.access.ensure_role(project_id, actor_id, MemberRole.VIEWER, "view this project")
        return project, role

    def update_project(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Project:
        project = self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.OWNER, "update this project")

        with atomic(self.db):
            if name is not None:
                if not name.strip():
                    raise InvalidOperation("Project name is required")
                project.name = name.strip()
            if description is not None:
                project.description = description
            if slug is not None and slug != project.slug:
                project.slug = self._claim_slug(slug, project.name)
            self._flush_unique("Project slug already in use")
        return project

    def delete_project(
        self, project_id: uuid.UUID, actor_id: uuid.UUID, sites_storage: StorageService | None = None
    ) -> None:
        self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.OWNER, "delete this project")

        with atomic(self.db):
            bundle_keys = list(
                self.db.execute(select(Publish.storage_path).where(Publish.project_id == project_id)).scalars()
            )
            document_ids = select(Document.id).where(Document.project_id == project_id).scalar_subquery()
            self.db.execute(delete(DocumentVersion).where(DocumentVersion.document_id.in_(document_ids)))
            self.db.execute(delete(Document).where(Document.project_id == project_id))
            self.db.execute(delete(Publish).where(Publish.project_id == project_id))
            self.db.execute(delete(ProjectMember).where(ProjectMember.project_id == project_id))
            self.db.execute(delete(Project).where(Project.id == project_id))

        logger.info("project_deleted project_id=%s by=%s bundles=%s", project_id, actor_id, len(bundle_keys))
        if sites_storage is not None:
            for key in bundle_keys:
                try:
                    sites_storage.delete(key)
                except Exception:
                    logger.exception("bundle_cleanup_failed project_id=%s key=%s", project_id, key)

    # --- Members ----------------------------------------------------------
    def list_members(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> list[tuple[ProjectMember, User]]:
        self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.VIEWER, "view members")
        stmt = (
            select(ProjectMember, User)
            .join(User, User.id == ProjectMember.user_id)
            .where(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.created_at, ProjectMember.id)
        )
        stmt = self.access.scoped(stmt, ProjectMember.project_id, actor_id)
        return [(member, user) for member, user in self.db.execute(stmt).all()]

    def invite_member(
        self, project_id: uuid.UUID, actor_id: uuid.UUID, email: str, role: MemberRole
    ) -> ProjectMember:
        self._project(project_id)
        check_invite(self.access.resolve_role(project_id, actor_id))

        normalized_email = (email or "").strip().lower()
        user = self.db.execute(
            select(User).where(func.lower(User.email) == normalized_email)
        ).scalar_one_or_none()
        if user is None:
            raise NotFound("User not found with this email")

        with atomic(self.db):
            if self.access.resolve_role(project_id, user.id) is not None:
                raise Conflict("User is already a member of this project")
            member = ProjectMember(project_id=project_id, user_id=user.id, role=role, invited_by=actor_id)
            self.db.add(member)
            self._flush_unique("User is already a member of this project")

        logger.info(
            "member_added project_id=%s user_id=%s role=%s invited_by=%s", project_id, user.id, role.value, actor_id
        )
        return member

    def update_member_role(
        self, project_id: uuid.UUID, member_id: uuid.UUID, role: MemberRole, actor_id: uuid.UUID
    ) -> ProjectMember:
        member = self._member(project_id, member_id)
        check_role_change(self.access.resolve_role(project_id, actor_id), member)
        with atomic(self.db):
            member.role = role
        logger.info("member_role_changed project_id=%s member_id=%s role=%s", project_id, member_id, role.value)
        return member

    def remove_member(self, project_id: uuid.UUID, member_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        member = self._member(project_id, member_id)
        check_removal(actor_id, self.access.resolve_role(project_id, actor_id), member)
        with atomic(self.db):
            self.db.delete(member)
        logger.info("member_removed project_id=%s user_id=%s by=%s", project_id, member.user_id, actor_id)

    def leave_project(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        self._project(project_id)
        member = self.db.execute(
            select(ProjectMember).where(ProjectMember.project_id == project_id, ProjectMember.user_id == actor_id)
        ).scalar_one_or_none()
        if member is None:
            raise NotFound("Not a member of this project")
        self.remove_member(project_id, member.id, actor_id)

    # --- Publishing -------------------------------------------------------
    def publish(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        pipeline: PublishPipeline,
        *,
        template: str = "default",
        cancel_event: Optional[threading.Event] = None,
    ) -> PublishResult:
        self._project(project_id)
        self.access.ensure_role(project_id, actor_id, MemberRole.EDITOR, "publish")
        return pipeline.run(project_id, actor_id, template=template, published_by=actor_id, cancel_event=cancel_event)

    # --- Helpers ----------------------------------------------------------
    def _project(self, project_id: uuid.UUID) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def _member(self, project_id: uuid.UUID, member_id: uuid.UUID) -> ProjectMember:
        self._project(project_id)
        member = self.db.get(ProjectMember, member_id)
        if member is None or member.project_id != project_id:
            raise NotFound("Member not found")
        return member

    def _claim_slug(self, requested: Optional[str], name: str) -> str:
        if requested is not None:
            if not _SLUG_PATTERN.match(requested):
                raise InvalidOperation("Slugs may only contain lowercase letters, digits and single hyphens")
            if self._slug_taken(requested):
                raise Conflict("Project slug already in use")
            return requested

        base = slug_base(name) or "project"
        slug = base
        counter = 2
        while self._slug_taken(slug):
            slug = f"{base}-{counter}"
            counter += 1
        return slug

    def _slug_taken(self, slug: str) -> bool:
        return self.db.execute(select(Project.id).where(Project.slug == slug)).first() is not None

    def _flush_unique(self, message: str) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise Conflict(message) from exc
