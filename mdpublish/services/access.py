from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from ..models import MemberRole, ProjectMember
from .errors import InvalidOperation, NotAuthorized

logger = logging.getLogger(__name__)


def roles_at_least(minimum: MemberRole) -> list[MemberRole]:
    return [role for role in MemberRole if role.at_least(minimum)]


class AccessControl:
    """Resolves (project, user) pairs to roles and enforces the role hierarchy."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve_role(self, project_id: uuid.UUID, user_id: uuid.UUID) -> Optional[MemberRole]:
        return self.db.execute(
            select(ProjectMember.role).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        ).scalar_one_or_none()

    def require_role(self, project_id: uuid.UUID, user_id: uuid.UUID, min_role: MemberRole) -> bool:
        role = self.resolve_role(project_id, user_id)
        return role is not None and role.at_least(min_role)

    def ensure_role(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        min_role: MemberRole,
        action: str = "perform this action",
    ) -> MemberRole:
        role = self.resolve_role(project_id, user_id)
        if role is None or not role.at_least(min_role):
            logger.info(
                "access_denied project_id=%s user_id=%s role=%s required=%s",
                project_id,
                user_id,
                role.value if role else None,
                min_role.value,
            )
            raise NotAuthorized(f"{min_role.value.capitalize()} access required to {action}")
        return role

    def scoped(self, stmt: Select, project_column, user_id: uuid.UUID, min_role: MemberRole = MemberRole.VIEWER) -> Select:
        """Restrict a query to rows whose project grants ``user_id`` at least ``min_role``."""
        membership = exists().where(
            ProjectMember.project_id == project_column,
            ProjectMember.user_id == user_id,
            ProjectMember.role.in_(roles_at_least(min_role)),
        )
        return stmt.where(membership)


def check_invite(actor_role: Optional[MemberRole]) -> None:
    if actor_role is not MemberRole.OWNER:
        raise NotAuthorized("Only owners can add members")


def check_role_change(actor_role: Optional[MemberRole], target: ProjectMember) -> None:
    if actor_role is not MemberRole.OWNER:
        raise NotAuthorized("Only owners can change member roles")
    if target.role is MemberRole.OWNER:
        raise NotAuthorized("An owner's role cannot be changed")


def check_removal(actor_id: uuid.UUID, actor_role: Optional[MemberRole], target: ProjectMember) -> None:
    if target.user_id == actor_id:
        if target.role is MemberRole.OWNER:
            raise InvalidOperation("Owners cannot leave their project")
        return
    if actor_role is not MemberRole.OWNER:
        raise NotAuthorized("Only owners can remove members")
    if target.role is MemberRole.OWNER:
        raise NotAuthorized("Owners cannot be removed from a project")
