from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from ..dependencies.auth import require_user
from ..dependencies.db import get_db
from ..models import MemberRole, Project, ProjectMember, User
from ..services.projects import ProjectService
from ..services.storage import get_sites_storage

router = APIRouter(prefix="/projects", tags=["projects"])


class CreateProjectPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    slug: Optional[str] = Field(default=None, max_length=255)


class UpdateProjectPayload(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    slug: Optional[str] = Field(default=None, max_length=255)


class InviteMemberPayload(BaseModel):
    email: EmailStr
    role: MemberRole = MemberRole.VIEWER


class UpdateMemberPayload(BaseModel):
    role: MemberRole


def _serialize_project(project: Project, role: MemberRole | None = None) -> dict:
    payload = {
        "id": str(project.id),
        "name": project.name,
        "slug": project.slug,
        "description": project.description,
        "created_by": str(project.created_by),
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "updated_at": project.updated_at.isoformat() if project.updated_at else None,
    }
    if role is not None:
        payload["role"] = role.value
    return payload


def _serialize_member(member: ProjectMember, user: User | None = None) -> dict:
    payload = {
        "id": str(member.id),
        "project_id": str(member.project_id),
        "user_id": str(member.user_id),
        "role": member.role.value,
        "invited_by": str(member.invited_by) if member.invited_by else None,
        "created_at": member.created_at.isoformat() if member.created_at else None,
    }
    if user is not None:
        payload["user"] = {
            "id": str(user.id),
            "email": user.email,
            "full_name": user.full_name,
            "avatar_url": user.avatar_url,
        }
    return payload


@router.post("", status_code=status.HTTP_201_CREATED)
def create_project(
    payload: CreateProjectPayload,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    project = ProjectService(db).create_project(user.id, payload.name, payload.description, payload.slug)
    request.state.project_id = str(project.id)
    return _serialize_project(project, MemberRole.OWNER)


@router.get("")
def list_projects(user: User = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    rows = ProjectService(db).list_projects(user.id)
    return {"projects": [_serialize_project(project, role) for project, role in rows]}


@router.get("/{project_id}")
def get_project(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    service = ProjectService(db)
    project, role = service.get_project(project_id, user.id)
    payload = _serialize_project(project, role)
    payload["members"] = [_serialize_member(member, member_user) for member, member_user in service.list_members(project_id, user.id)]
    return payload


@router.patch("/{project_id}")
def update_project(
    project_id: uuid.UUID,
    payload: UpdateProjectPayload,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    project = ProjectService(db).update_project(
        project_id, user.id, name=payload.name, description=payload.description, slug=payload.slug
    )
    return _serialize_project(project, MemberRole.OWNER)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    request.state.project_id = str(project_id)
    ProjectService(db).delete_project(project_id, user.id, sites_storage=get_sites_storage())
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{project_id}/members")
def list_members(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    rows = ProjectService(db).list_members(project_id, user.id)
    return {"members": [_serialize_member(member, member_user) for member, member_user in rows]}


@router.post("/{project_id}/members", status_code=status.HTTP_201_CREATED)
def invite_member(
    project_id: uuid.UUID,
    payload: InviteMemberPayload,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    member = ProjectService(db).invite_member(project_id, user.id, payload.email, payload.role)
    return _serialize_member(member)


@router.patch("/{project_id}/members/{member_id}")
def update_member(
    project_id: uuid.UUID,
    member_id: uuid.UUID,
    payload: UpdateMemberPayload,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    member = ProjectService(db).update_member_role(project_id, member_id, payload.role, user.id)
    return _serialize_member(member)


@router.delete("/{project_id}/members/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    project_id: uuid.UUID,
    member_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    request.state.project_id = str(project_id)
    ProjectService(db).remove_member(project_id, member_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{project_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_project(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    request.state.project_id = str(project_id)
    ProjectService(db).leave_project(project_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
