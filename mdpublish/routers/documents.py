from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..dependencies.auth import require_user
from ..dependencies.db import get_db
from ..models import Document, DocumentVersion, MemberRole, User
from ..services.access import AccessControl
from ..services.tree import DocumentTree
from ..services.versions import VersionLog
from ..workers.autosave import AutosaveScheduler

router = APIRouter(tags=["documents"])


class CreateDocumentPayload(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    parent_id: Optional[uuid.UUID] = None
    is_folder: bool = False
    content: str = ""


class RenamePayload(BaseModel):
    title: str = Field(..., max_length=255)


class ContentPayload(BaseModel):
    content: str
    debounce: bool = False


class MovePayload(BaseModel):
    parent_id: Optional[uuid.UUID] = None
    sort_order: Optional[int] = Field(default=None, ge=0)


class CheckpointPayload(BaseModel):
    content: Optional[str] = None


def get_autosave(request: Request) -> AutosaveScheduler:
    return request.app.state.autosave


def _serialize_document(document: Document, include_content: bool = True) -> dict:
    payload = {
        "id": str(document.id),
        "project_id": str(document.project_id),
        "parent_id": str(document.parent_id) if document.parent_id else None,
        "title": document.title,
        "is_folder": document.is_folder,
        "is_published": document.is_published,
        "sort_order": document.sort_order,
        "created_by": str(document.created_by),
        "created_at": document.created_at.isoformat() if document.created_at else None,
        "updated_at": document.updated_at.isoformat() if document.updated_at else None,
    }
    if include_content:
        payload["content"] = document.content
    return payload


def _serialize_version(version: DocumentVersion) -> dict:
    return {
        "id": str(version.id),
        "document_id": str(version.document_id),
        "version_number": version.version_number,
        "content": version.content,
        "created_by": str(version.created_by),
        "created_at": version.created_at.isoformat() if version.created_at else None,
    }


@router.get("/projects/{project_id}/documents")
def list_documents(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    documents = DocumentTree(db).list(project_id, user.id)
    return {"documents": [_serialize_document(doc, include_content=False) for doc in documents]}


@router.get("/projects/{project_id}/documents/tree")
def document_tree(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    roots = DocumentTree(db).tree(project_id, user.id)
    return {"tree": [node.to_dict() for node in roots]}


@router.post("/projects/{project_id}/documents", status_code=status.HTTP_201_CREATED)
def create_document(
    project_id: uuid.UUID,
    payload: CreateDocumentPayload,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    request.state.project_id = str(project_id)
    document = DocumentTree(db).create(
        project_id,
        user.id,
        title=payload.title,
        parent_id=payload.parent_id,
        is_folder=payload.is_folder,
        content=payload.content,
    )
    return _serialize_document(document)


@router.get("/documents/{document_id}")
def get_document(
    document_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    document = DocumentTree(db).get(document_id, user.id)
    request.state.project_id = str(document.project_id)
    return _serialize_document(document)


@router.patch("/documents/{document_id}")
def rename_document(
    document_id: uuid.UUID,
    payload: RenamePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    return _serialize_document(DocumentTree(db).rename(document_id, payload.title, user.id))


@router.put("/documents/{document_id}/content")
def update_content(
    document_id: uuid.UUID,
    payload: ContentPayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    autosave: AutosaveScheduler = Depends(get_autosave),
):
    tree = DocumentTree(db)
    if not payload.debounce:
        document = tree.set_content(document_id, payload.content, user.id)
        autosave.cancel(document_id)
        return _serialize_document(document)

    document = tree.get(document_id, user.id)
    AccessControl(db).ensure_role(document.project_id, user.id, MemberRole.EDITOR, "edit documents")
    run_at = autosave.schedule(document_id, payload.content, user.id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"id": str(document_id), "scheduled": True, "save_at": run_at.isoformat()},
    )


@router.post("/documents/{document_id}/move")
def move_document(
    document_id: uuid.UUID,
    payload: MovePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    document = DocumentTree(db).move(document_id, payload.parent_id, payload.sort_order, user.id)
    return _serialize_document(document, include_content=False)


@router.post("/documents/{document_id}/publish-toggle")
def toggle_publish(
    document_id: uuid.UUID,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    document = DocumentTree(db).toggle_publish(document_id, user.id)
    return _serialize_document(document, include_content=False)


@router.delete("/documents/{document_id}")
def delete_document(
    document_id: uuid.UUID,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    autosave: AutosaveScheduler = Depends(get_autosave),
) -> dict:
    removed = DocumentTree(db).delete(document_id, user.id)
    for removed_id in removed:
        autosave.cancel(removed_id)
    return {"deleted": [str(removed_id) for removed_id in removed]}


@router.get("/documents/{document_id}/versions")
def list_versions(
    document_id: uuid.UUID,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    versions = VersionLog(db).history(document_id, user.id)
    return {"versions": [_serialize_version(version) for version in versions]}


@router.post("/documents/{document_id}/versions", status_code=status.HTTP_201_CREATED)
def create_checkpoint(
    document_id: uuid.UUID,
    payload: CheckpointPayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    content = payload.content
    if content is None:
        content = DocumentTree(db).get(document_id, user.id).content
    version = VersionLog(db).append(document_id, content, user.id)
    return _serialize_version(version)
