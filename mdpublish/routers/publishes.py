from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..dependencies.auth import require_user
from ..dependencies.db import get_db
from ..models import Publish, User
from ..services.errors import PublishFailed, PublishingError
from ..services.projects import ProjectService
from ..services.publish import PublishLog, PublishPipeline
from ..services.storage import StorageService, get_sites_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["publishes"])


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: uuid.UUID = Field(..., alias="projectId")
    template: str = "default"


def _serialize_publish(publish: Publish) -> dict:
    return {
        "id": str(publish.id),
        "project_id": str(publish.project_id),
        "version": publish.version,
        "storage_path": publish.storage_path,
        "preview_url": publish.preview_url,
        "published_by": str(publish.published_by),
        "published_at": publish.published_at.isoformat() if publish.published_at else None,
        "metadata": publish.meta or {},
    }


@router.post("/publish")
def publish_project(
    payload: PublishRequest,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_sites_storage),
) -> JSONResponse:
    request.state.project_id = str(payload.project_id)
    pipeline = PublishPipeline(db, storage)
    try:
        result = ProjectService(db).publish(payload.project_id, user.id, pipeline, template=payload.template)
    except PublishFailed as exc:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": PublishFailed.default_message})
    except PublishingError as exc:
        logger.info("publish_rejected project_id=%s reason=%s", payload.project_id, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})
    return JSONResponse(content=result.to_dict())


@router.get("/projects/{project_id}/publishes")
def list_publishes(
    project_id: uuid.UUID,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_sites_storage),
) -> dict:
    request.state.project_id = str(project_id)
    publishes = PublishLog(db, storage).history(project_id, user.id)
    return {"publishes": [_serialize_publish(publish) for publish in publishes]}


@router.get("/publishes/{publish_id}")
def get_publish(
    publish_id: uuid.UUID,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_sites_storage),
) -> dict:
    return _serialize_publish(PublishLog(db, storage).get(publish_id, user.id))


@router.get("/publishes/{publish_id}/download")
def download_publish(
    publish_id: uuid.UUID,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_sites_storage),
) -> dict:
    return {"download_url": PublishLog(db, storage).download_url(publish_id, user.id)}
