from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Request, UploadFile, status
from sqlalchemy.orm import Session

from ..dependencies.auth import require_user
from ..dependencies.db import get_db
from ..models import User
from ..services.assets import AssetService
from ..services.storage import StorageService, get_assets_storage

router = APIRouter(tags=["assets"])


@router.post("/projects/{project_id}/assets", status_code=status.HTTP_201_CREATED)
def upload_asset(
    project_id: uuid.UUID,
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_assets_storage),
) -> dict:
    request.state.project_id = str(project_id)
    stored = AssetService(db, storage).upload(
        project_id, user.id, file.file, file.filename or "", file.content_type
    )
    return {"key": stored.key, "url": stored.public_url}
