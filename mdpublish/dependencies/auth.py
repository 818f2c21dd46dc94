from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import settings
from ..models import User
from .db import get_db


def require_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Resolve the identity header set by the upstream identity provider."""
    raw_id = request.headers.get(settings.identity_header, "").strip()
    try:
        user_id = uuid.UUID(raw_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required") from None

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    request.state.user_id = str(user.id)
    return user
