from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from .documents import get_upload_root

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/", response_model=schemas.HealthOut)
def health(
    db: Session = Depends(get_db),
    upload_root: Optional[str] = Depends(get_upload_root),
):
    status = {
        "database": "unknown",
        "uploads": "unknown",
        "upload_path": upload_root,
    }

    # 1) DB check
    try:
        db.execute(text("SELECT 1"))
        status["database"] = "ok"
    except Exception as e:
        status["database"] = f"error: {e!r}"

    # 2) Upload directory check
    if not upload_root:
        status["uploads"] = "disabled"
    elif not os.path.isdir(upload_root):
        # created on first upload
        status["uploads"] = "ok (not created yet)"
    elif os.access(upload_root, os.W_OK):
        status["uploads"] = "ok"
    else:
        status["uploads"] = "error: upload directory is not writable"

    return status
