from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status, Path, Response
from fastapi.responses import FileResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, schemas, storage
from ..carrier import PendingUpload
from ..core.config import settings
from ..database import get_db
from ..exceptions import FileUploadError

logger = logging.getLogger("fileupload.documents")

router = APIRouter(prefix="/documents", tags=["documents"])


def get_upload_root() -> Optional[str]:
    return settings.FILE_UPLOAD_PATH


def get_staging_dir() -> str:
    return settings.UPLOAD_STAGING_DIR


def _require_uploads(upload_root: Optional[str]) -> str:
    if not upload_root:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="File uploads are disabled (FILE_UPLOAD_PATH is not set)",
        )
    return upload_root


def _get_document(db: Session, doc_id: int) -> models.Document:
    doc = db.get(models.Document, doc_id)
    if not doc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return doc


def _stage(file: UploadFile, staging_dir: str) -> PendingUpload:
    try:
        return storage.stage_upload(file, staging_dir)
    except OSError as e:
        logger.exception("Failed to stage uploaded file: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to save uploaded file: {e}",
        )


def _commit_upload(db: Session, doc: models.Document, upload: PendingUpload) -> None:
    """Commit the session; on failure roll back and drop the staged bytes."""
    try:
        db.commit()
    except (FileUploadError, SQLAlchemyError) as e:
        logger.exception("Saving upload %s failed: %s", upload.source, e)
        db.rollback()
        doc.attachment_upload = None
        storage.discard_upload(upload)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to store uploaded file: {e}",
        )


@router.get("/", response_model=List[schemas.DocumentOut])
def list_documents(db: Session = Depends(get_db)):
    docs = (
        db.query(models.Document)
        .order_by(models.Document.upload_date.desc())
        .all()
    )
    return docs


@router.post("/", response_model=schemas.DocumentOut, status_code=status.HTTP_201_CREATED)
def create_document(
    title: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    upload_root: Optional[str] = Depends(get_upload_root),
    staging_dir: str = Depends(get_staging_dir),
):
    """
    Stage upload -> DB row with pending attachment -> commit.
    The lifecycle listeners name and move the file during the commit.
    """
    _require_uploads(upload_root)
    pending = _stage(file, staging_dir)

    doc = models.Document(
        title=title,
        original_filename=file.filename,
        content_type=file.content_type,
    )
    doc.attachment_upload = pending
    db.add(doc)
    _commit_upload(db, doc, pending)
    db.refresh(doc)
    return doc


@router.get("/{doc_id}", response_model=schemas.DocumentOut)
def get_document(
    doc_id: int = Path(..., description="Document ID"),
    db: Session = Depends(get_db),
):
    return _get_document(db, doc_id)


@router.get("/{doc_id}/attachment")
def download_attachment(
    doc_id: int = Path(..., description="Document ID"),
    db: Session = Depends(get_db),
    upload_root: Optional[str] = Depends(get_upload_root),
):
    upload_root = _require_uploads(upload_root)
    doc = _get_document(db, doc_id)
    file_path = doc.stored_file_path("attachment", upload_root)
    if not file_path or not os.path.exists(file_path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
    return FileResponse(
        file_path,
        media_type=doc.content_type or "application/octet-stream",
        filename=doc.original_filename or doc.attachment,
    )


@router.put("/{doc_id}/attachment", response_model=schemas.DocumentOut)
def replace_attachment(
    doc_id: int = Path(..., description="Document ID"),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    upload_root: Optional[str] = Depends(get_upload_root),
    staging_dir: str = Depends(get_staging_dir),
):
    """The previous attachment is deleted once the new one is committed."""
    _require_uploads(upload_root)
    doc = _get_document(db, doc_id)
    pending = _stage(file, staging_dir)

    doc.original_filename = file.filename
    doc.content_type = file.content_type
    doc.attachment_upload = pending
    _commit_upload(db, doc, pending)
    db.refresh(doc)
    return doc


@router.delete(
    "/{doc_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_document(
    doc_id: int = Path(..., description="Document ID to delete"),
    db: Session = Depends(get_db),
):
    # stored files are removed by the listeners after the delete commits
    doc = _get_document(db, doc_id)
    db.delete(doc)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
