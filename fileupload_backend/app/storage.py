"""File storage utilities.

This module owns the on-disk layout for stored uploads and the raw
filesystem operations the upload lifecycle performs.  Stored files live at

    <FILE_UPLOAD_PATH>/<lowercased model name>/<field name>/<token>.<ext>

and that layout must not change, since existing rows reference files by
name only.  Incoming uploads are first written to a staging directory
under a random name so that nothing touches the upload tree before the
owning row has been written.
"""
import logging
import os
import shutil
import uuid
from typing import Optional

from fastapi import UploadFile

from .carrier import PendingUpload
from .core.config import settings

logger = logging.getLogger("fileupload.storage")


class PathNamer:
    """Maps (model, field, stored name) onto paths under the upload root."""

    def __init__(self, base_path: str):
        self.base_path = os.path.abspath(base_path)

    def directory_for(self, type_name: str, field_name: str) -> str:
        return os.path.join(self.base_path, type_name.lower(), field_name)

    def full_path(self, type_name: str, field_name: str, stored_name: str) -> str:
        return os.path.join(self.directory_for(type_name, field_name), stored_name)

    def contains(self, path: str) -> bool:
        """True if ``path`` lies strictly below the upload root."""
        candidate = os.path.abspath(path)
        if candidate == self.base_path:
            return False
        return os.path.commonpath([self.base_path, candidate]) == self.base_path


def ensure_staging_dir(staging_dir: Optional[str] = None) -> str:
    """Ensure that the staging directory exists and return it."""
    staging_dir = staging_dir or settings.UPLOAD_STAGING_DIR
    os.makedirs(staging_dir, exist_ok=True)
    return staging_dir


def stage_upload(upload_file: UploadFile, staging_dir: Optional[str] = None) -> PendingUpload:
    """Copy an incoming upload into the staging directory."""
    staging_dir = ensure_staging_dir(staging_dir)
    _, ext = os.path.splitext(upload_file.filename or "")
    staged_path = os.path.join(staging_dir, f"{uuid.uuid4().hex}{ext}")
    upload_file.file.seek(0)
    with open(staged_path, "wb") as buffer:
        shutil.copyfileobj(upload_file.file, buffer, settings.UPLOAD_CHUNK_SIZE)
    logger.debug("Staged upload %r at %s", upload_file.filename, staged_path)
    return PendingUpload(
        source=staged_path,
        content_type=upload_file.content_type,
        original_filename=upload_file.filename,
    )


def move_file(source: str, target: str) -> None:
    """Move ``source`` to ``target``, creating the target directory."""
    os.makedirs(os.path.dirname(target), exist_ok=True)
    shutil.move(source, target)


def delete_file(path: str) -> bool:
    """Delete a file from the filesystem.

    Returns False if it was already gone; any other error propagates.
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def discard_upload(upload: PendingUpload) -> None:
    """Remove the staged bytes of an upload that will not be stored."""
    if delete_file(upload.source):
        logger.info("Discarded staged upload %s", upload.source)
