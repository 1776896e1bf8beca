from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


# =========================
# Documents
# =========================
class DocumentOut(BaseModel):
    id: int
    title: str

    original_filename: Optional[str] = None
    content_type: Optional[str] = None

    # stored file name under <upload root>/document/attachment
    attachment: Optional[str] = None

    upload_date: datetime
    updated_at: Optional[datetime] = None

    collection_id: Optional[int] = None

    class Config:
        from_attributes = True  # Pydantic v2 equivalent of orm_mode


# =========================
# Health
# =========================
class HealthOut(BaseModel):
    database: str
    uploads: str
    upload_path: Optional[str] = None
