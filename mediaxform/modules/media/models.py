"""
MediaObject Model

One row per stored blob. Originals come from uploads; derived objects come
from a successful transform and point back at their source via parent_id.
Rows are immutable once created except for deletion.

A source has at most one derived row per fingerprint, which also makes the
deterministic derived blob key owned by exactly one row.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaObject(SQLModel, table=True):
    """Stored media object (original or derived)."""
    __tablename__ = "media_objects"
    __table_args__ = (
        UniqueConstraint("parent_id", "fingerprint", name="uq_media_objects_parent_fingerprint"),
    )

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    owner_id: str = Field(index=True)

    storage_key: str
    mime_type: str
    size_bytes: int = Field(default=0)
    filename: str

    # Derived objects only; NULLs never collide under the unique constraint
    parent_id: Optional[str] = Field(default=None, index=True)
    fingerprint: Optional[str] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=_utcnow)
