from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MediaObjectRead(BaseModel):
    """Public view of a media object; also the cached representation."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    storage_key: str
    mime_type: str
    size_bytes: int
    filename: str
    parent_id: Optional[str] = None
    fingerprint: Optional[str] = None
    created_at: datetime


class MediaPage(BaseModel):
    """One page of an owner's objects."""
    page: int
    limit: int
    items: List[MediaObjectRead] = Field(default_factory=list)


class PaginationQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1)
