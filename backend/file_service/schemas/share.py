"""Share request/response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import Field

from file_service.schemas.base import CamelModel, CamelORMModel


class ShareCreate(CamelModel):
    share_type: str
    shared_with_id: Optional[str] = None
    permissions: list[str] = Field(default_factory=lambda: ["view"])
    expires_at: Optional[datetime] = None
    max_access_count: Optional[int] = None
    password: Optional[str] = None


class ShareResponse(CamelORMModel):
    id: str
    file_id: str
    shared_by_id: str
    shared_with_id: Optional[str] = None
    share_type: str
    permissions: list[str]
    share_token: Optional[str] = None
    share_url: Optional[str] = None
    has_password: bool = False
    expires_at: Optional[datetime] = None
    max_access_count: Optional[int] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    is_active: bool
    created_at: datetime


class SharedFileResponse(CamelModel):
    """What a public-link holder sees. Owner and storage details are omitted."""
    id: str
    name: str
    size: int
    mime_type: str
    category: str
    description: Optional[str] = None
    created_at: datetime
    download_url: Optional[str] = None
