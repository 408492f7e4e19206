"""File request/response schemas."""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from file_service.schemas.base import CamelModel, CamelORMModel


class FileResponse(CamelORMModel):
    id: str
    name: str
    size: int
    mime_type: str
    category: str
    status: str
    url: str
    thumbnail_url: Optional[str] = None
    created_at: datetime


class FileDetailResponse(FileResponse):
    description: Optional[str] = None
    owner_id: str
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    is_public: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    content_hash: str
    scan_status: str
    scan_date: Optional[datetime] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class UploadErrorResponse(CamelModel):
    name: str
    error: str
    message: str


class MultipleUploadResponse(CamelModel):
    uploaded: int
    failed: int
    files: list[FileResponse]
    errors: list[UploadErrorResponse]


class SearchResponse(CamelModel):
    files: list[FileDetailResponse]
    total: int
    limit: int
    offset: int


class SignedUrlRequest(CamelModel):
    action: Literal["view", "download"] = "download"
    expires_in: Optional[int] = None


class SignedUrlResponse(CamelModel):
    url: str
    expires_in: int
    action: str


class TagsRequest(CamelModel):
    tags: list[str]


class TagsResponse(CamelModel):
    file_id: str
    tags: list[str]


class VersionResponse(CamelORMModel):
    id: str
    file_id: str
    version_number: int
    size: int
    content_hash: str
    uploaded_by: str
    comment: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_current: bool
    created_at: datetime
    restored_at: Optional[datetime] = None
    restored_by: Optional[str] = None


class ImageEditRequest(CamelModel):
    """One on-demand transform. Only the fields the operation uses are read."""
    operation: Literal["resize", "crop", "rotate", "convert"]
    width: Optional[float] = None
    height: Optional[float] = None
    fit: Optional[Literal["inside", "cover", "contain", "fill"]] = None
    quality: Optional[int] = Field(None, ge=1, le=100)
    format: Optional[str] = None
    left: Optional[float] = None
    top: Optional[float] = None
    angle: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    database: str
