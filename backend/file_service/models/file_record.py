"""FileRecord model - file metadata (bytes live in the object store)."""
import enum
import uuid
from datetime import datetime
from typing import Any, TypedDict
from sqlalchemy import String, Text, BigInteger, Integer, Boolean, JSON, DateTime, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from file_service.models.base import Base, TimestampMixin


class FileStatus(str, enum.Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    DELETED = "deleted"

    @classmethod
    def can_transition(cls, src: "FileStatus | str", dst: "FileStatus | str") -> bool:
        return cls(dst) in _TRANSITIONS[cls(src)]


_TRANSITIONS: dict[FileStatus, set[FileStatus]] = {
    FileStatus.PENDING: {FileStatus.UPLOADED, FileStatus.FAILED},
    FileStatus.UPLOADED: {FileStatus.PROCESSING, FileStatus.READY, FileStatus.FAILED},
    FileStatus.PROCESSING: {FileStatus.READY, FileStatus.FAILED},
    FileStatus.READY: {FileStatus.DELETED},
    FileStatus.FAILED: set(),
    FileStatus.DELETED: set(),
}


class FileCategory(str, enum.Enum):
    PROFILE_PICTURE = "profile_picture"
    TEAM_LOGO = "team_logo"
    DOCUMENT = "document"
    MEDICAL_RECORD = "medical_record"
    TRAINING_VIDEO = "training_video"
    GAME_FOOTAGE = "game_footage"
    REPORT = "report"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    OTHER = "other"

    @classmethod
    def from_mime_type(cls, mime_type: str) -> "FileCategory":
        if mime_type.startswith("image/"):
            return cls.IMAGE
        if mime_type.startswith("video/"):
            return cls.VIDEO
        if mime_type.startswith("audio/"):
            return cls.AUDIO
        if mime_type.startswith("text/") or mime_type in _DOCUMENT_TYPES or mime_type.startswith(
            "application/vnd.openxmlformats-officedocument."
        ):
            return cls.DOCUMENT
        return cls.OTHER


_DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
    "application/rtf",
}


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"
    ERROR = "error"


class VariantInfo(TypedDict):
    key: str
    width: int
    height: int
    size: int


class FileMetadata(TypedDict, total=False):
    """Known keys of FileRecord.file_metadata. Other JSON keys are allowed."""
    width: int
    height: int
    duration: float
    format: str
    thumbnailKey: str
    previewKey: str
    variants: dict[str, VariantInfo]
    scanError: str


class FileRecord(Base, TimestampMixin):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    team_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=FileStatus.PENDING.value, index=True)
    category: Mapped[str] = mapped_column(String(30), default=FileCategory.OTHER.value)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    file_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    scan_status: Mapped[str] = mapped_column(String(20), default=ScanStatus.PENDING.value)
    scan_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scan_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("idx_files_created_at", "created_at"),
    )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")
