"""FileShare model - access grants on a file (users, teams, orgs, public links)."""
import enum
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, JSON, DateTime, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from file_service.models.base import Base, TimestampMixin, as_utc, utcnow


class ShareType(str, enum.Enum):
    USER = "user"
    TEAM = "team"
    ORGANIZATION = "organization"
    PUBLIC_LINK = "public_link"


class SharePermission(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    EDIT = "edit"
    DELETE = "delete"


class FileShare(Base, TimestampMixin):
    __tablename__ = "file_shares"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    shared_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    shared_with_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    share_type: Mapped[str] = mapped_column(String(20), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, default=lambda: [SharePermission.VIEW.value])
    share_token: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    max_access_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_accessed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("file_id", "shared_with_id", "share_type", name="uq_file_share_target"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and (now or utcnow()) > expires_at

    def is_max_access_reached(self) -> bool:
        if not self.max_access_count:
            return False
        return (self.access_count or 0) >= self.max_access_count

    def can_access(self, now: datetime | None = None) -> bool:
        return bool(self.is_active) and not self.is_expired(now) and not self.is_max_access_reached()

    def has_permission(self, permission: SharePermission | str) -> bool:
        return SharePermission(permission).value in (self.permissions or [])
