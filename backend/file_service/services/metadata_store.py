"""Metadata store: persisted file, share, version and tag records.

Thin query layer over an AsyncSession. Methods that change state flush;
callers decide when to commit so multi-step changes share one transaction.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import and_, asc, delete, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from file_service.exceptions import ValidationError
from file_service.models.base import utcnow
from file_service.models.file_record import FileRecord, FileStatus
from file_service.models.file_share import FileShare, ShareType
from file_service.models.file_tag import FileTag, normalize_tag
from file_service.models.file_version import FileVersion

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

SORT_COLUMNS = {
    "created_at": FileRecord.created_at,
    "updated_at": FileRecord.updated_at,
    "original_name": FileRecord.original_name,
    "size_bytes": FileRecord.size_bytes,
    "access_count": FileRecord.access_count,
}


@dataclass
class SearchOptions:
    user_id: str | None = None  # owner, or target of an active user share
    organization_id: str | None = None
    team_id: str | None = None
    category: str | None = None
    mime_type: str | None = None  # prefix, e.g. "image/"
    query: str | None = None  # free text on name/description
    tags: list[str] = field(default_factory=list)  # any of
    date_from: datetime | None = None
    date_to: datetime | None = None
    min_size: int | None = None
    max_size: int | None = None
    status: str | None = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


@dataclass
class SearchResult:
    files: list[FileRecord]
    total: int


class MetadataStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def add(self, obj) -> None:
        self.session.add(obj)
        await self.session.flush()

    # ── Files ────────────────────────────────────────────────────

    async def get_file(self, file_id: uuid.UUID) -> FileRecord | None:
        return await self.session.get(FileRecord, file_id, populate_existing=True)

    async def search(self, options: SearchOptions) -> SearchResult:
        """Filtered, sorted, paginated listing. Soft-deleted files never appear."""
        conditions = self._search_conditions(options)

        sort_column = SORT_COLUMNS.get(options.sort_by)
        if sort_column is None:
            raise ValidationError(f"Cannot sort by '{options.sort_by}'")
        order = desc if options.sort_order.lower() == "desc" else asc
        limit = max(1, min(options.limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))

        query = (
            select(FileRecord)
            .where(*conditions)
            .order_by(order(sort_column), order(FileRecord.id))
            .limit(limit)
            .offset(max(0, options.offset))
        )
        result = await self.session.execute(query)
        files = list(result.scalars().all())

        total = await self.session.scalar(select(func.count(FileRecord.id)).where(*conditions))
        return SearchResult(files=files, total=total or 0)

    def _search_conditions(self, options: SearchOptions) -> list:
        conditions = [
            FileRecord.deleted_at.is_(None),
            FileRecord.status != FileStatus.DELETED.value,
        ]
        if options.user_id:
            now = utcnow()
            shared_with_user = select(FileShare.file_id).where(
                FileShare.shared_with_id == options.user_id,
                FileShare.share_type == ShareType.USER.value,
                FileShare.is_active.is_(True),
                or_(FileShare.expires_at.is_(None), FileShare.expires_at > now),
            )
            conditions.append(or_(
                FileRecord.owner_id == options.user_id,
                FileRecord.id.in_(shared_with_user),
            ))
        if options.organization_id:
            conditions.append(FileRecord.organization_id == options.organization_id)
        if options.team_id:
            conditions.append(FileRecord.team_id == options.team_id)
        if options.category:
            conditions.append(FileRecord.category == options.category)
        if options.mime_type:
            conditions.append(FileRecord.mime_type.startswith(options.mime_type, autoescape=True))
        if options.query:
            conditions.append(or_(
                FileRecord.original_name.icontains(options.query, autoescape=True),
                FileRecord.description.icontains(options.query, autoescape=True),
            ))
        tags = [normalize_tag(t) for t in options.tags if t and t.strip()]
        if tags:
            conditions.append(FileRecord.id.in_(select(FileTag.file_id).where(FileTag.tag.in_(tags))))
        if options.date_from:
            conditions.append(FileRecord.created_at >= options.date_from)
        if options.date_to:
            conditions.append(FileRecord.created_at <= options.date_to)
        if options.min_size is not None:
            conditions.append(FileRecord.size_bytes >= options.min_size)
        if options.max_size is not None:
            conditions.append(FileRecord.size_bytes <= options.max_size)
        if options.status:
            conditions.append(FileRecord.status == options.status)
        return conditions

    async def list_deleted_before(self, cutoff: datetime, limit: int = 100) -> list[FileRecord]:
        """Soft-deleted files past the retention window, oldest first."""
        result = await self.session.execute(
            select(FileRecord)
            .where(FileRecord.deleted_at.is_not(None), FileRecord.deleted_at < cutoff)
            .order_by(FileRecord.deleted_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ── Shares ───────────────────────────────────────────────────

    async def get_shares(self, file_id: uuid.UUID, active_only: bool = False) -> list[FileShare]:
        query = select(FileShare).where(FileShare.file_id == file_id).order_by(FileShare.created_at)
        if active_only:
            query = query.where(FileShare.is_active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_share(self, share_id: uuid.UUID) -> FileShare | None:
        return await self.session.get(FileShare, share_id)

    async def get_share_by_token(self, token: str) -> FileShare | None:
        result = await self.session.execute(select(FileShare).where(FileShare.share_token == token))
        return result.scalar_one_or_none()

    async def find_share(self, file_id: uuid.UUID, shared_with_id: str | None, share_type: str) -> FileShare | None:
        result = await self.session.execute(
            select(FileShare).where(
                FileShare.file_id == file_id,
                FileShare.shared_with_id == shared_with_id,
                FileShare.share_type == share_type,
            )
        )
        return result.scalar_one_or_none()

    # ── Tags ─────────────────────────────────────────────────────

    async def get_tags(self, file_id: uuid.UUID) -> list[str]:
        result = await self.session.execute(
            select(FileTag.tag).where(FileTag.file_id == file_id).order_by(FileTag.tag)
        )
        return list(result.scalars().all())

    async def get_tags_for_files(self, file_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, list[str]]:
        file_ids = list(file_ids)
        tags: dict[uuid.UUID, list[str]] = {fid: [] for fid in file_ids}
        if not file_ids:
            return tags
        result = await self.session.execute(
            select(FileTag.file_id, FileTag.tag).where(FileTag.file_id.in_(file_ids)).order_by(FileTag.tag)
        )
        for file_id, tag in result.all():
            tags[file_id].append(tag)
        return tags

    async def add_tags(self, file_id: uuid.UUID, tags: Iterable[str], added_by: str) -> list[str]:
        """Attach normalized tags; existing ones are left alone. Returns the new tags."""
        wanted = []
        for tag in tags:
            normalized = normalize_tag(tag)
            if normalized and normalized not in wanted:
                wanted.append(normalized)
        if not wanted:
            return []

        existing = set(await self.get_tags(file_id))
        added = [t for t in wanted if t not in existing]
        for tag in added:
            self.session.add(FileTag(file_id=file_id, tag=tag, added_by=added_by))
        await self.session.flush()
        return added

    async def remove_tag(self, file_id: uuid.UUID, tag: str) -> bool:
        result = await self.session.execute(
            delete(FileTag).where(FileTag.file_id == file_id, FileTag.tag == normalize_tag(tag))
        )
        return result.rowcount > 0

    # ── Versions ─────────────────────────────────────────────────

    async def get_versions(self, file_id: uuid.UUID) -> list[FileVersion]:
        result = await self.session.execute(
            select(FileVersion).where(FileVersion.file_id == file_id).order_by(FileVersion.version_number)
        )
        return list(result.scalars().all())

    async def get_version(self, file_id: uuid.UUID, version_number: int) -> FileVersion | None:
        result = await self.session.execute(
            select(FileVersion).where(
                FileVersion.file_id == file_id,
                FileVersion.version_number == version_number,
            )
        )
        return result.scalar_one_or_none()

    async def get_current_version(self, file_id: uuid.UUID) -> FileVersion | None:
        result = await self.session.execute(
            select(FileVersion).where(FileVersion.file_id == file_id, FileVersion.is_current.is_(True))
        )
        return result.scalars().first()

    async def next_version_number(self, file_id: uuid.UUID) -> int:
        latest = await self.session.scalar(
            select(func.max(FileVersion.version_number)).where(FileVersion.file_id == file_id)
        )
        return (latest or 0) + 1

    async def clear_current_version(self, file_id: uuid.UUID, keep_id: uuid.UUID | None = None) -> None:
        """Unset is_current on every version of the file except ``keep_id``."""
        conditions = [FileVersion.file_id == file_id, FileVersion.is_current.is_(True)]
        if keep_id is not None:
            conditions.append(FileVersion.id != keep_id)
        await self.session.execute(
            update(FileVersion).where(and_(*conditions)).values(is_current=False)
            .execution_options(synchronize_session="fetch")
        )
