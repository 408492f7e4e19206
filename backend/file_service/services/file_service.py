"""Upload orchestrator: the file pipeline and its status state machine.

    PENDING -> UPLOADED -> PROCESSING -> READY -> DELETED
                  |            |
                  +--> FAILED <+

A record is persisted as PENDING before any bytes move, so a failed upload
always leaves an auditable FAILED record behind. Each step is awaited in
order; nothing in the pipeline is retried automatically except allocation
of a version number that lost a race.
"""
import hashlib
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy.exc import IntegrityError

from file_service.config import Settings, settings as default_settings
from file_service.exceptions import (
    AccessDeniedError,
    FileServiceError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ScanInfectedError,
    ScanUnavailableError,
    ValidationError,
)
from file_service.identity import Identity
from file_service.models.base import as_utc, utcnow
from file_service.models.file_record import FileCategory, FileRecord, FileStatus, ScanStatus
from file_service.models.file_share import FileShare, SharePermission, ShareType
from file_service.models.file_version import FileVersion
from file_service.services import access_control
from file_service.services.image_processing import ImageProcessingService, ProcessedImage, TransformResult
from file_service.services.metadata_store import MetadataStore, SearchOptions, SearchResult
from file_service.services.object_store import ObjectStore
from file_service.services.virus_scan import ScanResult, VirusScanService

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")
SIGNED_URL_ACTIONS = ("view", "download")
IMAGE_EDIT_OPERATIONS = ("resize", "crop", "rotate", "convert")
# Record metadata that describes one particular version of an image
IMAGE_METADATA_KEYS = ("width", "height", "format", "variants", "thumbnailKey", "previewKey")


@dataclass
class UploadData:
    buffer: bytes
    original_name: str
    mime_type: str
    owner_id: str
    organization_id: str | None = None
    team_id: str | None = None
    category: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    is_public: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class UploadFailure:
    name: str
    error: str
    message: str


@dataclass
class MultiUploadResult:
    files: list[FileRecord] = field(default_factory=list)
    errors: list[UploadFailure] = field(default_factory=list)

    @property
    def uploaded(self) -> int:
        return len(self.files)

    @property
    def failed(self) -> int:
        return len(self.errors)


@dataclass
class ShareRequest:
    share_type: str
    shared_with_id: str | None = None
    permissions: list[str] = field(default_factory=lambda: [SharePermission.VIEW.value])
    expires_at: datetime | None = None
    max_access_count: int | None = None
    password: str | None = None


@dataclass
class DownloadedFile:
    record: FileRecord
    stream: AsyncIterator[bytes]
    content_type: str
    content_length: int | None = None


@dataclass
class SignedUrl:
    url: str
    expires_in: int
    action: str


@dataclass
class CleanupResult:
    """Outcome of a best-effort object deletion. Never raised."""
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _key_segment(value: str) -> str:
    segment = _UNSAFE_SEGMENT_CHARS.sub("_", value)
    return "_" if segment in (".", "..") else segment


def build_storage_prefix(owner_id: str, category: str, organization_id: str | None = None,
                         team_id: str | None = None) -> str:
    """{orgId?}/{teamId?}/{ownerId}/{category}"""
    parts = [organization_id, team_id, owner_id, category]
    return "/".join(_key_segment(p) for p in parts if p)


def compute_content_hash(buffer: bytes) -> str:
    return hashlib.sha256(buffer).hexdigest()


def image_metadata(processed: ProcessedImage) -> dict[str, Any]:
    metadata = {
        "width": processed.original.width,
        "height": processed.original.height,
        "format": processed.original.format,
        "variants": {
            name: {"key": v.key, "width": v.width, "height": v.height, "size": v.size}
            for name, v in processed.variants.items()
        },
    }
    if "thumbnail" in processed.variants:
        metadata["thumbnailKey"] = processed.variants["thumbnail"].key
    if "medium" in processed.variants:
        metadata["previewKey"] = processed.variants["medium"].key
    return metadata


class FileService:
    """Coordinates scanner, image engine, object store and metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        object_store: ObjectStore,
        image_processor: ImageProcessingService,
        virus_scanner: VirusScanService,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.object_store = object_store
        self.image_processor = image_processor
        self.virus_scanner = virus_scanner
        self.settings = settings
        self.bucket = settings.S3_BUCKET

    # ── Upload pipeline ──────────────────────────────────────────

    async def upload_file(self, data: UploadData) -> FileRecord:
        """Run the full pipeline. Returns the READY record or raises after marking it FAILED."""
        category = self._validate_upload(data)
        prefix = build_storage_prefix(data.owner_id, category, data.organization_id, data.team_id)
        storage_key = self.object_store.generate_key(prefix, data.original_name)

        record = FileRecord(
            owner_id=data.owner_id,
            organization_id=data.organization_id,
            team_id=data.team_id,
            original_name=data.original_name,
            storage_key=storage_key,
            mime_type=data.mime_type,
            size_bytes=len(data.buffer),
            status=FileStatus.PENDING.value,
            category=category,
            description=data.description,
            file_metadata=dict(data.metadata),
            content_hash=compute_content_hash(data.buffer),
            is_public=data.is_public,
            scan_status=ScanStatus.PENDING.value,
        )
        await self.store.add(record)
        await self.store.commit()
        file_id = record.id
        logger.info(f"Created pending file {file_id} ({data.original_name}, {len(data.buffer)} bytes)")

        written: list[str] = []
        try:
            self._transition(record, FileStatus.UPLOADED)
            await self.store.commit()

            scan = await self.virus_scanner.scan_buffer(data.buffer)
            self._apply_scan_result(record, scan)
            await self.store.commit()
            if scan.is_infected:
                self._transition(record, FileStatus.FAILED)
                await self.store.commit()
                logger.warning(f"File {file_id} rejected: infected with {scan.virus_name}")
                raise ScanInfectedError(f"File is infected with {scan.virus_name}", virus_name=scan.virus_name)
            if scan.error and self.settings.VIRUS_SCAN_FAIL_CLOSED:
                raise ScanUnavailableError(f"Virus scan failed: {scan.error}")

            if record.is_image:
                self._transition(record, FileStatus.PROCESSING)
                await self.store.commit()
                processed = await self.image_processor.process_image(data.buffer, storage_key, written=written)
                record.file_metadata = {**(record.file_metadata or {}), **image_metadata(processed)}
            else:
                await self.object_store.upload(
                    self.bucket,
                    storage_key,
                    data.buffer,
                    data.mime_type,
                    metadata={"file-id": str(file_id), "owner-id": data.owner_id},
                )
                written.append(storage_key)

            if data.tags:
                await self.store.add_tags(file_id, data.tags, data.owner_id)

            self._transition(record, FileStatus.READY)
            await self.store.add(FileVersion(
                file_id=file_id,
                version_number=1,
                storage_key=storage_key,
                size_bytes=record.size_bytes,
                content_hash=record.content_hash,
                uploaded_by=data.owner_id,
                comment="Initial upload",
                version_metadata={**(record.file_metadata or {}), "mimeType": record.mime_type},
                is_current=True,
            ))
            await self.store.commit()
        except Exception as e:
            await self._fail_upload(file_id, storage_key, written, e)
            raise

        logger.info(f"File {file_id} ready at {storage_key}")
        return record

    async def upload_files(self, uploads: list[UploadData]) -> MultiUploadResult:
        """Upload several files; one failure does not stop the rest."""
        if not uploads:
            raise ValidationError("No files provided")
        if len(uploads) > self.settings.MAX_FILES_PER_REQUEST:
            raise ValidationError(f"At most {self.settings.MAX_FILES_PER_REQUEST} files per request")

        result = MultiUploadResult()
        for upload in uploads:
            try:
                result.files.append(await self.upload_file(upload))
            except FileServiceError as e:
                result.errors.append(UploadFailure(upload.original_name, e.error, e.message))
            except Exception as e:
                logger.error(f"Upload of {upload.original_name} failed: {e}")
                result.errors.append(UploadFailure(upload.original_name, type(e).__name__, "Upload failed"))
        return result

    def _validate_upload(self, data: UploadData) -> str:
        """Reject bad input before anything is persisted. Returns the category."""
        if not data.owner_id:
            raise ValidationError("Owner is required")
        if not data.original_name or not data.original_name.strip():
            raise ValidationError("File name is required")
        if not data.buffer:
            raise ValidationError("File is empty")
        if len(data.buffer) > self.settings.MAX_FILE_SIZE:
            raise ValidationError(f"File exceeds the maximum size of {self.settings.MAX_FILE_SIZE} bytes")
        if not self._mime_type_allowed(data.mime_type):
            raise ValidationError(f"File type '{data.mime_type}' is not allowed")
        if data.category:
            try:
                return FileCategory(data.category).value
            except ValueError:
                raise ValidationError(f"Unknown category '{data.category}'")
        return FileCategory.from_mime_type(data.mime_type).value

    def _mime_type_allowed(self, mime_type: str) -> bool:
        if not mime_type:
            return False
        for allowed in self.settings.allowed_mime_types:
            if allowed.endswith(("/", ".")):
                if mime_type.startswith(allowed):
                    return True
            elif mime_type == allowed:
                return True
        return False

    def _transition(self, record: FileRecord, status: FileStatus) -> None:
        if not FileStatus.can_transition(record.status, status):
            raise InvalidStateError(f"Cannot move file from {record.status} to {status.value}")
        record.status = status.value

    def _apply_scan_result(self, record: FileRecord, scan: ScanResult) -> None:
        if scan.skipped:
            return
        record.scan_date = scan.scanned_at
        if scan.is_infected:
            record.scan_status = ScanStatus.INFECTED.value
            record.scan_result = scan.virus_name
        elif scan.error:
            record.scan_status = ScanStatus.ERROR.value
            record.scan_result = scan.error
            record.file_metadata = {**(record.file_metadata or {}), "scanError": scan.error}
        else:
            record.scan_status = ScanStatus.CLEAN.value
            record.scan_result = None

    async def _fail_upload(self, file_id: uuid.UUID, storage_key: str, written: list[str],
                           error: Exception) -> None:
        """Mark FAILED and delete the objects this upload stored. Never raises."""
        logger.error(f"Upload of file {file_id} failed: {error}")
        try:
            await self.store.rollback()
            record = await self.store.get_file(file_id)
            if record is not None and record.status != FileStatus.FAILED.value:
                self._transition(record, FileStatus.FAILED)
                metadata = dict(record.file_metadata or {})
                metadata["error"] = str(error) or type(error).__name__
                record.file_metadata = metadata
                await self.store.commit()
        except Exception as e:
            logger.error(f"Could not mark file {file_id} as failed: {e}")

        # the primary key may hold a partial write even when its upload raised
        await self._cleanup_objects(list(dict.fromkeys([storage_key, *written])))

    async def _cleanup_objects(self, keys: list[str]) -> CleanupResult:
        result = CleanupResult()
        for key in keys:
            try:
                await self.object_store.delete(self.bucket, key)
                result.deleted.append(key)
            except Exception as e:
                logger.warning(f"Best-effort cleanup of {key} failed: {e}")
                result.failed[key] = str(e)
        return result

    # ── Reads ────────────────────────────────────────────────────

    async def _load(self, file_id: uuid.UUID) -> tuple[FileRecord, list[FileShare]]:
        record = await self.store.get_file(file_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")
        grants = await self.store.get_shares(file_id, active_only=True)
        return record, grants

    async def _require_permission(self, file_id: uuid.UUID, identity: Identity,
                                  permission: SharePermission) -> FileRecord:
        record, grants = await self._load(file_id)
        if not access_control.has_permission(record, identity, grants, permission):
            raise AccessDeniedError(f"Missing {permission.value} permission on file {file_id}")
        return record

    async def _touch(self, record: FileRecord) -> None:
        record.access_count = (record.access_count or 0) + 1
        record.last_accessed_at = utcnow()
        await self.store.commit()

    async def get_file(self, file_id: uuid.UUID, identity: Identity) -> FileRecord | None:
        """The record if it exists and the caller may see it, else None."""
        record = await self.store.get_file(file_id)
        if record is None:
            return None
        grants = await self.store.get_shares(file_id, active_only=True)
        if not access_control.has_access(record, identity, grants):
            return None
        await self._touch(record)
        return record

    async def _current_storage_key(self, record: FileRecord) -> str:
        version = await self.store.get_current_version(record.id)
        return version.storage_key if version else record.storage_key

    async def download_file(self, file_id: uuid.UUID, identity: Identity) -> DownloadedFile:
        record, grants = await self._load(file_id)
        if not access_control.has_access(record, identity, grants):
            raise AccessDeniedError(f"Access to file {file_id} denied")
        if not access_control.can_download(record, identity, grants):
            raise AccessDeniedError(f"Download of file {file_id} not permitted")
        return await self._stream_file(record)

    async def _stream_file(self, record: FileRecord) -> DownloadedFile:
        if record.status != FileStatus.READY.value:
            raise NotFoundError(f"File {record.id} is not available")
        key = await self._current_storage_key(record)
        result = await self.object_store.download(self.bucket, key)
        await self._touch(record)
        return DownloadedFile(
            record=record,
            stream=result.stream,
            content_type=result.content_type or record.mime_type,
            content_length=result.content_length,
        )

    async def get_thumbnail(self, file_id: uuid.UUID, identity: Identity) -> DownloadedFile:
        record, grants = await self._load(file_id)
        if not access_control.has_access(record, identity, grants):
            raise AccessDeniedError(f"Access to file {file_id} denied")
        key = (record.file_metadata or {}).get("thumbnailKey")
        if record.status != FileStatus.READY.value or not key:
            raise NotFoundError(f"File {file_id} has no thumbnail")
        result = await self.object_store.download(self.bucket, key)
        return DownloadedFile(
            record=record,
            stream=result.stream,
            content_type=result.content_type or "image/jpeg",
            content_length=result.content_length,
        )

    async def search_files(self, options: SearchOptions) -> SearchResult:
        return await self.store.search(options)

    async def get_signed_url(self, file_id: uuid.UUID, identity: Identity, action: str = "download",
                             ttl: int | None = None) -> SignedUrl:
        if action not in SIGNED_URL_ACTIONS:
            raise ValidationError(f"Unsupported action '{action}'")
        ttl = ttl or self.settings.SIGNED_URL_DEFAULT_TTL
        if ttl <= 0 or ttl > self.settings.SIGNED_URL_MAX_TTL:
            raise ValidationError(f"expiresIn must be between 1 and {self.settings.SIGNED_URL_MAX_TTL} seconds")

        record, grants = await self._load(file_id)
        allowed = (
            access_control.has_access(record, identity, grants) if action == "view"
            else access_control.can_download(record, identity, grants)
        )
        if not allowed:
            raise AccessDeniedError(f"Access to file {file_id} denied")
        if record.status != FileStatus.READY.value:
            raise NotFoundError(f"File {file_id} is not available")

        disposition = "inline" if action == "view" else "attachment"
        safe_name = record.original_name.replace('"', "")
        url = await self.object_store.get_signed_download_url(
            self.bucket,
            await self._current_storage_key(record),
            ttl,
            {"content_type": record.mime_type, "content_disposition": f'{disposition}; filename="{safe_name}"'},
        )
        return SignedUrl(url=url, expires_in=ttl, action=action)

    # ── Sharing ──────────────────────────────────────────────────

    async def share_file(self, file_id: uuid.UUID, identity: Identity, request: ShareRequest) -> FileShare:
        record = await self._require_permission(file_id, identity, SharePermission.EDIT)
        if record.status != FileStatus.READY.value:
            raise InvalidStateError(f"File {file_id} cannot be shared while {record.status}")

        share_type, permissions = self._validate_share(request)
        shared_with_id = None if share_type == ShareType.PUBLIC_LINK else request.shared_with_id

        share = None
        if share_type != ShareType.PUBLIC_LINK:
            share = await self.store.find_share(file_id, shared_with_id, share_type.value)
        if share is None:
            share = FileShare(
                file_id=file_id,
                shared_with_id=shared_with_id,
                share_type=share_type.value,
                access_count=0,
            )
            if share_type == ShareType.PUBLIC_LINK:
                share.share_token = secrets.token_urlsafe(32)
            self.store.session.add(share)

        share.shared_by_id = identity.user_id
        share.permissions = permissions
        share.expires_at = request.expires_at
        share.max_access_count = request.max_access_count or None
        share.password_hash = (
            access_control.hash_share_password(request.password) if request.password else None
        )
        share.is_active = True
        await self.store.commit()
        logger.info(f"File {file_id} shared ({share_type.value}) by {identity.user_id}")
        return share

    def _validate_share(self, request: ShareRequest) -> tuple[ShareType, list[str]]:
        try:
            share_type = ShareType(request.share_type)
        except ValueError:
            raise ValidationError(f"Unknown share type '{request.share_type}'")
        if share_type != ShareType.PUBLIC_LINK and not request.shared_with_id:
            raise ValidationError("sharedWithId is required for user, team and organization shares")
        if not request.permissions:
            raise ValidationError("At least one permission is required")
        try:
            permissions = sorted({SharePermission(p).value for p in request.permissions})
        except ValueError as e:
            raise ValidationError(f"Unknown permission: {e}")
        if request.max_access_count is not None and request.max_access_count < 0:
            raise ValidationError("maxAccessCount cannot be negative")
        if request.expires_at is not None and as_utc(request.expires_at) <= utcnow():
            raise ValidationError("expiresAt must be in the future")
        return share_type, permissions

    async def list_shares(self, file_id: uuid.UUID, identity: Identity) -> list[FileShare]:
        await self._require_permission(file_id, identity, SharePermission.EDIT)
        return await self.store.get_shares(file_id)

    async def revoke_share(self, file_id: uuid.UUID, share_id: uuid.UUID, identity: Identity) -> None:
        await self._require_permission(file_id, identity, SharePermission.EDIT)
        share = await self.store.get_share(share_id)
        if share is None or share.file_id != file_id:
            raise NotFoundError(f"Share {share_id} not found")
        share.is_active = False
        await self.store.commit()

    async def _open_share(self, token: str, password: str | None, accessor_id: str | None,
                          permission: SharePermission) -> FileRecord:
        share = await self.store.get_share_by_token(token)
        if share is None or share.share_type != ShareType.PUBLIC_LINK.value:
            raise NotFoundError("Share link not found")
        if not share.can_access():
            raise AccessDeniedError("Share link has expired or is no longer available")
        if share.password_hash:
            if not password or not access_control.verify_share_password(password, share.password_hash):
                raise AccessDeniedError("Invalid share password")
        if not share.has_permission(permission):
            raise AccessDeniedError(f"Share link does not allow {permission.value}")

        record = await self.store.get_file(share.file_id)
        if record is None or record.status != FileStatus.READY.value:
            raise NotFoundError("Shared file is no longer available")

        share.access_count = (share.access_count or 0) + 1
        share.last_accessed_at = utcnow()
        share.last_accessed_by = accessor_id
        await self.store.commit()
        return record

    async def access_shared_file(self, token: str, password: str | None = None,
                                 accessor_id: str | None = None) -> FileRecord:
        return await self._open_share(token, password, accessor_id, SharePermission.VIEW)

    async def download_shared_file(self, token: str, password: str | None = None,
                                   accessor_id: str | None = None) -> DownloadedFile:
        record = await self._open_share(token, password, accessor_id, SharePermission.DOWNLOAD)
        return await self._stream_file(record)

    # ── Delete ───────────────────────────────────────────────────

    async def delete_file(self, file_id: uuid.UUID, identity: Identity) -> None:
        """Soft delete. Blobs are left for the retention sweep."""
        record = await self._require_permission(file_id, identity, SharePermission.DELETE)
        self._transition(record, FileStatus.DELETED)
        record.deleted_at = utcnow()
        record.deleted_by = identity.user_id
        await self.store.commit()
        logger.info(f"File {file_id} soft-deleted by {identity.user_id}")

    # ── Versions ─────────────────────────────────────────────────

    async def create_version(self, file: FileRecord, buffer: bytes, uploaded_by: str,
                             comment: str | None = None, content_type: str | None = None,
                             metadata: dict[str, Any] | None = None) -> FileVersion:
        """Store new content as the current version.

        The version row is flushed before the blob is written, so a caller
        that loses the version-number race never overwrites the winner's
        object; it rolls back and tries the next number.
        """
        if not buffer:
            raise ValidationError("File is empty")
        if len(buffer) > self.settings.MAX_FILE_SIZE:
            raise ValidationError(f"File exceeds the maximum size of {self.settings.MAX_FILE_SIZE} bytes")
        file_id, base_key = file.id, file.storage_key
        if file.status != FileStatus.READY.value:
            raise InvalidStateError(f"Cannot add a version to a file that is {file.status}")

        scan = await self.virus_scanner.scan_buffer(buffer)
        if scan.is_infected:
            raise ScanInfectedError(f"File is infected with {scan.virus_name}", virus_name=scan.virus_name)
        if scan.error and self.settings.VIRUS_SCAN_FAIL_CLOSED:
            raise ScanUnavailableError(f"Virus scan failed: {scan.error}")

        content_hash = compute_content_hash(buffer)
        attempts = self.settings.VERSION_CONFLICT_RETRIES + 1
        for attempt in range(1, attempts + 1):
            record = await self.store.get_file(file_id)
            number = await self.store.next_version_number(file_id)
            key = f"{base_key}.v{number}"
            version = FileVersion(
                file_id=file_id,
                version_number=number,
                storage_key=key,
                size_bytes=len(buffer),
                content_hash=content_hash,
                uploaded_by=uploaded_by,
                comment=comment,
                version_metadata=dict(metadata or {}),
                is_current=True,
            )
            try:
                await self.store.clear_current_version(file_id)
                await self.store.add(version)
            except IntegrityError:
                await self.store.rollback()
                if attempt == attempts:
                    raise PersistenceError(f"Could not allocate a version number for file {file_id}")
                logger.warning(f"Version {number} of file {file_id} taken, retrying")
                continue

            mime_type = content_type or record.mime_type
            written: list[str] = []
            try:
                await self.object_store.upload(self.bucket, key, buffer, mime_type)
                written.append(key)
                version_metadata = {**(metadata or {}), "mimeType": mime_type}
                if mime_type.startswith("image/"):
                    processed = await self.image_processor.generate_variants(buffer, key, written=written)
                    version_metadata.update(image_metadata(processed))
                version.version_metadata = version_metadata
                record.size_bytes = len(buffer)
                record.content_hash = content_hash
                self._apply_version_metadata(record, version_metadata)
                await self.store.commit()
            except Exception:
                await self.store.rollback()
                await self._cleanup_objects(list(dict.fromkeys([key, *written])))
                raise
            logger.info(f"Created version {number} of file {file_id}")
            return version

    async def list_versions(self, file_id: uuid.UUID, identity: Identity) -> list[FileVersion]:
        record, grants = await self._load(file_id)
        if not access_control.has_access(record, identity, grants):
            raise AccessDeniedError(f"Access to file {file_id} denied")
        return await self.store.get_versions(file_id)

    async def upload_version(self, file_id: uuid.UUID, identity: Identity, buffer: bytes,
                             comment: str | None = None) -> FileVersion:
        record = await self._require_permission(file_id, identity, SharePermission.EDIT)
        return await self.create_version(record, buffer, identity.user_id, comment)

    async def restore_version(self, file_id: uuid.UUID, version_number: int, identity: Identity) -> FileVersion:
        record = await self._require_permission(file_id, identity, SharePermission.EDIT)
        if record.status != FileStatus.READY.value:
            raise InvalidStateError(f"Cannot restore a version of a file that is {record.status}")
        version = await self.store.get_version(file_id, version_number)
        if version is None:
            raise NotFoundError(f"Version {version_number} of file {file_id} not found")
        if version.is_current:
            return version

        await self.store.clear_current_version(file_id, keep_id=version.id)
        version.is_current = True
        version.restored_at = utcnow()
        version.restored_by = identity.user_id
        record.size_bytes = version.size_bytes
        record.content_hash = version.content_hash
        self._apply_version_metadata(record, version.version_metadata or {})
        await self.store.commit()
        logger.info(f"Restored version {version_number} of file {file_id}")
        return version

    def _apply_version_metadata(self, record: FileRecord, version_metadata: dict[str, Any]) -> None:
        """Point the record's content type, dimensions and variants at one version."""
        if version_metadata.get("mimeType"):
            record.mime_type = version_metadata["mimeType"]
        metadata = {k: v for k, v in (record.file_metadata or {}).items() if k not in IMAGE_METADATA_KEYS}
        metadata.update({k: v for k, v in version_metadata.items() if k != "mimeType"})
        record.file_metadata = metadata

    # ── Image editing ────────────────────────────────────────────

    async def edit_image(self, file_id: uuid.UUID, identity: Identity, operation: str,
                         params: dict[str, Any]) -> FileVersion:
        """Apply an on-demand transform and keep the result as a new version."""
        if operation not in IMAGE_EDIT_OPERATIONS:
            raise ValidationError(f"Unsupported image operation '{operation}'")
        record = await self._require_permission(file_id, identity, SharePermission.EDIT)
        if not record.is_image:
            raise ValidationError("Only images can be edited")
        if record.status != FileStatus.READY.value:
            raise InvalidStateError(f"Cannot edit a file that is {record.status}")

        source = await self.object_store.read(self.bucket, await self._current_storage_key(record))
        result = await self._transform(source, operation, params)
        return await self.create_version(
            record,
            result.data,
            identity.user_id,
            comment=f"Image edit: {operation}",
            content_type=result.content_type,
            metadata={"width": result.width, "height": result.height, "format": result.format},
        )

    async def _transform(self, source: bytes, operation: str, params: dict[str, Any]) -> TransformResult:
        try:
            if operation == "resize":
                return await self.image_processor.resize_image(
                    source,
                    width=params.get("width"),
                    height=params.get("height"),
                    fit=params.get("fit", "inside"),
                    quality=params.get("quality"),
                    output_format=params.get("format"),
                )
            if operation == "crop":
                return await self.image_processor.crop_image(
                    source, params["left"], params["top"], params["width"], params["height"]
                )
            if operation == "rotate":
                return await self.image_processor.rotate_image(source, params["angle"])
            return await self.image_processor.convert_format(source, params["format"], params.get("quality"))
        except KeyError as e:
            raise ValidationError(f"Missing parameter {e} for {operation}")

    # ── Tags ─────────────────────────────────────────────────────

    async def add_tags(self, file_id: uuid.UUID, tags: list[str], identity: Identity) -> list[str]:
        await self._require_permission(file_id, identity, SharePermission.EDIT)
        await self.store.add_tags(file_id, tags, identity.user_id)
        await self.store.commit()
        return await self.store.get_tags(file_id)

    async def remove_tag(self, file_id: uuid.UUID, tag: str, identity: Identity) -> list[str]:
        await self._require_permission(file_id, identity, SharePermission.EDIT)
        if not await self.store.remove_tag(file_id, tag):
            raise NotFoundError(f"Tag '{tag}' not found on file {file_id}")
        await self.store.commit()
        return await self.store.get_tags(file_id)

    async def get_tags(self, file_id: uuid.UUID) -> list[str]:
        return await self.store.get_tags(file_id)
