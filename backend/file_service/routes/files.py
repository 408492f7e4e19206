"""Files API routes."""
from datetime import datetime
from typing import Optional
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from fastapi.responses import StreamingResponse

from file_service.exceptions import AccessDeniedError, NotFoundError
from file_service.identity import Identity, get_identity
from file_service.dependencies import get_file_service
from file_service.models.file_record import FileRecord
from file_service.models.file_share import FileShare, ShareType
from file_service.models.file_version import FileVersion
from file_service.schemas.common import DeleteResponse, ErrorResponse
from file_service.schemas.file import (
    FileDetailResponse,
    FileResponse,
    ImageEditRequest,
    MultipleUploadResponse,
    SearchResponse,
    SignedUrlRequest,
    SignedUrlResponse,
    TagsRequest,
    TagsResponse,
    VersionResponse,
)
from file_service.schemas.share import ShareCreate, ShareResponse
from file_service.services.file_service import DownloadedFile, FileService, ShareRequest, UploadData
from file_service.services.metadata_store import SearchOptions

router = APIRouter(
    prefix="/api/files",
    tags=["files"],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)

# camelCase sort keys accepted from clients
SORT_ALIASES = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "name": "original_name",
    "size": "size_bytes",
    "accessCount": "access_count",
}


def _split_tags(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def content_disposition(kind: str, filename: str) -> str:
    """Header value with an ASCII fallback plus the RFC 5987 UTF-8 name."""
    fallback = filename.encode("ascii", "ignore").decode().replace('"', "") or "download"
    return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def stream_response(downloaded: DownloadedFile, kind: str = "attachment") -> StreamingResponse:
    headers = {"Content-Disposition": content_disposition(kind, downloaded.record.original_name)}
    if downloaded.content_length is not None:
        headers["Content-Length"] = str(downloaded.content_length)
    return StreamingResponse(downloaded.stream, media_type=downloaded.content_type, headers=headers)


def _file_urls(record: FileRecord) -> tuple[str, Optional[str]]:
    url = f"/api/files/{record.id}/download"
    has_thumbnail = bool((record.file_metadata or {}).get("thumbnailKey"))
    return url, f"/api/files/{record.id}/thumbnail" if has_thumbnail else None


def _to_response(record: FileRecord) -> dict:
    url, thumbnail_url = _file_urls(record)
    return {
        "id": str(record.id),
        "name": record.original_name,
        "size": record.size_bytes,
        "mime_type": record.mime_type,
        "category": record.category,
        "status": record.status,
        "url": url,
        "thumbnail_url": thumbnail_url,
        "created_at": record.created_at,
    }


def _to_detail_response(record: FileRecord, tags: list[str]) -> dict:
    return {
        **_to_response(record),
        "description": record.description,
        "owner_id": record.owner_id,
        "organization_id": record.organization_id,
        "team_id": record.team_id,
        "is_public": record.is_public,
        "metadata": record.file_metadata or {},
        "tags": tags,
        "content_hash": record.content_hash,
        "scan_status": record.scan_status,
        "scan_date": record.scan_date,
        "access_count": record.access_count,
        "last_accessed_at": record.last_accessed_at,
        "updated_at": record.updated_at,
        "deleted_at": record.deleted_at,
    }


def _share_to_response(share: FileShare) -> dict:
    share_url = None
    if share.share_type == ShareType.PUBLIC_LINK.value and share.share_token:
        share_url = f"/api/shared/{share.share_token}"
    return {
        "id": str(share.id),
        "file_id": str(share.file_id),
        "shared_by_id": share.shared_by_id,
        "shared_with_id": share.shared_with_id,
        "share_type": share.share_type,
        "permissions": share.permissions or [],
        "share_token": share.share_token,
        "share_url": share_url,
        "has_password": bool(share.password_hash),
        "expires_at": share.expires_at,
        "max_access_count": share.max_access_count,
        "access_count": share.access_count,
        "last_accessed_at": share.last_accessed_at,
        "is_active": share.is_active,
        "created_at": share.created_at,
    }


def _version_to_response(version: FileVersion) -> dict:
    return {
        "id": str(version.id),
        "file_id": str(version.file_id),
        "version_number": version.version_number,
        "size": version.size_bytes,
        "content_hash": version.content_hash,
        "uploaded_by": version.uploaded_by,
        "comment": version.comment,
        "metadata": version.version_metadata or {},
        "is_current": version.is_current,
        "created_at": version.created_at,
        "restored_at": version.restored_at,
        "restored_by": version.restored_by,
    }


def _upload_data(upload: UploadFile, contents: bytes, identity: Identity, category: Optional[str] = None,
                 description: Optional[str] = None, tags: Optional[str] = None, is_public: bool = False,
                 team_id: Optional[str] = None) -> UploadData:
    if team_id and not identity.in_team(team_id):
        raise AccessDeniedError(f"Not a member of team {team_id}")
    return UploadData(
        buffer=contents,
        original_name=upload.filename or "",
        mime_type=upload.content_type or "application/octet-stream",
        owner_id=identity.user_id,
        organization_id=identity.organization_id,
        team_id=team_id,
        category=category or None,
        description=description,
        tags=_split_tags(tags),
        is_public=is_public,
    )


@router.post("/upload", response_model=FileResponse, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None, description="Comma-separated tags"),
    is_public: bool = Form(False, alias="isPublic"),
    team_id: Optional[str] = Form(None, alias="teamId"),
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Upload a file through the scan/process/store pipeline."""
    contents = await file.read()
    data = _upload_data(file, contents, identity, category, description, tags, is_public, team_id)
    record = await service.upload_file(data)
    return _to_response(record)


@router.post("/upload/multiple", response_model=MultipleUploadResponse)
async def upload_multiple(
    files: list[UploadFile] = File(...),
    category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    is_public: bool = Form(False, alias="isPublic"),
    team_id: Optional[str] = Form(None, alias="teamId"),
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Upload several files. Failures are reported per file."""
    uploads = []
    for upload in files:
        contents = await upload.read()
        uploads.append(_upload_data(upload, contents, identity, category, None, tags, is_public, team_id))
    result = await service.upload_files(uploads)
    return {
        "uploaded": result.uploaded,
        "failed": result.failed,
        "files": [_to_response(r) for r in result.files],
        "errors": [{"name": e.name, "error": e.error, "message": e.message} for e in result.errors],
    }


@router.get("", response_model=SearchResponse)
async def search_files(
    category: Optional[str] = Query(None),
    mime_type: Optional[str] = Query(None, alias="mimeType", description="MIME type prefix, e.g. image/"),
    q: Optional[str] = Query(None, description="Search name and description"),
    tags: Optional[str] = Query(None, description="Comma-separated, matches any"),
    organization_id: Optional[str] = Query(None, alias="organizationId"),
    team_id: Optional[str] = Query(None, alias="teamId"),
    status: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    min_size: Optional[int] = Query(None, alias="minSize", ge=0),
    max_size: Optional[int] = Query(None, alias="maxSize", ge=0),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Files the caller owns or has been shared directly, newest first."""
    options = SearchOptions(
        user_id=identity.user_id,
        organization_id=organization_id,
        team_id=team_id,
        category=category,
        mime_type=mime_type,
        query=q,
        tags=_split_tags(tags),
        date_from=date_from,
        date_to=date_to,
        min_size=min_size,
        max_size=max_size,
        status=status,
        sort_by=SORT_ALIASES.get(sort_by, sort_by),
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    result = await service.search_files(options)
    tags_by_file = await service.store.get_tags_for_files(r.id for r in result.files)
    return {
        "files": [_to_detail_response(r, tags_by_file.get(r.id, [])) for r in result.files],
        "total": result.total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{file_id}", response_model=FileDetailResponse)
async def get_file(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Get file metadata by ID."""
    record = await service.get_file(file_id, identity)
    if record is None:
        raise NotFoundError("File not found")
    return _to_detail_response(record, await service.get_tags(file_id))


@router.get("/{file_id}/download")
async def download_file(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Stream the current version of a file."""
    downloaded = await service.download_file(file_id, identity)
    return stream_response(downloaded)


@router.get("/{file_id}/thumbnail")
async def get_thumbnail(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    downloaded = await service.get_thumbnail(file_id, identity)
    return StreamingResponse(downloaded.stream, media_type=downloaded.content_type)


@router.post("/{file_id}/signed-url", response_model=SignedUrlResponse)
async def create_signed_url(
    file_id: UUID,
    body: SignedUrlRequest,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Time-limited direct URL to the stored object."""
    signed = await service.get_signed_url(file_id, identity, body.action, body.expires_in)
    return {"url": signed.url, "expires_in": signed.expires_in, "action": signed.action}


@router.delete("/{file_id}", status_code=204)
async def delete_file(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Soft delete. Stored bytes are removed later by the retention sweep."""
    await service.delete_file(file_id, identity)
    return Response(status_code=204)


# ── Sharing ──────────────────────────────────────────────────────

@router.post("/{file_id}/share", response_model=ShareResponse, status_code=201)
async def share_file(
    file_id: UUID,
    body: ShareCreate,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    request = ShareRequest(**body.model_dump())
    share = await service.share_file(file_id, identity, request)
    return _share_to_response(share)


@router.get("/{file_id}/shares", response_model=list[ShareResponse])
async def list_shares(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    shares = await service.list_shares(file_id, identity)
    return [_share_to_response(s) for s in shares]


@router.delete("/{file_id}/shares/{share_id}", response_model=DeleteResponse)
async def revoke_share(
    file_id: UUID,
    share_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Deactivate a grant. The row is kept for auditing."""
    await service.revoke_share(file_id, share_id, identity)
    return {"deleted": True, "id": str(share_id)}


# ── Tags ─────────────────────────────────────────────────────────

@router.post("/{file_id}/tags", response_model=TagsResponse)
async def add_tags(
    file_id: UUID,
    body: TagsRequest,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    tags = await service.add_tags(file_id, body.tags, identity)
    return {"file_id": str(file_id), "tags": tags}


@router.delete("/{file_id}/tags/{tag}", response_model=TagsResponse)
async def remove_tag(
    file_id: UUID,
    tag: str,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    tags = await service.remove_tag(file_id, tag, identity)
    return {"file_id": str(file_id), "tags": tags}


# ── Versions ─────────────────────────────────────────────────────

@router.get("/{file_id}/versions", response_model=list[VersionResponse])
async def list_versions(
    file_id: UUID,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    versions = await service.list_versions(file_id, identity)
    return [_version_to_response(v) for v in versions]


@router.post("/{file_id}/versions", response_model=VersionResponse, status_code=201)
async def upload_version(
    file_id: UUID,
    file: UploadFile = File(...),
    comment: Optional[str] = Form(None),
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Replace the file content, keeping earlier versions."""
    contents = await file.read()
    version = await service.upload_version(file_id, identity, contents, comment)
    return _version_to_response(version)


@router.post("/{file_id}/versions/{version_number}/restore", response_model=VersionResponse)
async def restore_version(
    file_id: UUID,
    version_number: int,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    version = await service.restore_version(file_id, version_number, identity)
    return _version_to_response(version)


# ── Image editing ────────────────────────────────────────────────

@router.post("/{file_id}/edit", response_model=VersionResponse, status_code=201)
async def edit_image(
    file_id: UUID,
    body: ImageEditRequest,
    identity: Identity = Depends(get_identity),
    service: FileService = Depends(get_file_service),
):
    """Apply resize, crop, rotate or convert and store the result as a new version."""
    params = body.model_dump(exclude_none=True, exclude={"operation"})
    if body.operation == "resize":
        for key in ("width", "height"):
            if key in params:
                params[key] = int(round(params[key]))
    version = await service.edit_image(file_id, identity, body.operation, params)
    return _version_to_response(version)
