"""Public share-link routes. No identity required; the token is the credential."""
from typing import Optional

from fastapi import APIRouter, Depends, Header

from file_service.dependencies import get_file_service
from file_service.identity import Identity, get_optional_identity
from file_service.routes.files import stream_response
from file_service.schemas.share import SharedFileResponse
from file_service.services.file_service import FileService

router = APIRouter(prefix="/api/shared", tags=["shared"])


def _accessor(identity: Optional[Identity]) -> Optional[str]:
    return identity.user_id if identity else None


@router.get("/{token}", response_model=SharedFileResponse)
async def get_shared_file(
    token: str,
    x_share_password: Optional[str] = Header(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: FileService = Depends(get_file_service),
):
    """Metadata of a publicly shared file."""
    record = await service.access_shared_file(token, x_share_password, _accessor(identity))
    return {
        "id": str(record.id),
        "name": record.original_name,
        "size": record.size_bytes,
        "mime_type": record.mime_type,
        "category": record.category,
        "description": record.description,
        "created_at": record.created_at,
        "download_url": f"/api/shared/{token}/download",
    }


@router.get("/{token}/download")
async def download_shared_file(
    token: str,
    x_share_password: Optional[str] = Header(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: FileService = Depends(get_file_service),
):
    downloaded = await service.download_shared_file(token, x_share_password, _accessor(identity))
    return stream_response(downloaded)
