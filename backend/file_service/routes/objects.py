"""Serves signed URLs issued by the local object store.

S3 deployments never route here: their signed URLs point at S3 itself.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from file_service.exceptions import AccessDeniedError, NotFoundError, ValidationError
from file_service.services.object_store import LocalObjectStore, verify_object_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/objects", tags=["objects"])


def _local_store(request: Request) -> LocalObjectStore:
    store = request.app.state.object_store
    if not isinstance(store, LocalObjectStore):
        raise NotFoundError("Object URLs are not served by this deployment")
    return store


def _verify(store: LocalObjectStore, method: str, bucket: str, key: str, expires: int,
            signature: str, params: dict[str, str]) -> None:
    if not verify_object_request(store.signing_secret, method, bucket, key, expires, signature, params):
        logger.info(f"Rejected {method} for {bucket}/{key}: bad or expired signature")
        raise AccessDeniedError("Invalid or expired signature")


@router.get("/{bucket}/{key:path}")
async def get_object(
    request: Request,
    bucket: str,
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    response_content_type: Optional[str] = Query(None, alias="response-content-type"),
    response_content_disposition: Optional[str] = Query(None, alias="response-content-disposition"),
):
    store = _local_store(request)
    params = {}
    if response_content_type:
        params["response-content-type"] = response_content_type
    if response_content_disposition:
        params["response-content-disposition"] = response_content_disposition
    _verify(store, "GET", bucket, key, expires, signature, params)

    result = await store.download(bucket, key)
    headers = {}
    if response_content_disposition:
        headers["Content-Disposition"] = response_content_disposition
    if result.content_length is not None:
        headers["Content-Length"] = str(result.content_length)
    media_type = response_content_type or result.content_type or "application/octet-stream"
    return StreamingResponse(result.stream, media_type=media_type, headers=headers)


@router.put("/{bucket}/{key:path}")
async def put_object(
    request: Request,
    bucket: str,
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    content_type: Optional[str] = Query(None, alias="content-type"),
):
    store = _local_store(request)
    params = {"content-type": content_type} if content_type else {}
    _verify(store, "PUT", bucket, key, expires, signature, params)

    body = await request.body()
    if len(body) > request.app.state.settings.MAX_FILE_SIZE:
        raise ValidationError("Object exceeds the maximum size")
    result = await store.upload(
        bucket,
        key,
        body,
        content_type or request.headers.get("content-type") or "application/octet-stream",
    )
    return {"key": result.key, "etag": result.etag}
