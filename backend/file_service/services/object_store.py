"""Object storage abstraction. Local filesystem for dev, S3 for production.

Both backends expose the same async interface so the upload pipeline never
knows where bytes end up. Every write has completed (and, for the local
backend, been fsynced) before the coroutine returns.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import quote, urlencode

import aiofiles
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from file_service.config import Settings
from file_service.exceptions import ObjectNotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class UploadResult:
    key: str
    etag: str
    version_id: str | None = None


@dataclass
class DownloadResult:
    stream: AsyncIterator[bytes]
    content_type: str | None = None
    content_length: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ObjectSummary:
    key: str
    size: int
    last_modified: datetime
    etag: str | None = None


@dataclass
class ObjectListing:
    objects: list[ObjectSummary]
    is_truncated: bool = False
    next_continuation_token: str | None = None


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename).lower()


def generate_key(prefix: str, filename: str) -> str:
    """Build a collision-resistant key: {prefix}/{timestamp}-{randomHex}-{name}."""
    name = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}-{sanitize_filename(filename)}"
    prefix = prefix.strip("/")
    return f"{prefix}/{name}" if prefix else name


class ObjectStore(ABC):
    """Uniform put/get/delete/copy/list/sign operations on a blob store."""

    generate_key = staticmethod(generate_key)

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
        tags: dict[str, str] | None = None,
    ) -> UploadResult: ...

    @abstractmethod
    async def download(self, bucket: str, key: str) -> DownloadResult: ...

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None: ...

    @abstractmethod
    async def exists(self, bucket: str, key: str) -> bool: ...

    @abstractmethod
    async def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult: ...

    @abstractmethod
    async def get_signed_upload_url(
        self, bucket: str, key: str, ttl_seconds: int, content_type: str | None = None
    ) -> str: ...

    @abstractmethod
    async def get_signed_download_url(
        self,
        bucket: str,
        key: str,
        ttl_seconds: int,
        response_overrides: dict[str, str] | None = None,
    ) -> str: ...

    @abstractmethod
    async def list_objects(
        self,
        bucket: str,
        prefix: str | None = None,
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> ObjectListing: ...

    async def read(self, bucket: str, key: str) -> bytes:
        """Download an object fully into memory."""
        result = await self.download(bucket, key)
        parts = [chunk async for chunk in result.stream]
        return b"".join(parts)


# ── Local filesystem backend ─────────────────────────────────────

def sign_object_request(secret: str, method: str, bucket: str, key: str, expires: int,
                        params: dict[str, str] | None = None) -> str:
    """HMAC-SHA256 over the request; extra params are part of the signature."""
    parts = [method.upper(), bucket, key, str(expires)]
    parts.extend(f"{k}={v}" for k, v in sorted((params or {}).items()))
    return hmac.new(secret.encode(), "\n".join(parts).encode(), hashlib.sha256).hexdigest()


def verify_object_request(secret: str, method: str, bucket: str, key: str, expires: int,
                          signature: str, params: dict[str, str] | None = None,
                          now: float | None = None) -> bool:
    if (now if now is not None else time.time()) > expires:
        return False
    expected = sign_object_request(secret, method, bucket, key, expires, params)
    return hmac.compare_digest(expected, signature)


class LocalObjectStore(ObjectStore):
    """Buckets are directories; per-object metadata lives in a .meta sidecar."""

    META_DIR = ".meta"

    def __init__(self, base_path: str | Path, signing_secret: str, public_base_url: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url.rstrip("/")

    def _validate(self, bucket: str, key: str) -> None:
        for name, value in (("bucket", bucket), ("key", key)):
            if not value or value.startswith("/") or "\\" in value:
                raise ValidationError(f"Invalid object {name}: {value!r}")
            if any(part in ("", ".", "..") for part in value.split("/")):
                raise ValidationError(f"Invalid object {name}: {value!r}")
        if key.split("/")[0] == self.META_DIR:
            raise ValidationError(f"Invalid object key: {key!r}")

    def _object_path(self, bucket: str, key: str) -> Path:
        self._validate(bucket, key)
        return self.base_path / bucket / key

    def _meta_path(self, bucket: str, key: str) -> Path:
        return self.base_path / bucket / self.META_DIR / f"{key}.json"

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        os.replace(tmp_path, path)

    async def _read_meta(self, bucket: str, key: str) -> dict:
        meta_path = self._meta_path(bucket, key)
        if not meta_path.exists():
            return {}
        async with aiofiles.open(meta_path, "r") as f:
            return json.loads(await f.read())

    async def upload(self, bucket, key, body, content_type, metadata=None, tags=None) -> UploadResult:
        path = self._object_path(bucket, key)
        etag = hashlib.md5(body).hexdigest()
        meta = {
            "content_type": content_type,
            "metadata": metadata or {},
            "tags": tags or {},
            "etag": etag,
        }
        try:
            await self._write_atomic(path, body)
            await self._write_atomic(self._meta_path(bucket, key), json.dumps(meta).encode())
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e
        logger.debug(f"Stored {len(body)} bytes at {bucket}/{key}")
        return UploadResult(key=key, etag=etag)

    async def download(self, bucket, key) -> DownloadResult:
        path = self._object_path(bucket, key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object {bucket}/{key} not found")
        meta = await self._read_meta(bucket, key)

        async def stream():
            async with aiofiles.open(path, "rb") as f:
                while True:
                    chunk = await f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        return DownloadResult(
            stream=stream(),
            content_type=meta.get("content_type"),
            content_length=path.stat().st_size,
            metadata=meta.get("metadata", {}),
        )

    async def delete(self, bucket, key) -> None:
        path = self._object_path(bucket, key)
        try:
            path.unlink(missing_ok=True)
            self._meta_path(bucket, key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {bucket}/{key}: {e}") from e

    async def exists(self, bucket, key) -> bool:
        return self._object_path(bucket, key).is_file()

    async def copy(self, src_bucket, src_key, dst_bucket, dst_key, metadata=None) -> UploadResult:
        src_path = self._object_path(src_bucket, src_key)
        if not src_path.is_file():
            raise ObjectNotFoundError(f"Object {src_bucket}/{src_key} not found")
        async with aiofiles.open(src_path, "rb") as f:
            body = await f.read()
        meta = await self._read_meta(src_bucket, src_key)
        return await self.upload(
            dst_bucket,
            dst_key,
            body,
            meta.get("content_type", "application/octet-stream"),
            metadata if metadata is not None else meta.get("metadata"),
            meta.get("tags"),
        )

    def _signed_url(self, method: str, bucket: str, key: str, ttl_seconds: int,
                    params: dict[str, str]) -> str:
        self._validate(bucket, key)
        expires = int(time.time()) + ttl_seconds
        signature = sign_object_request(self.signing_secret, method, bucket, key, expires, params)
        query = urlencode({**params, "expires": expires, "signature": signature})
        return f"{self.public_base_url}/objects/{quote(bucket)}/{quote(key)}?{query}"

    async def get_signed_upload_url(self, bucket, key, ttl_seconds, content_type=None) -> str:
        params = {"content-type": content_type} if content_type else {}
        return self._signed_url("PUT", bucket, key, ttl_seconds, params)

    async def get_signed_download_url(self, bucket, key, ttl_seconds, response_overrides=None) -> str:
        params = {}
        overrides = response_overrides or {}
        if overrides.get("content_type"):
            params["response-content-type"] = overrides["content_type"]
        if overrides.get("content_disposition"):
            params["response-content-disposition"] = overrides["content_disposition"]
        return self._signed_url("GET", bucket, key, ttl_seconds, params)

    def _walk_keys(self, bucket: str) -> list[str]:
        root = self.base_path / bucket
        if not root.is_dir():
            return []
        keys = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d != self.META_DIR]
            for name in filenames:
                if name.startswith(".") and name.endswith(".tmp"):
                    continue
                keys.append((Path(dirpath) / name).relative_to(root).as_posix())
        return sorted(keys)

    async def list_objects(self, bucket, prefix=None, max_keys=1000, continuation_token=None) -> ObjectListing:
        keys = await asyncio.to_thread(self._walk_keys, bucket)
        if prefix:
            keys = [k for k in keys if k.startswith(prefix)]
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]

        page = keys[:max_keys]
        objects = []
        for key in page:
            stat = (self.base_path / bucket / key).stat()
            meta = await self._read_meta(bucket, key)
            objects.append(ObjectSummary(
                key=key,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                etag=meta.get("etag"),
            ))
        truncated = len(keys) > max_keys
        return ObjectListing(
            objects=objects,
            is_truncated=truncated,
            next_continuation_token=page[-1] if truncated and page else None,
        )


# ── S3 backend ───────────────────────────────────────────────────

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_not_found(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES


class S3ObjectStore(ObjectStore):
    """boto3-backed store. boto3 is blocking, so calls run in a worker thread."""

    def __init__(self, client=None, *, region: str = "us-east-1", endpoint_url: str | None = None,
                 access_key_id: str | None = None, secret_access_key: str | None = None):
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    async def _call(self, operation: str, **kwargs):
        try:
            return await asyncio.to_thread(getattr(self.client, operation), **kwargs)
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(
                    f"Object {kwargs.get('Bucket')}/{kwargs.get('Key')} not found"
                ) from e
            raise StorageError(f"S3 {operation} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 {operation} failed: {e}") from e

    async def upload(self, bucket, key, body, content_type, metadata=None, tags=None) -> UploadResult:
        params = {
            "Bucket": bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
            "Metadata": metadata or {},
        }
        if tags:
            params["Tagging"] = urlencode(tags)
        response = await self._call("put_object", **params)
        return UploadResult(
            key=key,
            etag=response.get("ETag", "").strip('"'),
            version_id=response.get("VersionId"),
        )

    async def download(self, bucket, key) -> DownloadResult:
        response = await self._call("get_object", Bucket=bucket, Key=key)
        body = response["Body"]

        async def stream():
            try:
                while True:
                    chunk = await asyncio.to_thread(body.read, CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
            finally:
                body.close()

        return DownloadResult(
            stream=stream(),
            content_type=response.get("ContentType"),
            content_length=response.get("ContentLength"),
            metadata=response.get("Metadata", {}),
        )

    async def delete(self, bucket, key) -> None:
        try:
            await self._call("delete_object", Bucket=bucket, Key=key)
        except ObjectNotFoundError:
            pass

    async def exists(self, bucket, key) -> bool:
        try:
            await self._call("head_object", Bucket=bucket, Key=key)
        except ObjectNotFoundError:
            return False
        return True

    async def copy(self, src_bucket, src_key, dst_bucket, dst_key, metadata=None) -> UploadResult:
        params = {
            "Bucket": dst_bucket,
            "Key": dst_key,
            "CopySource": {"Bucket": src_bucket, "Key": src_key},
            "MetadataDirective": "COPY",
        }
        if metadata is not None:
            params["Metadata"] = metadata
            params["MetadataDirective"] = "REPLACE"
        response = await self._call("copy_object", **params)
        etag = response.get("CopyObjectResult", {}).get("ETag", "").strip('"')
        return UploadResult(key=dst_key, etag=etag, version_id=response.get("VersionId"))

    async def _presign(self, operation: str, params: dict, ttl_seconds: int) -> str:
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                operation,
                Params=params,
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign {operation} URL: {e}") from e

    async def get_signed_upload_url(self, bucket, key, ttl_seconds, content_type=None) -> str:
        params = {"Bucket": bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        return await self._presign("put_object", params, ttl_seconds)

    async def get_signed_download_url(self, bucket, key, ttl_seconds, response_overrides=None) -> str:
        params = {"Bucket": bucket, "Key": key}
        overrides = response_overrides or {}
        if overrides.get("content_type"):
            params["ResponseContentType"] = overrides["content_type"]
        if overrides.get("content_disposition"):
            params["ResponseContentDisposition"] = overrides["content_disposition"]
        return await self._presign("get_object", params, ttl_seconds)

    async def list_objects(self, bucket, prefix=None, max_keys=1000, continuation_token=None) -> ObjectListing:
        params = {"Bucket": bucket, "MaxKeys": max_keys}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        response = await self._call("list_objects_v2", **params)
        objects = [
            ObjectSummary(
                key=item["Key"],
                size=item.get("Size", 0),
                last_modified=item.get("LastModified"),
                etag=item.get("ETag", "").strip('"') or None,
            )
            for item in response.get("Contents", [])
        ]
        return ObjectListing(
            objects=objects,
            is_truncated=bool(response.get("IsTruncated")),
            next_continuation_token=response.get("NextContinuationToken"),
        )


def create_object_store(settings: Settings) -> ObjectStore:
    """Build the backend selected by FILE_STORAGE_TYPE."""
    if settings.FILE_STORAGE_TYPE == "local":
        return LocalObjectStore(
            settings.FILE_STORAGE_PATH,
            signing_secret=settings.SIGNING_SECRET,
            public_base_url=settings.PUBLIC_BASE_URL,
        )
    if settings.FILE_STORAGE_TYPE == "s3":
        return S3ObjectStore(
            region=settings.S3_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )
    raise ValueError(f"Unknown storage type: {settings.FILE_STORAGE_TYPE}")
