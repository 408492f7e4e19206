"""Tests for the upload orchestrator."""
import hashlib
import uuid
from datetime import timedelta

import pytest

from conftest import FakeClamd, image_size, make_image
from file_service.exceptions import (
    AccessDeniedError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ScanInfectedError,
    ScanUnavailableError,
    StorageError,
    TransformError,
    ValidationError,
)
from file_service.models.base import utcnow
from file_service.models.file_record import FileStatus, ScanStatus
from file_service.models.file_share import ShareType
from file_service.services.file_service import FileService, ShareRequest, build_storage_prefix
from file_service.services.image_processing import ImageProcessingService
from file_service.services.metadata_store import SearchOptions
from file_service.services.object_store import LocalObjectStore
from file_service.services.virus_scan import VirusScanService

BUCKET = "hockey-hub-files"


async def _read(downloaded) -> bytes:
    return b"".join([chunk async for chunk in downloaded.stream])


class FailingUploadStore(LocalObjectStore):
    async def upload(self, bucket, key, body, content_type, metadata=None, tags=None):
        raise StorageError("disk full")


class FailingLargeVariantStore(LocalObjectStore):
    async def upload(self, bucket, key, body, content_type, metadata=None, tags=None):
        if "_large." in key:
            raise StorageError("disk full")
        return await super().upload(bucket, key, body, content_type, metadata=metadata, tags=tags)


class TestStoragePrefix:
    def test_full_prefix(self):
        assert build_storage_prefix("user-1", "document", "org-1", "team-1") == "org-1/team-1/user-1/document"

    def test_optional_segments_are_skipped(self):
        assert build_storage_prefix("user-1", "image") == "user-1/image"

    def test_unsafe_segments_are_neutralized(self):
        assert build_storage_prefix("../evil", "other") == ".._evil/other"
        assert build_storage_prefix("..", "other") == "_/other"


class TestUploadValidation:
    @pytest.mark.asyncio
    async def test_empty_file_rejected_without_record(self, file_service, metadata_store, text_upload):
        with pytest.raises(ValidationError):
            await file_service.upload_file(text_upload(content=b""))
        assert (await metadata_store.search(SearchOptions())).total == 0

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self, file_service, text_upload, test_settings):
        with pytest.raises(ValidationError):
            await file_service.upload_file(text_upload(content=b"x" * (test_settings.MAX_FILE_SIZE + 1)))

    @pytest.mark.asyncio
    async def test_disallowed_mime_type_rejected(self, file_service, text_upload):
        with pytest.raises(ValidationError):
            await file_service.upload_file(text_upload(mime_type="application/x-msdownload", name="a.exe"))

    @pytest.mark.asyncio
    async def test_office_documents_match_prefix(self, file_service, text_upload):
        record = await file_service.upload_file(text_upload(
            name="roster.xlsx",
            mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ))
        assert record.category == "document"

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, file_service, text_upload):
        with pytest.raises(ValidationError):
            await file_service.upload_file(text_upload(category="playbook"))


class TestUploadPipeline:
    @pytest.mark.asyncio
    async def test_non_image_goes_straight_to_ready(self, file_service, object_store, metadata_store, text_upload):
        content = b"line changes for period two"

        record = await file_service.upload_file(text_upload(content=content, tags=["Notes", "game"]))

        assert record.status == FileStatus.READY.value
        assert record.category == "document"
        assert record.content_hash == hashlib.sha256(content).hexdigest()
        assert record.scan_status == ScanStatus.CLEAN.value
        assert record.storage_key.startswith("org-1/user-1/document/")
        assert await object_store.read(BUCKET, record.storage_key) == content
        assert await metadata_store.get_tags(record.id) == ["game", "notes"]

        versions = await metadata_store.get_versions(record.id)
        assert len(versions) == 1
        assert versions[0].version_number == 1
        assert versions[0].is_current
        assert versions[0].comment == "Initial upload"
        assert versions[0].storage_key == record.storage_key

    @pytest.mark.asyncio
    async def test_large_jpeg_upload(self, file_service, object_store, image_upload):
        record = await file_service.upload_file(image_upload(make_image(2000, 2000)))

        assert record.status == FileStatus.READY.value
        assert record.category == "image"
        metadata = record.file_metadata
        assert (metadata["width"], metadata["height"]) == (2000, 2000)
        assert set(metadata["variants"]) == {"thumbnail", "small", "medium", "large"}
        assert metadata["variants"]["large"]["width"] == 1920
        assert metadata["thumbnailKey"] == metadata["variants"]["thumbnail"]["key"]
        assert metadata["previewKey"] == metadata["variants"]["medium"]["key"]
        thumbnail = await object_store.read(BUCKET, metadata["thumbnailKey"])
        assert image_size(thumbnail) == (150, 150)

    @pytest.mark.asyncio
    async def test_small_png_variants_keep_source_size(self, file_service, image_upload):
        record = await file_service.upload_file(
            image_upload(make_image(100, 100, fmt="PNG"), name="logo.png", mime_type="image/png", category="team_logo")
        )

        assert record.status == FileStatus.READY.value
        assert record.category == "team_logo"
        for variant in record.file_metadata["variants"].values():
            assert (variant["width"], variant["height"]) == (100, 100)

    @pytest.mark.asyncio
    async def test_infected_upload_is_failed_and_removed(self, metadata_store, object_store, image_processor,
                                                         test_settings, text_upload):
        clamd = FakeClamd("FOUND", "Eicar-Test-Signature")
        scanner = VirusScanService(enabled=True, client_factory=lambda: clamd)
        service = FileService(metadata_store, object_store, image_processor, scanner, test_settings)

        with pytest.raises(ScanInfectedError) as exc_info:
            await service.upload_file(text_upload(content=b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR"))

        assert exc_info.value.virus_name == "Eicar-Test-Signature"
        result = await metadata_store.search(SearchOptions(user_id="user-1"))
        assert result.total == 1
        record = result.files[0]
        assert record.status == FileStatus.FAILED.value
        assert record.scan_status == ScanStatus.INFECTED.value
        assert record.scan_result == "Eicar-Test-Signature"
        assert not await object_store.exists(BUCKET, record.storage_key)

    @pytest.mark.asyncio
    async def test_scanner_outage_fails_open(self, metadata_store, object_store, image_processor,
                                             test_settings, text_upload):
        clamd = FakeClamd(error=ConnectionRefusedError("refused"))
        scanner = VirusScanService(enabled=True, client_factory=lambda: clamd)
        service = FileService(metadata_store, object_store, image_processor, scanner, test_settings)

        record = await service.upload_file(text_upload())

        assert record.status == FileStatus.READY.value
        assert record.scan_status == ScanStatus.ERROR.value
        assert record.file_metadata["scanError"] == "refused"

    @pytest.mark.asyncio
    async def test_scanner_outage_fails_closed_when_configured(self, metadata_store, object_store,
                                                               image_processor, test_settings, text_upload):
        settings = test_settings.model_copy(update={"VIRUS_SCAN_FAIL_CLOSED": True})
        clamd = FakeClamd(error=ConnectionRefusedError("refused"))
        scanner = VirusScanService(enabled=True, client_factory=lambda: clamd)
        service = FileService(metadata_store, object_store, image_processor, scanner, settings)

        with pytest.raises(ScanUnavailableError):
            await service.upload_file(text_upload())

        record = (await metadata_store.search(SearchOptions(user_id="user-1"))).files[0]
        assert record.status == FileStatus.FAILED.value
        assert record.scan_status == ScanStatus.ERROR.value
        assert record.scan_result == "refused"
        assert record.scan_date is not None

    @pytest.mark.asyncio
    async def test_disabled_scanner_leaves_scan_pending(self, metadata_store, object_store, image_processor,
                                                        test_settings, text_upload):
        scanner = VirusScanService(enabled=False)
        service = FileService(metadata_store, object_store, image_processor, scanner, test_settings)

        record = await service.upload_file(text_upload())

        assert record.status == FileStatus.READY.value
        assert record.scan_status == ScanStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_storage_failure_marks_record_failed(self, metadata_store, image_processor, virus_scanner,
                                                       test_settings, text_upload, tmp_path):
        store = FailingUploadStore(tmp_path / "broken", "secret", "http://testserver")
        service = FileService(metadata_store, store, image_processor, virus_scanner, test_settings)

        with pytest.raises(StorageError):
            await service.upload_file(text_upload())

        record = (await metadata_store.search(SearchOptions(user_id="user-1"))).files[0]
        assert record.status == FileStatus.FAILED.value
        assert record.file_metadata["error"] == "disk full"
        assert await metadata_store.get_versions(record.id) == []

    @pytest.mark.asyncio
    async def test_variant_failure_removes_every_stored_variant(self, metadata_store, virus_scanner,
                                                                test_settings, image_upload, tmp_path):
        store = FailingLargeVariantStore(tmp_path / "partial", "secret", "http://testserver")
        processor = ImageProcessingService(store, test_settings.S3_BUCKET)
        service = FileService(metadata_store, store, processor, virus_scanner, test_settings)

        # declared as jpeg, decoded as png, so variants are written as .png
        with pytest.raises(StorageError):
            await service.upload_file(image_upload(make_image(300, 300, fmt="PNG"), mime_type="image/jpeg"))

        record = (await metadata_store.search(SearchOptions(user_id="user-1"))).files[0]
        assert record.status == FileStatus.FAILED.value
        assert (await store.list_objects(BUCKET)).objects == []

    @pytest.mark.asyncio
    async def test_corrupt_image_fails_in_processing(self, file_service, metadata_store, image_upload):
        with pytest.raises(TransformError):
            await file_service.upload_file(image_upload(b"\xff\xd8 definitely not a jpeg"))

        record = (await metadata_store.search(SearchOptions(user_id="user-1"))).files[0]
        assert record.status == FileStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_multiple_upload_reports_partial_success(self, file_service, text_upload):
        result = await file_service.upload_files([
            text_upload(name="a.txt"),
            text_upload(name="b.txt", content=b""),
            text_upload(name="c.txt"),
        ])

        assert result.uploaded == 2
        assert result.failed == 1
        assert result.errors[0].name == "b.txt"
        assert result.errors[0].error == "ValidationError"

    @pytest.mark.asyncio
    async def test_multiple_upload_enforces_file_count(self, file_service, text_upload, test_settings):
        with pytest.raises(ValidationError):
            await file_service.upload_files([text_upload() for _ in range(test_settings.MAX_FILES_PER_REQUEST + 1)])


class TestReadAndDownload:
    @pytest.mark.asyncio
    async def test_get_file_counts_access(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())

        fetched = await file_service.get_file(record.id, owner)
        fetched = await file_service.get_file(record.id, owner)

        assert fetched.access_count == 2
        assert fetched.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_get_file_hides_private_files(self, file_service, stranger, text_upload):
        record = await file_service.upload_file(text_upload())
        assert await file_service.get_file(record.id, stranger) is None

    @pytest.mark.asyncio
    async def test_download_streams_content(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload(content=b"faceoff plays"))

        downloaded = await file_service.download_file(record.id, owner)

        assert await _read(downloaded) == b"faceoff plays"
        assert downloaded.content_type == "text/plain"

    @pytest.mark.asyncio
    async def test_download_requires_download_permission(self, file_service, owner, teammate, text_upload):
        record = await file_service.upload_file(text_upload())
        await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id, ["view"]))

        assert await file_service.get_file(record.id, teammate) is not None
        with pytest.raises(AccessDeniedError):
            await file_service.download_file(record.id, teammate)

    @pytest.mark.asyncio
    async def test_download_missing_file(self, file_service, owner):
        with pytest.raises(NotFoundError):
            await file_service.download_file(uuid.uuid4(), owner)

    @pytest.mark.asyncio
    async def test_thumbnail(self, file_service, owner, image_upload, text_upload):
        image = await file_service.upload_file(image_upload(make_image(300, 300)))
        document = await file_service.upload_file(text_upload())

        thumbnail = await file_service.get_thumbnail(image.id, owner)
        assert image_size(await _read(thumbnail)) == (150, 150)
        with pytest.raises(NotFoundError):
            await file_service.get_thumbnail(document.id, owner)

    @pytest.mark.asyncio
    async def test_signed_url(self, file_service, owner, text_upload, test_settings):
        record = await file_service.upload_file(text_upload())

        signed = await file_service.get_signed_url(record.id, owner, "download", 120)

        assert signed.expires_in == 120
        assert signed.url.startswith(f"{test_settings.PUBLIC_BASE_URL}/objects/{BUCKET}/")
        assert "attachment" in signed.url

    @pytest.mark.asyncio
    async def test_signed_url_ttl_is_bounded(self, file_service, owner, text_upload, test_settings):
        record = await file_service.upload_file(text_upload())
        with pytest.raises(ValidationError):
            await file_service.get_signed_url(record.id, owner, "view", test_settings.SIGNED_URL_MAX_TTL + 1)
        with pytest.raises(ValidationError):
            await file_service.get_signed_url(record.id, owner, "upload")


class TestSharing:
    @pytest.mark.asyncio
    async def test_public_link_with_password_and_limit(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload(content=b"shared"))
        share = await file_service.share_file(record.id, owner, ShareRequest(
            ShareType.PUBLIC_LINK.value, permissions=["view", "download"], password="pw", max_access_count=2,
        ))

        assert share.share_token
        assert share.shared_with_id is None
        with pytest.raises(AccessDeniedError):
            await file_service.access_shared_file(share.share_token)
        with pytest.raises(AccessDeniedError):
            await file_service.access_shared_file(share.share_token, "wrong")

        assert (await file_service.access_shared_file(share.share_token, "pw")).id == record.id
        downloaded = await file_service.download_shared_file(share.share_token, "pw", accessor_id="guest")
        assert await _read(downloaded) == b"shared"
        assert share.access_count == 2
        with pytest.raises(AccessDeniedError):
            await file_service.access_shared_file(share.share_token, "pw")

    @pytest.mark.asyncio
    async def test_view_only_link_cannot_download(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())
        share = await file_service.share_file(record.id, owner, ShareRequest(ShareType.PUBLIC_LINK.value))

        with pytest.raises(AccessDeniedError):
            await file_service.download_shared_file(share.share_token)

    @pytest.mark.asyncio
    async def test_unknown_token(self, file_service):
        with pytest.raises(NotFoundError):
            await file_service.access_shared_file("nope")

    @pytest.mark.asyncio
    async def test_resharing_updates_existing_grant(self, file_service, owner, teammate, text_upload):
        record = await file_service.upload_file(text_upload())
        first = await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id))
        second = await file_service.share_file(
            record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id, ["view", "download"])
        )

        assert first.id == second.id
        assert second.permissions == ["download", "view"]
        assert len(await file_service.list_shares(record.id, owner)) == 1

    @pytest.mark.asyncio
    async def test_only_editors_can_share(self, file_service, owner, teammate, stranger, text_upload):
        record = await file_service.upload_file(text_upload())
        await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id))

        with pytest.raises(AccessDeniedError):
            await file_service.share_file(record.id, teammate, ShareRequest(ShareType.USER.value, stranger.user_id))

    @pytest.mark.asyncio
    async def test_share_validation(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())
        with pytest.raises(ValidationError):
            await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value))
        with pytest.raises(ValidationError):
            await file_service.share_file(record.id, owner, ShareRequest("everyone", "x"))
        with pytest.raises(ValidationError):
            await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, "x", ["own"]))
        with pytest.raises(ValidationError):
            await file_service.share_file(record.id, owner, ShareRequest(
                ShareType.USER.value, "x", expires_at=utcnow() - timedelta(minutes=1)
            ))

    @pytest.mark.asyncio
    async def test_revoke_share(self, file_service, owner, teammate, text_upload):
        record = await file_service.upload_file(text_upload())
        share = await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id))

        await file_service.revoke_share(record.id, share.id, owner)

        assert await file_service.get_file(record.id, teammate) is None

    @pytest.mark.asyncio
    async def test_team_share(self, file_service, owner, teammate, text_upload):
        record = await file_service.upload_file(text_upload(team_id="team-1"))
        await file_service.share_file(record.id, owner, ShareRequest(ShareType.TEAM.value, "team-1", ["view", "download"]))

        downloaded = await file_service.download_file(record.id, teammate)
        assert await _read(downloaded) == b"period 1 notes"


class TestDelete:
    @pytest.mark.asyncio
    async def test_soft_delete(self, file_service, metadata_store, object_store, owner, text_upload):
        record = await file_service.upload_file(text_upload())

        await file_service.delete_file(record.id, owner)

        deleted = await metadata_store.get_file(record.id)
        assert deleted.status == FileStatus.DELETED.value
        assert deleted.deleted_by == owner.user_id
        assert deleted.deleted_at is not None
        assert (await metadata_store.search(SearchOptions(user_id=owner.user_id))).total == 0
        # bytes stay until the retention sweep
        assert await object_store.exists(BUCKET, record.storage_key)

    @pytest.mark.asyncio
    async def test_delete_twice_is_invalid_state(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())
        await file_service.delete_file(record.id, owner)

        with pytest.raises(InvalidStateError):
            await file_service.delete_file(record.id, owner)

    @pytest.mark.asyncio
    async def test_delete_needs_delete_permission(self, file_service, owner, teammate, text_upload):
        record = await file_service.upload_file(text_upload())
        await file_service.share_file(record.id, owner, ShareRequest(ShareType.USER.value, teammate.user_id, ["view", "edit"]))

        with pytest.raises(AccessDeniedError):
            await file_service.delete_file(record.id, teammate)


class TestVersions:
    @pytest.mark.asyncio
    async def test_second_version_becomes_current(self, file_service, metadata_store, object_store, owner, text_upload):
        record = await file_service.upload_file(text_upload(content=b"v1"))

        version = await file_service.create_version(record, b"version two", owner.user_id, "Updated lines")

        assert version.version_number == 2
        assert version.storage_key == f"{record.storage_key}.v2"
        versions = await metadata_store.get_versions(record.id)
        assert [v.version_number for v in versions] == [1, 2]
        assert [v.is_current for v in versions] == [False, True]
        refreshed = await metadata_store.get_file(record.id)
        assert refreshed.size_bytes == len(b"version two")
        assert await _read(await file_service.download_file(record.id, owner)) == b"version two"
        assert await object_store.read(BUCKET, record.storage_key) == b"v1"

    @pytest.mark.asyncio
    async def test_restore_version(self, file_service, metadata_store, owner, text_upload):
        record = await file_service.upload_file(text_upload(content=b"v1"))
        await file_service.create_version(record, b"v2", owner.user_id)

        restored = await file_service.restore_version(record.id, 1, owner)

        assert restored.is_current
        assert restored.restored_by == owner.user_id
        current = await metadata_store.get_current_version(record.id)
        assert current.version_number == 1
        assert sum(v.is_current for v in await metadata_store.get_versions(record.id)) == 1
        assert await _read(await file_service.download_file(record.id, owner)) == b"v1"

    @pytest.mark.asyncio
    async def test_infected_version_rejected(self, metadata_store, object_store, image_processor, test_settings,
                                             text_upload, owner):
        clamd = FakeClamd()
        scanner = VirusScanService(enabled=True, client_factory=lambda: clamd)
        service = FileService(metadata_store, object_store, image_processor, scanner, test_settings)
        record = await service.upload_file(text_upload())

        clamd.status, clamd.detail = "FOUND", "Trojan.Generic"
        with pytest.raises(ScanInfectedError):
            await service.create_version(record, b"bad", owner.user_id)

        assert len(await metadata_store.get_versions(record.id)) == 1
        assert (await metadata_store.get_file(record.id)).status == FileStatus.READY.value

    @pytest.mark.asyncio
    async def test_restore_brings_back_content_type_and_dimensions(self, file_service, owner, image_upload):
        record = await file_service.upload_file(
            image_upload(make_image(120, 80, fmt="PNG"), name="a.png", mime_type="image/png")
        )
        await file_service.edit_image(record.id, owner, "convert", {"format": "webp"})
        assert record.mime_type == "image/webp"

        await file_service.restore_version(record.id, 1, owner)

        assert record.mime_type == "image/png"
        assert (record.file_metadata["width"], record.file_metadata["height"]) == (120, 80)
        assert record.file_metadata["format"] == "png"
        signed = await file_service.get_signed_url(record.id, owner, "view")
        assert "response-content-type=image%2Fpng" in signed.url
        downloaded = await file_service.download_file(record.id, owner)
        assert image_size(await _read(downloaded)) == (120, 80)

    @pytest.mark.asyncio
    async def test_version_number_conflict_is_retried(self, file_service, metadata_store, owner, text_upload,
                                                      monkeypatch):
        record = await file_service.upload_file(text_upload(content=b"v1"))
        file_id = record.id
        real_next_version_number = metadata_store.next_version_number
        taken = [1]

        async def next_version_number(fid):
            if taken:
                return taken.pop()
            return await real_next_version_number(fid)

        monkeypatch.setattr(metadata_store, "next_version_number", next_version_number)

        version = await file_service.create_version(record, b"v2", owner.user_id)

        assert version.version_number == 2
        versions = await metadata_store.get_versions(file_id)
        assert [v.version_number for v in versions] == [1, 2]
        assert [v.is_current for v in versions] == [False, True]
        assert await _read(await file_service.download_file(file_id, owner)) == b"v2"

    @pytest.mark.asyncio
    async def test_version_number_conflict_gives_up(self, file_service, metadata_store, owner, text_upload,
                                                    test_settings, monkeypatch):
        record = await file_service.upload_file(text_upload(content=b"v1"))
        file_id = record.id
        calls = []

        async def always_taken(fid):
            calls.append(fid)
            return 1

        monkeypatch.setattr(metadata_store, "next_version_number", always_taken)

        with pytest.raises(PersistenceError):
            await file_service.create_version(record, b"v2", owner.user_id)

        assert len(calls) == test_settings.VERSION_CONFLICT_RETRIES + 1
        versions = await metadata_store.get_versions(file_id)
        assert [(v.version_number, v.is_current) for v in versions] == [(1, True)]

    @pytest.mark.asyncio
    async def test_unknown_version_restore(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())
        with pytest.raises(NotFoundError):
            await file_service.restore_version(record.id, 7, owner)


class TestTagsAndEditing:
    @pytest.mark.asyncio
    async def test_add_and_remove_tags(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())

        assert await file_service.add_tags(record.id, ["Defense", "u18"], owner) == ["defense", "u18"]
        assert await file_service.remove_tag(record.id, "defense", owner) == ["u18"]
        with pytest.raises(NotFoundError):
            await file_service.remove_tag(record.id, "defense", owner)

    @pytest.mark.asyncio
    async def test_edit_image_creates_version(self, file_service, object_store, owner, image_upload):
        record = await file_service.upload_file(image_upload(make_image(400, 200)))

        version = await file_service.edit_image(record.id, owner, "rotate", {"angle": 90})

        assert version.version_number == 2
        assert version.comment == "Image edit: rotate"
        assert image_size(await object_store.read(BUCKET, version.storage_key)) == (200, 400)

    @pytest.mark.asyncio
    async def test_thumbnail_follows_current_version(self, file_service, owner, image_upload):
        record = await file_service.upload_file(image_upload(make_image(400, 200)))

        version = await file_service.edit_image(record.id, owner, "rotate", {"angle": 90})

        assert image_size(await _read(await file_service.get_thumbnail(record.id, owner))) == (75, 150)
        assert version.version_metadata["thumbnailKey"] == record.file_metadata["thumbnailKey"]
        assert (record.file_metadata["width"], record.file_metadata["height"]) == (200, 400)

        await file_service.restore_version(record.id, 1, owner)

        assert image_size(await _read(await file_service.get_thumbnail(record.id, owner))) == (150, 75)

    @pytest.mark.asyncio
    async def test_edit_rejects_non_images(self, file_service, owner, text_upload):
        record = await file_service.upload_file(text_upload())
        with pytest.raises(ValidationError):
            await file_service.edit_image(record.id, owner, "rotate", {"angle": 90})

    @pytest.mark.asyncio
    async def test_edit_missing_parameter(self, file_service, owner, image_upload):
        record = await file_service.upload_file(image_upload(make_image(50, 50)))
        with pytest.raises(ValidationError):
            await file_service.edit_image(record.id, owner, "crop", {"left": 0})
