"""Shared pytest fixtures for all tests."""
import io
import os

# Keep module-level engine construction off PostgreSQL during tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from file_service.config import Settings
from file_service.database import build_engine
from file_service.identity import Identity
from file_service.models import Base
from file_service.services.file_service import FileService, UploadData
from file_service.services.image_processing import ImageProcessingService
from file_service.services.metadata_store import MetadataStore
from file_service.services.object_store import LocalObjectStore
from file_service.services.virus_scan import VirusScanService

SIGNING_SECRET = "test-signing-secret"
BASE_URL = "http://testserver"


class FakeClamd:
    """Stands in for a clamd network socket. Records every scanned payload."""

    def __init__(self, status: str = "OK", detail: str | None = None, error: Exception | None = None):
        self.status = status
        self.detail = detail
        self.error = error
        self.scanned: list[bytes] = []

    def instream(self, fileobj):
        self.scanned.append(fileobj.read())
        if self.error is not None:
            raise self.error
        return {"stream": (self.status, self.detail)}


def make_image(width: int, height: int, fmt: str = "JPEG", color=(200, 30, 30),
               mode: str = "RGB", orientation: int | None = None) -> bytes:
    """Encode a solid-colour test image, optionally with an EXIF orientation tag."""
    img = Image.new(mode, (width, height), color)
    out = io.BytesIO()
    kwargs = {}
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        kwargs["exif"] = exif.tobytes()
    img.save(out, format=fmt, **kwargs)
    return out.getvalue()


def image_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from any .env.backend on the machine."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'files.db'}",
        FILE_STORAGE_PATH=str(tmp_path / "objects"),
        SIGNING_SECRET=SIGNING_SECRET,
        PUBLIC_BASE_URL=BASE_URL,
        MAX_FILE_SIZE=5 * 1024 * 1024,
        MAX_FILES_PER_REQUEST=3,
        VIRUS_SCAN_ENABLED=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = build_engine(test_settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def metadata_store(session):
    return MetadataStore(session)


@pytest.fixture
def object_store(test_settings):
    return LocalObjectStore(test_settings.FILE_STORAGE_PATH, SIGNING_SECRET, BASE_URL)


@pytest.fixture
def fake_clamd():
    return FakeClamd()


@pytest.fixture
def virus_scanner(fake_clamd):
    return VirusScanService(enabled=True, client_factory=lambda: fake_clamd)


@pytest.fixture
def image_processor(object_store, test_settings):
    return ImageProcessingService(object_store, test_settings.S3_BUCKET)


@pytest.fixture
def file_service(metadata_store, object_store, image_processor, virus_scanner, test_settings):
    return FileService(metadata_store, object_store, image_processor, virus_scanner, test_settings)


@pytest.fixture
def owner():
    return Identity(user_id="user-1", organization_id="org-1", team_ids=("team-1",))


@pytest.fixture
def stranger():
    return Identity(user_id="user-2", organization_id="org-2")


@pytest.fixture
def teammate():
    return Identity(user_id="user-3", organization_id="org-1", team_ids=("team-1",))


@pytest.fixture
def text_upload(owner):
    def _make(content: bytes = b"period 1 notes", name: str = "notes.txt", **kwargs) -> UploadData:
        return UploadData(
            buffer=content,
            original_name=name,
            mime_type=kwargs.pop("mime_type", "text/plain"),
            owner_id=owner.user_id,
            organization_id=owner.organization_id,
            **kwargs,
        )
    return _make


@pytest.fixture
def image_upload(owner):
    def _make(data: bytes, name: str = "photo.jpg", mime_type: str = "image/jpeg", **kwargs) -> UploadData:
        return UploadData(
            buffer=data,
            original_name=name,
            mime_type=mime_type,
            owner_id=owner.user_id,
            organization_id=owner.organization_id,
            **kwargs,
        )
    return _make
