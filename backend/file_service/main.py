"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from file_service.config import settings
from file_service.database import engine, get_db
from file_service.exceptions import register_exception_handlers
from file_service.logging_config import setup_logging
from file_service.models import Base
from file_service.schemas.file import HealthResponse
from file_service.services.image_processing import ImageProcessingService
from file_service.services.object_store import create_object_store
from file_service.services.virus_scan import VirusScanService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and build the shared storage, image and scan components."""
    setup_logging(settings.LOG_LEVEL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    object_store = create_object_store(settings)
    app.state.settings = settings
    app.state.object_store = object_store
    app.state.image_processor = ImageProcessingService(object_store, settings.S3_BUCKET)
    app.state.virus_scanner = VirusScanService.from_settings(settings)
    logger.info(
        f"File service started (storage={settings.FILE_STORAGE_TYPE}, "
        f"virus_scan={'on' if settings.VIRUS_SCAN_ENABLED else 'off'})"
    )

    yield

    # Cleanup
    await engine.dispose()


app = FastAPI(
    title="Hockey Hub File Service API",
    version="1.0.0",
    description="Upload, processing, sharing and versioning of Hockey Hub files.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.warning(f"Health check failed: {e}")
        return {"status": "error", "database": str(e)}


# Register routers
from file_service.routes.files import router as files_router
from file_service.routes.shared import router as shared_router
from file_service.routes.objects import router as objects_router
app.include_router(files_router)
app.include_router(shared_router)
app.include_router(objects_router)
