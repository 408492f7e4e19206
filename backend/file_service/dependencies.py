"""FastAPI dependencies that assemble the orchestrator per request.

Long-lived components (object store, image engine, scanner) are built once
in the app lifespan and kept on ``app.state``; each request gets its own
session and therefore its own MetadataStore.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from file_service.database import get_db
from file_service.services.file_service import FileService
from file_service.services.metadata_store import MetadataStore


async def get_file_service(request: Request, db: AsyncSession = Depends(get_db)) -> FileService:
    state = request.app.state
    return FileService(
        MetadataStore(db),
        state.object_store,
        state.image_processor,
        state.virus_scanner,
        state.settings,
    )
