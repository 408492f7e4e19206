"""Error taxonomy for the file service and its HTTP mapping.

Every error raised by the core derives from FileServiceError, which carries
a stable ``error`` code and the HTTP status the boundary should answer with.
The handlers registered by ``register_exception_handlers`` turn them into
``{"error": ..., "message": ...}`` bodies; stack traces never leave the
process.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class FileServiceError(Exception):
    """Base class for all file-service errors."""

    error = "FileServiceError"
    status_code = 500

    def __init__(self, message: str = "", details: dict | None = None):
        self.message = message or self.error
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FileServiceError):
    """Bad input shape, size or type. Raised before any side effect."""

    error = "ValidationError"
    status_code = 400


class InvalidStateError(ValidationError):
    """Operation not allowed in the file's current status."""

    error = "InvalidState"
    status_code = 409


class AuthenticationRequiredError(FileServiceError):
    error = "AuthenticationRequired"
    status_code = 401


class AccessDeniedError(FileServiceError):
    error = "AccessDenied"
    status_code = 403


class NotFoundError(FileServiceError):
    error = "NotFound"
    status_code = 404


class ObjectNotFoundError(NotFoundError):
    """Key absent from the object store."""

    error = "ObjectNotFound"


class ScanInfectedError(FileServiceError):
    """Malware scanner flagged the upload. Terminal for the record."""

    error = "ScanInfected"
    status_code = 422

    def __init__(self, message: str = "", virus_name: str | None = None):
        super().__init__(message or "File rejected by virus scan", {"virusName": virus_name})
        self.virus_name = virus_name


class ScanUnavailableError(FileServiceError):
    """Scanner unreachable while the deployment requires a verdict."""

    error = "ScanUnavailable"
    status_code = 503


class TransformError(FileServiceError):
    """Image decode or encode failure."""

    error = "TransformError"
    status_code = 422


class StorageError(FileServiceError):
    """Object-store I/O failure."""

    error = "StorageError"
    status_code = 502


class PersistenceError(FileServiceError):
    """Metadata database failure."""

    error = "PersistenceError"
    status_code = 500


def _error_body(error: str, message: str) -> dict:
    return {"error": error, "message": message}


async def file_service_error_handler(request: Request, exc: FileServiceError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.error, exc.message))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content=_error_body(ValidationError.error, "; ".join(messages) or "Invalid request"),
    )


async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=_error_body(PersistenceError.error, "A database error occurred"),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=_error_body("InternalServerError", "An unexpected error occurred"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FileServiceError, file_service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
