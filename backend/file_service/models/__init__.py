"""Import all models so SQLAlchemy metadata knows about them."""
from file_service.models.base import Base
from file_service.models.file_record import FileRecord, FileStatus, FileCategory, ScanStatus, FileMetadata
from file_service.models.file_share import FileShare, ShareType, SharePermission
from file_service.models.file_version import FileVersion
from file_service.models.file_tag import FileTag

__all__ = [
    "Base",
    "FileRecord", "FileStatus", "FileCategory", "ScanStatus", "FileMetadata",
    "FileShare", "ShareType", "SharePermission",
    "FileVersion", "FileTag",
]
