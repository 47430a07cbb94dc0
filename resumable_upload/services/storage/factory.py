from resumable_upload.core.config import settings
from .s3 import S3Archive
from .internal import LocalArchive
from .base import BaseArchive

_archive_instance = None

def get_archive() -> BaseArchive:
    global _archive_instance
    if _archive_instance is not None:
        return _archive_instance
    if settings.STORAGE_BACKEND == "s3":
        _archive_instance = S3Archive()
    elif settings.STORAGE_BACKEND == "local":
        _archive_instance = LocalArchive()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
    return _archive_instance
