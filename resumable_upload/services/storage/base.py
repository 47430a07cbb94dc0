import os
from abc import ABC, abstractmethod
from typing import Optional


class BaseArchive(ABC):
    """Final storage for completed uploads, keyed by content hash."""

    @staticmethod
    def archive_name(content_hash: str, file_name: str) -> str:
        _, ext = os.path.splitext(os.path.basename(file_name or ""))
        return f"{content_hash}{ext}"

    @abstractmethod
    async def lookup(self, content_hash: str, file_name: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def scratch_path(self, archive_name: str) -> str:
        pass

    @abstractmethod
    async def commit(self, scratch_path: str, archive_name: str) -> str:
        pass
