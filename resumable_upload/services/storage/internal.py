import os
import asyncio
import logging
from uuid import uuid4
from typing import Optional
from .base import BaseArchive
from resumable_upload.core.config import settings

logger = logging.getLogger(__name__)


class LocalArchive(BaseArchive):
    def __init__(self, base_path: Optional[str] = None):
        self.base_path = base_path or settings.PERSISTENT_LOCAL_STORAGE_PATH

    def path_for(self, archive_name: str) -> str:
        return os.path.join(self.base_path, archive_name)

    def _lookup_sync(self, content_hash: str, file_name: Optional[str]) -> Optional[str]:
        if file_name is not None:
            exact = self.path_for(self.archive_name(content_hash, file_name))
            if os.path.isfile(exact):
                return exact

        if not os.path.isdir(self.base_path):
            return None

        # same content archived under a different extension still counts
        for name in sorted(os.listdir(self.base_path)):
            if name.startswith("."):
                continue
            stem, _ = os.path.splitext(name)
            if stem == content_hash and os.path.isfile(self.path_for(name)):
                return self.path_for(name)
        return None

    async def lookup(self, content_hash: str, file_name: Optional[str] = None) -> Optional[str]:
        return await asyncio.to_thread(self._lookup_sync, content_hash, file_name)

    def scratch_path(self, archive_name: str) -> str:
        # hidden file next to the target so the final rename stays on one filesystem
        return self.path_for(f".{archive_name}.{uuid4().hex}.merging")

    def _commit_sync(self, scratch_path: str, archive_name: str) -> str:
        final_path = self.path_for(archive_name)
        os.makedirs(self.base_path, exist_ok=True)
        os.replace(scratch_path, final_path)
        return final_path

    async def commit(self, scratch_path: str, archive_name: str) -> str:
        final_path = await asyncio.to_thread(self._commit_sync, scratch_path, archive_name)
        logger.info(f"Archived {archive_name} at {final_path}")
        return final_path
