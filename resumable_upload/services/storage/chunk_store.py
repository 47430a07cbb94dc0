import os
import re
import shutil
import asyncio
import logging
import threading
import contextlib
import concurrent.futures
from uuid import uuid4
from typing import List, Optional
from resumable_upload.core.config import settings
from resumable_upload.core.errors import TransferFailed

logger = logging.getLogger(__name__)

# Shared pool for blocking disk I/O so the event loop never waits on the filesystem
thread_pool = concurrent.futures.ThreadPoolExecutor(
    max_workers=settings.IO_WORKERS, thread_name_prefix="upload-io"
)

WRITE_BLOCK_SIZE = 256 * 1024


class ChunkStore:
    """
    Staging area for chunks of in-progress uploads.

    Layout: ``<base_path>/<session_id>/<index><suffix>``. A chunk is first
    written to a hidden partial file in the same directory and renamed into
    place once complete, so readers only ever see whole chunks.
    """

    def __init__(self, base_path: Optional[str] = None, suffix: Optional[str] = None,
                 executor: Optional[concurrent.futures.Executor] = None):
        self.base_path = base_path or settings.LOCAL_TEMP_CHUNK_PATH
        self.suffix = suffix or settings.CHUNK_FILE_SUFFIX
        self.executor = executor or thread_pool
        self._chunk_name = re.compile(r"^(\d+)" + re.escape(self.suffix) + r"$")

    def session_path(self, session_id: str) -> str:
        return os.path.join(self.base_path, str(session_id))

    def chunk_path(self, session_id: str, chunk_index: int) -> str:
        return os.path.join(self.session_path(session_id), f"{chunk_index}{self.suffix}")

    def _partial_prefix(self, chunk_index: int) -> str:
        return f".{chunk_index}{self.suffix}."

    def _partial_path(self, session_id: str, chunk_index: int) -> str:
        name = f"{self._partial_prefix(chunk_index)}{uuid4().hex}.tmp"
        return os.path.join(self.session_path(session_id), name)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    @staticmethod
    def _remove_quietly(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def _create_session_sync(self, session_id: str) -> str:
        base_path = self.session_path(session_id)

        # a stray file with the session's name would shadow the directory
        if os.path.exists(base_path) and os.path.isfile(base_path):
            os.remove(base_path)

        os.makedirs(base_path, exist_ok=True)
        logger.debug(f"Staging directory ready: {base_path}")
        return base_path

    async def create_session(self, session_id: str) -> str:
        return await self._run(self._create_session_sync, session_id)

    def _write_partial_sync(self, partial_path: str, chunk_data: bytes, cancelled: threading.Event) -> bool:
        """Write chunk bytes to a partial file. Returns False if the write was abandoned."""
        os.makedirs(os.path.dirname(partial_path), exist_ok=True)
        view = memoryview(chunk_data)
        try:
            with open(partial_path, "wb") as f:
                for offset in range(0, len(view), WRITE_BLOCK_SIZE):
                    if cancelled.is_set():
                        break
                    f.write(view[offset:offset + WRITE_BLOCK_SIZE])
                else:
                    f.flush()
                    os.fsync(f.fileno())
                    return True
        except BaseException:
            self._remove_quietly(partial_path)
            raise
        self._remove_quietly(partial_path)
        return False

    async def save_chunk(self, upload_session_id: str, chunk_index: int, chunk_data: bytes) -> str:
        """Stage one chunk; overwrites any previous copy of the same index."""
        chunk_path = self.chunk_path(upload_session_id, chunk_index)
        partial_path = self._partial_path(upload_session_id, chunk_index)
        cancelled = threading.Event()

        logger.debug(f"Saving chunk {chunk_index} for session {upload_session_id}")
        write = asyncio.ensure_future(
            self._run(self._write_partial_sync, partial_path, chunk_data, cancelled)
        )
        try:
            completed = await asyncio.shield(write)
        except asyncio.CancelledError:
            # stop the writer thread and wait for it before removing its file
            cancelled.set()
            with contextlib.suppress(Exception):
                await write
            self._remove_quietly(partial_path)
            logger.info(f"Chunk {chunk_index} of session {upload_session_id} cancelled, partial data removed")
            raise
        except OSError as e:
            logger.error(f"Error saving chunk {chunk_index} for session {upload_session_id}: {str(e)}")
            raise TransferFailed(f"Failed to write chunk {chunk_index}: {e}") from e

        if not completed:
            raise TransferFailed(f"Write of chunk {chunk_index} was abandoned")

        try:
            os.replace(partial_path, chunk_path)
        except OSError as e:
            self._remove_quietly(partial_path)
            logger.error(f"Error committing chunk {chunk_index} for session {upload_session_id}: {str(e)}")
            raise TransferFailed(f"Failed to commit chunk {chunk_index}: {e}") from e

        logger.debug(f"Chunk saved successfully: {chunk_path} ({len(chunk_data)} bytes)")
        return chunk_path

    def _discard_chunk_sync(self, upload_session_id: str, chunk_index: int) -> bool:
        base_path = self.session_path(upload_session_id)
        if not os.path.isdir(base_path):
            return False

        removed = False
        prefix = self._partial_prefix(chunk_index)
        for name in os.listdir(base_path):
            if name.startswith(prefix):
                self._remove_quietly(os.path.join(base_path, name))
                removed = True

        chunk_path = self.chunk_path(upload_session_id, chunk_index)
        if os.path.exists(chunk_path):
            self._remove_quietly(chunk_path)
            removed = True
        return removed

    async def discard_chunk(self, upload_session_id: str, chunk_index: int) -> bool:
        """Remove one chunk (complete or partial) and leave its siblings alone."""
        return await self._run(self._discard_chunk_sync, upload_session_id, chunk_index)

    def _stored_chunks_sync(self, upload_session_id: str) -> List[int]:
        base_path = self.session_path(upload_session_id)
        if not os.path.isdir(base_path):
            return []
        indices = []
        for name in os.listdir(base_path):
            match = self._chunk_name.match(name)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    async def stored_chunks(self, upload_session_id: str) -> List[int]:
        return await self._run(self._stored_chunks_sync, upload_session_id)

    async def missing_chunks(self, upload_session_id: str, total_chunks: int) -> List[int]:
        """Indices in ``[0, total_chunks)`` with no staged file on disk."""
        present = set(await self.stored_chunks(upload_session_id))
        return [i for i in range(total_chunks) if i not in present]

    def _list_sessions_sync(self) -> List[str]:
        if not os.path.isdir(self.base_path):
            return []
        return [
            name for name in os.listdir(self.base_path)
            if os.path.isdir(os.path.join(self.base_path, name))
        ]

    async def list_sessions(self) -> List[str]:
        """Session ids that have a staging directory."""
        return await self._run(self._list_sessions_sync)

    def _cleanup_session_sync(self, upload_session_id: str) -> dict:
        """Remove a session's staging directory."""
        base_path = self.session_path(upload_session_id)
        if not os.path.exists(base_path):
            return {"files_removed": 0, "total_size": 0, "success": True}

        try:
            files = os.listdir(base_path)
            total_size = sum(os.path.getsize(os.path.join(base_path, f)) for f in files)

            shutil.rmtree(base_path)
            logger.info(
                f"Cleaned up staging directory {base_path} "
                f"({len(files)} files, {total_size/1024/1024:.2f}MB)"
            )
            return {
                "files_removed": len(files),
                "total_size": total_size,
                "success": True
            }
        except FileNotFoundError:
            # removed concurrently by another cleanup
            return {"files_removed": 0, "total_size": 0, "success": True}
        except OSError as e:
            logger.error(f"Error cleaning up chunks of session {upload_session_id}: {str(e)}")
            return {
                "success": False,
                "error": str(e)
            }

    async def cleanup_session(self, upload_session_id: str) -> dict:
        return await self._run(self._cleanup_session_sync, upload_session_id)
