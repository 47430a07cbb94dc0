"""
Client side of the resumable upload protocol.

Flow:
    1. Hash the whole file (SHA-256) off the event loop
    2. Init the session; a dedup hit finishes immediately
    3. Recover already-uploaded chunks from the server
    4. Upload missing chunks with a bounded number of transfers in flight
    5. Ask the server to merge once every chunk is confirmed

Pausing cancels the in-flight transfers; resuming continues from the chunks
the server already acknowledged.
"""

import asyncio
import hashlib
import logging
import os
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from resumable_upload.client.api import UploadApiClient
from resumable_upload.core.errors import IncompleteUpload, SessionNotFound, UploadError
from resumable_upload.core.session import count_chunks, percent_complete

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_CONCURRENCY = 3
HASH_BLOCK_SIZE = 1024 * 1024


class UploadState(str, Enum):
    IDLE = "idle"
    HASHING = "hashing"
    INIT = "init"
    UPLOADING = "uploading"
    PAUSED = "paused"
    MERGING = "merging"
    DONE = "done"
    ERROR = "error"


BUSY_STATES = {UploadState.HASHING, UploadState.INIT, UploadState.UPLOADING, UploadState.MERGING}


def calculate_file_hash(file_path: str) -> str:
    """SHA-256 of the whole file, read in fixed-size blocks."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        while True:
            block = f.read(HASH_BLOCK_SIZE)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


class ChunkedUploader:
    """
    Upload one file in chunks with pause/resume support.

    Callbacks are plain callables invoked on the event loop:
        on_progress(percent) after every confirmed chunk
        on_success(response) with the server's merge (or dedup) response
        on_error(exc) once per failed run; cancellations are never reported

    Args:
        file_path: file to upload
        api: UploadApiClient pointed at the upload service
        chunk_size: bytes per chunk
        concurrency: maximum chunk transfers in flight
        upload_id: resume a session created by an earlier run
        chunk_timeout: per-chunk request timeout in seconds (None = client default)
    """

    def __init__(
        self,
        file_path: str,
        api: UploadApiClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_progress: Optional[Callable[[int], None]] = None,
        on_success: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        upload_id: Optional[str] = None,
        chunk_timeout: Optional[float] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.file_path = str(file_path)
        self.file_name = os.path.basename(self.file_path)
        self.file_size = os.path.getsize(self.file_path)
        self.api = api
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.chunk_timeout = chunk_timeout
        self.on_progress = on_progress
        self.on_success = on_success
        self.on_error = on_error

        self.total_chunks = count_chunks(self.file_size, chunk_size)
        self._state = UploadState.IDLE
        self._upload_id = upload_id
        self._file_hash: Optional[str] = None
        self._uploaded: Set[int] = set()
        self._in_flight: Dict[asyncio.Task, int] = {}
        self._paused = False
        self._failed = False
        # bumped by pause/cancel/start so a superseded run stops dispatching
        self._generation = 0

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def upload_id(self) -> Optional[str]:
        return self._upload_id

    @property
    def file_hash(self) -> Optional[str]:
        return self._file_hash

    @property
    def uploaded_chunks(self) -> Set[int]:
        return set(self._uploaded)

    def chunk_range(self, index: int) -> Tuple[int, int]:
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, self.file_size)

    def _read_chunk_sync(self, index: int) -> bytes:
        start, end = self.chunk_range(index)
        with open(self.file_path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def _set_state(self, state: UploadState) -> None:
        if state != self._state:
            logger.debug(f"{self.file_name}: {self._state.value} -> {state.value}")
            self._state = state

    def _emit_progress(self) -> None:
        if self.on_progress is not None:
            self.on_progress(percent_complete(len(self._uploaded), self.total_chunks))

    def _fail(self, error: BaseException) -> None:
        self._set_state(UploadState.ERROR)
        logger.error(f"Upload of {self.file_name} failed: {error}")
        if self.on_error is not None:
            self.on_error(error)

    async def start(self) -> None:
        """Start, resume after pause, or retry after an error."""
        if self._state in BUSY_STATES or self._state == UploadState.DONE:
            logger.warning(f"start() ignored while {self._state.value}")
            return

        resuming = self._state == UploadState.PAUSED and self._upload_id is not None
        self._generation += 1
        self._paused = False
        self._failed = False

        if not resuming:
            try:
                if await self._prepare_session():
                    return
            except asyncio.CancelledError:
                raise
            except SessionNotFound as e:
                # the server forgot the session; next start() begins a new one
                self._upload_id = None
                self._uploaded.clear()
                self._fail(e)
                return
            except (UploadError, OSError) as e:
                self._fail(e)
                return

        await self._upload_chunks(self._generation)

    async def resume(self) -> None:
        await self.start()

    async def _prepare_session(self) -> bool:
        """Hash, init and recover progress. Returns True if the upload is already complete."""
        if self._file_hash is None:
            self._set_state(UploadState.HASHING)
            self._file_hash = await asyncio.to_thread(calculate_file_hash, self.file_path)
            logger.info(f"{self.file_name}: sha256 {self._file_hash}")

        if self._upload_id is None:
            self._set_state(UploadState.INIT)
            response = await self.api.init_upload(self.file_name, self.file_size, self.chunk_size, self._file_hash)
            if response.get("exists"):
                logger.info(f"{self.file_name} already on server at {response.get('filePath')}")
                self._uploaded = set(range(self.total_chunks))
                self._set_state(UploadState.DONE)
                self._emit_progress()
                if self.on_success is not None:
                    self.on_success(response)
                return True
            self._upload_id = response["uploadId"]
        else:
            self._set_state(UploadState.INIT)

        progress = await self.api.get_progress(self._upload_id)
        self._uploaded = set(progress.get("uploadedChunks", []))
        if self._uploaded:
            logger.info(f"{self.file_name}: {len(self._uploaded)}/{self.total_chunks} chunks already on server")
            self._emit_progress()
        return False

    def _halted(self, generation: int) -> bool:
        return self._paused or self._failed or generation != self._generation

    async def _upload_chunk(self, index: int) -> None:
        chunk_data = await asyncio.to_thread(self._read_chunk_sync, index)
        await self.api.upload_chunk(
            self._upload_id, index, chunk_data, self._file_hash, timeout=self.chunk_timeout
        )

    async def _upload_chunks(self, generation: int) -> None:
        self._set_state(UploadState.UPLOADING)
        queue = deque(i for i in range(self.total_chunks) if i not in self._uploaded)
        in_flight: Dict[asyncio.Task, int] = {}
        self._in_flight = in_flight

        try:
            while True:
                while queue and len(in_flight) < self.concurrency and not self._halted(generation):
                    index = queue.popleft()
                    in_flight[asyncio.create_task(self._upload_chunk(index))] = index

                if not in_flight:
                    break

                done, _ = await asyncio.wait(list(in_flight), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    index = in_flight.pop(task)
                    if task.cancelled():
                        logger.debug(f"Chunk {index} transfer cancelled")
                        continue
                    error = task.exception()
                    if error is None:
                        self._uploaded.add(index)
                        self._emit_progress()
                    elif not self._failed and generation == self._generation:
                        self._failed = True
                        self._fail(error)
        finally:
            for task in in_flight:
                task.cancel()

        if self._halted(generation):
            return
        if len(self._uploaded) >= self.total_chunks:
            await self._merge()

    async def _merge(self) -> None:
        self._set_state(UploadState.MERGING)
        try:
            response = await self.api.merge_upload(self._upload_id, self.file_name, self._file_hash)
        except asyncio.CancelledError:
            raise
        except IncompleteUpload as e:
            # the server lost some chunks; forget them so a retry re-sends exactly those
            self._uploaded.difference_update(e.missing_chunks)
            self._fail(e)
            return
        except UploadError as e:
            self._fail(e)
            return

        self._set_state(UploadState.DONE)
        logger.info(f"{self.file_name} uploaded as {response.get('filePath')}")
        if self.on_success is not None:
            self.on_success(response)

    def pause(self) -> None:
        """Stop dispatching and cancel in-flight transfers. Only valid while uploading."""
        if self._state != UploadState.UPLOADING:
            return
        self._paused = True
        self._generation += 1
        for task in list(self._in_flight):
            task.cancel()
        self._set_state(UploadState.PAUSED)
        logger.info(f"{self.file_name}: paused at {len(self._uploaded)}/{self.total_chunks} chunks")

    async def cancel(self) -> None:
        """Abandon the upload and drop the server-side session."""
        if self._state == UploadState.DONE:
            return
        self._paused = True
        self._generation += 1
        for task in list(self._in_flight):
            task.cancel()

        upload_id = self._upload_id
        self._upload_id = None
        self._uploaded.clear()
        self._set_state(UploadState.IDLE)
        if upload_id is not None:
            await self.api.cancel_upload(upload_id)
            logger.info(f"{self.file_name}: session {upload_id} cancelled")
