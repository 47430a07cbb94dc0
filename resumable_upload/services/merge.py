import os
import shutil
import asyncio
import logging
import concurrent.futures
from dataclasses import dataclass
from typing import Optional
from resumable_upload.core.config import settings
from resumable_upload.core.errors import ChunkMissing
from resumable_upload.services.storage.chunk_store import ChunkStore, thread_pool

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    chunks_merged: int
    total_size: int
    output_path: str


class MergeEngine:
    """
    Concatenates the staged chunks of a session into one file.

    Chunks are copied strictly in index order, one at a time, through a
    fixed-size buffer. Any failure removes the partial output and leaves the
    staging directory untouched so the merge can be attempted again.
    """

    def __init__(self, chunk_store: ChunkStore, buffer_size: Optional[int] = None,
                 executor: Optional[concurrent.futures.Executor] = None):
        self.chunk_store = chunk_store
        self.buffer_size = buffer_size or settings.MERGE_BUFFER_SIZE
        self.executor = executor or thread_pool

    def _merge_files_sync(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> MergeResult:
        merged_dir = os.path.dirname(merged_file_path)
        if merged_dir:
            os.makedirs(merged_dir, exist_ok=True)

        logger.info(f"Starting merge of {total_chunks} chunks of session {upload_session_id} into {merged_file_path}")
        total_size = 0
        chunks_merged = 0

        try:
            with open(merged_file_path, "wb") as merged:
                for i in range(total_chunks):
                    chunk_path = self.chunk_store.chunk_path(upload_session_id, i)
                    try:
                        chunk_file = open(chunk_path, "rb")
                    except FileNotFoundError:
                        raise ChunkMissing(i) from None

                    with chunk_file:
                        shutil.copyfileobj(chunk_file, merged, self.buffer_size)
                        total_size += chunk_file.tell()
                    chunks_merged += 1
                    logger.debug(f"Chunk {i+1}/{total_chunks} merged")

                merged.flush()
                os.fsync(merged.fileno())
        except BaseException as e:
            logger.error(f"Error merging chunks of session {upload_session_id}: {str(e)}")
            if os.path.exists(merged_file_path):
                os.remove(merged_file_path)
                logger.info(f"Removed incomplete output file: {merged_file_path}")
            raise

        logger.info(
            f"Merge completed: {chunks_merged}/{total_chunks} chunks, "
            f"{total_size/1024/1024:.2f}MB -> {merged_file_path}"
        )
        return MergeResult(chunks_merged=chunks_merged, total_size=total_size, output_path=merged_file_path)

    async def merge(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> MergeResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor,
            self._merge_files_sync,
            upload_session_id,
            total_chunks,
            merged_file_path
        )
