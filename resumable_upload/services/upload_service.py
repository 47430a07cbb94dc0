import re
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4
from resumable_upload.core.errors import (
    IncompleteUpload, InvalidRequest, MergeInProgress, SessionNotFound, StagingError
)
from resumable_upload.core.session import SessionRegistry, UploadSession, session_registry
from resumable_upload.services.merge import MergeEngine
from resumable_upload.services.storage.base import BaseArchive
from resumable_upload.services.storage.chunk_store import ChunkStore
from resumable_upload.services.storage.factory import get_archive

logger = logging.getLogger(__name__)

HEX_DIGEST = re.compile(r"^[0-9a-fA-F]+$")


@dataclass
class InitResult:
    session_id: Optional[str] = None
    existing_path: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.existing_path is not None


@dataclass
class Progress:
    progress: int
    uploaded_chunks: List[int]
    total_chunks: int
    missing_chunks: List[int]


class UploadService:
    """Server side of the upload protocol: init, receive, progress, merge, cancel."""

    def __init__(self, registry: Optional[SessionRegistry] = None, chunk_store: Optional[ChunkStore] = None,
                 archive: Optional[BaseArchive] = None, merge_engine: Optional[MergeEngine] = None):
        self.registry = registry if registry is not None else session_registry
        self.chunk_store = chunk_store or ChunkStore()
        self.archive = archive or get_archive()
        self.merge_engine = merge_engine or MergeEngine(self.chunk_store)

    @staticmethod
    def _check_hash(content_hash: Optional[str]) -> None:
        if not content_hash or not HEX_DIGEST.match(content_hash):
            raise InvalidRequest("fileHash must be a hex digest")

    async def init_upload(self, file_name: str, declared_size: int, chunk_size: int, content_hash: str) -> InitResult:
        if chunk_size <= 0:
            raise InvalidRequest("chunkSize must be positive")
        if declared_size < 0:
            raise InvalidRequest("fileSize must not be negative")
        if not file_name:
            raise InvalidRequest("fileName is required")
        self._check_hash(content_hash)

        existing = await self.archive.lookup(content_hash, file_name)
        if existing:
            logger.info(f"Content {content_hash} already archived at {existing}, skipping upload")
            return InitResult(existing_path=existing)

        session = self.registry.create(UploadSession(
            session_id=str(uuid4()),
            file_name=file_name,
            declared_size=declared_size,
            chunk_size=chunk_size,
            content_hash=content_hash,
        ))
        try:
            await self.chunk_store.create_session(session.session_id)
        except OSError as e:
            self.registry.remove(session.session_id)
            logger.error(f"Failed to create staging directory for {session.session_id}: {str(e)}")
            raise StagingError(f"Failed to create staging directory: {e}") from e

        logger.info(
            f"Upload session {session.session_id} created for {file_name} "
            f"({declared_size} bytes, {session.total_chunks} chunks)"
        )
        return InitResult(session_id=session.session_id)

    async def receive_chunk(self, session_id: str, chunk_index: int, chunk_data: bytes,
                            content_hash: Optional[str] = None) -> None:
        session = self.registry.require(session_id)
        if not 0 <= chunk_index < session.total_chunks:
            raise InvalidRequest(f"chunkIndex {chunk_index} outside [0, {session.total_chunks})")
        if content_hash and content_hash != session.content_hash:
            raise InvalidRequest("fileHash does not match the upload session")
        expected = session.chunk_length(chunk_index)
        if len(chunk_data) != expected:
            raise InvalidRequest(f"Chunk {chunk_index} must be {expected} bytes, got {len(chunk_data)}")

        await self.chunk_store.save_chunk(session_id, chunk_index, chunk_data)

        try:
            added = self.registry.mark_chunk_uploaded(session_id, chunk_index)
        except SessionNotFound:
            # cancelled or merged while this chunk was being written
            await self.chunk_store.cleanup_session(session_id)
            raise
        if not added:
            logger.debug(f"Chunk {chunk_index} of session {session_id} received again")

    async def get_progress(self, session_id: str) -> Progress:
        session = self.registry.require(session_id)
        return Progress(
            progress=session.progress(),
            uploaded_chunks=sorted(session.uploaded_chunks),
            total_chunks=session.total_chunks,
            missing_chunks=session.missing_chunks(),
        )

    async def merge_upload(self, session_id: str, file_name: Optional[str] = None,
                           content_hash: Optional[str] = None) -> str:
        session = self.registry.require(session_id)
        if content_hash and content_hash != session.content_hash:
            raise InvalidRequest("fileHash does not match the upload session")
        file_name = file_name or session.file_name

        if not self.registry.begin_merge(session_id):
            raise MergeInProgress(session_id)
        try:
            missing = await self.chunk_store.missing_chunks(session_id, session.total_chunks)
            if missing:
                # keep progress in step with what is actually staged
                for index in missing:
                    self.registry.unmark_chunk(session_id, index)
                raise IncompleteUpload(missing)

            archive_name = self.archive.archive_name(session.content_hash, file_name)
            archive_path = await self.archive.lookup(session.content_hash, file_name)
            if archive_path:
                logger.info(f"Content of session {session_id} was archived meanwhile at {archive_path}")
            else:
                scratch_path = self.archive.scratch_path(archive_name)
                await self.merge_engine.merge(session_id, session.total_chunks, scratch_path)
                archive_path = await self.archive.commit(scratch_path, archive_name)
        except BaseException:
            self.registry.end_merge(session_id)
            raise

        self.registry.remove(session_id)
        await self.chunk_store.cleanup_session(session_id)
        logger.info(f"Upload session {session_id} merged into {archive_path}")
        return archive_path

    async def cancel_upload(self, session_id: str) -> None:
        removed = self.registry.remove(session_id)
        result = await self.chunk_store.cleanup_session(session_id)
        if removed is not None or result.get("files_removed"):
            logger.info(f"Upload session {session_id} cancelled")

    async def discard_chunk(self, session_id: str, chunk_index: int) -> None:
        """Drop one chunk's data, e.g. after its request was interrupted."""
        await self.chunk_store.discard_chunk(session_id, chunk_index)
        if self.registry.unmark_chunk(session_id, chunk_index):
            logger.info(f"Chunk {chunk_index} of session {session_id} discarded")

    async def sweep_orphans(self) -> List[str]:
        """Remove staging directories that belong to no registered session."""
        removed = []
        for session_id in await self.chunk_store.list_sessions():
            if session_id in self.registry:
                continue
            result = await self.chunk_store.cleanup_session(session_id)
            if result.get("success"):
                removed.append(session_id)
        if removed:
            logger.info(f"Orphan sweep removed {len(removed)} staging directories")
        return removed


_upload_service = None

def get_upload_service() -> UploadService:
    global _upload_service
    if _upload_service is None:
        _upload_service = UploadService()
    return _upload_service
