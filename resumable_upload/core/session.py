import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from resumable_upload.core.errors import SessionNotFound


def count_chunks(declared_size: int, chunk_size: int) -> int:
    return (declared_size + chunk_size - 1) // chunk_size


def percent_complete(uploaded: int, total: int) -> int:
    if total == 0:
        return 100
    # halves round up
    return min(100, (200 * uploaded + total) // (2 * total))


@dataclass
class UploadSession:
    session_id: str
    file_name: str
    declared_size: int
    chunk_size: int
    content_hash: str
    uploaded_chunks: Set[int] = field(default_factory=set)
    merging: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_chunks(self) -> int:
        return count_chunks(self.declared_size, self.chunk_size)

    def chunk_length(self, index: int) -> int:
        start = index * self.chunk_size
        end = min(start + self.chunk_size, self.declared_size)
        return end - start

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    def progress(self) -> int:
        return percent_complete(len(self.uploaded_chunks), self.total_chunks)


class SessionRegistry:
    """
    In-process store of live upload sessions.

    Every read returns a copy, every mutation happens under one lock, so
    parallel chunk requests for the same session never lose an update and
    progress/merge always see a consistent snapshot.
    """

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def create(self, session: UploadSession) -> UploadSession:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session already registered: {session.session_id}")
            self._sessions[session.session_id] = session
            return copy.deepcopy(session)

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session is not None else None

    def require(self, session_id: str) -> UploadSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def mark_chunk_uploaded(self, session_id: str, index: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if not 0 <= index < session.total_chunks:
                raise ValueError(f"Chunk index {index} out of range for session {session_id}")
            if index in session.uploaded_chunks:
                return False
            session.uploaded_chunks.add(index)
            return True

    def unmark_chunk(self, session_id: str, index: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or index not in session.uploaded_chunks:
                return False
            session.uploaded_chunks.discard(index)
            return True

    def begin_merge(self, session_id: str) -> bool:
        """Claim the merge for a session; False if someone else holds it."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.merging:
                return False
            session.merging = True
            return True

    def end_merge(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.merging = False

    def remove(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def ids(self) -> Set[str]:
        with self._lock:
            return set(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


session_registry = SessionRegistry()
