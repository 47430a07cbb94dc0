from typing import Iterable, List


class UploadError(Exception):
    """Base class for every failure of the upload protocol."""


class InvalidRequest(UploadError):
    pass


class SessionNotFound(UploadError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Upload session not found: {session_id}")


class IncompleteUpload(UploadError):
    """Merge requested while some chunks are still absent.

    Carries the missing indices so the caller can re-send exactly those.
    """

    def __init__(self, missing_chunks: Iterable[int]):
        self.missing_chunks: List[int] = sorted(missing_chunks)
        super().__init__(f"Missing chunks: {self.missing_chunks}")


class ChunkMissing(UploadError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Chunk {index} disappeared during merge")


class TransferFailed(UploadError):
    pass


class MergeInProgress(UploadError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Merge already running for session {session_id}")


class StagingError(UploadError):
    pass
