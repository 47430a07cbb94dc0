"""Client chunk scheduler against the in-process app"""

import os

import pytest

from resumable_upload.client.api import UploadApiClient
from resumable_upload.client.uploader import ChunkedUploader, UploadState
from resumable_upload.core.errors import IncompleteUpload, TransferFailed
from tests.helpers import make_payload, sha256

MB = 1024 * 1024


class RecordingApi(UploadApiClient):
    """Records chunk traffic and can fail chosen chunks once."""

    def __init__(self, *args, fail_once=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.sent = []
        self.confirmed = []
        self.active = 0
        self.max_active = 0
        self.fail_once = set(fail_once)

    async def upload_chunk(self, upload_id, chunk_index, chunk_data, file_hash, timeout=None):
        self.sent.append(chunk_index)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if chunk_index in self.fail_once:
                self.fail_once.discard(chunk_index)
                raise TransferFailed(f"simulated failure of chunk {chunk_index}")
            result = await super().upload_chunk(upload_id, chunk_index, chunk_data, file_hash, timeout)
        finally:
            self.active -= 1
        self.confirmed.append(chunk_index)
        return result


@pytest.fixture
def source_file(temp_dir):
    data = make_payload(10 * MB, seed=42)
    path = temp_dir / "holiday.mp4"
    path.write_bytes(data)
    return path, data


class Callbacks:
    def __init__(self):
        self.progress = []
        self.successes = []
        self.errors = []

    def kwargs(self):
        return {
            "on_progress": self.progress.append,
            "on_success": self.successes.append,
            "on_error": self.errors.append,
        }


@pytest.mark.asyncio
async def test_upload_completes(async_client, source_file, archive_dir):
    path, data = source_file
    api = RecordingApi("http://testserver/upload", client=async_client)
    callbacks = Callbacks()
    uploader = ChunkedUploader(str(path), api, chunk_size=2 * MB, concurrency=2, **callbacks.kwargs())

    await uploader.start()

    assert uploader.state == UploadState.DONE
    assert callbacks.errors == []
    assert sorted(api.confirmed) == [0, 1, 2, 3, 4]
    assert api.max_active <= 2
    assert callbacks.progress == [20, 40, 60, 80, 100]
    assert len(callbacks.successes) == 1
    file_path = callbacks.successes[0]["filePath"]
    assert os.path.basename(file_path) == f"{sha256(data)}.mp4"
    assert (archive_dir / f"{sha256(data)}.mp4").read_bytes() == data


@pytest.mark.asyncio
async def test_pause_and_resume_skips_confirmed_chunks(async_client, source_file, archive_dir):
    path, data = source_file
    api = RecordingApi("http://testserver/upload", client=async_client)
    callbacks = Callbacks()
    uploader = None

    def on_progress(percent):
        callbacks.progress.append(percent)
        if len(uploader.uploaded_chunks) == 3 and uploader.state == UploadState.UPLOADING:
            uploader.pause()

    uploader = ChunkedUploader(
        str(path), api, chunk_size=2 * MB, concurrency=2,
        on_progress=on_progress, on_success=callbacks.successes.append, on_error=callbacks.errors.append,
    )

    await uploader.start()

    assert uploader.state == UploadState.PAUSED
    first_run = uploader.uploaded_chunks
    assert len(first_run) >= 3
    assert callbacks.errors == []
    assert callbacks.successes == []

    api.sent.clear()
    await uploader.resume()

    assert uploader.state == UploadState.DONE
    assert not first_run & set(api.sent)
    assert callbacks.errors == []
    assert os.path.basename(callbacks.successes[0]["filePath"]) == f"{sha256(data)}.mp4"
    assert (archive_dir / f"{sha256(data)}.mp4").read_bytes() == data


@pytest.mark.asyncio
async def test_failed_chunk_halts_run_then_retry_recovers(async_client, source_file, archive_dir):
    path, data = source_file
    api = RecordingApi("http://testserver/upload", client=async_client, fail_once={3})
    callbacks = Callbacks()
    uploader = ChunkedUploader(str(path), api, chunk_size=2 * MB, concurrency=1, **callbacks.kwargs())

    await uploader.start()

    assert uploader.state == UploadState.ERROR
    assert len(callbacks.errors) == 1
    assert isinstance(callbacks.errors[0], TransferFailed)
    assert api.sent == [0, 1, 2, 3]
    assert uploader.uploaded_chunks == {0, 1, 2}

    api.sent.clear()
    await uploader.start()

    assert uploader.state == UploadState.DONE
    assert api.sent == [3, 4]
    assert len(callbacks.errors) == 1
    assert (archive_dir / f"{sha256(data)}.mp4").read_bytes() == data


@pytest.mark.asyncio
async def test_retry_after_lost_chunk_resends_only_that_chunk(async_client, source_file, chunk_store, archive_dir):
    path, data = source_file
    api = RecordingApi("http://testserver/upload", client=async_client)
    merge_upload = api.merge_upload
    dropped = []

    async def merge_after_losing_chunk(upload_id, file_name, file_hash):
        if not dropped:
            dropped.append(1)
            os.remove(chunk_store.chunk_path(upload_id, 1))
        return await merge_upload(upload_id, file_name, file_hash)

    api.merge_upload = merge_after_losing_chunk
    callbacks = Callbacks()
    uploader = ChunkedUploader(str(path), api, chunk_size=2 * MB, concurrency=2, **callbacks.kwargs())

    await uploader.start()

    assert uploader.state == UploadState.ERROR
    assert isinstance(callbacks.errors[0], IncompleteUpload)
    assert callbacks.errors[0].missing_chunks == [1]
    assert uploader.uploaded_chunks == {0, 2, 3, 4}

    api.sent.clear()
    await uploader.start()

    assert uploader.state == UploadState.DONE
    assert api.sent == [1]
    assert len(callbacks.errors) == 1
    assert (archive_dir / f"{sha256(data)}.mp4").read_bytes() == data


@pytest.mark.asyncio
async def test_dedup_hit_skips_transfer(async_client, source_file):
    path, data = source_file
    first = ChunkedUploader(str(path), RecordingApi("http://testserver/upload", client=async_client),
                            chunk_size=2 * MB)
    await first.start()
    assert first.state == UploadState.DONE

    api = RecordingApi("http://testserver/upload", client=async_client)
    callbacks = Callbacks()
    second = ChunkedUploader(str(path), api, chunk_size=2 * MB, **callbacks.kwargs())
    await second.start()

    assert second.state == UploadState.DONE
    assert api.sent == []
    assert callbacks.progress == [100]
    assert callbacks.successes[0]["exists"] is True
    assert callbacks.successes[0]["uploadId"] is None


@pytest.mark.asyncio
async def test_resume_session_from_previous_run(async_client, source_file, service):
    path, data = source_file
    api = RecordingApi("http://testserver/upload", client=async_client)
    first = Callbacks()
    uploader = None

    def stop_after_two(percent):
        first.progress.append(percent)
        if len(uploader.uploaded_chunks) == 2 and uploader.state == UploadState.UPLOADING:
            uploader.pause()

    uploader = ChunkedUploader(str(path), api, chunk_size=2 * MB, concurrency=1, on_progress=stop_after_two)
    await uploader.start()
    upload_id = uploader.upload_id

    # a new process picks the session up by id
    api.sent.clear()
    callbacks = Callbacks()
    again = ChunkedUploader(str(path), api, chunk_size=2 * MB, upload_id=upload_id, **callbacks.kwargs())
    await again.start()

    assert again.state == UploadState.DONE
    assert sorted(api.sent) == [2, 3, 4]
    assert callbacks.progress[0] == 40
    assert callbacks.errors == []


@pytest.mark.asyncio
async def test_cancel_drops_server_session(async_client, source_file, service):
    path, _ = source_file
    api = RecordingApi("http://testserver/upload", client=async_client)
    uploader = None

    def pause_soon(percent):
        if uploader.state == UploadState.UPLOADING:
            uploader.pause()

    uploader = ChunkedUploader(str(path), api, chunk_size=2 * MB, on_progress=pause_soon)
    await uploader.start()
    upload_id = uploader.upload_id
    assert upload_id in service.registry

    await uploader.cancel()

    assert uploader.state == UploadState.IDLE
    assert uploader.upload_id is None
    assert upload_id not in service.registry


def test_rejects_bad_settings(source_file):
    path, _ = source_file
    api = UploadApiClient("http://testserver/upload")
    with pytest.raises(ValueError):
        ChunkedUploader(str(path), api, chunk_size=0)
    with pytest.raises(ValueError):
        ChunkedUploader(str(path), api, concurrency=0)
