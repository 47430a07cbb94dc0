from typing import Any, Dict, Optional

import httpx

from resumable_upload.core.errors import (
    IncompleteUpload, InvalidRequest, MergeInProgress, SessionNotFound, TransferFailed
)


class UploadApiClient:
    """
    Thin async wrapper over the upload HTTP routes.

    Failures are translated into the shared error types; task cancellation
    passes through untouched so the scheduler can tell a pause from a failure.

    Args:
        base_url: URL the upload router is mounted at, e.g. ``http://host:8000/upload``
        client: optional pre-built ``httpx.AsyncClient`` (tests pass one bound to the app)
        timeout: default per-request timeout in seconds
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text

        if response.status_code == 404:
            raise SessionNotFound(str(detail))
        if response.status_code == 400:
            if isinstance(detail, dict) and "missingChunks" in detail:
                raise IncompleteUpload(detail["missingChunks"])
            raise InvalidRequest(f"{what} rejected: {detail}")
        if response.status_code == 409:
            raise MergeInProgress(str(detail))
        raise TransferFailed(f"{what} failed with HTTP {response.status_code}: {detail}")

    async def _request(self, what: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise TransferFailed(f"{what} failed: {e}") from e
        self._raise_for_status(response, what)
        return response.json()

    async def init_upload(self, file_name: str, file_size: int, chunk_size: int, file_hash: str) -> Dict[str, Any]:
        return await self._request("Init", "POST", "/init", json={
            "fileName": file_name,
            "fileSize": file_size,
            "chunkSize": chunk_size,
            "fileHash": file_hash,
        })

    async def get_progress(self, upload_id: str) -> Dict[str, Any]:
        return await self._request("Progress query", "GET", "/progress", params={"uploadId": upload_id})

    async def upload_chunk(self, upload_id: str, chunk_index: int, chunk_data: bytes, file_hash: str,
                           timeout: Optional[float] = None) -> Dict[str, Any]:
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self._request(
            f"Chunk {chunk_index}", "POST", "/chunk",
            data={"uploadId": upload_id, "chunkIndex": str(chunk_index), "fileHash": file_hash},
            files={"file": (f"{chunk_index}.part", chunk_data, "application/octet-stream")},
            **kwargs
        )

    async def merge_upload(self, upload_id: str, file_name: str, file_hash: str) -> Dict[str, Any]:
        return await self._request("Merge", "POST", "/merge", json={
            "uploadId": upload_id,
            "fileName": file_name,
            "fileHash": file_hash,
        })

    async def cancel_upload(self, upload_id: str) -> Dict[str, Any]:
        return await self._request("Cancel", "POST", "/cancel", json={"uploadId": upload_id})
