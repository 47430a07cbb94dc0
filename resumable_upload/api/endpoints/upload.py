from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, Query, status
from resumable_upload.core.errors import (
    ChunkMissing, IncompleteUpload, InvalidRequest, MergeInProgress, SessionNotFound,
    StagingError, TransferFailed, UploadError
)
from resumable_upload.schemas.upload import (
    InitUploadRequest, InitUploadResponse, ChunkUploadResponse, ProgressResponse,
    MergeUploadRequest, MergeUploadResponse, CancelUploadRequest, CancelUploadResponse
)
from resumable_upload.services.upload_service import UploadService, get_upload_service
from typing import Optional
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def to_http_error(e: UploadError) -> HTTPException:
    if isinstance(e, SessionNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found.")
    if isinstance(e, IncompleteUpload):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Some chunks are missing.", "missingChunks": e.missing_chunks}
        )
    if isinstance(e, InvalidRequest):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, MergeInProgress):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Merge already in progress.")
    if isinstance(e, StagingError):
        return HTTPException(status_code=500, detail="Failed to create staging area.")
    if isinstance(e, ChunkMissing):
        return HTTPException(status_code=500, detail=f"Merge failed: chunk {e.index} is missing.")
    if isinstance(e, TransferFailed):
        return HTTPException(status_code=500, detail="Failed to store data.")
    return HTTPException(status_code=500, detail="Upload failed.")


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(
    req: InitUploadRequest,
    service: UploadService = Depends(get_upload_service)
):
    try:
        result = await service.init_upload(req.file_name, req.file_size, req.chunk_size, req.file_hash)
    except UploadError as e:
        logger.warning(f"Init for {req.file_name} rejected: {str(e)}")
        raise to_http_error(e)

    if result.exists:
        return InitUploadResponse(
            upload_id=None,
            file_path=result.existing_path,
            exists=True,
            message="File already exists, upload skipped."
        )
    return InitUploadResponse(upload_id=result.session_id)


@router.post("/chunk", response_model=ChunkUploadResponse)
async def upload_chunk(
    upload_id: str = Form(..., alias="uploadId"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    file_hash: Optional[str] = Form(None, alias="fileHash"),
    file: UploadFile = File(...),
    service: UploadService = Depends(get_upload_service)
):
    chunk_data = await file.read()
    try:
        await service.receive_chunk(upload_id, chunk_index, chunk_data, file_hash)
    except UploadError as e:
        logger.error(f"Failed to save chunk {chunk_index} of {upload_id}: {str(e)}")
        raise to_http_error(e)
    return ChunkUploadResponse()


@router.delete("/chunk", response_model=ChunkUploadResponse)
async def discard_chunk(
    upload_id: str = Query(..., alias="uploadId"),
    chunk_index: int = Query(..., alias="chunkIndex"),
    service: UploadService = Depends(get_upload_service)
):
    await service.discard_chunk(upload_id, chunk_index)
    return ChunkUploadResponse()


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(
    upload_id: str = Query(..., alias="uploadId"),
    service: UploadService = Depends(get_upload_service)
):
    try:
        progress = await service.get_progress(upload_id)
    except UploadError as e:
        raise to_http_error(e)
    return ProgressResponse(
        progress=progress.progress,
        uploaded_chunks=progress.uploaded_chunks,
        total_chunks=progress.total_chunks,
        missing_chunks=progress.missing_chunks
    )


@router.post("/merge", response_model=MergeUploadResponse)
async def merge_upload(
    req: MergeUploadRequest,
    service: UploadService = Depends(get_upload_service)
):
    try:
        file_path = await service.merge_upload(req.upload_id, req.file_name, req.file_hash)
    except UploadError as e:
        logger.error(f"Merge of {req.upload_id} failed: {str(e)}")
        raise to_http_error(e)
    except OSError as e:
        logger.error(f"Merge of {req.upload_id} failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Merge failed.")
    return MergeUploadResponse(file_path=file_path)


@router.post("/cancel", response_model=CancelUploadResponse)
async def cancel_upload(
    req: CancelUploadRequest,
    service: UploadService = Depends(get_upload_service)
):
    await service.cancel_upload(req.upload_id)
    return CancelUploadResponse()
