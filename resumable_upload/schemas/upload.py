from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitUploadRequest(CamelModel):
    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize")
    chunk_size: int = Field(alias="chunkSize")
    file_hash: str = Field(alias="fileHash")

class InitUploadResponse(CamelModel):
    upload_id: Optional[str] = Field(alias="uploadId")
    file_path: Optional[str] = Field(default=None, alias="filePath")
    exists: bool = False
    message: Optional[str] = None

class ChunkUploadResponse(CamelModel):
    success: bool = True

class ProgressResponse(CamelModel):
    progress: int
    uploaded_chunks: List[int] = Field(alias="uploadedChunks")
    total_chunks: int = Field(alias="totalChunks")
    missing_chunks: List[int] = Field(alias="missingChunks")

class MergeUploadRequest(CamelModel):
    upload_id: str = Field(alias="uploadId")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_hash: Optional[str] = Field(default=None, alias="fileHash")

class MergeUploadResponse(CamelModel):
    success: bool = True
    file_path: str = Field(alias="filePath")

class CancelUploadRequest(CamelModel):
    upload_id: str = Field(alias="uploadId")

class CancelUploadResponse(CamelModel):
    success: bool = True
