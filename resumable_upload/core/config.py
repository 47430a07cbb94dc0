from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    ENV: str = "local"
    LOG_LEVEL: str = "INFO"

    # Staging area: one directory per upload session, one file per chunk
    LOCAL_TEMP_CHUNK_PATH: str = "/tmp/resumable_upload/chunks"
    CHUNK_FILE_SUFFIX: str = ".part"

    # Content-addressed archive of completed files (local backend)
    PERSISTENT_LOCAL_STORAGE_PATH: str = "/var/data/resumable_upload"
    # Where merged files are assembled before being pushed to a remote archive
    MERGE_SCRATCH_PATH: str = "/tmp/resumable_upload/scratch"

    STORAGE_BACKEND: str = "local"  # 's3' or 'local'

    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET_NAME: str = "resumable-uploads"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION_NAME: Optional[str] = None
    S3_KEY_PREFIX: str = ""

    IO_WORKERS: int = 4
    MERGE_BUFFER_SIZE: int = 1024 * 1024

    ORPHAN_SWEEP_ENABLED: bool = True
    ORPHAN_SWEEP_INTERVAL_SECONDS: int = 30 * 60

    CORS_ALLOW_ORIGINS: List[str] = ["*"]
    SERVICE_PORT: int = 8000

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env" if ENV == "local" else None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
