import os
import asyncio
import logging
import boto3
from uuid import uuid4
from typing import Optional
from .base import BaseArchive
from resumable_upload.core.config import settings
from resumable_upload.core.errors import TransferFailed
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class S3Archive(BaseArchive):
    """Archive backed by an S3 bucket; merged files are assembled locally first."""

    def __init__(self, s3_client=None, bucket: Optional[str] = None, key_prefix: Optional[str] = None,
                 scratch_dir: Optional[str] = None):
        self.s3_client = s3_client or boto3.client(
            's3',
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION_NAME
        )
        self.bucket = bucket or settings.S3_BUCKET_NAME
        self.key_prefix = settings.S3_KEY_PREFIX if key_prefix is None else key_prefix
        self.scratch_dir = scratch_dir or settings.MERGE_SCRATCH_PATH

    def key_for(self, archive_name: str) -> str:
        return f"{self.key_prefix}{archive_name}"

    def _exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def _lookup_sync(self, content_hash: str, file_name: Optional[str]) -> Optional[str]:
        if file_name is not None:
            key = self.key_for(self.archive_name(content_hash, file_name))
            if self._exists(key):
                return key

        paginator = self.s3_client.get_paginator('list_objects_v2')
        prefix = self.key_for(content_hash)
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get('Contents', []):
                name = obj['Key'][len(self.key_prefix):]
                stem, _ = os.path.splitext(name)
                if stem == content_hash:
                    return obj['Key']
        return None

    async def lookup(self, content_hash: str, file_name: Optional[str] = None) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._lookup_sync, content_hash, file_name)
        except (BotoCoreError, ClientError) as e:
            raise TransferFailed(f"S3 lookup failed: {e}") from e

    def scratch_path(self, archive_name: str) -> str:
        return os.path.join(self.scratch_dir, f"{archive_name}.{uuid4().hex}.merging")

    def _upload_to_s3(self, file_path: str, key: str) -> None:
        try:
            self.s3_client.upload_file(file_path, self.bucket, key)
        finally:
            if os.path.exists(file_path):
                os.remove(file_path)

    async def commit(self, scratch_path: str, archive_name: str) -> str:
        key = self.key_for(archive_name)
        try:
            await asyncio.to_thread(self._upload_to_s3, scratch_path, key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload of {key} failed: {str(e)}")
            raise TransferFailed(f"S3 upload failed: {e}") from e
        logger.info(f"Archived {archive_name} as s3://{self.bucket}/{key}")
        return key
