"""S3-compatible object storage client (Cloudflare R2).

Writes migrated artifacts to the permanent bucket and returns their public
URL. boto3 is synchronous, so every call runs in a worker thread via
asyncio.to_thread to keep the event loop free during large uploads.

Usage:
    storage = R2ObjectStorage(get_storage_config())
    url = await storage.put_object("user_1/shots/s1/sora_abc.mp4", data, "video/mp4")
"""

import asyncio

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from app.config import StorageConfig
from app.exceptions import UploadFailed

log = structlog.get_logger(__name__)


class R2ObjectStorage:
    """Object storage collaborator backed by an S3-compatible bucket.

    Attributes:
        config: Injected storage settings.
        s3_client: boto3 S3 client bound to the R2 endpoint.
    """

    def __init__(self, config: StorageConfig, s3_client=None):
        self.config = config
        self.bucket_name = config.bucket_name
        self.s3_client = s3_client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            region_name=config.region_name,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=BotoConfig(
                connect_timeout=10,
                read_timeout=config.transfer_timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )

        log.info(
            "object_storage_initialized",
            bucket=self.bucket_name,
            endpoint_url=config.endpoint_url,
        )

    def _put_object_sync(self, key: str, data: bytes, content_type: str) -> None:
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        """Upload bytes under key and return the object's public URL.

        An existing object under the same key is overwritten.

        Raises:
            UploadFailed: If the bucket rejects the write or the request fails.
        """
        try:
            await asyncio.to_thread(self._put_object_sync, key, data, content_type)
        except (ClientError, BotoCoreError) as e:
            log.error(
                "object_storage_upload_failed",
                bucket=self.bucket_name,
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise UploadFailed(f"Failed to upload object to storage: {e}", key=key) from e

        url = self.config.public_url_for(key)
        log.info(
            "object_storage_uploaded",
            bucket=self.bucket_name,
            key=key,
            size_bytes=len(data),
            content_type=content_type,
        )
        return url
