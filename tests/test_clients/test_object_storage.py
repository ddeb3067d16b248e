"""Tests for the R2 (S3-compatible) object storage client.

The boto3 client is replaced by a MagicMock; uploads run through
asyncio.to_thread exactly as in production.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from app.clients.object_storage import R2ObjectStorage
from app.config import StorageConfig
from app.exceptions import UploadFailed


@pytest.fixture
def config() -> StorageConfig:
    return StorageConfig(
        endpoint_url="https://acct.r2.cloudflarestorage.com",
        bucket_name="videos",
        access_key_id="ak",
        secret_access_key="sk",
        public_base_url="https://cdn.example.com/",
    )


@pytest.mark.asyncio
async def test_put_object_uploads_and_returns_public_url(config):
    s3_client = MagicMock()
    storage = R2ObjectStorage(config, s3_client=s3_client)

    url = await storage.put_object("user-1/shots/s1/sora_t1.mp4", b"video", "video/mp4")

    assert url == "https://cdn.example.com/user-1/shots/s1/sora_t1.mp4"
    s3_client.put_object.assert_called_once_with(
        Bucket="videos",
        Key="user-1/shots/s1/sora_t1.mp4",
        Body=b"video",
        ContentType="video/mp4",
    )


@pytest.mark.asyncio
async def test_put_object_client_error_becomes_upload_failed(config):
    s3_client = MagicMock()
    s3_client.put_object.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
    )
    storage = R2ObjectStorage(config, s3_client=s3_client)

    with pytest.raises(UploadFailed) as exc_info:
        await storage.put_object("k.mp4", b"video", "video/mp4")

    assert exc_info.value.key == "k.mp4"
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_put_object_connection_error_becomes_upload_failed(config):
    s3_client = MagicMock()
    s3_client.put_object.side_effect = EndpointConnectionError(endpoint_url=config.endpoint_url)
    storage = R2ObjectStorage(config, s3_client=s3_client)

    with pytest.raises(UploadFailed, match="Failed to upload"):
        await storage.put_object("k.mp4", b"video", "video/mp4")


def test_default_client_bound_to_endpoint(config):
    storage = R2ObjectStorage(config)

    assert storage.bucket_name == "videos"
    assert storage.s3_client.meta.endpoint_url == "https://acct.r2.cloudflarestorage.com"
