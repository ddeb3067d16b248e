"""Artifact migration from provider-hosted URLs to permanent object storage.

Provider result URLs are transient. Once a job completes, the full video is
downloaded and re-uploaded under a destination key derived from the owning
user, the asset linkage and the task id, giving a stable public URL.

Idempotency Contract:
    The migrator moves bytes; it does not decide policy. Callers check for
    an existing permanent URL before invoking it. Because the destination key
    is deterministic in the task id, a duplicate migration overwrites the
    object with equivalent content.

Retry Strategy:
    - Download: shared RetryPolicy (3 attempts) on network errors, 429 and 5xx
    - Upload: single attempt; storage errors surface as UploadFailed
    - No partial/resumable transfers; every attempt starts from scratch
"""

import httpx
import structlog

from app.config import StorageConfig
from app.constants import VIDEO_CONTENT_TYPE
from app.exceptions import DownloadFailed, MigrationError, UploadFailed
from app.models import GenerationTask, TaskType
from app.services.collaborators import ObjectStorage
from app.utils.retry import RetryPolicy, TransientHTTPError, raise_for_transient_status

log = structlog.get_logger(__name__)


def build_destination_key(task: GenerationTask) -> str:
    """Derive the permanent storage key for a task's artifact.

    Layout:
        {user_id}/characters/{character_id}/sora_ref_{task_id}.mp4
        {user_id}/shots/{shot_id}/sora_{task_id}.mp4
        {user_id}/scenes/{scene_id or "unknown"}/sora_{task_id}.mp4

    Example:
        >>> build_destination_key(task)  # shot task s1 of user u1
        'u1/shots/s1/sora_5f0c...mp4'
    """
    if task.type == TaskType.CHARACTER_REFERENCE and task.character_id:
        return f"{task.user_id}/characters/{task.character_id}/sora_ref_{task.id}.mp4"
    if task.shot_id:
        return f"{task.user_id}/shots/{task.shot_id}/sora_{task.id}.mp4"
    return f"{task.user_id}/scenes/{task.scene_id or 'unknown'}/sora_{task.id}.mp4"


class ArtifactMigrator:
    """Download a transient artifact and store it permanently.

    Attributes:
        storage: Object storage collaborator (put_object → public URL).
        config: Storage settings; transfer_timeout_seconds bounds each download.
        client: Async HTTP client used for downloads.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        config: StorageConfig,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.storage = storage
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = httpx.AsyncClient(
            timeout=config.transfer_timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    async def _download(self, source_url: str) -> bytes:
        async def _fetch() -> httpx.Response:
            response = await self.client.get(source_url)
            raise_for_transient_status(response)
            return response

        try:
            response = await self.retry_policy.call(_fetch)
        except TransientHTTPError as e:
            raise DownloadFailed(
                f"Artifact download failed with status {e.status_code}", url=source_url
            ) from e
        except httpx.HTTPError as e:
            raise DownloadFailed(
                f"Artifact download failed: {type(e).__name__}: {e}", url=source_url
            ) from e

        if not response.is_success:
            raise DownloadFailed(
                f"Artifact download failed with status {response.status_code}", url=source_url
            )
        if not response.content:
            raise DownloadFailed("Artifact download returned an empty body", url=source_url)
        return response.content

    async def migrate(self, source_url: str, destination_key: str) -> str:
        """Copy the artifact at source_url to permanent storage.

        Args:
            source_url: Transient provider URL of the finished video.
            destination_key: Storage key (see build_destination_key).

        Returns:
            Permanent public URL of the uploaded object.

        Raises:
            DownloadFailed: Source fetch failed (non-2xx, empty body, network error).
            UploadFailed: Destination write failed.
        """
        log.info("artifact_migration_started", source_url=source_url, key=destination_key)

        data = await self._download(source_url)

        try:
            permanent_url = await self.storage.put_object(destination_key, data, VIDEO_CONTENT_TYPE)
        except MigrationError:
            raise
        except Exception as e:
            raise UploadFailed(f"Artifact upload failed: {e}", key=destination_key) from e

        log.info(
            "artifact_migration_completed",
            key=destination_key,
            permanent_url=permanent_url,
            size_bytes=len(data),
        )
        return permanent_url

    async def migrate_task(self, task: GenerationTask) -> str:
        """Migrate a completed task's provider_url under its derived key."""
        if not task.provider_url:
            raise DownloadFailed(f"Task {task.id} has no provider URL to migrate")
        return await self.migrate(task.provider_url, build_destination_key(task))

    async def close(self) -> None:
        await self.client.aclose()
