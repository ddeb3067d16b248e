"""Video generation provider client (Kaponai-compatible Sora API).

This module provides a rate-limited, retry-enabled client for the external
provider that performs video generation and character identity registration.
It implements:
- Job submission (POST /v1/videos)
- Job status lookup (GET /v1/videos/{job_id})
- Character identity registration (POST /sora/v1/characters)
- A fast reachability probe (HEAD on the base URL)
- Status normalization into queued/processing/completed/failed

Architecture Pattern:
    Stateless per call; never touches local persistence. Transient failures
    (connect errors, timeouts, 429, 5xx) are retried by the shared RetryPolicy
    and surface as ProviderUnavailable once attempts are exhausted. Any other
    non-2xx response surfaces as ProviderError with the body preserved.

Usage:
    client = VideoProviderClient(get_provider_config())
    ack = await client.submit_job(spec)
    status = await client.get_job_status(ack.job_id)
    await client.close()
"""

import json
from typing import Any

import httpx
import structlog
from aiolimiter import AsyncLimiter

from app.config import ProviderConfig
from app.constants import MISSING_PROVIDER_STATUS, PROVIDER_STATUS_MAP
from app.exceptions import (
    JobNotFound,
    ProviderError,
    ProviderUnavailable,
    UnknownProviderStatus,
)
from app.schemas.provider import ProviderJobAck, ProviderJobSpec, ProviderJobStatus
from app.utils.retry import RetryPolicy, TransientHTTPError, raise_for_transient_status

log = structlog.get_logger(__name__)


def normalize_provider_status(raw_status: str | None, strict: bool = False) -> str:
    """Map a provider status string onto the canonical vocabulary.

    Args:
        raw_status: Status as reported by the provider (case-insensitive).
        strict: Raise instead of passing unknown statuses through.

    Returns:
        "queued", "processing", "completed" or "failed"; a missing status is
        "processing"; an unrecognized status is returned unchanged.

    Raises:
        UnknownProviderStatus: If strict and the status is not in PROVIDER_STATUS_MAP.

    Example:
        >>> normalize_provider_status("generating")
        'processing'
        >>> normalize_provider_status("moderation_hold")
        'moderation_hold'
    """
    if raw_status is None or str(raw_status).strip() == "":
        return MISSING_PROVIDER_STATUS

    key = str(raw_status).strip().lower()
    if key in PROVIDER_STATUS_MAP:
        return PROVIDER_STATUS_MAP[key]

    if strict:
        raise UnknownProviderStatus(str(raw_status))
    return str(raw_status)


def _error_text(error: Any) -> str | None:
    """Render a provider error field (string or object) as text."""
    if error is None or error == "":
        return None
    if isinstance(error, str):
        return error
    return json.dumps(error, ensure_ascii=False)


def _progress(value: Any) -> int:
    try:
        return max(0, min(100, int(float(value))))
    except (TypeError, ValueError):
        return 0


class VideoProviderClient:
    """Client for the external video generation provider.

    Attributes:
        config: Injected provider settings (API key, base URL, timeouts).
        client: Async HTTP client bound to the provider base URL.
        rate_limiter: Client-side request rate limit shared by all calls.
        retry_policy: Backoff policy for transient failures.

    Example:
        >>> client = VideoProviderClient(config)
        >>> ack = await client.submit_job(ProviderJobSpec(model="sora-2", prompt="...", seconds=10, size="1280x720"))
        >>> await client.close()
    """

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider client.

        Args:
            config: Provider settings.
            retry_policy: Override for the default policy (3 attempts, 1-10s backoff).
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )
        self.rate_limiter = AsyncLimiter(max_rate=config.max_requests_per_second, time_period=1)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=config.retry_attempts)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request with rate limiting and transient-failure retry.

        Raises:
            ProviderUnavailable: Network failure or 429/5xx after all attempts.
        """

        async def _send() -> httpx.Response:
            async with self.rate_limiter:
                response = await self.client.request(
                    method,
                    path,
                    headers=self._get_headers(),
                    json=json_body,
                )
            raise_for_transient_status(response)
            return response

        try:
            return await self.retry_policy.call(_send)
        except TransientHTTPError as e:
            log.error(
                "provider_transient_error_exhausted",
                method=method,
                path=path,
                status_code=e.status_code,
                body=e.body[:500],
            )
            raise ProviderUnavailable(
                f"Provider returned {e.status_code} after {self.retry_policy.max_attempts} attempts"
            ) from e
        except httpx.TransportError as e:
            log.error(
                "provider_network_error_exhausted",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderUnavailable(f"Provider unreachable: {type(e).__name__}: {e}") from e

    def _raise_for_error(self, response: httpx.Response, context: str) -> None:
        if response.is_success:
            return
        log.warning(
            "provider_error_response",
            context=context,
            status_code=response.status_code,
            body=response.text[:500],
        )
        raise ProviderError(
            f"Provider {context} failed",
            status_code=response.status_code,
            detail=response.text,
        )

    def _parse_json(self, response: httpx.Response, context: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"Provider {context} returned invalid JSON",
                status_code=response.status_code,
                detail=response.text,
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"Provider {context} returned unexpected payload",
                status_code=response.status_code,
                detail=response.text,
            )
        return data

    async def assert_reachable(self) -> None:
        """Fail fast when the provider endpoint cannot be reached.

        Any HTTP response (including 4xx) counts as reachable; only
        network-level failures and the probe timeout do not. Not retried.

        Raises:
            ProviderUnavailable: If the HEAD probe fails or times out.
        """
        try:
            await self.client.head("/", timeout=self.config.probe_timeout_seconds)
        except httpx.TimeoutException as e:
            log.warning("provider_probe_timeout", base_url=self.base_url)
            raise ProviderUnavailable("Provider unreachable: timeout") from e
        except httpx.TransportError as e:
            log.warning("provider_probe_failed", base_url=self.base_url, error=str(e))
            raise ProviderUnavailable(f"Provider unreachable: {e}") from e

    async def submit_job(self, spec: ProviderJobSpec) -> ProviderJobAck:
        """Submit a generation job.

        Args:
            spec: Job specification (model, prompt, seconds, size, input_reference).

        Returns:
            ProviderJobAck with the provider's job handle and normalized status.

        Raises:
            ProviderUnavailable: Network failure or persistent 429/5xx.
            ProviderError: Provider rejected the job (detail preserved verbatim).
        """
        response = await self._request("POST", "/v1/videos", json_body=spec.to_payload())
        self._raise_for_error(response, "submit")
        data = self._parse_json(response, "submit")

        job_id = data.get("id")
        if not job_id:
            raise ProviderError(
                "Provider submit response missing job id",
                status_code=response.status_code,
                detail=response.text,
            )

        ack = ProviderJobAck(
            job_id=str(job_id),
            status=normalize_provider_status(data.get("status") or "queued"),
        )
        log.info(
            "provider_job_submitted",
            job_id=ack.job_id,
            status=ack.status,
            model=spec.model,
            seconds=spec.seconds,
            size=spec.size,
        )
        return ack

    async def get_job_status(self, job_id: str) -> ProviderJobStatus:
        """Fetch and normalize the live status of a job.

        Raises:
            JobNotFound: Provider has no record of job_id (404).
            ProviderUnavailable: Network failure or persistent 429/5xx.
            ProviderError: Any other non-2xx response.
        """
        response = await self._request("GET", f"/v1/videos/{job_id}")
        if response.status_code == 404:
            raise JobNotFound(job_id, detail=response.text)
        self._raise_for_error(response, "status")
        data = self._parse_json(response, "status")

        status = normalize_provider_status(data.get("status"))
        progress = _progress(data.get("progress"))
        if status == "completed":
            progress = 100

        return ProviderJobStatus(
            job_id=str(data.get("id") or job_id),
            status=status,
            progress=progress,
            result_url=data.get("video_url") or None,
            error=_error_text(data.get("error")),
        )

    async def register_character_identity(self, video_url: str, sample_timestamps: str) -> str:
        """Register a character from a reference video.

        Args:
            video_url: Public URL of the reference video.
            sample_timestamps: Comma separated seconds to sample (e.g. "1,3").

        Returns:
            Provider identity code (the character username, e.g. "fmraejvq").

        Raises:
            ProviderUnavailable: Network failure or persistent 429/5xx.
            ProviderError: Registration rejected, or no identity code returned.
        """
        response = await self._request(
            "POST",
            "/sora/v1/characters",
            json_body={"url": video_url, "timestamps": sample_timestamps},
        )
        self._raise_for_error(response, "character registration")
        data = self._parse_json(response, "character registration")

        identity_code = data.get("username")
        if not identity_code:
            raise ProviderError(
                "Provider registration response missing identity code",
                status_code=response.status_code,
                detail=response.text,
            )

        log.info(
            "provider_character_registered",
            identity_code=identity_code,
            provider_character_id=data.get("id"),
        )
        return str(identity_code)

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
