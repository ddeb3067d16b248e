"""Configuration management for the orchestration layer.

This module provides centralized configuration loading from environment variables.
Values that are required for the service to run are cached with lru_cache;
tunables are re-read on every call so tests can monkeypatch them.

Provider and storage settings are assembled into frozen dataclasses
(ProviderConfig, StorageConfig) that are injected into the provider client
and the artifact migrator at construction. Nothing below the route layer
reads os.environ directly.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    VIDEO_PROVIDER_API_KEY: Provider bearer token (required)
    VIDEO_PROVIDER_BASE_URL: Provider base URL (default: https://models.kapon.cloud)
    R2_ENDPOINT_URL / R2_BUCKET_NAME / R2_ACCESS_KEY_ID / R2_SECRET_ACCESS_KEY:
        S3-compatible object storage (required for artifact migration)
    R2_PUBLIC_BASE_URL: Public URL prefix for migrated objects (required)

Usage:
    from app.config import get_provider_config, get_storage_config

    provider_config = get_provider_config()  # Raises if API key not set
    storage_config = get_storage_config()
"""

import os
from dataclasses import dataclass
from functools import lru_cache

import structlog

from app.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

DEFAULT_PROVIDER_BASE_URL = "https://models.kapon.cloud"
DEFAULT_PROVIDER_MODEL = "sora-2"


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for the video generation provider.

    Attributes:
        api_key: Bearer token sent on every provider request.
        base_url: Provider root URL without trailing slash.
        request_timeout_seconds: Timeout applied to each submit/status call.
        probe_timeout_seconds: Timeout for the reachability probe.
        max_job_seconds: Longest clip a single provider job may produce.
        default_model: Model used when a request does not name one.
        retry_attempts: Attempts for transient failures (connect, 429, 5xx).
        max_requests_per_second: Client-side rate limit across all provider calls.
    """

    api_key: str
    base_url: str = DEFAULT_PROVIDER_BASE_URL
    request_timeout_seconds: float = 60.0
    probe_timeout_seconds: float = 3.0
    max_job_seconds: int = 15
    default_model: str = DEFAULT_PROVIDER_MODEL
    retry_attempts: int = 3
    max_requests_per_second: float = 5.0

    def __repr__(self) -> str:
        """Mask the API key."""
        return f"ProviderConfig(base_url={self.base_url!r}, api_key=*****)"


@dataclass(frozen=True)
class StorageConfig:
    """Permanent object storage settings (Cloudflare R2 / S3-compatible).

    Attributes:
        endpoint_url: S3 API endpoint (e.g. https://<account>.r2.cloudflarestorage.com).
        bucket_name: Destination bucket.
        access_key_id: Access key for the bucket.
        secret_access_key: Secret key for the bucket.
        public_base_url: Public URL prefix; object URL is "{public_base_url}/{key}".
        transfer_timeout_seconds: Bound on each artifact download/upload.
        region_name: Signing region ("auto" for R2).
    """

    endpoint_url: str
    bucket_name: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str
    transfer_timeout_seconds: float = 120.0
    region_name: str = "auto"

    def __repr__(self) -> str:
        """Mask credential fields."""
        return (
            f"StorageConfig(bucket_name={self.bucket_name!r}, "
            f"endpoint_url={self.endpoint_url!r}, access_key_id=*****, "
            f"secret_access_key=*****)"
        )

    def public_url_for(self, key: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{key.lstrip('/')}"


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Managed Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def _float_env(name: str, default: float, minimum: float, maximum: float) -> float:
    """Read a float tunable, clamped to [minimum, maximum]."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def get_provider_config() -> ProviderConfig:
    """Build provider configuration from environment.

    Environment Variables:
        VIDEO_PROVIDER_API_KEY: Bearer token (required)
        VIDEO_PROVIDER_BASE_URL: Base URL (default: https://models.kapon.cloud)
        VIDEO_PROVIDER_TIMEOUT_SECONDS: Per-request timeout (default 60, range 5-120)
        VIDEO_PROVIDER_DEFAULT_MODEL: Default model (default: sora-2)
        VIDEO_PROVIDER_MAX_RPS: Client-side request rate (default 5, range 1-50)

    Returns:
        ProviderConfig instance.

    Raises:
        ConfigurationError: If VIDEO_PROVIDER_API_KEY is not set.
    """
    api_key = os.getenv("VIDEO_PROVIDER_API_KEY")
    if not api_key:
        raise ConfigurationError("VIDEO_PROVIDER_API_KEY environment variable is required")

    base_url = os.getenv("VIDEO_PROVIDER_BASE_URL") or DEFAULT_PROVIDER_BASE_URL
    return ProviderConfig(
        api_key=api_key,
        base_url=base_url.rstrip("/"),
        request_timeout_seconds=_float_env("VIDEO_PROVIDER_TIMEOUT_SECONDS", 60.0, 5.0, 120.0),
        default_model=os.getenv("VIDEO_PROVIDER_DEFAULT_MODEL") or DEFAULT_PROVIDER_MODEL,
        max_requests_per_second=_float_env("VIDEO_PROVIDER_MAX_RPS", 5.0, 1.0, 50.0),
    )


def get_storage_config() -> StorageConfig:
    """Build object storage configuration from environment.

    Environment Variables:
        R2_ENDPOINT_URL, R2_BUCKET_NAME, R2_ACCESS_KEY_ID,
        R2_SECRET_ACCESS_KEY, R2_PUBLIC_BASE_URL: all required
        STORAGE_TRANSFER_TIMEOUT_SECONDS: Download/upload bound (default 120, range 10-300)

    Returns:
        StorageConfig instance.

    Raises:
        ConfigurationError: If any required R2 variable is missing.
    """
    required = {
        "endpoint_url": "R2_ENDPOINT_URL",
        "bucket_name": "R2_BUCKET_NAME",
        "access_key_id": "R2_ACCESS_KEY_ID",
        "secret_access_key": "R2_SECRET_ACCESS_KEY",
        "public_base_url": "R2_PUBLIC_BASE_URL",
    }
    values: dict[str, str] = {}
    missing: list[str] = []
    for field_name, env_name in required.items():
        value = os.getenv(env_name)
        if not value:
            missing.append(env_name)
        else:
            values[field_name] = value

    if missing:
        raise ConfigurationError(
            f"Object storage not configured, missing: {', '.join(missing)}"
        )

    return StorageConfig(
        **values,
        transfer_timeout_seconds=_float_env(
            "STORAGE_TRANSFER_TIMEOUT_SECONDS", 120.0, 10.0, 300.0
        ),
    )


def get_registration_max_wait_seconds() -> float:
    """Get the bound on waiting for a reference video before registering.

    Environment Variable:
        REGISTRATION_MAX_WAIT_SECONDS: Maximum wait (default: 3000, range 60-7200)

    Returns:
        Maximum wait in seconds.

    Note:
        The default matches 600 polls at 5s intervals.
    """
    return _float_env("REGISTRATION_MAX_WAIT_SECONDS", 3000.0, 60.0, 7200.0)


def get_registration_poll_interval_seconds() -> float:
    """Get the delay between status polls while waiting to register.

    Environment Variable:
        REGISTRATION_POLL_INTERVAL_SECONDS: Poll interval (default: 5, range 1-60)
    """
    return _float_env("REGISTRATION_POLL_INTERVAL_SECONDS", 5.0, 1.0, 60.0)


def get_sweep_batch_limit() -> int:
    """Get the maximum number of tasks reconciled per sweep.

    Environment Variable:
        SWEEP_BATCH_LIMIT: Tasks per sweep (default: 50, range 1-200)
    """
    return int(_float_env("SWEEP_BATCH_LIMIT", 50, 1, 200))


def get_sweep_secret() -> str | None:
    """Get the shared secret required by the sweep endpoint.

    Environment Variable:
        SWEEP_SECRET: Bearer secret for scheduled sweeps (optional)

    Returns:
        Secret string, or None if sweeps are only allowed for admin users.
    """
    return os.getenv("SWEEP_SECRET") or None
