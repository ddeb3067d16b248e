"""Project-wide constants and mappings.

This module contains the provider status vocabulary table and the
duration/fan-out limits used when splitting generation requests into
provider jobs.
"""

# Provider status string → canonical TaskStatus value
# Closed table: anything not listed here is an unknown provider status
PROVIDER_STATUS_MAP: dict[str, str] = {
    # Waiting for a worker on the provider side
    "queued": "queued",
    "pending": "queued",
    "submitted": "queued",
    # Generation in flight
    "processing": "processing",
    "running": "processing",
    "generating": "processing",
    "in_progress": "processing",
    # Result available
    "completed": "completed",
    "succeeded": "completed",
    "success": "completed",
    # Terminal failure
    "failed": "failed",
    "error": "failed",
    "cancelled": "failed",
}

# A status response with no status field is treated as still running
MISSING_PROVIDER_STATUS = "processing"

# Duration planning (seconds)
# Provider accepts at most 15s per job; 2s padding is added for editing slack
PROVIDER_MAX_JOB_SECONDS = 15
PROVIDER_MIN_JOB_SECONDS = 10
CHUNK_PADDING_SECONDS = 2
CHUNK_BUDGET_SECONDS = PROVIDER_MAX_JOB_SECONDS - CHUNK_PADDING_SECONDS
DEFAULT_SHOT_SECONDS = 5
DEFAULT_REQUEST_SECONDS = 10

# Upper bound on provider jobs created by one submit() call
MAX_SUBTASKS_PER_REQUEST = 8

# Character identity registration
DEFAULT_SAMPLE_TIMESTAMPS = "1,3"
REFERENCE_VIDEO_SECONDS = 10

# Resolutions
LANDSCAPE_SIZE = "1280x720"
PORTRAIT_SIZE = "720x1280"
PORTRAIT_ASPECT_RATIOS = frozenset({"9:16", "3:4"})

VIDEO_CONTENT_TYPE = "video/mp4"

# Sweep (scheduled repair) bounds
SWEEP_MAX_CONCURRENCY = 6
SWEEP_DEFAULT_CONCURRENCY = 3

# Credits operation kinds
OPERATION_SHOT_GENERATION = "sora_video_generation"
OPERATION_CHARACTER_REFERENCE = "sora_character_reference"
