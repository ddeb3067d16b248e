"""Shared exceptions for the application.

This module contains exception classes used across the provider client,
artifact migrator, task orchestrator and character registrar so that no
service has to import another service just to catch its errors.

Error Taxonomy:
    ValidationError       - malformed/missing identifiers, never retried
    AuthorizationError    - caller does not own the project/character
    TaskNotFound          - no Task Store row for the requested id
    ProviderUnavailable   - transient network/reachability failure (retryable)
    ProviderError         - provider returned a failure payload
    JobNotFound           - provider has no record of the job handle
    DownloadFailed        - artifact source fetch failed (retryable)
    UploadFailed          - artifact destination write failed (retryable)
    Timeout               - bounded wait exceeded (retryable by a fresh call)
    MissingReferenceVideo - no reference video resolvable for registration

Every orchestration error exposes a ``retryable`` class attribute so route
handlers and background callers can decide whether to retry without
matching on concrete types.
"""


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents the service
    from talking to the video provider or object storage (e.g., no provider
    API key set, or R2 storage selected without credentials).
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid state transition in TaskStatus workflow.

    Task status only moves forward: queued → processing → completed|failed.
    Only transitions defined in GenerationTask.VALID_TRANSITIONS are allowed.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current TaskStatus before the attempted transition.
        to_status: The TaskStatus that was attempted but is not valid.

    Example:
        >>> task.status = TaskStatus.COMPLETED
        >>> task.status = TaskStatus.PROCESSING  # Invalid - completed is terminal
        InvalidStateTransitionError: Invalid transition: completed → processing
    """

    def __init__(self, message: str, from_status: "TaskStatus", to_status: "TaskStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class OrchestrationError(Exception):
    """Base class for errors surfaced by the task orchestration core."""

    retryable: bool = False


class ValidationError(OrchestrationError):
    """Raised when a request lacks required identifiers or is malformed."""


class AuthorizationError(OrchestrationError):
    """Raised when the caller does not own the referenced project or character."""


class TaskNotFound(OrchestrationError):
    """Raised when a task id has no row in the Task Store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ProviderUnavailable(OrchestrationError):
    """Raised when the video provider cannot be reached.

    Never accompanied by a Task Store write; callers retry with backoff.
    """

    retryable = True


class ProviderError(OrchestrationError):
    """Raised when the provider responds with a failure payload.

    Attributes:
        status_code: HTTP status returned by the provider (None for job-level failures).
        detail: Provider error body, preserved verbatim for diagnostics.
    """

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{message} - Status: {status_code}" if status_code else message)


class JobNotFound(ProviderError):
    """Raised when the provider has no record of a job handle."""

    def __init__(self, job_id: str, detail: str | None = None):
        self.job_id = job_id
        super().__init__(f"Provider job not found: {job_id}", status_code=404, detail=detail)


class UnknownProviderStatus(OrchestrationError):
    """Raised by strict status normalization for an unmapped provider status."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Unknown provider status: {status!r}")


class MigrationError(OrchestrationError):
    """Base class for artifact migration failures.

    Migration errors never change a task's generation status.
    """

    retryable = True

    def __init__(self, message: str, url: str | None = None, key: str | None = None):
        self.url = url
        self.key = key
        super().__init__(message)


class DownloadFailed(MigrationError):
    """Raised when the provider-hosted artifact cannot be downloaded."""


class UploadFailed(MigrationError):
    """Raised when the artifact cannot be written to permanent storage."""


class Timeout(OrchestrationError):
    """Raised when a bounded wait (e.g. registration polling) is exceeded."""

    retryable = True

    def __init__(self, message: str, waited_seconds: float):
        self.waited_seconds = waited_seconds
        super().__init__(f"{message} (waited {waited_seconds:.0f}s)")


class MissingReferenceVideo(OrchestrationError):
    """Raised when no reference video URL can be resolved for a character."""

    def __init__(self, character_id: str):
        self.character_id = character_id
        super().__init__(f"No reference video available for character {character_id}")
