"""Cross-cutting utilities for the orchestration layer.

This package contains helper functions used across multiple modules.
Utilities should be pure functions or small value objects without business
logic.

Modules:
    logging: structlog configuration.
    retry: Shared tenacity-based retry policy for outbound HTTP calls.
"""

from app.utils.retry import RetryPolicy, TransientHTTPError, raise_for_transient_status

__all__ = [
    "RetryPolicy",
    "TransientHTTPError",
    "raise_for_transient_status",
]
