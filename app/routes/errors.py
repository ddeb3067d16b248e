"""Mapping from orchestration errors to HTTP responses.

Responses carry the error category and message (plus the provider's detail
when there is one), never a stack trace.
"""

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.exceptions import (
    AuthorizationError,
    MissingReferenceVideo,
    OrchestrationError,
    ProviderError,
    ProviderUnavailable,
    TaskNotFound,
    Timeout,
    ValidationError,
)

log = structlog.get_logger()

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES: list[tuple[type[OrchestrationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (MissingReferenceVideo, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (TaskNotFound, status.HTTP_404_NOT_FOUND),
    (ProviderUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (Timeout, status.HTTP_504_GATEWAY_TIMEOUT),
]


def status_code_for(exc: OrchestrationError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
    code = status_code_for(exc)
    content: dict[str, object] = {
        "error": type(exc).__name__,
        "message": str(exc),
        "retryable": exc.retryable,
    }
    if isinstance(exc, ProviderError) and exc.detail:
        content["detail"] = exc.detail

    log.info(
        "request_rejected",
        path=request.url.path,
        status_code=code,
        error=type(exc).__name__,
        message=str(exc),
    )
    return JSONResponse(status_code=code, content=content)
