"""Pydantic schemas for the video provider's job API.

These mirror the provider's wire payloads after parsing; the provider client
is the only module that builds or reads them from raw JSON.
"""

import json
from typing import Any

from pydantic import BaseModel, Field


class ProviderJobSpec(BaseModel):
    """A single job submission (POST /v1/videos).

    prompt is either free text or a structured shot script
    ({"character_setting": {...}, "shots": [...]}).
    """

    model: str
    prompt: str | dict[str, Any]
    seconds: int = Field(..., gt=0)
    size: str
    input_reference: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": (
                json.dumps(self.prompt, ensure_ascii=False)
                if isinstance(self.prompt, dict)
                else self.prompt
            ),
            "seconds": self.seconds,
            "size": self.size,
        }
        if self.input_reference:
            payload["input_reference"] = self.input_reference
        return payload


class ProviderJobAck(BaseModel):
    """Provider acknowledgement of a submitted job."""

    job_id: str
    status: str = Field(..., description="Normalized status of the freshly created job")


class ProviderJobStatus(BaseModel):
    """Live state of a provider job, with status already normalized.

    status is one of queued/processing/completed/failed, or the provider's
    raw string when it is not in the status table.
    """

    job_id: str
    status: str
    progress: int = Field(default=0, ge=0, le=100)
    result_url: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")
