"""Pydantic schemas for validation and serialization."""

from app.schemas.character import (
    CharacterIdentityResponse,
    CharacterIdentityView,
    ManualIdentityRequest,
    ReferenceVideoRequest,
    ReferenceVideoResponse,
    RegisterCharacterRequest,
)
from app.schemas.provider import ProviderJobAck, ProviderJobSpec, ProviderJobStatus
from app.schemas.task import (
    BackfillDescriptor,
    BackfillRequest,
    BackfillResult,
    BatchStatusItem,
    BatchStatusRequest,
    GenerationRequest,
    ShotSpec,
    SubmitResponse,
    SweepResult,
    TaskResponse,
    TaskStatusView,
)

__all__ = [
    "BackfillDescriptor",
    "BackfillRequest",
    "BackfillResult",
    "BatchStatusItem",
    "BatchStatusRequest",
    "CharacterIdentityResponse",
    "CharacterIdentityView",
    "GenerationRequest",
    "ManualIdentityRequest",
    "ProviderJobAck",
    "ProviderJobSpec",
    "ProviderJobStatus",
    "ReferenceVideoRequest",
    "ReferenceVideoResponse",
    "RegisterCharacterRequest",
    "ShotSpec",
    "SubmitResponse",
    "SweepResult",
    "TaskResponse",
    "TaskStatusView",
]
