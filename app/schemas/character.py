"""Pydantic schemas for character identity registration endpoints."""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.constants import DEFAULT_SAMPLE_TIMESTAMPS
from app.models import IdentityStatus


class ReferenceVideoRequest(BaseModel):
    """Schema for POST /api/v1/characters/{id}/reference-video.

    When register is true, identity registration runs in the background once
    the reference video completes.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = Field(
        default=None,
        description="Reference prompt (default: built from name and appearance)",
    )
    sample_timestamps: str = Field(
        default=DEFAULT_SAMPLE_TIMESTAMPS,
        pattern=r"^\d+(\.\d+)?(,\d+(\.\d+)?)*$",
        examples=["1,3"],
    )
    auto_register: bool = Field(default=True, alias="register")


class ReferenceVideoResponse(BaseModel):
    character_id: str
    task_id: str
    registration_started: bool


class RegisterCharacterRequest(BaseModel):
    video_url: str | None = Field(
        default=None,
        description="Explicit reference video URL (default: resolved from character/tasks)",
    )
    sample_timestamps: str = Field(
        default=DEFAULT_SAMPLE_TIMESTAMPS,
        pattern=r"^\d+(\.\d+)?(,\d+(\.\d+)?)*$",
    )


class ManualIdentityRequest(BaseModel):
    """Schema for POST /api/v1/characters/{id}/identity/manual.

    Accepts the provider's identity code as identity_code or username.
    """

    identity_code: str = Field(
        ...,
        validation_alias=AliasChoices("identity_code", "username"),
        max_length=128,
        examples=["fmraejvq"],
    )
    reference_video_url: str | None = Field(
        default=None,
        max_length=1024,
        description="Video the code was registered from (default: resolved from character/tasks)",
    )


class CharacterIdentityResponse(BaseModel):
    """Identity fields of a character as persisted."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    identity_status: IdentityStatus
    provider_identity_code: str | None
    reference_video_url: str | None
    identity_task_id: str | None
    identity_error: str | None


class CharacterIdentityView(BaseModel):
    """Identity state with the latest completed reference video, if any."""

    character_id: str
    identity_status: IdentityStatus
    provider_identity_code: str | None = None
    reference_video_url: str | None = None
    identity_error: str | None = None
    latest_task_id: str | None = None
    latest_video_url: str | None = None
    latest_completed_at: datetime | None = None
