"""Character identity routes.

- POST /api/v1/characters/{character_id}/reference-video  - generate a reference
  video, optionally registering the identity in the background
- POST /api/v1/characters/{character_id}/register         - register from an
  existing reference video
- POST /api/v1/characters/{character_id}/identity/manual  - record an identity
  code obtained outside this service
- GET  /api/v1/characters/{character_id}/identity         - identity state and
  latest completed reference video
"""

import structlog
from fastapi import APIRouter, Depends, status

from app.deps import CurrentUser, get_current_user, get_registrar
from app.schemas.character import (
    CharacterIdentityResponse,
    CharacterIdentityView,
    ManualIdentityRequest,
    ReferenceVideoRequest,
    ReferenceVideoResponse,
    RegisterCharacterRequest,
)
from app.services.character_registrar import CharacterRegistrar

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/characters", tags=["characters"])


@router.post(
    "/{character_id}/reference-video",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ReferenceVideoResponse,
)
async def generate_reference_video(
    character_id: str,
    body: ReferenceVideoRequest,
    user: CurrentUser = Depends(get_current_user),
    registrar: CharacterRegistrar = Depends(get_registrar),
) -> ReferenceVideoResponse:
    """Submit a reference video task; returns before generation finishes."""
    task = await registrar.generate_reference_video(
        user.user_id, character_id, prompt=body.prompt, role=user.role
    )
    if body.auto_register:
        registrar.start_background_registration(task.id, user.user_id, body.sample_timestamps)

    return ReferenceVideoResponse(
        character_id=character_id,
        task_id=task.id,
        registration_started=body.auto_register,
    )


@router.post("/{character_id}/register", response_model=CharacterIdentityResponse)
async def register_character(
    character_id: str,
    body: RegisterCharacterRequest,
    user: CurrentUser = Depends(get_current_user),
    registrar: CharacterRegistrar = Depends(get_registrar),
) -> CharacterIdentityResponse:
    character = await registrar.register_character(
        user.user_id,
        character_id,
        video_url=body.video_url,
        sample_timestamps=body.sample_timestamps,
    )
    log.info(
        "character_register_requested",
        character_id=character_id,
        identity_status=character.identity_status.value,
    )
    return CharacterIdentityResponse.model_validate(character)


@router.post("/{character_id}/identity/manual", response_model=CharacterIdentityResponse)
async def set_identity_manually(
    character_id: str,
    body: ManualIdentityRequest,
    user: CurrentUser = Depends(get_current_user),
    registrar: CharacterRegistrar = Depends(get_registrar),
) -> CharacterIdentityResponse:
    """Mark the character registered with a caller-supplied identity code.

    Returns:
        200 OK: Identity registered
        400 Bad Request: Blank code, unknown character, or no reference video
        403 Forbidden: Caller does not own the character
    """
    character = await registrar.set_identity_manually(
        user.user_id,
        character_id,
        body.identity_code,
        reference_video_url=body.reference_video_url,
    )
    return CharacterIdentityResponse.model_validate(character)


@router.get("/{character_id}/identity", response_model=CharacterIdentityView)
async def get_identity(
    character_id: str,
    user: CurrentUser = Depends(get_current_user),
    registrar: CharacterRegistrar = Depends(get_registrar),
) -> CharacterIdentityView:
    return await registrar.get_identity(user.user_id, character_id)
