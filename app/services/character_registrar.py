"""Character identity registration flow.

A character becomes reusable across generations once the provider has
registered it from a short reference video and issued an identity code
(used as "@code" in later prompts). The flow has two steps:

1. generate_reference_video: submit a character_reference task through the
   orchestrator (returns immediately)
2. wait_and_register_task: poll the orchestrator until that task is terminal,
   then register the resulting video with the provider

register_character skips step 1 when a reference video already exists.

The registrar also subscribes to the orchestrator's completion hook: when a
reference task is first seen completed by any caller (status read, batch,
sweep), the video URL is stored on the character and registration starts
in the background. set_identity_manually records a code obtained elsewhere.

Error Channel:
    Every failed registration attempt is recorded on the character
    (identity_error) and identity_status stays pending, so a later call can
    retry. Background registrations run as tracked asyncio tasks whose
    failures are logged and recorded rather than dropped.

Writes to the character's identity fields are last-write-wins.
"""

import asyncio
import math
from collections.abc import Awaitable, Callable

import structlog

from app.clients.video_provider import VideoProviderClient
from app.config import get_registration_max_wait_seconds, get_registration_poll_interval_seconds
from app.constants import DEFAULT_SAMPLE_TIMESTAMPS, LANDSCAPE_SIZE, REFERENCE_VIDEO_SECONDS
from app.exceptions import (
    AuthorizationError,
    MissingReferenceVideo,
    ProviderError,
    ProviderUnavailable,
    TaskNotFound,
    Timeout,
    ValidationError,
)
from app.models import Character, GenerationTask, TaskStatus, TaskType
from app.schemas.character import CharacterIdentityView
from app.schemas.task import GenerationRequest, TaskStatusView
from app.services.task_orchestrator import TaskOrchestrator
from app.services.task_store import TaskStore

log = structlog.get_logger(__name__)


def build_reference_prompt(character: Character) -> str:
    """Default prompt for a character reference clip."""
    appearance = (character.appearance or character.description or "").strip()
    parts = [
        f"Character reference video of {character.name}.",
        appearance,
        "Full body, neutral studio background, soft even lighting.",
        "The character turns slowly to show front, side and back, then faces the camera.",
        "No other people, no text, no camera cuts.",
    ]
    return " ".join(part for part in parts if part)


class CharacterRegistrar:
    """Orchestrates reference video generation and identity registration.

    Args:
        orchestrator: Task orchestrator (submission and status).
        store: Task Store (character identity persistence).
        provider: Provider client (identity registration call).
        max_wait_seconds: Bound on waiting for a reference task (default from env).
        poll_interval_seconds: Delay between status polls (default from env).
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        store: TaskStore,
        provider: VideoProviderClient,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.provider = provider
        self.max_wait_seconds = max_wait_seconds or get_registration_max_wait_seconds()
        self.poll_interval_seconds = (
            poll_interval_seconds or get_registration_poll_interval_seconds()
        )
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()
        # Characters with a registration underway, by number of callers
        self._registering: dict[str, int] = {}
        orchestrator.add_completion_hook(self.on_task_completed)

    async def _load_owned_character(self, user_id: str, character_id: str) -> Character:
        if not character_id:
            raise ValidationError("character_id is required")
        character = await self.store.get_character(character_id)
        if character is None:
            raise ValidationError(f"Character {character_id} not found")
        if character.user_id != user_id or not await self.orchestrator.ownership.check_ownership(
            character.project_id, user_id
        ):
            raise AuthorizationError(f"User does not own character {character_id}")
        return character

    async def generate_reference_video(
        self,
        user_id: str,
        character_id: str,
        prompt: str | None = None,
        role: str = "user",
    ) -> GenerationTask:
        """Submit a reference video task for a character without waiting.

        Returns:
            The created character_reference task (queued or processing).

        Raises:
            ValidationError: Unknown character or no reference image.
            AuthorizationError: Caller does not own the character.
            ProviderUnavailable: Provider probe failed (nothing written).
        """
        character = await self._load_owned_character(user_id, character_id)
        if not character.reference_images:
            raise ValidationError(f"Character {character.name} has no reference images")

        request = GenerationRequest(
            project_id=character.project_id,
            type=TaskType.CHARACTER_REFERENCE,
            character_id=character.id,
            prompt=prompt or build_reference_prompt(character),
            duration=REFERENCE_VIDEO_SECONDS,
            size=LANDSCAPE_SIZE,
            input_reference=character.reference_images[0],
        )
        task_ids = await self.orchestrator.submit(user_id, request, role=role)
        task_id = task_ids[0]

        await self.store.save_identity_reference(character.id, identity_task_id=task_id)
        log.info(
            "reference_video_submitted",
            character_id=character.id,
            task_id=task_id,
        )

        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    async def wait_and_register_task(
        self,
        task_id: str,
        user_id: str,
        sample_timestamps: str = DEFAULT_SAMPLE_TIMESTAMPS,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> Character:
        """Wait for a reference task to finish, then register the character.

        Transient provider outages while polling are tolerated until the
        wait bound is reached.

        Returns:
            The character with identity_status registered.

        Raises:
            TaskNotFound: Unknown task id.
            ValidationError: Task is not a character reference task linked to a character.
            Timeout: Task not terminal within max_wait_seconds (identity stays pending).
            ProviderError: Task failed, or registration was rejected.
            MissingReferenceVideo: Task completed without any result URL.
        """
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if task.type != TaskType.CHARACTER_REFERENCE:
            raise ValidationError(f"Task {task_id} is not a character reference task")
        if not task.character_id:
            raise ValidationError(f"Task {task_id} is not linked to a character")
        character_id = task.character_id

        self._begin_registration(character_id)
        try:
            return await self._wait_and_register(
                task_id, user_id, character_id, sample_timestamps, max_wait_seconds, poll_interval_seconds
            )
        finally:
            self._end_registration(character_id)

    async def _wait_and_register(
        self,
        task_id: str,
        user_id: str,
        character_id: str,
        sample_timestamps: str,
        max_wait_seconds: float | None,
        poll_interval_seconds: float | None,
    ) -> Character:

        max_wait = max_wait_seconds or self.max_wait_seconds
        interval = poll_interval_seconds or self.poll_interval_seconds
        max_polls = max(1, math.ceil(max_wait / interval))

        view: TaskStatusView | None = None
        for poll in range(1, max_polls + 1):
            try:
                view = await self.orchestrator.get_status(user_id, task_id)
            except ProviderUnavailable as e:
                log.warning("reference_poll_unavailable", task_id=task_id, poll=poll, error=str(e))
                view = None

            if view is not None and view.status == TaskStatus.COMPLETED.value:
                break
            if view is not None and view.status == TaskStatus.FAILED.value:
                error = view.error or "Reference video generation failed"
                await self.store.record_identity_error(character_id, error)
                raise ProviderError("Reference video task failed", detail=error)

            if poll < max_polls:
                await self._sleep(interval)
        else:
            waited = max_polls * interval
            await self.store.record_identity_error(
                character_id, f"Timed out waiting for reference task {task_id}"
            )
            raise Timeout(f"Reference task {task_id} did not finish", waited_seconds=waited)

        video_url = view.permanent_url or view.provider_url
        if not video_url:
            await self.store.record_identity_error(
                character_id, f"Reference task {task_id} completed without a video URL"
            )
            raise MissingReferenceVideo(character_id)

        return await self._register(character_id, video_url, sample_timestamps)

    async def register_character(
        self,
        user_id: str,
        character_id: str,
        video_url: str | None = None,
        sample_timestamps: str = DEFAULT_SAMPLE_TIMESTAMPS,
        force: bool = False,
    ) -> Character:
        """Register a character from an existing reference video.

        URL resolution order: explicit video_url, the character's stored
        reference URL, then the latest completed reference task (permanent
        URL preferred over provider URL).

        Raises:
            ValidationError: Unknown character.
            AuthorizationError: Caller does not own the character.
            MissingReferenceVideo: No URL could be resolved.
            ProviderError / ProviderUnavailable: Registration call failed.
        """
        character = await self._load_owned_character(user_id, character_id)

        resolved = video_url or character.reference_video_url
        if not resolved:
            latest = await self.store.latest_completed_reference(character_id)
            if latest is not None:
                resolved = latest.permanent_url or latest.provider_url
        if not resolved:
            raise MissingReferenceVideo(character_id)

        return await self._register(character_id, resolved, sample_timestamps, force=force)

    async def _register(
        self,
        character_id: str,
        video_url: str,
        sample_timestamps: str,
        force: bool = False,
    ) -> Character:
        character = await self.store.get_character(character_id)
        if character is None:
            raise ValidationError(f"Character {character_id} not found")

        if character.is_registered and not force:
            log.info(
                "character_already_registered",
                character_id=character_id,
                identity_code=character.provider_identity_code,
            )
            return await self.store.save_identity_reference(
                character_id, reference_video_url=video_url
            ) or character

        try:
            identity_code = await self.provider.register_character_identity(
                video_url, sample_timestamps
            )
        except (ProviderError, ProviderUnavailable) as e:
            detail = getattr(e, "detail", None) or str(e)
            log.warning(
                "character_registration_failed",
                character_id=character_id,
                error=detail,
                error_type=type(e).__name__,
            )
            await self.store.save_identity_reference(character_id, reference_video_url=video_url)
            await self.store.record_identity_error(character_id, detail)
            raise

        registered = await self.store.mark_identity_registered(character_id, identity_code, video_url)
        return registered or character

    async def set_identity_manually(
        self,
        user_id: str,
        character_id: str,
        identity_code: str,
        reference_video_url: str | None = None,
    ) -> Character:
        """Record an identity code obtained outside this service.

        The reference URL falls back to the character's stored URL, then to
        the latest completed reference task. No provider call is made.

        Raises:
            ValidationError: Blank identity code or unknown character.
            AuthorizationError: Caller does not own the character.
            MissingReferenceVideo: No reference URL could be resolved.
        """
        code = (identity_code or "").strip()
        if not code:
            raise ValidationError("identity_code is required")

        character = await self._load_owned_character(user_id, character_id)
        resolved = (reference_video_url or "").strip() or character.reference_video_url
        if not resolved:
            latest = await self.store.latest_completed_reference(character_id)
            resolved = latest.video_url if latest is not None else None
        if not resolved:
            raise MissingReferenceVideo(character_id)

        registered = await self.store.mark_identity_registered(character_id, code, resolved)
        log.info("character_identity_set_manually", character_id=character_id, identity_code=code)
        return registered or character

    async def get_identity(self, user_id: str, character_id: str) -> CharacterIdentityView:
        """Identity state plus the latest completed reference video."""
        character = await self._load_owned_character(user_id, character_id)
        latest = await self.store.latest_completed_reference(character_id)
        return CharacterIdentityView(
            character_id=character.id,
            identity_status=character.identity_status,
            provider_identity_code=character.provider_identity_code,
            reference_video_url=character.reference_video_url,
            identity_error=character.identity_error,
            latest_task_id=latest.id if latest is not None else None,
            latest_video_url=latest.video_url if latest is not None else None,
            latest_completed_at=latest.updated_at if latest is not None else None,
        )

    # ------------------------------------------------------------------
    # Registration on completion
    # ------------------------------------------------------------------

    def _begin_registration(self, character_id: str) -> None:
        self._registering[character_id] = self._registering.get(character_id, 0) + 1

    def _end_registration(self, character_id: str) -> None:
        self._registering[character_id] -= 1
        if self._registering[character_id] == 0:
            del self._registering[character_id]

    async def on_task_completed(self, task: GenerationTask) -> None:
        """Completion hook: adopt a finished reference video and register it.

        Stores the video URL (permanent before provider) on the character,
        then starts registration in the background unless the character is
        already registered or another registration for it is underway.
        """
        if task.type != TaskType.CHARACTER_REFERENCE or not task.character_id:
            return
        video_url = task.video_url
        if not video_url:
            log.warning("reference_completed_without_url", task_id=task.id)
            return

        character = await self.store.save_identity_reference(
            task.character_id, reference_video_url=video_url, identity_task_id=task.id
        )
        if character is None:
            log.warning("reference_character_missing", task_id=task.id, character_id=task.character_id)
            return
        if character.is_registered or character.id in self._registering:
            return

        self._track(
            asyncio.create_task(
                self._register_completed_reference(character.id, video_url),
                name=f"auto-register-character-{character.id}",
            )
        )
        log.info("auto_registration_started", character_id=character.id, task_id=task.id)

    async def _register_completed_reference(self, character_id: str, video_url: str) -> Character:
        self._begin_registration(character_id)
        try:
            return await self._register(character_id, video_url, DEFAULT_SAMPLE_TIMESTAMPS)
        finally:
            self._end_registration(character_id)

    # ------------------------------------------------------------------
    # Background registration
    # ------------------------------------------------------------------

    def _track(self, background: asyncio.Task) -> asyncio.Task:
        self._background.add(background)
        background.add_done_callback(self._on_background_done)
        return background

    async def _run_background_registration(
        self,
        task_id: str,
        user_id: str,
        sample_timestamps: str,
    ) -> Character:
        try:
            return await self.wait_and_register_task(task_id, user_id, sample_timestamps)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task = await self.store.get(task_id)
            if task is not None and task.character_id:
                await self.store.record_identity_error(task.character_id, str(e))
            raise

    def _on_background_done(self, background: asyncio.Task) -> None:
        self._background.discard(background)
        if background.cancelled():
            log.info("background_registration_cancelled", name=background.get_name())
            return
        exc = background.exception()
        if exc is not None:
            log.error(
                "background_registration_failed",
                name=background.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            log.info("background_registration_completed", name=background.get_name())

    def start_background_registration(
        self,
        task_id: str,
        user_id: str,
        sample_timestamps: str = DEFAULT_SAMPLE_TIMESTAMPS,
    ) -> asyncio.Task:
        """Run wait_and_register_task detached from the caller.

        Returns:
            The asyncio.Task handle; failures are recorded on the character
            and logged when the task finishes.
        """
        background = self._track(
            asyncio.create_task(
                self._run_background_registration(task_id, user_id, sample_timestamps),
                name=f"register-character-{task_id}",
            )
        )
        log.info("background_registration_started", task_id=task_id)
        return background

    async def shutdown(self) -> None:
        """Cancel outstanding background registrations."""
        pending = list(self._background)
        for background in pending:
            background.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
