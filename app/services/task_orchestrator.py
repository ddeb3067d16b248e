"""Task Orchestrator: lifecycle owner for provider generation tasks.

This module is the single place that decides a task's externally visible
status. It submits work to the provider, reconciles provider status into the
Task Store, and triggers artifact migration on completion.

Architecture:
- Reactive: every operation is invoked by a caller (route handler, client
  polling loop, scheduled sweep). There is no internal timer.
- Short transaction pattern: provider and storage calls happen between
  Task Store calls, never inside an open transaction.
- Validation and authorization run before any write.

State Machine:
    queued --submit ack--> processing --provider completed--> completed
                                      --provider failed-----> failed
    completed/failed are terminal and never polled again.

Request Splitting:
    Shots are packed greedily into chunks of at most 13s (CHUNK_BUDGET_SECONDS).
    Each chunk requests ceil(sum + 2) seconds, clamped to 10-15s.
    A single-prompt request longer than 15s is split into ceil(duration / 15)
    equal parts. At most MAX_SUBTASKS_PER_REQUEST sub-tasks per submit.

Migration:
    Eager: attempted as soon as completion is observed.
    Lazy: retried on later reads while permanent_url is still unset.
    At most one migration per task runs at a time in this process
    (per-task asyncio.Lock), and the final write is conditional on
    permanent_url still being NULL.

Usage:
    orchestrator = TaskOrchestrator(store, provider, migrator, ownership)
    task_ids = await orchestrator.submit(user_id, request)
    view = await orchestrator.get_status(user_id, task_ids[0])
"""

import asyncio
import json
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from app.clients.video_provider import VideoProviderClient
from app.config import DEFAULT_PROVIDER_MODEL
from app.constants import (
    CHUNK_BUDGET_SECONDS,
    CHUNK_PADDING_SECONDS,
    DEFAULT_REQUEST_SECONDS,
    DEFAULT_SHOT_SECONDS,
    LANDSCAPE_SIZE,
    MAX_SUBTASKS_PER_REQUEST,
    OPERATION_CHARACTER_REFERENCE,
    OPERATION_SHOT_GENERATION,
    PORTRAIT_ASPECT_RATIOS,
    PORTRAIT_SIZE,
    PROVIDER_MAX_JOB_SECONDS,
    PROVIDER_MIN_JOB_SECONDS,
    REFERENCE_VIDEO_SECONDS,
    SWEEP_DEFAULT_CONCURRENCY,
    SWEEP_MAX_CONCURRENCY,
)
from app.exceptions import (
    AuthorizationError,
    JobNotFound,
    MigrationError,
    OrchestrationError,
    ProviderError,
    ProviderUnavailable,
    TaskNotFound,
    ValidationError,
)
from app.models import Character, GenerationTask, TaskStatus, TaskType, new_task_id
from app.schemas.provider import ProviderJobSpec
from app.schemas.task import (
    BackfillDescriptor,
    BackfillResult,
    BatchStatusItem,
    GenerationRequest,
    ShotSpec,
    SweepResult,
    TaskStatusView,
)
from app.services.artifact_migrator import ArtifactMigrator
from app.services.collaborators import CreditsService, NoopCreditsService, OwnershipChecker
from app.services.task_store import TaskStore

log = structlog.get_logger(__name__)

# Called once with the stored row when a task is first seen completed
CompletionHook = Callable[[GenerationTask], Awaitable[None]]


@dataclass
class PlannedJob:
    """One provider job derived from a generation request."""

    seconds: int
    prompt: str | dict[str, Any]
    shot_ids: list[str] = field(default_factory=list)


def determine_resolution(aspect_ratio: str | None) -> str:
    """Pick the provider frame size for a project aspect ratio."""
    return PORTRAIT_SIZE if aspect_ratio in PORTRAIT_ASPECT_RATIOS else LANDSCAPE_SIZE


def chunk_request_seconds(content_seconds: float) -> int:
    """Seconds to request for a chunk: content + padding, clamped to 10-15."""
    requested = math.ceil(content_seconds + CHUNK_PADDING_SECONDS)
    return max(PROVIDER_MIN_JOB_SECONDS, min(PROVIDER_MAX_JOB_SECONDS, requested))


def pack_shots(shots: Sequence[ShotSpec], budget: int = CHUNK_BUDGET_SECONDS) -> list[list[ShotSpec]]:
    """Greedily pack ordered shots into chunks of at most budget seconds.

    A single shot longer than the budget gets a chunk of its own.

    Example:
        >>> [len(c) for c in pack_shots([ShotSpec(shot_id=s, duration=5) for s in "abcd"])]
        [2, 2]
    """
    chunks: list[list[ShotSpec]] = []
    current: list[ShotSpec] = []
    current_seconds = 0

    for shot in shots:
        shot_seconds = shot.duration or DEFAULT_SHOT_SECONDS
        if current and current_seconds + shot_seconds > budget:
            chunks.append(current)
            current = [shot]
            current_seconds = shot_seconds
        else:
            current.append(shot)
            current_seconds += shot_seconds

    if current:
        chunks.append(current)
    return chunks


def split_duration(duration: int, max_seconds: int = PROVIDER_MAX_JOB_SECONDS) -> list[int]:
    """Split a duration into ceil(duration / max_seconds) near-equal parts.

    Each part is clamped to the provider's 10-15s window.

    Example:
        >>> split_duration(20)
        [10, 10]
    """
    parts = max(1, math.ceil(duration / max_seconds))
    base, remainder = divmod(duration, parts)
    sizes = [base + (1 if i < remainder else 0) for i in range(parts)]
    return [max(PROVIDER_MIN_JOB_SECONDS, min(max_seconds, size)) for size in sizes]


def build_shot_script(
    shots: Sequence[ShotSpec],
    characters: Sequence[Character],
    direction: str = "",
) -> dict[str, Any]:
    """Structured prompt for a chunk of shots.

    Registered characters whose name appears in any shot prompt are listed
    under character_setting keyed by their provider identity handle.
    """
    combined = " ".join(shot.prompt for shot in shots)
    character_setting: dict[str, Any] = {}
    for character in characters:
        if character.provider_identity_code and character.name and character.name in combined:
            handle = f"@{character.provider_identity_code}"
            character_setting[handle] = {
                "name": character.name,
                "appearance": f"{character.appearance or ''} character code: {handle}".strip(),
            }

    script: dict[str, Any] = {
        "character_setting": character_setting,
        "shots": [
            {
                "action": shot.prompt[:50],
                "action_description": shot.prompt,
                "camera": shot.camera or "Static",
                "duration": shot.duration or DEFAULT_SHOT_SECONDS,
                "location": shot.location or "Unknown",
                "visual": shot.prompt,
            }
            for shot in shots
        ],
    }
    if direction:
        script["direction"] = direction
    return script


def canonical_status(status: str) -> TaskStatus | None:
    """TaskStatus for a normalized provider status, None if unrecognized."""
    try:
        return TaskStatus(status)
    except ValueError:
        return None


class TaskOrchestrator:
    """State-machine core for generation tasks.

    Args:
        store: Task Store (sole writer path for task rows).
        provider: Provider client.
        migrator: Artifact migrator (None disables migration; provider URLs are served).
        ownership: Authorization collaborator (project ownership).
        credits: Credits collaborator (defaults to NoopCreditsService).
        default_model: Model used when a request does not name one.
        max_subtasks: Cap on provider jobs created by one submit.
    """

    def __init__(
        self,
        store: TaskStore,
        provider: VideoProviderClient,
        migrator: ArtifactMigrator | None,
        ownership: OwnershipChecker,
        credits: CreditsService | None = None,
        default_model: str = DEFAULT_PROVIDER_MODEL,
        max_subtasks: int = MAX_SUBTASKS_PER_REQUEST,
    ):
        self.store = store
        self.provider = provider
        self.migrator = migrator
        self.ownership = ownership
        self.credits = credits or NoopCreditsService()
        self.default_model = default_model
        self.max_subtasks = max_subtasks
        self._migration_locks: dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each lock; the lock is dropped at zero
        self._migration_users: dict[str, int] = {}
        self._completion_hooks: list[CompletionHook] = []

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Register a callback run after a task is first observed completed.

        Hooks run after the migration attempt, so the row carries the best
        available URL. A failing hook is logged and does not affect the
        status returned to the caller.
        """
        self._completion_hooks.append(hook)

    async def _notify_completed(self, task: GenerationTask) -> None:
        for hook in self._completion_hooks:
            try:
                await hook(task)
            except Exception as e:
                log.error(
                    "completion_hook_failed",
                    task_id=task.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # ------------------------------------------------------------------
    # Boundary checks
    # ------------------------------------------------------------------

    async def _require_project_owner(self, user_id: str, project_id: str | None) -> None:
        if not project_id or not project_id.strip():
            raise ValidationError("project_id is required")
        if not user_id:
            raise AuthorizationError("Caller is not authenticated")
        if not await self.ownership.check_ownership(project_id, user_id):
            log.warning("project_access_denied", project_id=project_id, user_id=user_id)
            raise AuthorizationError(f"User does not own project {project_id}")

    async def _load_owned_task(self, user_id: str, task_id: str) -> GenerationTask:
        if not task_id:
            raise ValidationError("task_id is required")
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if task.user_id != user_id or not await self.ownership.check_ownership(
            task.project_id, user_id
        ):
            log.warning("task_access_denied", task_id=task_id, user_id=user_id)
            raise AuthorizationError(f"User does not own task {task_id}")
        return task

    def _validate_request(self, request: GenerationRequest) -> None:
        if not request.project_id or not request.project_id.strip():
            raise ValidationError("project_id is required")
        if request.type == TaskType.CHARACTER_REFERENCE and not request.character_id:
            raise ValidationError("character_id is required for character_reference tasks")
        if not request.shots and not request.prompt.strip():
            raise ValidationError("Either prompt or shots is required")
        if request.shots and any(not shot.prompt.strip() for shot in request.shots):
            raise ValidationError("Every shot needs a prompt")

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def plan_jobs(
        self,
        request: GenerationRequest,
        characters: Sequence[Character] = (),
    ) -> list[PlannedJob]:
        """Decompose a request into provider jobs.

        Raises:
            ValidationError: If the plan exceeds max_subtasks.
        """
        jobs: list[PlannedJob] = []

        if request.shots:
            for chunk in pack_shots(request.shots):
                content = sum(shot.duration or DEFAULT_SHOT_SECONDS for shot in chunk)
                jobs.append(
                    PlannedJob(
                        seconds=chunk_request_seconds(content),
                        prompt=build_shot_script(chunk, characters, request.prompt.strip()),
                        shot_ids=[shot.shot_id for shot in chunk],
                    )
                )
        else:
            default = (
                REFERENCE_VIDEO_SECONDS
                if request.type == TaskType.CHARACTER_REFERENCE
                else DEFAULT_REQUEST_SECONDS
            )
            parts = split_duration(request.duration or default)
            shot_ids = [request.shot_id] if request.shot_id else []
            for index, seconds in enumerate(parts, start=1):
                prompt = request.prompt.strip()
                if len(parts) > 1:
                    prompt = f"{prompt}\n(Part {index} of {len(parts)})"
                jobs.append(PlannedJob(seconds=seconds, prompt=prompt, shot_ids=list(shot_ids)))

        if len(jobs) > self.max_subtasks:
            raise ValidationError(
                f"Request would create {len(jobs)} provider jobs; the limit is {self.max_subtasks}"
            )
        return jobs

    async def submit(
        self,
        user_id: str,
        request: GenerationRequest,
        role: str = "user",
    ) -> list[str]:
        """Create tasks for a request and submit them to the provider.

        All rows are inserted as queued before the first provider call. A
        rejected sub-task is marked failed with the provider's detail while
        the others continue; nothing is rolled back.

        Args:
            user_id: Authenticated caller.
            request: Generation request.
            role: Caller role, passed to the credits collaborator.

        Returns:
            Task ids in sub-task order.

        Raises:
            ValidationError: Malformed request or too many sub-tasks (no writes).
            AuthorizationError: Caller does not own the project/character (no writes).
            ProviderUnavailable: Reachability probe failed (no writes).
        """
        self._validate_request(request)
        await self._require_project_owner(user_id, request.project_id)

        if request.character_id:
            character = await self.store.get_character(request.character_id)
            if character is None or character.project_id != request.project_id:
                raise ValidationError(
                    f"Character {request.character_id} not found in project {request.project_id}"
                )
            if character.user_id != user_id:
                raise AuthorizationError(f"User does not own character {request.character_id}")

        project = await self.store.get_project(request.project_id)
        characters = (
            await self.store.list_registered_characters(request.project_id) if request.shots else []
        )
        jobs = self.plan_jobs(request, characters)

        await self.provider.assert_reachable()

        model = request.model or self.default_model
        size = request.size or determine_resolution(project.aspect_ratio if project else None)
        operation = (
            OPERATION_CHARACTER_REFERENCE
            if request.type == TaskType.CHARACTER_REFERENCE
            else OPERATION_SHOT_GENERATION
        )
        cost = await self.credits.calculate_cost(operation, role)

        rows = [
            GenerationTask(
                id=new_task_id(),
                user_id=user_id,
                project_id=request.project_id,
                scene_id=request.scene_id,
                shot_id=job.shot_ids[0] if job.shot_ids else request.shot_id,
                shot_ids=job.shot_ids or None,
                character_id=request.character_id,
                type=request.type,
                model=model,
                prompt=(
                    json.dumps(job.prompt, ensure_ascii=False)
                    if isinstance(job.prompt, dict)
                    else job.prompt
                ),
                target_duration=job.seconds,
                target_size=size,
                point_cost=cost,
            )
            for job in jobs
        ]
        await self.store.insert_queued(rows)

        log.info(
            "generation_request_planned",
            user_id=user_id,
            project_id=request.project_id,
            type=request.type.value,
            subtasks=len(rows),
            task_ids=[row.id for row in rows],
        )

        for row, job in zip(rows, jobs):
            spec = ProviderJobSpec(
                model=model,
                prompt=job.prompt,
                seconds=job.seconds,
                size=size,
                input_reference=request.input_reference,
            )
            await self._submit_one(user_id, row, spec, cost, operation)

        return [row.id for row in rows]

    async def _submit_one(
        self,
        user_id: str,
        row: GenerationTask,
        spec: ProviderJobSpec,
        cost: int,
        operation: str,
    ) -> None:
        try:
            ack = await self.provider.submit_job(spec)
        except ProviderError as e:
            log.warning(
                "subtask_rejected",
                task_id=row.id,
                status_code=e.status_code,
                detail=e.detail,
            )
            await self.store.mark_failed(row.id, e.detail or str(e))
            return
        except ProviderUnavailable as e:
            # No job exists on the provider side; a queued row would never be polled.
            log.warning("subtask_submit_unavailable", task_id=row.id, error=str(e))
            await self.store.mark_failed(row.id, f"Provider unavailable during submission: {e}")
            return

        ack_status = canonical_status(ack.status)
        if ack_status == TaskStatus.FAILED:
            await self.store.mark_submitted(row.id, ack.job_id, TaskStatus.PROCESSING)
            await self.store.mark_failed(row.id, "Provider reported failure on submission")
            return

        await self.store.mark_submitted(
            row.id,
            ack.job_id,
            TaskStatus.COMPLETED if ack_status == TaskStatus.COMPLETED else TaskStatus.PROCESSING,
        )
        log.info("subtask_submitted", task_id=row.id, provider_job_id=ack.job_id)

        if cost > 0:
            await self._consume_credits(user_id, cost, f"{operation}:{row.id}", row.id)

    async def _consume_credits(self, user_id: str, amount: int, reason: str, task_id: str) -> None:
        # Fail-open: the provider job already exists and is never rolled back.
        try:
            result = await self.credits.consume_credits(user_id, amount, reason)
        except Exception as e:
            log.error(
                "credits_consume_error",
                task_id=task_id,
                user_id=user_id,
                amount=amount,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if not result.success:
            log.error(
                "credits_consume_failed",
                task_id=task_id,
                user_id=user_id,
                amount=amount,
                error=result.error,
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, user_id: str, task_id: str) -> TaskStatusView:
        """Reconciled status of one task.

        Terminal tasks are answered from the Task Store without any provider
        call. A completed task still missing its permanent URL gets another
        migration attempt.

        Raises:
            TaskNotFound: Unknown task id.
            AuthorizationError: Caller does not own the task.
            ProviderUnavailable: Probe failed; stored row is left untouched.
            ProviderError: Provider status call failed; stored row is left untouched.
        """
        task = await self._load_owned_task(user_id, task_id)

        if task.is_terminal:
            if task.status == TaskStatus.COMPLETED and not task.permanent_url:
                task = await self.reconcile_completion(task.id)
            return TaskStatusView.from_task(task)

        if not task.provider_job_id:
            return TaskStatusView.from_task(task)

        await self.provider.assert_reachable()
        return await self._refresh(task)

    async def _refresh(self, task: GenerationTask) -> TaskStatusView:
        """Fetch live provider status for a non-terminal task and merge it."""
        try:
            live = await self.provider.get_job_status(task.provider_job_id)
        except JobNotFound as e:
            log.warning("provider_job_not_found", task_id=task.id, job_id=task.provider_job_id)
            failed = await self.store.mark_failed(task.id, e.detail or str(e))
            return TaskStatusView.from_task(failed or task)

        status = canonical_status(live.status)
        if status is None:
            log.warning(
                "unknown_provider_status",
                task_id=task.id,
                provider_status=live.status,
            )

        updated, changed = await self.store.apply_provider_status(
            task.id,
            status,
            live.progress,
            live.result_url,
            live.error,
        )
        if updated is None:
            raise TaskNotFound(task.id)
        if changed:
            log.info(
                "task_status_reconciled",
                task_id=task.id,
                status=updated.status.value,
                progress=updated.effective_progress,
            )

        first_completion = (
            changed
            and task.status != TaskStatus.COMPLETED
            and updated.status == TaskStatus.COMPLETED
        )
        if updated.status == TaskStatus.COMPLETED and not updated.permanent_url:
            updated = await self.reconcile_completion(updated.id)
        if first_completion:
            await self._notify_completed(updated)

        view = TaskStatusView.from_task(updated)
        if status is None and not updated.is_terminal:
            view.status = live.status
        return view

    async def get_statuses(self, user_id: str, task_ids: Sequence[str]) -> list[BatchStatusItem]:
        """Batch variant of get_status; per-task errors are reported inline."""

        async def _one(task_id: str) -> BatchStatusItem:
            try:
                view = await self.get_status(user_id, task_id)
            except OrchestrationError as e:
                return BatchStatusItem(task_id=task_id, error=str(e), error_type=type(e).__name__)
            return BatchStatusItem(task_id=task_id, view=view)

        unique_ids = list(dict.fromkeys(task_ids))
        return list(await asyncio.gather(*[_one(task_id) for task_id in unique_ids]))

    # ------------------------------------------------------------------
    # Completion / migration
    # ------------------------------------------------------------------

    async def reconcile_completion(self, task_id: str) -> GenerationTask:
        """Migrate a completed task's artifact to permanent storage once.

        No-op when permanent_url is already set, the task is not completed,
        or there is no provider URL. Migration failures are logged and the
        task keeps status completed with its provider URL as fallback.

        Returns:
            The task row as stored after the attempt.
        """
        lock = self._migration_locks.setdefault(task_id, asyncio.Lock())
        self._migration_users[task_id] = self._migration_users.get(task_id, 0) + 1
        try:
            async with lock:
                task = await self.store.get(task_id)
                if task is None:
                    raise TaskNotFound(task_id)
                if (
                    self.migrator is None
                    or task.status != TaskStatus.COMPLETED
                    or task.permanent_url
                    or not task.provider_url
                ):
                    return task

                try:
                    permanent_url = await self.migrator.migrate_task(task)
                except MigrationError as e:
                    log.warning(
                        "artifact_migration_failed",
                        task_id=task_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    return task

                written = await self.store.set_permanent_url(task_id, permanent_url)
                if not written:
                    log.info("permanent_url_already_set", task_id=task_id)
                return await self.store.get(task_id) or task
        finally:
            self._migration_users[task_id] -= 1
            if self._migration_users[task_id] == 0:
                del self._migration_users[task_id]
                self._migration_locks.pop(task_id, None)

    # ------------------------------------------------------------------
    # Backfill / listing / sweep
    # ------------------------------------------------------------------

    async def backfill(
        self,
        user_id: str,
        project_id: str,
        descriptors: Sequence[BackfillDescriptor],
    ) -> BackfillResult:
        """Repair drift between externally known task ids and the Task Store.

        Raises:
            ValidationError: Missing project id.
            AuthorizationError: Caller does not own the project (no writes).
        """
        await self._require_project_owner(user_id, project_id)
        return await self.store.backfill(user_id, project_id, descriptors)

    async def list_tasks(self, user_id: str, project_id: str) -> list[GenerationTask]:
        await self._require_project_owner(user_id, project_id)
        return list(await self.store.list_by_project(project_id))

    async def sweep_pending(
        self,
        limit: int = 50,
        task_type: TaskType | None = None,
        concurrency: int = SWEEP_DEFAULT_CONCURRENCY,
    ) -> SweepResult:
        """Reconcile non-terminal tasks and retry missing migrations.

        Used by scheduled repair runs; not scoped to a user. One probe up
        front, then bounded concurrent reconciliation.

        Raises:
            ProviderUnavailable: Probe failed before any task was touched.
        """
        limit = max(1, min(200, limit))
        concurrency = max(1, min(SWEEP_MAX_CONCURRENCY, concurrency))
        result = SweepResult()

        tasks = await self.store.list_pending(limit, task_type)
        if not tasks:
            return result

        await self.provider.assert_reachable()
        semaphore = asyncio.Semaphore(concurrency)

        async def _one(task: GenerationTask) -> None:
            async with semaphore:
                result.checked += 1
                try:
                    if task.status == TaskStatus.COMPLETED:
                        updated = await self.reconcile_completion(task.id)
                        if updated.permanent_url:
                            result.migrated += 1
                        return

                    had_permanent = bool(task.permanent_url)
                    view = await self._refresh(task)
                except OrchestrationError as e:
                    result.errors += 1
                    log.warning(
                        "sweep_task_failed",
                        task_id=task.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    return

                if view.status != task.status.value or view.progress != task.progress:
                    result.updated += 1
                if view.status == TaskStatus.COMPLETED.value:
                    result.completed += 1
                    if view.permanent_url and not had_permanent:
                        result.migrated += 1
                elif view.status == TaskStatus.FAILED.value:
                    result.failed += 1

        await asyncio.gather(*[_one(task) for task in tasks])
        log.info("sweep_completed", **result.model_dump())
        return result
