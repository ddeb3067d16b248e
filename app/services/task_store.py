"""Task Store: durable persistence for generation tasks and character identities.

This module is pure persistence. It decides nothing about when to poll or
migrate; the orchestrator and registrar call it with already-decided values.

Architecture:
- One short transaction per call (no network I/O while a transaction is open)
- Reconciliation writes happen only when status, progress or provider_url
  actually changed, so frequent polling does not amplify writes
- permanent_url is written with a conditional UPDATE (only while still NULL)
- Backfill patches only NULL linkage fields, never overwriting populated ones

Usage:
    store = TaskStore(async_session_factory)
    task = await store.get(task_id)
"""

from collections.abc import Iterable, Sequence
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import DEFAULT_PROVIDER_MODEL
from app.models import (
    ACTIVE_STATUSES,
    Character,
    GenerationTask,
    Project,
    TaskStatus,
    TaskType,
    utcnow,
)
from app.schemas.task import BackfillDescriptor, BackfillResult

log = structlog.get_logger(__name__)

BACKFILL_PATCHABLE_FIELDS = ("scene_id", "shot_id", "character_id")


class TaskStore:
    """Async persistence layer over generation_tasks, characters and projects.

    Args:
        session_factory: async_sessionmaker configured with expire_on_commit=False
            so returned rows stay readable after their transaction closes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, task_id: str) -> GenerationTask | None:
        async with self.session_factory() as db:
            return await db.get(GenerationTask, task_id)

    async def get_many(self, task_ids: Iterable[str]) -> dict[str, GenerationTask]:
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        async with self.session_factory() as db:
            result = await db.execute(select(GenerationTask).where(GenerationTask.id.in_(ids)))
            return {task.id: task for task in result.scalars().all()}

    async def list_by_project(self, project_id: str) -> Sequence[GenerationTask]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationTask)
                .where(GenerationTask.project_id == project_id)
                .order_by(GenerationTask.created_at.desc(), GenerationTask.id)
            )
            return result.scalars().all()

    async def list_by_character(self, character_id: str) -> Sequence[GenerationTask]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationTask)
                .where(GenerationTask.character_id == character_id)
                .order_by(GenerationTask.created_at.desc(), GenerationTask.id)
            )
            return result.scalars().all()

    async def latest_completed_reference(self, character_id: str) -> GenerationTask | None:
        """Most recently completed character_reference task for a character."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationTask)
                .where(
                    GenerationTask.character_id == character_id,
                    GenerationTask.type == TaskType.CHARACTER_REFERENCE,
                    GenerationTask.status == TaskStatus.COMPLETED,
                )
                .order_by(GenerationTask.updated_at.desc(), GenerationTask.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_pending(
        self,
        limit: int,
        task_type: TaskType | None = None,
    ) -> Sequence[GenerationTask]:
        """Tasks a sweep should reconcile, least recently updated first.

        Includes non-terminal tasks that already have a provider job handle
        and completed tasks still missing a permanent URL.
        """
        conditions: list[Any] = [
            or_(
                GenerationTask.status.in_(ACTIVE_STATUSES)
                & GenerationTask.provider_job_id.is_not(None),
                (GenerationTask.status == TaskStatus.COMPLETED)
                & GenerationTask.permanent_url.is_(None)
                & GenerationTask.provider_url.is_not(None),
            )
        ]
        if task_type is not None:
            conditions.append(GenerationTask.type == task_type)

        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationTask)
                .where(*conditions)
                .order_by(GenerationTask.updated_at.asc())
                .limit(limit)
            )
            return result.scalars().all()

    async def snapshot(self, task_id: str) -> dict[str, Any] | None:
        """Column values of a task row, or None if absent."""
        task = await self.get(task_id)
        return task.to_snapshot() if task else None

    async def get_project(self, project_id: str) -> Project | None:
        async with self.session_factory() as db:
            return await db.get(Project, project_id)

    async def get_character(self, character_id: str) -> Character | None:
        async with self.session_factory() as db:
            return await db.get(Character, character_id)

    async def list_registered_characters(self, project_id: str) -> Sequence[Character]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Character)
                .where(
                    Character.project_id == project_id,
                    Character.provider_identity_code.is_not(None),
                )
                .order_by(Character.name)
            )
            return result.scalars().all()

    # ------------------------------------------------------------------
    # Task writes
    # ------------------------------------------------------------------

    async def insert_queued(self, tasks: Sequence[GenerationTask]) -> list[GenerationTask]:
        """Insert new rows in the queued state, all in one transaction."""
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            for task in tasks:
                task.status = TaskStatus.QUEUED
                task.progress = 0
                task.created_at = now
                task.updated_at = now
                db.add(task)

        log.info(
            "tasks_inserted",
            task_ids=[task.id for task in tasks],
            project_id=tasks[0].project_id if tasks else None,
        )
        return list(tasks)

    async def mark_submitted(
        self,
        task_id: str,
        provider_job_id: str,
        status: TaskStatus = TaskStatus.PROCESSING,
    ) -> GenerationTask:
        """Record the provider's job handle after a submission was accepted."""
        async with self.session_factory() as db, db.begin():
            task = await db.get(GenerationTask, task_id)
            if task is None:
                raise LookupError(f"Task {task_id} vanished before submit acknowledgement")
            task.provider_job_id = provider_job_id
            if not task.is_terminal:
                task.status = status
                if status == TaskStatus.COMPLETED:
                    task.progress = 100
            task.updated_at = utcnow()
        return task

    async def mark_failed(self, task_id: str, error: str | None) -> GenerationTask | None:
        """Move a non-terminal task to failed, preserving the error detail.

        Returns:
            The task row, or None if it does not exist. Terminal rows are
            returned untouched.
        """
        async with self.session_factory() as db, db.begin():
            task = await db.get(GenerationTask, task_id)
            if task is None:
                return None
            if task.is_terminal:
                return task
            task.status = TaskStatus.FAILED
            task.error_message = error
            task.updated_at = utcnow()

        log.info("task_marked_failed", task_id=task_id, error=error)
        return task

    async def apply_provider_status(
        self,
        task_id: str,
        status: TaskStatus | None,
        progress: int,
        provider_url: str | None,
        error: str | None = None,
    ) -> tuple[GenerationTask | None, bool]:
        """Merge a provider status observation into the stored row.

        Writes only when status, progress or provider_url differ from the
        stored values. Terminal rows are never modified. A backward status
        (e.g. processing → queued) is ignored rather than rejected.

        Args:
            status: Canonical status, or None when the provider reported an
                unrecognized status (progress/URL are still merged).
            progress: Provider progress 0-100 (forced to 100 on completed).
            provider_url: Transient result URL, if the provider returned one.
            error: Provider error detail, stored when status is failed.

        Returns:
            Tuple of (task row or None if missing, whether a write happened).
        """
        async with self.session_factory() as db, db.begin():
            task = await db.get(GenerationTask, task_id)
            if task is None:
                return None, False
            if task.is_terminal:
                return task, False

            changed = False

            if status is not None and status != task.status:
                if status in GenerationTask.VALID_TRANSITIONS[task.status]:
                    task.status = status
                    changed = True
                else:
                    log.warning(
                        "ignored_backward_status",
                        task_id=task_id,
                        stored_status=task.status.value,
                        provider_status=status.value,
                    )

            new_progress = 100 if task.status == TaskStatus.COMPLETED else max(0, min(100, progress))
            if new_progress != task.progress:
                task.progress = new_progress
                changed = True

            if provider_url and provider_url != task.provider_url:
                task.provider_url = provider_url
                changed = True

            if changed:
                if task.status == TaskStatus.FAILED and error:
                    task.error_message = error
                task.updated_at = utcnow()
            # No-op observations leave the row (and updated_at) untouched.

        return task, changed

    async def set_permanent_url(self, task_id: str, permanent_url: str) -> bool:
        """Persist the migrated URL if none is stored yet.

        Only applies to completed tasks whose permanent_url is still NULL.

        Returns:
            True if this call wrote the URL, False if another writer won or
            the task is not eligible.
        """
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(GenerationTask)
                .where(
                    GenerationTask.id == task_id,
                    GenerationTask.permanent_url.is_(None),
                    GenerationTask.status == TaskStatus.COMPLETED,
                )
                .values(permanent_url=permanent_url, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            written = result.rowcount == 1

        log.info("permanent_url_set", task_id=task_id, written=written)
        return written

    async def backfill(
        self,
        user_id: str,
        project_id: str,
        descriptors: Sequence[BackfillDescriptor],
    ) -> BackfillResult:
        """Insert placeholder rows for unknown ids and patch missing linkage.

        Idempotent: a second call with the same descriptors writes nothing.
        Existing rows owned by another project are left alone. When a
        concurrent writer inserts one of the ids first, the whole batch is
        re-applied once against the rows now present.
        """
        merged: dict[str, BackfillDescriptor] = {}
        for descriptor in descriptors:
            merged.setdefault(descriptor.id, descriptor)

        if not merged:
            return BackfillResult()

        try:
            return await self._backfill_once(user_id, project_id, merged)
        except IntegrityError:
            log.info("backfill_insert_conflict", project_id=project_id, task_ids=list(merged))
            return await self._backfill_once(user_id, project_id, merged)

    async def _load_existing(self, db: AsyncSession, task_ids: list[str]) -> dict[str, GenerationTask]:
        rows = await db.execute(select(GenerationTask).where(GenerationTask.id.in_(task_ids)))
        return {task.id: task for task in rows.scalars().all()}

    async def _backfill_once(
        self,
        user_id: str,
        project_id: str,
        merged: dict[str, BackfillDescriptor],
    ) -> BackfillResult:
        result = BackfillResult()
        async with self.session_factory() as db, db.begin():
            existing = await self._load_existing(db, list(merged))
            now = utcnow()

            for task_id, descriptor in merged.items():
                task = existing.get(task_id)

                if task is None:
                    db.add(
                        GenerationTask(
                            id=task_id,
                            provider_job_id=task_id,
                            user_id=user_id,
                            project_id=project_id,
                            scene_id=descriptor.scene_id,
                            shot_id=descriptor.shot_id,
                            character_id=descriptor.character_id,
                            shot_ids=[descriptor.shot_id] if descriptor.shot_id else None,
                            type=descriptor.type or TaskType.SHOT_GENERATION,
                            status=TaskStatus.QUEUED,
                            progress=0,
                            model=DEFAULT_PROVIDER_MODEL,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    result.inserted += 1
                    continue

                if task.project_id != project_id or task.user_id != user_id:
                    log.warning(
                        "backfill_skipped_foreign_row",
                        task_id=task_id,
                        project_id=project_id,
                        row_project_id=task.project_id,
                    )
                    continue

                patched = False
                for field_name in BACKFILL_PATCHABLE_FIELDS:
                    value = getattr(descriptor, field_name)
                    if value and getattr(task, field_name) is None:
                        setattr(task, field_name, value)
                        patched = True
                if patched:
                    task.updated_at = now
                    result.updated += 1

        log.info(
            "tasks_backfilled",
            project_id=project_id,
            inserted=result.inserted,
            updated=result.updated,
        )
        return result

    # ------------------------------------------------------------------
    # Character identity writes (last-write-wins, no locking)
    # ------------------------------------------------------------------

    async def save_identity_reference(
        self,
        character_id: str,
        reference_video_url: str | None = None,
        identity_task_id: str | None = None,
    ) -> Character | None:
        async with self.session_factory() as db, db.begin():
            character = await db.get(Character, character_id)
            if character is None:
                return None
            if reference_video_url:
                character.reference_video_url = reference_video_url
            if identity_task_id:
                character.identity_task_id = identity_task_id
        return character

    async def mark_identity_registered(
        self,
        character_id: str,
        identity_code: str,
        reference_video_url: str,
    ) -> Character | None:
        async with self.session_factory() as db, db.begin():
            character = await db.get(Character, character_id)
            if character is None:
                return None
            character.mark_registered(identity_code, reference_video_url)

        log.info(
            "character_identity_registered",
            character_id=character_id,
            identity_code=identity_code,
        )
        return character

    async def record_identity_error(self, character_id: str, error: str) -> Character | None:
        """Store the last registration failure; identity status is not changed."""
        async with self.session_factory() as db, db.begin():
            character = await db.get(Character, character_id)
            if character is None:
                return None
            character.identity_error = error
        return character
