"""Video generation task routes.

This module provides FastAPI routes over the task orchestrator:
- POST /api/v1/video-tasks                        - submit a generation request
- GET  /api/v1/video-tasks/{task_id}              - reconciled status of one task
- POST /api/v1/video-tasks/status/batch           - status of many tasks
- GET  /api/v1/video-tasks/projects/{project_id}  - list a project's tasks
- POST /api/v1/video-tasks/backfill               - repair Task Store drift
- POST /api/v1/video-tasks/sweep                  - scheduled reconciliation (admin)

Handlers are thin: identity comes from get_current_user, every decision is
made by the orchestrator, and orchestration errors are mapped to HTTP
status codes by the application-level exception handler.
"""

import structlog
from fastapi import APIRouter, Depends, Query, status

from app.config import get_sweep_batch_limit
from app.constants import SWEEP_DEFAULT_CONCURRENCY, SWEEP_MAX_CONCURRENCY
from app.deps import CurrentUser, get_current_user, get_orchestrator, require_sweep_access
from app.models import TaskType
from app.schemas.task import (
    BackfillRequest,
    BackfillResult,
    BatchStatusItem,
    BatchStatusRequest,
    GenerationRequest,
    SubmitResponse,
    SweepResult,
    TaskResponse,
    TaskStatusView,
)
from app.services.task_orchestrator import TaskOrchestrator

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/video-tasks", tags=["video-tasks"])


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def submit_generation(
    request: GenerationRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> SubmitResponse:
    """Submit a generation request; returns the created task ids.

    Returns:
        202 Accepted: Tasks created (some may already be failed if the provider rejected them)
        400 Bad Request: Missing project id, malformed request, too many sub-tasks
        403 Forbidden: Caller does not own the project
        503 Service Unavailable: Provider unreachable (nothing created)
    """
    task_ids = await orchestrator.submit(user.user_id, request, role=user.role)
    log.info("generation_submitted", user_id=user.user_id, task_ids=task_ids)
    return SubmitResponse(task_ids=task_ids)


@router.post("/status/batch", response_model=list[BatchStatusItem])
async def get_batch_status(
    body: BatchStatusRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> list[BatchStatusItem]:
    return await orchestrator.get_statuses(user.user_id, body.task_ids)


@router.post("/backfill", response_model=BackfillResult)
async def backfill_tasks(
    body: BackfillRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> BackfillResult:
    return await orchestrator.backfill(user.user_id, body.project_id, body.tasks)


@router.post(
    "/sweep",
    response_model=SweepResult,
    dependencies=[Depends(require_sweep_access)],
)
async def sweep_tasks(
    limit: int | None = Query(default=None, ge=1, le=200),
    concurrency: int = Query(default=SWEEP_DEFAULT_CONCURRENCY, ge=1, le=SWEEP_MAX_CONCURRENCY),
    task_type: TaskType | None = Query(default=None, alias="type"),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> SweepResult:
    """Reconcile non-terminal tasks and retry missing migrations.

    Intended for a cron trigger (Authorization: Bearer SWEEP_SECRET) or an admin.
    """
    return await orchestrator.sweep_pending(
        limit=limit or get_sweep_batch_limit(),
        task_type=task_type,
        concurrency=concurrency,
    )


@router.get("/projects/{project_id}", response_model=list[TaskResponse])
async def list_project_tasks(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> list[TaskResponse]:
    tasks = await orchestrator.list_tasks(user.user_id, project_id)
    return [TaskResponse.model_validate(task) for task in tasks]


@router.get("/{task_id}", response_model=TaskStatusView)
async def get_task_status(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskStatusView:
    """Reconciled status of a task.

    Returns:
        200 OK: status, progress, best available video_url
        404 Not Found: Unknown task
        503 Service Unavailable: Provider unreachable (stored state untouched)
    """
    return await orchestrator.get_status(user.user_id, task_id)
