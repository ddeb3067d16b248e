"""Pydantic schemas for generation task requests and responses.

This module defines Pydantic v2 schemas for submitting generation requests,
reporting task status, listing tasks, and backfilling the Task Store via the
FastAPI orchestration API.

Schema Naming Convention:
    - GenerationRequest: For POST requests (submitting new work)
    - TaskStatusView: Reconciled status of a single task
    - TaskResponse: For API responses (serializing from database)
    - BackfillDescriptor / BackfillResult: Task Store repair

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models import GenerationTask, TaskStatus, TaskType


class ShotSpec(BaseModel):
    """One shot of a scene to be packed into a provider job.

    Duration defaults to DEFAULT_SHOT_SECONDS when omitted.
    """

    shot_id: str = Field(..., min_length=1, description="Shot identifier")
    duration: int | None = Field(
        default=None,
        gt=0,
        description="Shot length in seconds (default: 5)",
        examples=[5],
    )
    prompt: str = Field(
        default="",
        description="Visual description of the shot",
        examples=["Wide shot, the hero walks into the rain-soaked market"],
    )
    camera: str | None = Field(default=None, description="Camera movement", examples=["Dolly in"])
    location: str | None = Field(default=None, description="Scene location")


class GenerationRequest(BaseModel):
    """Schema for submitting a generation request.

    Used in POST /api/v1/video-tasks. A request is scoped to a single shot
    (shot_id + duration), a set of shots (shots), or a character reference
    video (type=character_reference + character_id).

    Splitting:
        - shots are packed greedily into provider jobs of at most 13s each
        - a single duration above the provider maximum (15s) is split into
          ceil(duration / 15) sub-tasks
    """

    model_config = ConfigDict(from_attributes=True)

    project_id: str = Field(
        default="",
        description="Project owning the generated tasks (required)",
        examples=["proj_8c1f"],
    )
    type: TaskType = Field(
        default=TaskType.SHOT_GENERATION,
        description="Task type (shot_generation / character_reference)",
    )
    scene_id: str | None = Field(default=None, description="Scene linkage")
    shot_id: str | None = Field(default=None, description="Single-shot linkage")
    character_id: str | None = Field(default=None, description="Character linkage")
    shots: list[ShotSpec] = Field(default_factory=list, description="Shots to pack into jobs")
    prompt: str = Field(default="", description="Prompt (or shared prefix for shot scripts)")
    duration: int | None = Field(
        default=None,
        gt=0,
        description="Target duration in seconds for single-prompt requests",
        examples=[10],
    )
    model: str | None = Field(default=None, description="Provider model (default: sora-2)")
    size: str | None = Field(
        default=None,
        description="Resolution override (default derived from project aspect ratio)",
        examples=["1280x720"],
    )
    input_reference: str | None = Field(
        default=None,
        description="Public image URL used as first-frame reference",
    )


class SubmitResponse(BaseModel):
    """Task ids created by a submit call, in sub-task order."""

    task_ids: list[str]


class TaskStatusView(BaseModel):
    """Reconciled, externally visible state of one task.

    video_url is always permanent_url when set, else provider_url, else None.
    progress is 100 whenever status is completed.
    """

    model_config = ConfigDict(use_enum_values=True)

    task_id: str
    status: TaskStatus | str
    progress: int = Field(..., ge=0, le=100)
    video_url: str | None = None
    provider_url: str | None = None
    permanent_url: str | None = None
    error: str | None = None

    @classmethod
    def from_task(cls, task: GenerationTask) -> "TaskStatusView":
        return cls(
            task_id=task.id,
            status=task.status,
            progress=task.effective_progress,
            video_url=task.video_url,
            provider_url=task.provider_url,
            permanent_url=task.permanent_url,
            error=task.error_message,
        )


class BatchStatusRequest(BaseModel):
    task_ids: list[str] = Field(..., min_length=1, max_length=100)


class BatchStatusItem(BaseModel):
    """Per-task result of a batch status call; exactly one of view/error is set."""

    task_id: str
    view: TaskStatusView | None = None
    error: str | None = None
    error_type: str | None = None


class TaskResponse(BaseModel):
    """Schema for task API responses.

    Serializes GenerationTask rows for list endpoints.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_job_id: str | None
    user_id: str
    project_id: str
    scene_id: str | None
    shot_id: str | None
    character_id: str | None
    shot_ids: list[str] | None
    type: TaskType
    status: TaskStatus
    progress: int = Field(..., validation_alias=AliasChoices("effective_progress", "progress"))
    model: str
    prompt: str
    target_duration: int
    target_size: str
    point_cost: int
    video_url: str | None
    provider_url: str | None
    permanent_url: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


class BackfillDescriptor(BaseModel):
    """Externally known task reference (e.g. a task id embedded in a transcript)."""

    id: str = Field(..., min_length=1, max_length=64, description="Task id / provider job handle")
    scene_id: str | None = Field(default=None, max_length=64)
    shot_id: str | None = Field(default=None, max_length=64)
    character_id: str | None = Field(default=None, max_length=64)
    type: TaskType | None = Field(default=None, description="Defaults to shot_generation on insert")


class BackfillRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    tasks: list[BackfillDescriptor] = Field(default_factory=list)


class BackfillResult(BaseModel):
    inserted: int = 0
    updated: int = 0


class SweepResult(BaseModel):
    """Counters for one sweep over non-terminal tasks."""

    checked: int = 0
    updated: int = 0
    completed: int = 0
    failed: int = 0
    migrated: int = 0
    errors: int = 0
