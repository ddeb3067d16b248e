"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the orchestration layer.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    projects          - ownership anchor for tasks and characters
    characters        - creative asset plus its provider identity fields
    generation_tasks  - durable record of every provider generation job

Projects and characters are owned by the wider application; only the
columns the orchestration core reads or writes are mapped here.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from app.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    """Generate an application-assigned task id (32 hex chars)."""
    return uuid.uuid4().hex


class TaskStatus(enum.Enum):
    """Canonical lifecycle of a generation task.

    Flow:
        queued → processing → completed | failed

    Provider states such as "running" or "generating" normalize to
    processing (see PROVIDER_STATUS_MAP). completed and failed are
    terminal: once reached, the provider is never polled again.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
ACTIVE_STATUSES = [TaskStatus.QUEUED, TaskStatus.PROCESSING]


class TaskType(enum.Enum):
    """What a generation task produces."""

    SHOT_GENERATION = "shot_generation"
    CHARACTER_REFERENCE = "character_reference"


class IdentityStatus(enum.Enum):
    """Provider identity registration state for a character.

    pending: no identity code yet (never attempted, in flight, or failed and retryable)
    registered: provider_identity_code is set
    """

    PENDING = "pending"
    REGISTERED = "registered"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Project(Base):
    """Storyboard project owned by a single user.

    Attributes:
        id: Project identifier (assigned by the application).
        user_id: Owning user; the only caller allowed to touch its tasks.
        name: Display name.
        aspect_ratio: Frame ratio (e.g. "16:9", "9:16"), drives default resolution.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    aspect_ratio: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="16:9",
        server_default="16:9",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id!r}, user_id={self.user_id!r})>"


class Character(Base):
    """Character asset with its provider identity.

    The identity fields hold the reusable provider handle obtained by
    registering a short reference video. Registration writes are
    last-write-wins; there is no locking.

    Attributes:
        reference_images: Public image URLs used to generate the reference video.
        reference_video_url: Video used (or to be used) for identity registration.
        provider_identity_code: Provider-issued handle (e.g. "fmraejvq"), set once
            per successful registration.
        identity_status: pending until the provider confirms registration.
        identity_task_id: Most recent character_reference task for this character.
        identity_error: Last registration failure detail (cleared on success).
    """

    __tablename__ = "characters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    appearance: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_images: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    reference_video_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    provider_identity_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    identity_status: Mapped[IdentityStatus] = mapped_column(
        Enum(
            IdentityStatus,
            native_enum=True,
            name="identitystatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=IdentityStatus.PENDING,
    )
    identity_task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    identity_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    def mark_registered(self, identity_code: str, reference_video_url: str) -> None:
        """Record a successful provider registration.

        Raises:
            ValueError: If the identity code or reference video URL is empty.
        """
        if not reference_video_url or not reference_video_url.strip():
            raise ValueError("Registration requires a non-empty reference video URL")
        if not identity_code or not identity_code.strip():
            raise ValueError("Registration requires a non-empty identity code")

        self.reference_video_url = reference_video_url
        self.provider_identity_code = identity_code.strip()
        self.identity_status = IdentityStatus.REGISTERED
        self.identity_error = None

    @property
    def is_registered(self) -> bool:
        return (
            self.identity_status == IdentityStatus.REGISTERED
            and bool(self.provider_identity_code)
        )

    def __repr__(self) -> str:
        return (
            f"<Character(id={self.id!r}, name={self.name!r}, "
            f"identity_status={self.identity_status.value if self.identity_status else None!r})>"
        )


class GenerationTask(Base):
    """A single provider generation job tracked from submission to terminal state.

    Lifecycle:
        Inserted as queued before the provider is called. The provider's job
        handle is stored in provider_job_id once the submission is acknowledged;
        a row without a job handle is never polled. Every reconciliation that
        changes status, progress or provider_url bumps updated_at.

    Result URLs:
        provider_url: transient provider-hosted URL, refreshed across polls.
        permanent_url: object storage URL written once by artifact migration,
            only after status is completed, never cleared.

    Invariants:
        - user_id and project_id are immutable once set.
        - status moves forward only (VALID_TRANSITIONS).
        - progress stays within 0-100; effective_progress reports 100 once completed.

    Indexes:
        - ix_generation_tasks_project_id_created_at: project listing
        - ix_generation_tasks_character_id_type_status: latest reference lookup
        - ix_generation_tasks_status: sweep of non-terminal tasks
    """

    __tablename__ = "generation_tasks"

    # Forward-only state machine; same-state assignment is always allowed.
    # queued may jump straight to completed/failed when the provider's first
    # answer is already terminal.
    VALID_TRANSITIONS = {
        TaskStatus.QUEUED: [TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED],
        TaskStatus.PROCESSING: [TaskStatus.COMPLETED, TaskStatus.FAILED],
        TaskStatus.COMPLETED: [],  # Terminal
        TaskStatus.FAILED: [],  # Terminal
    }

    IMMUTABLE_FIELDS = ("user_id", "project_id")

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_task_id)
    provider_job_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        index=True,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    scene_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    character_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Every shot packed into this job (shot_id holds the first one)
    shot_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    type: Mapped[TaskType] = mapped_column(
        Enum(
            TaskType,
            native_enum=True,
            name="tasktype",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=TaskType.SHOT_GENERATION,
    )
    status: Mapped[TaskStatus] = mapped_column(
        Enum(
            TaskStatus,
            native_enum=True,
            name="taskstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=TaskStatus.QUEUED,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    model: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_size: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    point_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    provider_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    permanent_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_generation_tasks_progress"),
        Index("ix_generation_tasks_project_id_created_at", "project_id", "created_at"),
        Index(
            "ix_generation_tasks_character_id_type_status",
            "character_id",
            "type",
            "status",
        ),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: TaskStatus) -> TaskStatus:
        """Validate status transition before it reaches the database.

        Raises:
            InvalidStateTransitionError: If value is not reachable from the
                current status according to VALID_TRANSITIONS.

        Note:
            Validation is skipped on initial creation (status is None).
        """
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @validates("user_id", "project_id")
    def validate_ownership_immutable(self, key: str, value: str) -> str:
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"{key} is immutable once set (was {current!r})")
        return value

    @validates("progress")
    def validate_progress(self, key: str, value: int | None) -> int:
        return max(0, min(100, int(value or 0)))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def effective_progress(self) -> int:
        """Progress as reported to callers (100 once completed)."""
        if self.status == TaskStatus.COMPLETED:
            return 100
        return self.progress or 0

    @property
    def video_url(self) -> str | None:
        """Best available result URL: permanent, else transient, else None."""
        return self.permanent_url or self.provider_url or None

    def to_snapshot(self) -> dict[str, Any]:
        """Return all column values keyed by column name."""
        return {column.key: getattr(self, column.key) for column in self.__table__.columns}

    def __repr__(self) -> str:
        return (
            f"<GenerationTask(id={self.id!r}, type={self.type.value if self.type else None!r}, "
            f"status={self.status.value if self.status else None!r}, progress={self.progress})>"
        )
