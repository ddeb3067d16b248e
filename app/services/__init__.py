"""Business logic services for the orchestration layer."""

from app.services.artifact_migrator import ArtifactMigrator, build_destination_key
from app.services.character_registrar import CharacterRegistrar
from app.services.collaborators import (
    CreditResult,
    DatabaseOwnershipChecker,
    NoopCreditsService,
)
from app.services.task_orchestrator import TaskOrchestrator
from app.services.task_store import TaskStore

__all__ = [
    "ArtifactMigrator",
    "CharacterRegistrar",
    "CreditResult",
    "DatabaseOwnershipChecker",
    "NoopCreditsService",
    "TaskOrchestrator",
    "TaskStore",
    "build_destination_key",
]
