# Data factories for test data generation

from tests.support.factories.task_factory import (
    CDN_BASE,
    CHARACTER_ID,
    OTHER_PROJECT_ID,
    OTHER_USER_ID,
    OWNER_ID,
    PORTRAIT_PROJECT_ID,
    PROJECT_ID,
    VIDEO_BYTES,
    create_character,
    create_project,
    create_task,
)

__all__ = [
    # Seed identifiers
    "OWNER_ID",
    "OTHER_USER_ID",
    "PROJECT_ID",
    "PORTRAIT_PROJECT_ID",
    "OTHER_PROJECT_ID",
    "CHARACTER_ID",
    "VIDEO_BYTES",
    "CDN_BASE",
    # Model factories
    "create_project",
    "create_character",
    "create_task",
]
