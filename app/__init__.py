"""Storyboard video task orchestration service.

This package contains the FastAPI service that submits video generation jobs
to an external provider, persists task state in PostgreSQL, reconciles
provider status, migrates finished artifacts to permanent object storage,
and registers reusable character identities.
"""

from app.database import async_session_factory
from app.models import Base, Character, GenerationTask, Project

__all__ = [
    "Base",
    "Character",
    "GenerationTask",
    "Project",
    "async_session_factory",
]
