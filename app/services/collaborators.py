"""Interfaces for the collaborators the orchestration core calls into.

Authorization, billing and object storage live outside this service. The
orchestrator and artifact migrator depend only on these Protocols; the
default implementations below cover ownership via the projects table and a
no-op credits ledger for deployments without billing.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import Project

log = structlog.get_logger(__name__)


@dataclass
class CreditResult:
    success: bool
    error: str | None = None


class OwnershipChecker(Protocol):
    async def check_ownership(self, project_id: str, user_id: str) -> bool: ...


class CreditsService(Protocol):
    async def calculate_cost(self, operation_kind: str, role: str) -> int: ...

    async def consume_credits(self, user_id: str, amount: int, reason: str) -> CreditResult: ...


class ObjectStorage(Protocol):
    async def put_object(self, key: str, data: bytes, content_type: str) -> str: ...


class DatabaseOwnershipChecker:
    """Resolve project ownership from the projects table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def check_ownership(self, project_id: str, user_id: str) -> bool:
        if not project_id or not user_id:
            return False
        async with self.session_factory() as db:
            owner = await db.scalar(select(Project.user_id).where(Project.id == project_id))
        return owner is not None and owner == user_id


class NoopCreditsService:
    """Credits ledger stand-in: everything is free and always succeeds."""

    async def calculate_cost(self, operation_kind: str, role: str) -> int:
        return 0

    async def consume_credits(self, user_id: str, amount: int, reason: str) -> CreditResult:
        log.debug("credits_not_configured", user_id=user_id, amount=amount, reason=reason)
        return CreditResult(success=True)
