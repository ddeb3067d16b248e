"""FastAPI dependencies: caller identity and service lookup.

Authentication is performed upstream (gateway/session layer). Requests reach
this service with the authenticated identity in headers:

    X-User-Id: authenticated user id (required)
    X-User-Role: "user" (default) or "admin"

Services are built once in the application lifespan and stored on app.state.
"""

import hmac
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from app.config import get_sweep_secret
from app.services.character_registrar import CharacterRegistrar
from app.services.task_orchestrator import TaskOrchestrator


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return CurrentUser(user_id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


def get_orchestrator(request: Request) -> TaskOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Video provider is not configured",
        )
    return orchestrator


def get_registrar(request: Request) -> CharacterRegistrar:
    registrar = getattr(request.app.state, "registrar", None)
    if registrar is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Video provider is not configured",
        )
    return registrar


async def require_sweep_access(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> None:
    """Allow scheduled sweeps (Bearer SWEEP_SECRET) or admin users."""
    secret = get_sweep_secret()
    if secret and authorization:
        token = authorization.removeprefix("Bearer ").strip()
        if hmac.compare_digest(token, secret):
            return
    if x_user_id and (x_user_role or "").strip().lower() == "admin":
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
