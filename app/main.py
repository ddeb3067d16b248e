"""FastAPI application for video generation task orchestration.

This is the web service entry point. The lifespan builds the provider
client, artifact migrator, Task Store, orchestrator and character registrar
once and stores them on app.state for the route dependencies.

Startup degrades gracefully: without provider credentials the task routes
answer 503; without object storage credentials migration is disabled and
callers receive provider URLs.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from app import database
from app.clients.object_storage import R2ObjectStorage
from app.clients.video_provider import VideoProviderClient
from app.config import get_provider_config, get_storage_config
from app.exceptions import ConfigurationError, OrchestrationError
from app.routes import characters, video_tasks
from app.routes.errors import orchestration_error_handler
from app.services.artifact_migrator import ArtifactMigrator
from app.services.character_registrar import CharacterRegistrar
from app.services.collaborators import DatabaseOwnershipChecker, NoopCreditsService
from app.services.task_orchestrator import TaskOrchestrator
from app.services.task_store import TaskStore
from app.utils.logging import configure_logging, get_logger

configure_logging()
log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of service clients.

    Startup:
    - Build provider client from VIDEO_PROVIDER_* settings
    - Build R2 storage + artifact migrator if storage is configured
    - Wire Task Store, orchestrator and registrar onto app.state

    Shutdown:
    - Cancel background registrations
    - Close HTTP clients and the database pool
    """
    provider = None
    migrator = None
    registrar = None
    app.state.orchestrator = None
    app.state.registrar = None

    session_factory = database.async_session_factory
    if session_factory is None:
        log.warning("database_not_configured", message="DATABASE_URL not set, task routes disabled")
    else:
        try:
            provider_config = get_provider_config()
        except ConfigurationError as e:
            log.warning("video_provider_disabled", message=str(e))
            provider_config = None

        if provider_config is not None:
            provider = VideoProviderClient(provider_config)

            try:
                storage_config = get_storage_config()
            except ConfigurationError as e:
                log.warning("artifact_migration_disabled", message=str(e))
                storage_config = None
            if storage_config is not None:
                migrator = ArtifactMigrator(R2ObjectStorage(storage_config), storage_config)

            store = TaskStore(session_factory)
            orchestrator = TaskOrchestrator(
                store=store,
                provider=provider,
                migrator=migrator,
                ownership=DatabaseOwnershipChecker(session_factory),
                credits=NoopCreditsService(),
                default_model=provider_config.default_model,
            )
            registrar = CharacterRegistrar(orchestrator, store, provider)
            app.state.orchestrator = orchestrator
            app.state.registrar = registrar
            log.info(
                "orchestrator_ready",
                provider=repr(provider_config),
                migration_enabled=migrator is not None,
            )

    yield  # Application runs here

    # Shutdown
    if registrar is not None:
        await registrar.shutdown()
    if migrator is not None:
        await migrator.close()
    if provider is not None:
        await provider.close()
    await database.dispose_engine()


app = FastAPI(
    title="Storyboard Video Task Orchestrator",
    description=(
        "Submits video generation jobs, reconciles provider status, and migrates "
        "finished videos to permanent storage"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(OrchestrationError, orchestration_error_handler)
app.include_router(video_tasks.router)
app.include_router(characters.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Health check endpoint for deployment validation.

    Returns:
        JSONResponse: Status and which optional subsystems are wired.
    """
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "storyboard-video-orchestrator",
            "orchestrator": getattr(app.state, "orchestrator", None) is not None,
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
