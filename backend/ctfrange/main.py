"""
CTF Range Orchestrator - FastAPI Application Factory
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.application.join.service import JoinService
from ctfrange.application.reporting.service import ReportingService
from ctfrange.application.scoring.service import ScoringService
from ctfrange.application.sessions.service import SessionService
from ctfrange.core.config import Settings, get_settings
from ctfrange.core.logging import setup_logging
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.orchestrator.services.sandbox_docker import DockerRuntime
from ctfrange.infrastructure.realtime.publisher import EventPublisher
from ctfrange.interfaces.api.v1 import api_router
from ctfrange.interfaces.middleware.error_handler import ErrorHandlerMiddleware
from ctfrange.interfaces.middleware.request_context import RequestContextMiddleware

logger = structlog.get_logger(__name__)


def attach_services(
    app: FastAPI,
    settings: Settings,
    db: DatabaseManager,
    runtime: Optional[DockerRuntime] = None,
) -> None:
    """Wire application services onto app state."""
    runtime = runtime or DockerRuntime(settings)
    publisher = EventPublisher(settings.stream_heartbeat_seconds, settings.stream_queue_size)
    pool = ContainerPoolService(db, settings, runtime)
    sessions = SessionService(db, settings, pool)
    scoring = ScoringService(db, settings, runtime, publisher)

    app.state.db = db
    app.state.runtime = runtime
    app.state.publisher = publisher
    app.state.pool = pool
    app.state.sessions = sessions
    app.state.scoring = scoring
    app.state.join = JoinService(db, settings, sessions, pool, scoring)
    app.state.reporting = ReportingService(db, settings, scoring)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database and wire services; tear both down on shutdown."""
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, settings.log_format)
    logger.info("Range orchestrator starting", version=settings.app_version)

    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    if settings.database_create_schema:
        await db_manager.create_schema()

    attach_services(app, settings, db_manager)
    logger.info("Range orchestrator ready", public_host=settings.public_host)

    try:
        yield
    finally:
        logger.info("Range orchestrator stopping")
        # Streams first so no subscriber waits on a closed service
        await app.state.publisher.stop()
        await app.state.sessions.close()
        await app.state.runtime.close()
        await db_manager.disconnect()


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Overrides the environment-derived settings (tests)
    """
    settings = settings or get_settings()
    api_docs = settings.debug

    app = FastAPI(
        title=settings.app_name,
        description="Sessions, attacker sandboxes and live scoring for CTF training ranges",
        version=settings.app_version,
        docs_url="/api/docs" if api_docs else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if api_docs else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Outermost last: CORS, then request IDs, then error mapping
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(api_router, prefix="/api/v1")
    return app


def run() -> None:
    """Entry point for the ``ctfrange-api`` console script."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ctfrange.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
