"""
CTF Range Orchestrator - API Dependencies
Services are created in the application lifespan and read from app state
"""

from fastapi import Request

from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.application.join.service import JoinService
from ctfrange.application.reporting.service import ReportingService
from ctfrange.application.scoring.service import ScoringService
from ctfrange.application.sessions.service import SessionService
from ctfrange.core.config import Settings
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.realtime.publisher import EventPublisher


async def get_db_manager(request: Request) -> DatabaseManager:
    """Get database manager from app state."""
    return request.app.state.db


async def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_session_service(request: Request) -> SessionService:
    return request.app.state.sessions


async def get_pool_service(request: Request) -> ContainerPoolService:
    return request.app.state.pool


async def get_join_service(request: Request) -> JoinService:
    return request.app.state.join


async def get_scoring_service(request: Request) -> ScoringService:
    return request.app.state.scoring


async def get_reporting_service(request: Request) -> ReportingService:
    return request.app.state.reporting


async def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher
