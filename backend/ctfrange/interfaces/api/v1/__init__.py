"""
CTF Range Orchestrator - API v1 Router
Aggregates all API endpoints
"""

from fastapi import APIRouter

from ctfrange.interfaces.api.v1.containers import router as containers_router
from ctfrange.interfaces.api.v1.events import router as events_router
from ctfrange.interfaces.api.v1.health import router as health_router
from ctfrange.interfaces.api.v1.players import router as players_router
from ctfrange.interfaces.api.v1.sessions import router as sessions_router

api_router = APIRouter()

# Health check endpoints
api_router.include_router(
    health_router,
    prefix="/health",
    tags=["Health"],
)

# Session lifecycle and reporting
api_router.include_router(
    sessions_router,
    prefix="/sessions",
    tags=["Sessions"],
)

# Player join
api_router.include_router(
    players_router,
    prefix="/players",
    tags=["Players"],
)

# Gameplay events
api_router.include_router(
    events_router,
    prefix="/events",
    tags=["Events"],
)

# Container operations
api_router.include_router(
    containers_router,
    prefix="/containers",
    tags=["Containers"],
)
