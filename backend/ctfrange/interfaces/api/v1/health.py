"""
CTF Range Orchestrator - Health Check Endpoints
"""

import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ctfrange.core.config import Settings
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.interfaces.api.v1.dependencies import get_app_settings, get_db_manager

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any]


@router.get(
    "",
    response_model=HealthStatus,
    summary="Health Check",
    description="Liveness and database connectivity",
)
async def health_check(
    db: Annotated[DatabaseManager, Depends(get_db_manager)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> HealthStatus:
    start = time.monotonic()
    db_health = await db.health_check()
    db_latency = (time.monotonic() - start) * 1000

    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    if overall_status != "healthy":
        logger.warning("Health check degraded", database=db_health)

    return HealthStatus(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.app_version,
        checks={"database": {**db_health, "latency_ms": round(db_latency, 2)}},
    )
