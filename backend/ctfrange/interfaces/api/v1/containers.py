"""
CTF Range Orchestrator - Container API Endpoints

- POST /containers/attacker          - Extra attacker for the current session
- POST /containers/{kind}/{action}   - Label-wide start/stop/remove
"""

from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Depends, status

from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.application.sessions.service import SessionService
from ctfrange.core.exceptions import NotFoundError
from ctfrange.interfaces.api.v1.dependencies import get_pool_service, get_session_service

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post(
    "/attacker",
    status_code=status.HTTP_201_CREATED,
    summary="Provision Attacker",
)
async def provision_attacker(
    sessions: Annotated[SessionService, Depends(get_session_service)],
    pool: Annotated[ContainerPoolService, Depends(get_pool_service)],
) -> Dict[str, Any]:
    game_session = await sessions.get_active_or_pending_session()
    if game_session is None:
        raise NotFoundError("No pending or active session")

    container = await pool.provision_container(game_session.id)
    return container.to_dict()


@router.post("/{kind}/{action}", summary="Bulk Container Action")
async def bulk_action(
    kind: str,
    action: str,
    pool: Annotated[ContainerPoolService, Depends(get_pool_service)],
) -> Dict[str, Any]:
    results = await pool.bulk_action(kind, action)
    return {
        "kind": kind,
        "action": action,
        "results": {name: result.to_dict() for name, result in results.items()},
    }
