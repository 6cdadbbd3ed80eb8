"""
CTF Range Orchestrator - Event API Endpoints

- POST /events         - Event from a player client (container code or username)
- POST /events/victim  - Event reported by a victim, attributed by attacker IP
"""

from typing import Annotated, Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import AliasChoices, BaseModel, Field

from ctfrange.application.scoring.service import ScoringService
from ctfrange.interfaces.api.v1.dependencies import get_scoring_service

logger = structlog.get_logger(__name__)
router = APIRouter()


class RecordEventBody(BaseModel):
    """Event reported by a player client."""
    event_type: str = Field(..., validation_alias=AliasChoices("event_type", "eventType", "type"))
    container_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("container_code", "containerCode")
    )
    username: Optional[str] = None
    session_id: Optional[UUID] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    point: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VictimEventBody(BaseModel):
    """Event reported by a victim container about an attacker."""
    event_type: str = Field(..., validation_alias=AliasChoices("event_type", "eventType", "type"))
    attacker_ip: str = Field(
        ..., validation_alias=AliasChoices("attacker_ip", "attackerIp", "sourceIp", "ip")
    )
    level_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("level_key", "levelKey")
    )
    point: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Record Event",
)
async def record_event(
    body: RecordEventBody,
    request: Request,
    scoring: Annotated[ScoringService, Depends(get_scoring_service)],
) -> Dict[str, Any]:
    container = await scoring.resolve_container(
        container_code=body.container_code,
        username=body.username,
        session_id=body.session_id,
    )
    metadata = dict(body.metadata)
    if body.username:
        metadata.setdefault("username", body.username)
    if request.client:
        metadata.setdefault("sourceIp", request.client.host)

    recorded = await scoring.record_event(container.id, body.event_type, body.point, metadata)
    return recorded.to_dict()


@router.post(
    "/victim",
    status_code=status.HTTP_201_CREATED,
    summary="Record Victim Event",
)
async def record_victim_event(
    body: VictimEventBody,
    request: Request,
    scoring: Annotated[ScoringService, Depends(get_scoring_service)],
) -> Dict[str, Any]:
    container = await scoring.resolve_container(remote_ip=body.attacker_ip)

    metadata = dict(body.metadata)
    metadata["sourceIp"] = body.attacker_ip
    if body.level_key:
        metadata["levelKey"] = body.level_key
    if request.client:
        metadata.setdefault("reportedBy", request.client.host)

    recorded = await scoring.record_event(container.id, body.event_type, body.point, metadata)
    logger.info(
        "Victim event attributed",
        container_code=container.container_code,
        attacker_ip=body.attacker_ip,
        event_type=body.event_type,
    )
    return recorded.to_dict()
