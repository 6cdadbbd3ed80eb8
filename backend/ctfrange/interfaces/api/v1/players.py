"""
CTF Range Orchestrator - Player API Endpoints
"""

from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import AliasChoices, BaseModel, Field

from ctfrange.application.join.service import JoinService
from ctfrange.interfaces.api.v1.dependencies import get_join_service

logger = structlog.get_logger(__name__)
router = APIRouter()


class JoinBody(BaseModel):
    """Request body for joining a session."""
    session_code: str = Field(
        ...,
        validation_alias=AliasChoices("session_code", "sessionCode", "code"),
    )
    display_name: str = Field(
        ...,
        validation_alias=AliasChoices("display_name", "displayName", "username", "name"),
    )


@router.post(
    "/join",
    status_code=status.HTTP_201_CREATED,
    summary="Join Session",
    description="Join a pending or active session and get an attacker container",
)
async def join_session(
    body: JoinBody,
    join: Annotated[JoinService, Depends(get_join_service)],
) -> Dict[str, Any]:
    result = await join.join(body.session_code, body.display_name)
    return result.to_dict()
