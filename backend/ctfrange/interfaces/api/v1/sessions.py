"""
CTF Range Orchestrator - Session API Endpoints

- POST   /sessions                       - Create session (completes the open one)
- GET    /sessions                       - List sessions
- GET    /sessions/current               - Pending or active session
- GET    /sessions/joinable              - Sessions accepting players
- GET    /sessions/{id}                  - Session detail
- PATCH  /sessions/{id}/status           - Status transition
- DELETE /sessions                       - Clear everything
- GET    /sessions/{id}/leaderboard      - Ranked containers
- GET    /sessions/{id}/events           - Recent events
- GET    /sessions/{id}/points           - Score breakdown
- GET    /sessions/{id}/stream           - Live score events (SSE)
"""

from typing import Annotated, Any, Dict, List, Optional, Union
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from ctfrange.application.reporting.service import ReportingService
from ctfrange.application.scoring.service import ScoringService
from ctfrange.application.sessions.service import SessionService
from ctfrange.infrastructure.models import GameSession
from ctfrange.infrastructure.realtime.publisher import EventPublisher, stream_message
from ctfrange.interfaces.api.v1.dependencies import (
    get_publisher,
    get_reporting_service,
    get_scoring_service,
    get_session_service,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class CreateSessionBody(BaseModel):
    """Request body for creating a session. Accepts camelCase or snake_case keys."""
    model_config = ConfigDict(populate_by_name=True)

    duration_seconds: Optional[int] = Field(default=None, alias="durationSeconds", gt=0)
    max_players: Optional[int] = Field(default=None, alias="maxPlayers", ge=1)
    max_players_per_team: int = Field(default=1, alias="maxPlayersPerTeam", ge=1)
    team_count: Optional[int] = Field(default=None, alias="teamCount", ge=1)
    selected_levels: Optional[Union[List[str], str]] = Field(default=None, alias="selectedLevels")
    mode: Optional[str] = None


class UpdateStatusBody(BaseModel):
    """Request body for a status transition."""
    status: str = Field(..., min_length=1, description="Target status or alias")


def _session_payload(game_session: GameSession) -> Dict[str, Any]:
    return {
        **game_session.to_dict(),
        "levels": [level.to_dict() for level in game_session.levels],
    }


# ============================================================================
# API Endpoints
# ============================================================================

@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create Session",
)
async def create_session(
    body: CreateSessionBody,
    sessions: Annotated[SessionService, Depends(get_session_service)],
) -> Dict[str, Any]:
    game_session = await sessions.create_session(
        duration_seconds=body.duration_seconds,
        max_players=body.max_players,
        max_players_per_team=body.max_players_per_team,
        team_count=body.team_count,
        level_keys=body.selected_levels,
        mode=body.mode,
    )
    return _session_payload(game_session)


@router.get("", summary="List Sessions")
async def list_sessions(
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
) -> Dict[str, Any]:
    items = await reporting.list_sessions()
    return {"sessions": items, "total": len(items)}


@router.get("/current", summary="Current Session")
async def current_session(
    sessions: Annotated[SessionService, Depends(get_session_service)],
) -> Dict[str, Any]:
    game_session = await sessions.get_active_or_pending_session()
    return {"session": _session_payload(game_session) if game_session else None}


@router.get("/joinable", summary="Sessions Accepting Players")
async def joinable_sessions(
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
) -> Dict[str, Any]:
    return {"sessions": await reporting.active_sessions_for_join()}


@router.delete("", summary="Delete All Sessions")
async def delete_all_sessions(
    sessions: Annotated[SessionService, Depends(get_session_service)],
) -> Dict[str, Any]:
    return await sessions.delete_all_sessions()


@router.get("/{session_id}", summary="Session Detail")
async def session_detail(
    session_id: UUID,
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
) -> Dict[str, Any]:
    return await reporting.session_detail(session_id)


@router.patch("/{session_id}/status", summary="Change Session Status")
async def update_session_status(
    session_id: UUID,
    body: UpdateStatusBody,
    sessions: Annotated[SessionService, Depends(get_session_service)],
) -> Dict[str, Any]:
    game_session = await sessions.update_status(session_id, body.status)
    return _session_payload(game_session)


@router.get("/{session_id}/leaderboard", summary="Leaderboard")
async def leaderboard(
    session_id: UUID,
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
) -> Dict[str, Any]:
    return {
        "session_id": str(session_id),
        "entries": await reporting.leaderboard(session_id),
    }


@router.get("/{session_id}/events", summary="Recent Events")
async def recent_events(
    session_id: UUID,
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
    limit: Annotated[Optional[int], Query(ge=1, le=200)] = None,
) -> Dict[str, Any]:
    return {"events": await reporting.recent_events(session_id, limit)}


@router.get("/{session_id}/points", summary="Point Distribution")
async def point_distribution(
    session_id: UUID,
    scoring: Annotated[ScoringService, Depends(get_scoring_service)],
    hint_penalty: Annotated[Optional[int], Query(ge=0)] = None,
) -> Dict[str, Any]:
    distribution = await scoring.point_distribution(session_id, hint_penalty)
    return {
        "session_id": str(session_id),
        "hint_penalty": scoring.settings.hint_penalty if hint_penalty is None else hint_penalty,
        "containers": [score.to_dict() for score in distribution],
    }


@router.get("/{session_id}/stream", summary="Live Score Stream")
async def live_stream(
    session_id: UUID,
    request: Request,
    reporting: Annotated[ReportingService, Depends(get_reporting_service)],
    publisher: Annotated[EventPublisher, Depends(get_publisher)],
) -> EventSourceResponse:
    """
    Server-sent events for one session.

    Opens with a ``leaderboard`` snapshot, then relays every recorded event
    with the container's new score.
    """
    snapshot = await reporting.leaderboard(session_id)

    async def event_generator():
        yield stream_message({"type": "leaderboard", "data": {"entries": snapshot}})
        async for message in publisher.subscribe(EventPublisher.session_topic(session_id)):
            if await request.is_disconnected():
                break
            yield stream_message(message)

    return EventSourceResponse(event_generator())
