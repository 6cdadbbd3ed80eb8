"""
CTF Range Orchestrator - Reporting Service
Read-only views over sessions, containers and events
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select

from ctfrange.application.scoring.service import ScoringService
from ctfrange.core.config import Settings
from ctfrange.core.exceptions import NotFoundError
from ctfrange.domain.game.entities import NON_TERMINAL_STATUSES, team_label
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.models import (
    ContainerEvent,
    GameSession,
    Player,
    PlayerContainer,
)

logger = structlog.get_logger(__name__)


class ReportingService:
    """Projections for the dashboard and the admin CLI. Never writes."""

    def __init__(self, db: DatabaseManager, settings: Settings, scoring: ScoringService):
        self.db = db
        self.settings = settings
        self.scoring = scoring

    async def list_sessions(self) -> List[Dict[str, Any]]:
        """All sessions, newest first, with player and container counts."""
        player_counts = (
            select(Player.session_id, func.count(Player.id).label("players"))
            .group_by(Player.session_id)
            .subquery()
        )
        container_counts = (
            select(PlayerContainer.session_id, func.count(PlayerContainer.id).label("containers"))
            .group_by(PlayerContainer.session_id)
            .subquery()
        )
        stmt = (
            select(GameSession, player_counts.c.players, container_counts.c.containers)
            .outerjoin(player_counts, player_counts.c.session_id == GameSession.id)
            .outerjoin(container_counts, container_counts.c.session_id == GameSession.id)
            .order_by(GameSession.created_at.desc())
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        return [
            {
                **game_session.to_dict(),
                "player_count": players or 0,
                "container_count": containers or 0,
            }
            for game_session, players, containers in rows
        ]

    async def session_detail(self, session_id: UUID) -> Dict[str, Any]:
        """Session with its levels, containers and players."""
        async with self.db.session() as session:
            game_session = await session.get(GameSession, session_id)
            if game_session is None:
                raise NotFoundError("Session not found", session_id=str(session_id))
            containers = (
                await session.scalars(
                    select(PlayerContainer)
                    .where(PlayerContainer.session_id == session_id)
                    .order_by(PlayerContainer.created_at.asc())
                )
            ).all()

        return {
            **game_session.to_dict(),
            "levels": [level.to_dict() for level in game_session.levels],
            "containers": [
                {
                    **container.to_dict(),
                    "players": [player.to_dict() for player in container.players],
                }
                for container in containers
            ],
        }

    async def leaderboard(self, session_id: UUID) -> List[Dict[str, Any]]:
        """
        Containers ranked by stored score.

        Display names are the joined players in free-for-all and
        ``Team A``, ``Team B``, ... in team mode.
        """
        async with self.db.session() as session:
            game_session = await session.get(GameSession, session_id)
            if game_session is None:
                raise NotFoundError("Session not found", session_id=str(session_id))
            containers = (
                await session.scalars(
                    select(PlayerContainer)
                    .where(PlayerContainer.session_id == session_id)
                    .order_by(PlayerContainer.created_at.asc())
                )
            ).all()

        breakdowns = {
            score.container_id: score
            for score in await self.scoring.point_distribution(session_id)
        }
        team_mode = game_session.is_team_mode

        rows = []
        for index, container in enumerate(containers):
            names = [player.display_name for player in container.players]
            if not team_mode and not names:
                # FFA containers without players never made it onto the board
                continue

            if team_mode:
                team_index = (container.team_number - 1) if container.team_number else index
                display_name = team_label(team_index)
            else:
                display_name = ", ".join(names)

            breakdown = breakdowns.get(container.id)
            rows.append({
                "container_id": str(container.id),
                "container_code": container.container_code,
                "display_name": display_name,
                "team_number": container.team_number,
                "score": container.total_score,
                "hint_used": container.hint_used,
                "status": container.status,
                "participants": names,
                "participant_count": len(names),
                "levels_completed": len(breakdown.levels_completed) if breakdown else 0,
            })

        rows.sort(key=lambda row: row["score"], reverse=True)
        for rank, row in enumerate(rows, start=1):
            row["rank"] = rank
        return rows

    async def recent_events(self, session_id: UUID, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Newest events of the session first."""
        limit = limit or self.settings.recent_events_limit
        stmt = (
            select(ContainerEvent, PlayerContainer.container_code, PlayerContainer.team_number)
            .join(PlayerContainer, ContainerEvent.container_id == PlayerContainer.id)
            .where(PlayerContainer.session_id == session_id)
            .order_by(ContainerEvent.id.desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            if await session.get(GameSession, session_id) is None:
                raise NotFoundError("Session not found", session_id=str(session_id))
            rows = (await session.execute(stmt)).all()

        return [
            {**event.to_dict(), "container_code": code, "team_number": team_number}
            for event, code, team_number in rows
        ]

    async def active_sessions_for_join(self) -> List[Dict[str, Any]]:
        """Summary of sessions that still accept players."""
        player_counts = (
            select(Player.session_id, func.count(Player.id).label("players"))
            .group_by(Player.session_id)
            .subquery()
        )
        stmt = (
            select(GameSession, player_counts.c.players)
            .outerjoin(player_counts, player_counts.c.session_id == GameSession.id)
            .where(GameSession.status.in_(NON_TERMINAL_STATUSES))
            .order_by(GameSession.created_at.desc())
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        return [
            {
                "id": str(game_session.id),
                "session_code": game_session.session_code,
                "status": game_session.status,
                "mode": game_session.mode.value,
                "max_players": game_session.max_players,
                "max_players_per_team": game_session.max_players_per_team,
                "team_count": game_session.team_count,
                "current_players": players or 0,
                "created_at": game_session.created_at.isoformat() if game_session.created_at else None,
            }
            for game_session, players in rows
        ]
