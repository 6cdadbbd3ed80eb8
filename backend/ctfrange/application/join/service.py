"""
CTF Range Orchestrator - Join Service
Assigns joining players to attacker containers
"""

from dataclasses import dataclass
from typing import Any, Dict

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.application.scoring.service import ScoringService
from ctfrange.application.sessions.service import SessionService
from ctfrange.core.config import Settings
from ctfrange.core.exceptions import DuplicateNameError, SessionFullError
from ctfrange.domain.game.entities import EventType, name_key, normalize_display_name
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.models import GameSession, Player, PlayerContainer

logger = structlog.get_logger(__name__)

# Re-selection rounds when a reservation loses a race
MAX_RESERVATION_ROUNDS = 3


@dataclass
class JoinResult:
    """Outcome of a successful join."""
    player: Player
    container: PlayerContainer
    session: GameSession

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player": self.player.to_dict(),
            "container_id": str(self.container.id),
            "container_code": self.container.container_code,
            "container_url": self.container.container_url,
            "team_number": self.container.team_number,
            "session_id": str(self.session.id),
            "session_code": self.session.session_code,
            "mode": self.session.mode.value,
        }


class JoinService:
    """Validates join requests and places players into containers."""

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        sessions: SessionService,
        pool: ContainerPoolService,
        scoring: ScoringService,
    ):
        self.db = db
        self.settings = settings
        self.sessions = sessions
        self.pool = pool
        self.scoring = scoring

    async def join(self, session_code: str, display_name: str) -> JoinResult:
        """
        Join a session by code.

        Raises:
            NotFoundError: unknown session code
            SessionNotJoinable: session already completed
            ValidationError: display name length out of bounds
            DuplicateNameError: name taken in this session, ignoring case
            SessionFullError: no container can take the player
            ContainerRuntimeError: free-for-all container provisioning failed
        """
        game_session = await self.sessions.get_session_by_code(session_code, joinable_only=True)
        name = normalize_display_name(
            display_name,
            self.settings.display_name_min_length,
            self.settings.display_name_max_length,
        )
        key = name_key(name)
        capacity = game_session.max_players_per_team

        log = logger.bind(session_id=str(game_session.id), display_name=name)

        for _ in range(MAX_RESERVATION_ROUNDS):
            async with self.db.session() as session:
                await self._ensure_name_free(session, game_session, name, key)
                player_count = await session.scalar(
                    select(func.count(Player.id)).where(Player.session_id == game_session.id)
                )
            if player_count >= game_session.max_players:
                raise SessionFullError(
                    "Session is full",
                    session_code=game_session.session_code,
                    max_players=game_session.max_players,
                )

            container = await self.pool.find_available_container(game_session.id, capacity)
            if container is None:
                container = await self._provision_for_player(game_session)

            async with self.db.unit_of_work() as uow:
                if not await self.pool.reserve_slot(container.id, capacity, uow.session):
                    log.info("Slot reservation lost, re-selecting", container_id=str(container.id))
                    continue

                player = Player(
                    session_id=game_session.id,
                    container_id=container.id,
                    display_name=name,
                    name_key=key,
                )
                uow.session.add(player)
                try:
                    await uow.flush()
                except IntegrityError:
                    raise DuplicateNameError(
                        "Display name already taken in this session",
                        display_name=name,
                    ) from None

                await self.scoring.record_event(
                    container.id,
                    EventType.PLAYER_JOINED.value,
                    metadata={"username": name, "playerId": str(player.id)},
                    db_session=uow.session,
                )
                await uow.commit()

            container.user_connected_count += 1
            log.info(
                "Player joined",
                container_id=str(container.id),
                container_code=container.container_code,
            )
            return JoinResult(player=player, container=container, session=game_session)

        raise SessionFullError(
            "Could not reserve a container slot",
            session_code=game_session.session_code,
        )

    async def _ensure_name_free(self, session, game_session: GameSession, name: str, key: str) -> None:
        taken = await session.scalar(
            select(Player.id).where(
                Player.session_id == game_session.id,
                Player.name_key == key,
            )
        )
        if taken is not None:
            raise DuplicateNameError(
                "Display name already taken in this session",
                display_name=name,
                session_code=game_session.session_code,
            )

    async def _provision_for_player(self, game_session: GameSession) -> PlayerContainer:
        """Grow a free-for-all pool by one container; team pools are fixed."""
        if game_session.is_team_mode:
            raise SessionFullError(
                "All teams are full",
                session_code=game_session.session_code,
                team_count=game_session.team_count,
            )

        active = await self.pool.count_active_containers(game_session.id)
        if active >= game_session.max_players:
            raise SessionFullError(
                "Session is full",
                session_code=game_session.session_code,
                max_players=game_session.max_players,
            )
        return await self.pool.provision_container(game_session.id)
