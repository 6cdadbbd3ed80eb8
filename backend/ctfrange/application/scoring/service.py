"""
CTF Range Orchestrator - Event & Scoring Service
Appends gameplay events and derives container scores from their history
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ctfrange.core.config import Settings
from ctfrange.core.exceptions import NotFoundError, ValidationError
from ctfrange.domain.game.entities import NON_TERMINAL_STATUSES, EventType, name_key
from ctfrange.domain.game.scoring import (
    LevelPoint,
    ScoreBreakdown,
    ScoringEvent,
    compute_score,
    level_key_from_metadata,
    match_level,
)
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.models import (
    ContainerEvent,
    GameSession,
    Level,
    Player,
    PlayerContainer,
)
from ctfrange.infrastructure.orchestrator.services.sandbox_docker import DockerRuntime
from ctfrange.infrastructure.realtime.publisher import EventPublisher

logger = structlog.get_logger(__name__)


@dataclass
class RecordedEvent:
    """An appended event and the container score it produced."""
    event: ContainerEvent
    score: ScoreBreakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "score": self.score.to_dict(),
        }


class ScoringService:
    """
    Event log and score projection.

    A container's stored score is always recomputed from its complete event
    history, never adjusted incrementally.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        runtime: DockerRuntime,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.settings = settings
        self.runtime = runtime
        self.publisher = publisher

    async def record_event(
        self,
        container_id: UUID,
        event_type: str,
        point: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> RecordedEvent:
        """
        Append an event and recompute the container score in one transaction.

        Args:
            container_id: Owning container
            event_type: Event type name or alias
            point: Optional override of the stored point delta
            metadata: Free-form context; ``levelKey`` is required for
                level completions

        Raises:
            ValidationError: unknown type or level completion without a level key
            NotFoundError: unknown container
        """
        etype = EventType.parse(event_type)
        metadata = dict(metadata or {})

        async with self.db.scope(db_session) as session:
            container = await session.get(PlayerContainer, container_id)
            if container is None:
                raise NotFoundError("Container not found", container_id=str(container_id))

            if etype == EventType.FLAG_CAPTURED:
                stored_point = point if point is not None else self.settings.default_flag_points
            elif etype == EventType.HINT_REQUESTED:
                stored_point = None
            elif etype == EventType.LEVEL_COMPLETED:
                level_key = level_key_from_metadata(metadata)
                if not level_key:
                    raise ValidationError(
                        "levelKey is required for level_completed events",
                        container_id=str(container_id),
                    )
                stored_point = (
                    point
                    if point is not None
                    else await self.level_completion_point(container.session_id, level_key, session)
                )
            else:
                stored_point = point

            event = ContainerEvent(
                container_id=container.id,
                event_type=etype.value,
                point=stored_point,
                event_metadata=metadata,
            )
            session.add(event)
            await session.flush()

            score = await self.recompute_score(container.id, session)

        logger.info(
            "Event recorded",
            container_id=str(container_id),
            event_type=etype.value,
            point=stored_point,
            total_score=score.total,
        )

        recorded = RecordedEvent(event=event, score=score)
        if self.publisher is not None:
            await self.publisher.publish(
                EventPublisher.session_topic(container.session_id),
                "event_recorded",
                {
                    **recorded.to_dict(),
                    "session_id": str(container.session_id),
                    "container_code": container.container_code,
                    "team_number": container.team_number,
                },
            )
        return recorded

    async def recompute_score(
        self,
        container_id: UUID,
        db_session: Optional[AsyncSession] = None,
    ) -> ScoreBreakdown:
        """
        Rebuild and store a container's total score and hint count.

        Idempotent: the result depends on the event history alone.
        """
        async with self.db.scope(db_session) as session:
            container = await session.get(PlayerContainer, container_id)
            if container is None:
                raise NotFoundError("Container not found", container_id=str(container_id))

            levels = await self._level_points(session, container.session_id)
            events = (
                await session.scalars(
                    select(ContainerEvent)
                    .where(ContainerEvent.container_id == container_id)
                    .order_by(ContainerEvent.id.asc())
                )
            ).all()

            score = compute_score(
                (ScoringEvent.from_metadata(e.event_type, e.point, e.event_metadata) for e in events),
                levels,
                self.settings.hint_penalty,
            )
            score.container_id = container.id
            score.container_code = container.container_code

            container.total_score = score.total
            container.hint_used = score.hints_used
            await session.flush()

        return score

    async def level_completion_point(
        self,
        session_id: UUID,
        level_key: str,
        db_session: Optional[AsyncSession] = None,
    ) -> int:
        """Configured points for a level of the session; 0 when unresolved."""
        async with self.db.scope(db_session) as session:
            levels = await self._level_points(session, session_id)
        level = match_level(levels, level_key)
        return level.completion_point if level else 0

    async def point_distribution(
        self,
        session_id: UUID,
        hint_penalty: Optional[int] = None,
    ) -> List[ScoreBreakdown]:
        """
        Per-container score breakdown, highest total first.

        Read-only: a custom ``hint_penalty`` only affects the returned figures.
        """
        penalty = self.settings.hint_penalty if hint_penalty is None else hint_penalty

        async with self.db.session() as session:
            if await session.get(GameSession, session_id) is None:
                raise NotFoundError("Session not found", session_id=str(session_id))

            levels = await self._level_points(session, session_id)
            containers = (
                await session.scalars(
                    select(PlayerContainer)
                    .where(PlayerContainer.session_id == session_id)
                    .order_by(PlayerContainer.created_at.asc())
                )
            ).all()
            rows = (
                await session.execute(
                    select(ContainerEvent)
                    .join(PlayerContainer, ContainerEvent.container_id == PlayerContainer.id)
                    .where(PlayerContainer.session_id == session_id)
                    .order_by(ContainerEvent.id.asc())
                )
            ).scalars().all()

        events_by_container: Dict[UUID, List[ScoringEvent]] = defaultdict(list)
        for event in rows:
            events_by_container[event.container_id].append(
                ScoringEvent.from_metadata(event.event_type, event.point, event.event_metadata)
            )

        distribution = []
        for container in containers:
            score = compute_score(events_by_container[container.id], levels, penalty)
            score.container_id = container.id
            score.container_code = container.container_code
            distribution.append(score)

        distribution.sort(key=lambda score: score.total, reverse=True)
        return distribution

    async def resolve_container(
        self,
        container_code: Optional[str] = None,
        username: Optional[str] = None,
        remote_ip: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> PlayerContainer:
        """
        Identify the container an event came from.

        Tried in order: container code, player name within the given (or the
        current) session, attacker source IP.

        Raises:
            ValidationError: no identifying input
            NotFoundError: nothing matched
        """
        if not (container_code or username or remote_ip):
            raise ValidationError("containerCode, username or source IP is required")

        async with self.db.session() as session:
            if container_code:
                container = await session.scalar(
                    select(PlayerContainer).where(
                        PlayerContainer.container_code == str(container_code).strip()
                    )
                )
                if container is not None:
                    return container

            if username:
                scope_id = session_id or await session.scalar(
                    select(GameSession.id)
                    .where(GameSession.status.in_(NON_TERMINAL_STATUSES))
                    .order_by(GameSession.created_at.desc())
                    .limit(1)
                )
                if scope_id is not None:
                    container = await session.scalar(
                        select(PlayerContainer)
                        .join(Player, Player.container_id == PlayerContainer.id)
                        .where(
                            Player.session_id == scope_id,
                            Player.name_key == name_key(username),
                        )
                    )
                    if container is not None:
                        return container

            if remote_ip:
                runtime = await self.runtime.resolve_attacker_by_ip(remote_ip)
                if runtime is not None:
                    container = await session.scalar(
                        select(PlayerContainer)
                        .where(PlayerContainer.runtime_id == runtime.runtime_id)
                        .order_by(PlayerContainer.created_at.desc())
                        .limit(1)
                    )
                    if container is not None:
                        return container

        raise NotFoundError(
            "Could not resolve the event source to a container",
            container_code=container_code,
            username=username,
            remote_ip=remote_ip,
        )

    async def _level_points(self, session: AsyncSession, session_id: UUID) -> List[LevelPoint]:
        levels = (
            await session.scalars(select(Level).where(Level.session_id == session_id))
        ).all()
        return [
            LevelPoint(
                level_key=level.level_key,
                service_name=level.service_name,
                completion_point=level.completion_point,
            )
            for level in levels
        ]
