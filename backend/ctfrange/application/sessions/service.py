"""
CTF Range Orchestrator - Session Lifecycle Service
Session creation, status transitions and background victim deployment
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ctfrange.application.common import unique_numeric_code
from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.core.config import Settings
from ctfrange.core.exceptions import (
    ContainerRuntimeError,
    NotFoundError,
    SessionNotJoinable,
)
from ctfrange.domain.game.entities import (
    NON_TERMINAL_STATUSES,
    GameSettings,
    SessionMode,
    SessionStatus,
    parse_level_keys,
    service_name_for,
    validate_transition,
)
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.models import (
    ContainerEvent,
    GameSession,
    Level,
    Player,
    PlayerContainer,
    utcnow,
)
from ctfrange.infrastructure.orchestrator.models import (
    LABEL_TYPE,
    BulkOperationResult,
    ContainerKind,
)

logger = structlog.get_logger(__name__)

SESSION_CODE_DIGITS = 6


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ContainerRuntimeError) and exc.retryable


class SessionService:
    """
    Owns the session lifecycle.

    At most one session is pending or active: creating a session completes
    any open one and tears down its containers first.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        pool: ContainerPoolService,
    ):
        self.db = db
        self.settings = settings
        self.pool = pool
        self.runtime = pool.runtime

        self._background_tasks: Set[asyncio.Task] = set()

    async def create_session(
        self,
        duration_seconds: Optional[int] = None,
        max_players: Optional[int] = None,
        max_players_per_team: int = 1,
        team_count: Optional[int] = None,
        level_keys: Any = None,
        mode: Optional[str] = None,
    ) -> GameSession:
        """
        Create a new pending session.

        Args:
            duration_seconds: Game length, defaults to the configured duration
            max_players: Player cap across the session
            max_players_per_team: 1 for free-for-all, more for team mode
            team_count: Team mode pool size, derived when omitted
            level_keys: List, comma-separated or JSON-array string of level keys;
                every allowed level when omitted
            mode: Optional ``ffa``/``team``; must agree with max_players_per_team

        Returns:
            The persisted session with its levels

        Raises:
            ValidationError: invalid parameters or no valid level
            CodeGenerationExhausted: no free session code
            ContainerRuntimeError: team pool provisioning failed (session kept)
        """
        allowed = self.settings.allowed_level_keys
        keys = parse_level_keys(allowed if level_keys is None else level_keys, allowed)
        game = GameSettings.build(
            duration_seconds=(
                self.settings.default_duration_seconds if duration_seconds is None else duration_seconds
            ),
            max_players=self.settings.default_max_players if max_players is None else max_players,
            max_players_per_team=max_players_per_team,
            team_count=team_count,
            level_keys=keys,
            mode=mode,
        )

        await self._complete_open_sessions()

        async with self.db.unit_of_work() as uow:
            code = await unique_numeric_code(
                uow.session,
                GameSession.session_code,
                SESSION_CODE_DIGITS,
                self.settings.session_code_attempts,
            )
            game_session = GameSession(
                session_code=code,
                duration_seconds=game.duration_seconds,
                max_players=game.max_players,
                max_players_per_team=game.max_players_per_team,
                team_count=game.team_count,
                selected_levels=list(game.level_keys),
                status=SessionStatus.PENDING.value,
                levels=[
                    Level(
                        level_key=key,
                        service_name=service_name_for(code, key),
                        completion_point=self.settings.points_for_level(key),
                    )
                    for key in game.level_keys
                ],
            )
            uow.session.add(game_session)
            await uow.commit()

        log = logger.bind(session_id=str(game_session.id), session_code=game_session.session_code)
        log.info(
            "Session created",
            mode=game.mode.value,
            max_players=game.max_players,
            team_count=game.team_count,
            levels=game.level_keys,
        )

        if game.mode == SessionMode.TEAM:
            await self.pool.provision_team_pool(game_session.id, game.team_count)

        self._schedule_victim_deployment(game_session)
        return game_session

    async def update_status(self, session_id: UUID, new_status: str) -> GameSession:
        """
        Move a session to a new status.

        Completing a session removes its containers. Cleanup is best-effort
        and never reverts the status change.

        Raises:
            NotFoundError: unknown session
            ValidationError: unknown status or illegal transition
        """
        target = SessionStatus.parse(new_status)

        async with self.db.unit_of_work() as uow:
            game_session = await uow.session.get(GameSession, session_id)
            if game_session is None:
                raise NotFoundError("Session not found", session_id=str(session_id))

            previous = game_session.status_enum
            if not validate_transition(previous, target):
                # Commit, not rollback, so the instance stays loaded
                await uow.commit()
                return game_session

            game_session.status = target.value
            if target == SessionStatus.ACTIVE and game_session.started_at is None:
                game_session.started_at = utcnow()
            if target == SessionStatus.COMPLETED:
                game_session.destroyed_at = utcnow()
            await uow.commit()

        logger.info(
            "Session status changed",
            session_id=str(session_id),
            previous=previous.value,
            status=target.value,
        )

        if target.is_terminal:
            await self._release(session_id)
        return game_session

    async def get_active_or_pending_session(self) -> Optional[GameSession]:
        """Most recent session that is still pending or active."""
        async with self.db.session() as session:
            return await session.scalar(
                select(GameSession)
                .where(GameSession.status.in_(NON_TERMINAL_STATUSES))
                .order_by(GameSession.created_at.desc())
                .limit(1)
            )

    async def get_session(self, session_id: UUID) -> GameSession:
        async with self.db.session() as session:
            game_session = await session.get(GameSession, session_id)
        if game_session is None:
            raise NotFoundError("Session not found", session_id=str(session_id))
        return game_session

    async def get_session_by_code(self, session_code: str, joinable_only: bool = False) -> GameSession:
        """
        Look up a session by its join code.

        Raises:
            NotFoundError: no session with that code
            SessionNotJoinable: ``joinable_only`` and the session has ended
        """
        code = str(session_code or "").strip()
        async with self.db.session() as session:
            game_session = await session.scalar(
                select(GameSession).where(GameSession.session_code == code)
            )
        if game_session is None:
            raise NotFoundError("Session not found", session_code=code)
        if joinable_only and not game_session.is_joinable:
            raise SessionNotJoinable(
                "Session is not accepting players",
                session_code=code,
                status=game_session.status,
            )
        return game_session

    async def delete_all_sessions(self) -> Dict[str, Any]:
        """
        Remove every labeled container, then delete all session data.

        Returns:
            Deleted row counts and container removal results
        """
        removed: Dict[str, BulkOperationResult] = {}
        for kind in (ContainerKind.ATTACKER, ContainerKind.VICTIM):
            try:
                removed[kind.value] = await self.runtime.remove_by_labels({LABEL_TYPE: kind.value})
            except ContainerRuntimeError as e:
                logger.warning("Container cleanup failed during clear", kind=kind.value, error=e.message)

        counts: Dict[str, int] = {}
        async with self.db.unit_of_work() as uow:
            for model in (ContainerEvent, Player, PlayerContainer, Level, GameSession):
                result = await uow.session.execute(delete(model))
                counts[model.__tablename__] = result.rowcount or 0
            await uow.commit()

        logger.warning("All sessions deleted", **counts)
        return {
            "deleted": counts,
            "containers": {kind: result.to_dict() for kind, result in removed.items()},
        }

    async def wait_for_background_tasks(self) -> None:
        """Wait for outstanding victim deployments."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding background tasks."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()
        logger.info("Session service stopped", cancelled=len(tasks))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _complete_open_sessions(self) -> None:
        async with self.db.unit_of_work() as uow:
            open_sessions = (
                await uow.session.scalars(
                    select(GameSession).where(GameSession.status.in_(NON_TERMINAL_STATUSES))
                )
            ).all()
            for game_session in open_sessions:
                game_session.status = SessionStatus.COMPLETED.value
                game_session.destroyed_at = utcnow()
            await uow.commit()

        for game_session in open_sessions:
            logger.info(
                "Completing previous session",
                session_id=str(game_session.id),
                session_code=game_session.session_code,
            )
            await self._release(game_session.id)

    async def _release(self, session_id: UUID) -> None:
        try:
            await self.pool.release_session_containers(session_id)
        except Exception as e:
            logger.error(
                "Failed to release session containers",
                session_id=str(session_id),
                error=str(e),
            )

    def _schedule_victim_deployment(self, game_session: GameSession) -> None:
        levels = [(level.level_key, level.service_name) for level in game_session.levels]
        task = asyncio.create_task(
            self._deploy_victims(game_session.id, game_session.session_code, levels),
            name=f"deploy-victims-{game_session.session_code}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._on_deployment_done)

    def _on_deployment_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Victim deployment task crashed", task=task.get_name(), error=str(exc))

    async def _deploy_victims(
        self,
        session_id: UUID,
        session_code: str,
        levels: List[Tuple[str, str]],
    ) -> None:
        deployed = 0
        for level_key, service_name in levels:
            try:
                await self._ensure_victim(session_id, session_code, level_key, service_name)
                deployed += 1
            except ContainerRuntimeError as e:
                logger.error(
                    "Victim deployment failed",
                    session_id=str(session_id),
                    service_name=service_name,
                    operation=e.operation,
                    error=e.message,
                )
        logger.info(
            "Victim deployment finished",
            session_id=str(session_id),
            deployed=deployed,
            total=len(levels),
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _ensure_victim(
        self,
        session_id: UUID,
        session_code: str,
        level_key: str,
        service_name: str,
    ) -> None:
        await self.runtime.ensure_victim(
            service_name=service_name,
            level_key=level_key,
            session_id=str(session_id),
            environment={
                "SESSION_CODE": session_code,
                "ORCHESTRATOR_URL": self.settings.orchestrator_callback_url,
            },
        )
