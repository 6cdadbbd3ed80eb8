"""
CTF Range Orchestrator - Container Pool Service
Attacker container allocation, provisioning and teardown
"""

from typing import Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ctfrange.application.common import unique_numeric_code
from ctfrange.core.config import Settings
from ctfrange.core.exceptions import ContainerRuntimeError, ValidationError
from ctfrange.domain.game.entities import JOINABLE_CONTAINER_STATUSES, ContainerStatus
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.models import PlayerContainer
from ctfrange.infrastructure.orchestrator.models import (
    LABEL_SESSION,
    LABEL_TYPE,
    BulkAction,
    BulkOperationResult,
    ContainerKind,
)
from ctfrange.infrastructure.orchestrator.services.sandbox_docker import DockerRuntime

logger = structlog.get_logger(__name__)

CONTAINER_CODE_DIGITS = 8

# Record status after a successful bulk action on an attacker
BULK_RECORD_STATUS: Dict[BulkAction, ContainerStatus] = {
    BulkAction.START: ContainerStatus.STARTED,
    BulkAction.STOP: ContainerStatus.STOPPED,
    BulkAction.REMOVE: ContainerStatus.REMOVED,
}


class ContainerPoolService:
    """
    Manages the attacker container pool of each session.

    Team mode uses a fixed pool created with the session; free-for-all grows
    the pool by one container per joining player.
    """

    def __init__(self, db: DatabaseManager, settings: Settings, runtime: DockerRuntime):
        self.db = db
        self.settings = settings
        self.runtime = runtime

    async def find_available_container(
        self,
        session_id: UUID,
        capacity_per_container: int,
        db_session: Optional[AsyncSession] = None,
    ) -> Optional[PlayerContainer]:
        """Least-occupied joinable container with spare capacity, if any."""
        stmt = (
            select(PlayerContainer)
            .where(
                PlayerContainer.session_id == session_id,
                PlayerContainer.user_connected_count < capacity_per_container,
                PlayerContainer.status.in_(JOINABLE_CONTAINER_STATUSES),
            )
            .order_by(
                PlayerContainer.user_connected_count.asc(),
                PlayerContainer.created_at.asc(),
            )
            .limit(1)
        )
        async with self.db.scope(db_session) as session:
            return await session.scalar(stmt)

    async def count_active_containers(
        self,
        session_id: UUID,
        db_session: Optional[AsyncSession] = None,
    ) -> int:
        stmt = select(func.count(PlayerContainer.id)).where(
            PlayerContainer.session_id == session_id,
            PlayerContainer.status != ContainerStatus.REMOVED.value,
        )
        async with self.db.scope(db_session) as session:
            return int(await session.scalar(stmt) or 0)

    async def provision_container(
        self,
        session_id: UUID,
        name: Optional[str] = None,
        team_number: Optional[int] = None,
    ) -> PlayerContainer:
        """
        Create an attacker container for a session.

        The record is committed as ``creating`` before the engine is called so
        its code is reserved; a runtime failure marks it ``removed``.

        Raises:
            ContainerRuntimeError: engine failure, after the record is marked
            CodeGenerationExhausted: no free container code
        """
        async with self.db.unit_of_work() as uow:
            code = await unique_numeric_code(
                uow.session,
                PlayerContainer.container_code,
                CONTAINER_CODE_DIGITS,
                self.settings.container_code_attempts,
            )
            record = PlayerContainer(
                container_code=code,
                session_id=session_id,
                team_number=team_number,
                status=ContainerStatus.CREATING.value,
            )
            uow.session.add(record)
            await uow.commit()

        log = logger.bind(
            session_id=str(session_id),
            container_id=str(record.id),
            container_code=record.container_code,
        )
        log.info("Provisioning attacker container", team_number=team_number)

        try:
            runtime = await self.runtime.create_attacker(
                name=name or f"range-attacker-{record.container_code}",
                session_id=str(session_id),
            )
        except ContainerRuntimeError as e:
            log.error(
                "Attacker provisioning failed",
                operation=e.operation,
                retryable=e.retryable,
                error=e.message,
            )
            await self._set_status(record.id, ContainerStatus.REMOVED)
            raise

        status = ContainerStatus.HEALTHY if runtime.ready else ContainerStatus.STARTED
        async with self.db.unit_of_work() as uow:
            await uow.session.execute(
                update(PlayerContainer)
                .where(PlayerContainer.id == record.id)
                .values(
                    runtime_id=runtime.runtime_id,
                    runtime_name=runtime.name,
                    container_url=runtime.access_url,
                    status=status.value,
                )
                .execution_options(synchronize_session=False)
            )
            await uow.commit()

        record.runtime_id = runtime.runtime_id
        record.runtime_name = runtime.name
        record.container_url = runtime.access_url
        record.status = status.value

        log.info("Attacker container ready", status=status.value, url=runtime.access_url)
        return record

    async def provision_team_pool(self, session_id: UUID, team_count: int) -> List[PlayerContainer]:
        """One container per team, numbered from 1. Stops at the first failure."""
        containers = []
        for team_number in range(1, team_count + 1):
            containers.append(
                await self.provision_container(session_id, team_number=team_number)
            )
        logger.info(
            "Team pool provisioned",
            session_id=str(session_id),
            team_count=team_count,
        )
        return containers

    async def reserve_slot(
        self,
        container_id: UUID,
        capacity: int,
        db_session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Atomically take one slot in a container.

        Returns:
            False when the container filled up or left a joinable status
        """
        stmt = (
            update(PlayerContainer)
            .where(
                PlayerContainer.id == container_id,
                PlayerContainer.user_connected_count < capacity,
                PlayerContainer.status.in_(JOINABLE_CONTAINER_STATUSES),
            )
            .values(user_connected_count=PlayerContainer.user_connected_count + 1)
            .execution_options(synchronize_session=False)
        )
        async with self.db.scope(db_session) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def release_session_containers(
        self,
        session_id: UUID,
        db_session: Optional[AsyncSession] = None,
    ) -> Dict[str, BulkOperationResult]:
        """
        Remove every runtime container labeled for the session.

        Best-effort: engine failures are logged. Records are marked ``removed``
        regardless so the session can complete.
        """
        results: Dict[str, BulkOperationResult] = {}
        for kind in (ContainerKind.ATTACKER, ContainerKind.VICTIM):
            labels = {LABEL_TYPE: kind.value, LABEL_SESSION: str(session_id)}
            try:
                results[kind.value] = await self.runtime.remove_by_labels(labels)
            except ContainerRuntimeError as e:
                logger.warning(
                    "Session container cleanup failed",
                    session_id=str(session_id),
                    kind=kind.value,
                    error=e.message,
                )

        async with self.db.scope(db_session) as session:
            await session.execute(
                update(PlayerContainer)
                .where(PlayerContainer.session_id == session_id)
                .values(status=ContainerStatus.REMOVED.value)
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "Session containers released",
            session_id=str(session_id),
            removed={kind: result.count for kind, result in results.items()},
        )
        return results

    async def bulk_action(self, kind: str, action: str) -> Dict[str, BulkOperationResult]:
        """
        Start, stop or remove every labeled container of a kind.

        Args:
            kind: ``attacker``, ``victim`` or ``all``
            action: ``start``, ``stop`` or ``remove``

        Returns:
            Partial result per kind
        """
        try:
            bulk = BulkAction(str(action).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown action '{action}' (expected start, stop or remove)",
                action=action,
            ) from None

        normalized = str(kind).strip().lower()
        if normalized == "all":
            kinds = [ContainerKind.ATTACKER, ContainerKind.VICTIM]
        else:
            try:
                kinds = [ContainerKind(normalized)]
            except ValueError:
                raise ValidationError(
                    f"Unknown container kind '{kind}' (expected attacker, victim or all)",
                    kind=kind,
                ) from None

        operations = {
            BulkAction.START: self.runtime.start_by_labels,
            BulkAction.STOP: self.runtime.stop_by_labels,
            BulkAction.REMOVE: self.runtime.remove_by_labels,
        }

        results: Dict[str, BulkOperationResult] = {}
        for container_kind in kinds:
            result = await operations[bulk]({LABEL_TYPE: container_kind.value})
            results[container_kind.value] = result

            if container_kind == ContainerKind.ATTACKER and result.succeeded:
                runtime_ids = [ref.runtime_id for ref in result.succeeded]
                async with self.db.unit_of_work() as uow:
                    await uow.session.execute(
                        update(PlayerContainer)
                        .where(PlayerContainer.runtime_id.in_(runtime_ids))
                        .values(status=BULK_RECORD_STATUS[bulk].value)
                        .execution_options(synchronize_session=False)
                    )
                    await uow.commit()

        return results

    async def _set_status(self, container_id: UUID, status: ContainerStatus) -> None:
        async with self.db.unit_of_work() as uow:
            await uow.session.execute(
                update(PlayerContainer)
                .where(PlayerContainer.id == container_id)
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
            await uow.commit()
