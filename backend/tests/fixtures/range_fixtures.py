"""
Pytest fixtures for session, join and scoring tests.

Services run against an in-memory SQLite database and an in-memory
container runtime double.
"""

from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ctfrange.application.containers.service import ContainerPoolService
from ctfrange.application.join.service import JoinService
from ctfrange.application.reporting.service import ReportingService
from ctfrange.application.scoring.service import ScoringService
from ctfrange.application.sessions.service import SessionService
from ctfrange.core.config import Settings
from ctfrange.core.exceptions import ContainerRuntimeError
from ctfrange.infrastructure.database import DatabaseManager
from ctfrange.infrastructure.orchestrator.models import (
    LABEL_APP,
    LABEL_LEVEL,
    LABEL_SESSION,
    LABEL_TYPE,
    BulkAction,
    BulkOperationResult,
    ContainerKind,
    ContainerRef,
    NetworkConfig,
    RuntimeContainer,
)


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.containers: Dict[str, RuntimeContainer] = {}
        self.victims: List[str] = []
        self.fail_create = False
        self.fail_victims = False
        self.ready = True
        self.closed = False
        self._counter = 0

    def _next_id(self) -> int:
        self._counter += 1
        return self._counter

    async def create_attacker(
        self,
        name: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> RuntimeContainer:
        if self.fail_create:
            raise ContainerRuntimeError(
                "Docker error during create_attacker: no space left",
                operation="create_attacker",
                container=name,
                retryable=True,
            )

        n = self._next_id()
        labels = {LABEL_APP: self.settings.app_label, LABEL_TYPE: ContainerKind.ATTACKER.value}
        if session_id:
            labels[LABEL_SESSION] = session_id
        runtime = RuntimeContainer(
            runtime_id=f"{n:064x}",
            name=name or f"range-attacker-{n}",
            kind=ContainerKind.ATTACKER,
            image=self.settings.attacker_image,
            state="running",
            ready=self.ready,
            labels=labels,
            network=NetworkConfig(
                network_name="range-net",
                ip_addresses=[f"172.20.0.{10 + n}"],
                port_mappings={self.settings.attacker_service_port: 40000 + n},
            ),
        )
        runtime.access_url = f"http://{self.settings.public_host}:{40000 + n}/{runtime.short_id}/"
        self.containers[runtime.runtime_id] = runtime
        return runtime

    async def ensure_victim(
        self,
        service_name: str,
        level_key: str,
        session_id: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        rebuild: bool = False,
    ) -> RuntimeContainer:
        if self.fail_victims:
            raise ContainerRuntimeError(
                "Image build failed: missing Dockerfile",
                operation="build_image",
                container=service_name,
                retryable=False,
            )

        n = self._next_id()
        labels = {
            LABEL_APP: self.settings.app_label,
            LABEL_TYPE: ContainerKind.VICTIM.value,
            LABEL_LEVEL: level_key,
        }
        if session_id:
            labels[LABEL_SESSION] = session_id
        runtime = RuntimeContainer(
            runtime_id=f"{n:064x}",
            name=service_name,
            kind=ContainerKind.VICTIM,
            state="running",
            ready=True,
            labels=labels,
        )
        self.containers[runtime.runtime_id] = runtime
        self.victims.append(service_name)
        return runtime

    async def _bulk(self, action: BulkAction, labels: Dict[str, str]) -> BulkOperationResult:
        labels = {LABEL_APP: self.settings.app_label, **labels}
        result = BulkOperationResult(action=action, labels=labels)
        for runtime_id, runtime in list(self.containers.items()):
            if all(runtime.labels.get(key) == value for key, value in labels.items()):
                if action == BulkAction.REMOVE:
                    del self.containers[runtime_id]
                else:
                    runtime.state = "running" if action == BulkAction.START else "exited"
                result.succeeded.append(ContainerRef(runtime_id=runtime_id, name=runtime.name))
        return result

    async def start_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.START, labels)

    async def stop_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.STOP, labels)

    async def remove_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.REMOVE, labels)

    async def resolve_attacker_by_ip(self, remote_ip: str) -> Optional[RuntimeContainer]:
        for runtime in self.containers.values():
            if runtime.kind == ContainerKind.ATTACKER and remote_ip in runtime.network.ip_addresses:
                return runtime
        return None

    async def close(self) -> None:
        self.closed = True

    def attackers(self, session_id: Optional[str] = None) -> List[RuntimeContainer]:
        return [
            runtime
            for runtime in self.containers.values()
            if runtime.kind == ContainerKind.ATTACKER
            and (session_id is None or runtime.labels.get(LABEL_SESSION) == session_id)
        ]


@pytest.fixture
def range_settings() -> Settings:
    """Settings for an in-memory database and instant readiness polling."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        environment="development",
        public_host="range.test",
        readiness_attempts=2,
        readiness_interval_seconds=0,
        log_level="WARNING",
        log_format="console",
    )


@pytest.fixture
def fake_runtime(range_settings: Settings) -> FakeRuntime:
    return FakeRuntime(range_settings)


@pytest_asyncio.fixture
async def db_manager(range_settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    """Connected database with the schema created."""
    manager = DatabaseManager(range_settings)
    await manager.connect()
    await manager.create_schema()
    yield manager
    await manager.disconnect()


@pytest.fixture
def pool_service(db_manager, range_settings, fake_runtime) -> ContainerPoolService:
    return ContainerPoolService(db_manager, range_settings, fake_runtime)


@pytest_asyncio.fixture
async def session_service(db_manager, range_settings, pool_service) -> AsyncGenerator[SessionService, None]:
    service = SessionService(db_manager, range_settings, pool_service)
    yield service
    await service.close()


@pytest.fixture
def scoring_service(db_manager, range_settings, fake_runtime) -> ScoringService:
    return ScoringService(db_manager, range_settings, fake_runtime)


@pytest.fixture
def join_service(db_manager, range_settings, session_service, pool_service, scoring_service) -> JoinService:
    return JoinService(db_manager, range_settings, session_service, pool_service, scoring_service)


@pytest.fixture
def reporting_service(db_manager, range_settings, scoring_service) -> ReportingService:
    return ReportingService(db_manager, range_settings, scoring_service)


@pytest_asyncio.fixture
async def api_client(range_settings, db_manager, fake_runtime) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the ASGI app with services wired to the test database."""
    from ctfrange.main import attach_services, create_app

    app = create_app(range_settings)
    attach_services(app, range_settings, db_manager, fake_runtime)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await app.state.publisher.stop()
    await app.state.sessions.close()
