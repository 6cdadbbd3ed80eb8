"""
Integration tests for joining sessions.

Tests:
- Free-for-all growth, duplicate names and capacity
- Team packing into the least-occupied container
- Join validation and provisioning failures
"""

import pytest
from sqlalchemy import func, select

from ctfrange.core.exceptions import (
    ContainerRuntimeError,
    DuplicateNameError,
    NotFoundError,
    SessionFullError,
    SessionNotJoinable,
    ValidationError,
)
from ctfrange.infrastructure.models import ContainerEvent, Player, PlayerContainer

pytestmark = pytest.mark.integration


class TestFreeForAll:
    """Test free-for-all joins."""

    @pytest.mark.asyncio
    async def test_alice_bob_carol(self, session_service, join_service, db_manager):
        """Two-player FFA: duplicate name rejected, third player turned away."""
        game_session = await session_service.create_session(max_players=2, max_players_per_team=1)
        code = game_session.session_code

        alice = await join_service.join(code, "Alice")
        with pytest.raises(DuplicateNameError):
            await join_service.join(code, "alice")
        bob = await join_service.join(code, "Bob")
        with pytest.raises(SessionFullError):
            await join_service.join(code, "Carol")

        assert alice.container.id != bob.container.id
        assert alice.player.display_name == "Alice"
        assert alice.session.session_code == code
        assert len(alice.container.container_code) == 8
        assert alice.container.container_url.startswith("http://range.test:")

        async with db_manager.session() as session:
            containers = (
                await session.scalars(
                    select(PlayerContainer).where(PlayerContainer.session_id == game_session.id)
                )
            ).all()
            players = await session.scalar(select(func.count(Player.id)))

        assert len(containers) == 2
        assert all(c.user_connected_count == 1 for c in containers)
        assert players == 2

    @pytest.mark.asyncio
    async def test_join_writes_player_joined_event(self, session_service, join_service, db_manager):
        game_session = await session_service.create_session(max_players=3)

        result = await join_service.join(game_session.session_code, "  Dana  ")

        assert result.player.display_name == "Dana"
        async with db_manager.session() as session:
            events = (
                await session.scalars(
                    select(ContainerEvent).where(ContainerEvent.container_id == result.container.id)
                )
            ).all()

        assert [e.event_type for e in events] == ["player_joined"]
        assert events[0].point is None
        assert events[0].event_metadata["username"] == "Dana"

    @pytest.mark.asyncio
    async def test_provisioning_failure(self, session_service, join_service, db_manager, fake_runtime):
        game_session = await session_service.create_session(max_players=3)
        fake_runtime.fail_create = True

        with pytest.raises(ContainerRuntimeError):
            await join_service.join(game_session.session_code, "Erin")

        async with db_manager.session() as session:
            assert await session.scalar(select(func.count(Player.id))) == 0
            statuses = (await session.scalars(select(PlayerContainer.status))).all()
        assert statuses == ["removed"]

        # Runtime back: the failed record is skipped and a new one created
        fake_runtime.fail_create = False
        result = await join_service.join(game_session.session_code, "Erin")
        assert result.container.status == "healthy"


class TestTeamMode:
    """Test team packing."""

    @pytest.mark.asyncio
    async def test_least_occupied_first(self, session_service, join_service):
        game_session = await session_service.create_session(max_players=4, max_players_per_team=2)
        code = game_session.session_code

        teams = [
            (await join_service.join(code, name)).container.team_number
            for name in ("Ann", "Ben", "Cid", "Dot")
        ]

        assert sorted(teams[:2]) == [1, 2]
        assert sorted(teams) == [1, 1, 2, 2]

        with pytest.raises(SessionFullError):
            await join_service.join(code, "Eve")

    @pytest.mark.asyncio
    async def test_team_pool_never_grows(self, session_service, join_service, fake_runtime, db_manager):
        # 2 teams of 2 but room for 5 players: the fifth has nowhere to go
        game_session = await session_service.create_session(
            max_players=5, max_players_per_team=2, team_count=2
        )
        for name in ("Ann", "Ben", "Cid", "Dot"):
            await join_service.join(game_session.session_code, name)

        with pytest.raises(SessionFullError):
            await join_service.join(game_session.session_code, "Eve")
        assert len(fake_runtime.attackers(str(game_session.id))) == 2

        async with db_manager.session() as session:
            players = await session.scalar(
                select(func.count(Player.id)).where(Player.session_id == game_session.id)
            )
            containers = await session.scalar(
                select(func.count(PlayerContainer.id)).where(
                    PlayerContainer.session_id == game_session.id
                )
            )
        assert players == 4
        assert containers == 2

    @pytest.mark.asyncio
    async def test_reserve_slot_respects_capacity(self, session_service, pool_service, db_manager):
        game_session = await session_service.create_session(max_players=2, max_players_per_team=2)
        container = await pool_service.find_available_container(game_session.id, 2)

        assert await pool_service.reserve_slot(container.id, 2) is True
        assert await pool_service.reserve_slot(container.id, 2) is True
        assert await pool_service.reserve_slot(container.id, 2) is False
        assert await pool_service.find_available_container(game_session.id, 2) is None


class TestJoinValidation:
    """Test join request validation."""

    @pytest.mark.asyncio
    async def test_unknown_code(self, join_service):
        with pytest.raises(NotFoundError):
            await join_service.join("999999", "Alice")

    @pytest.mark.asyncio
    async def test_completed_session(self, session_service, join_service):
        game_session = await session_service.create_session()
        await session_service.update_status(game_session.id, "completed")

        with pytest.raises(SessionNotJoinable):
            await join_service.join(game_session.session_code, "Alice")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["A", " B ", "x" * 21, ""])
    async def test_name_length(self, session_service, join_service, name):
        game_session = await session_service.create_session()

        with pytest.raises(ValidationError):
            await join_service.join(game_session.session_code, name)

    @pytest.mark.asyncio
    async def test_active_session_joinable(self, session_service, join_service):
        game_session = await session_service.create_session()
        await session_service.update_status(game_session.id, "active")

        result = await join_service.join(game_session.session_code, "Alice")

        assert result.to_dict()["session_code"] == game_session.session_code
