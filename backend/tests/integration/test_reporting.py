"""
Integration tests for leaderboard and session reporting.
"""

from uuid import uuid4

import pytest

from ctfrange.core.exceptions import NotFoundError

pytestmark = pytest.mark.integration


class TestLeaderboard:
    """Test leaderboard ranking and naming."""

    @pytest.mark.asyncio
    async def test_ffa_ranked_by_score(self, session_service, join_service, scoring_service, reporting_service):
        game_session = await session_service.create_session(max_players=3)
        alice = await join_service.join(game_session.session_code, "Alice")
        bob = await join_service.join(game_session.session_code, "Bob")

        await scoring_service.record_event(alice.container.id, "flag_captured")
        await scoring_service.record_event(
            bob.container.id, "level_completed", metadata={"levelKey": "level1"}
        )

        board = await reporting_service.leaderboard(game_session.id)

        assert [row["display_name"] for row in board] == ["Bob", "Alice"]
        assert [row["rank"] for row in board] == [1, 2]
        assert board[0]["score"] == 100
        assert board[0]["levels_completed"] == 1
        assert board[1]["participants"] == ["Alice"]
        assert board[1]["team_number"] is None

    @pytest.mark.asyncio
    async def test_team_labels(self, session_service, join_service, scoring_service, reporting_service):
        game_session = await session_service.create_session(max_players=4, max_players_per_team=2)
        first = await join_service.join(game_session.session_code, "Ann")
        await join_service.join(game_session.session_code, "Ben")

        await scoring_service.record_event(first.container.id, "flag_captured", point=30)

        board = await reporting_service.leaderboard(game_session.id)

        expected = "Team A" if first.container.team_number == 1 else "Team B"
        assert board[0]["display_name"] == expected
        assert board[0]["score"] == 30
        assert board[0]["participant_count"] == 1
        assert {row["display_name"] for row in board} == {"Team A", "Team B"}

    @pytest.mark.asyncio
    async def test_empty_teams_listed(self, session_service, reporting_service):
        game_session = await session_service.create_session(max_players=6, max_players_per_team=2)

        board = await reporting_service.leaderboard(game_session.id)

        assert sorted(row["display_name"] for row in board) == ["Team A", "Team B", "Team C"]
        assert all(row["participants"] == [] for row in board)

    @pytest.mark.asyncio
    async def test_unknown_session(self, reporting_service):
        with pytest.raises(NotFoundError):
            await reporting_service.leaderboard(uuid4())


class TestSessionViews:
    """Test event feed and session summaries."""

    @pytest.mark.asyncio
    async def test_recent_events_newest_first(self, session_service, join_service, scoring_service, reporting_service):
        game_session = await session_service.create_session(max_players=2)
        alice = await join_service.join(game_session.session_code, "Alice")
        await scoring_service.record_event(alice.container.id, "flag_captured")
        await scoring_service.record_event(alice.container.id, "hint_requested")

        events = await reporting_service.recent_events(game_session.id)
        assert [e["event_type"] for e in events] == [
            "hint_requested",
            "flag_captured",
            "player_joined",
        ]
        assert events[0]["container_code"] == alice.container.container_code

        limited = await reporting_service.recent_events(game_session.id, limit=1)
        assert [e["event_type"] for e in limited] == ["hint_requested"]

    @pytest.mark.asyncio
    async def test_joinable_summary(self, session_service, join_service, reporting_service):
        game_session = await session_service.create_session(max_players=4, max_players_per_team=2)
        await join_service.join(game_session.session_code, "Ann")

        sessions = await reporting_service.active_sessions_for_join()

        assert len(sessions) == 1
        assert sessions[0]["session_code"] == game_session.session_code
        assert sessions[0]["current_players"] == 1
        assert sessions[0]["team_count"] == 2
        assert sessions[0]["mode"] == "team"

    @pytest.mark.asyncio
    async def test_list_sessions_counts(self, session_service, join_service, reporting_service):
        first = await session_service.create_session(max_players=2)
        await join_service.join(first.session_code, "Alice")
        second = await session_service.create_session(max_players=4, max_players_per_team=2)

        sessions = await reporting_service.list_sessions()

        by_id = {s["id"]: s for s in sessions}
        assert by_id[str(first.id)]["status"] == "completed"
        assert by_id[str(first.id)]["player_count"] == 1
        assert by_id[str(first.id)]["container_count"] == 1
        assert by_id[str(second.id)]["player_count"] == 0
        assert by_id[str(second.id)]["container_count"] == 2

    @pytest.mark.asyncio
    async def test_session_detail(self, session_service, join_service, reporting_service):
        game_session = await session_service.create_session(max_players=2)
        await join_service.join(game_session.session_code, "Alice")

        detail = await reporting_service.session_detail(game_session.id)

        assert len(detail["levels"]) == 3
        assert [p["display_name"] for p in detail["containers"][0]["players"]] == ["Alice"]
