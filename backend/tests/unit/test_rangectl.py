"""
Unit tests for the rangectl admin CLI.

HTTP calls go to a mocked requests session.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from click.testing import CliRunner

from rangectl.__main__ import cli

SESSION_ID = "0b8f6a5e-3c1d-4a51-9a0e-5f2c7d9b1e42"


def make_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        error = requests.HTTPError(f"{status_code} Error")
        error.response = response
        response.raise_for_status.side_effect = error
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def api():
    """Patch the API client; ``api.request`` records calls."""
    client = MagicMock()
    with patch("rangectl.__main__.setup_api_client", return_value=client):
        yield client


@pytest.fixture
def runner():
    return CliRunner()


class TestSessionCommands:
    """Test session subcommands."""

    def test_create_sends_only_given_options(self, runner, api):
        api.request.return_value = make_response({
            "id": SESSION_ID,
            "session_code": "482913",
            "status": "pending",
            "mode": "team",
            "max_players": 6,
            "max_players_per_team": 3,
            "team_count": 2,
            "levels": [
                {"level_key": "level1", "service_name": "range-s482913-level1", "completion_point": 100},
            ],
        }, 201)

        result = runner.invoke(
            cli,
            ["--api-url", "http://range:8000/", "session", "create",
             "--max-players", "6", "--per-team", "3", "--levels", "level1"],
        )

        assert result.exit_code == 0, result.output
        method, url = api.request.call_args.args
        assert method == "POST"
        assert url == "http://range:8000/api/v1/sessions"
        assert api.request.call_args.kwargs["json"] == {
            "max_players": 6,
            "max_players_per_team": 3,
            "selected_levels": "level1",
        }
        assert "Session created: 482913" in result.output
        assert "Teams:    2" in result.output

    def test_status_defaults_to_current_session(self, runner, api):
        api.request.side_effect = [
            make_response({"session": {"id": SESSION_ID}}),
            make_response({"session_code": "482913", "status": "active"}),
        ]

        result = runner.invoke(cli, ["session", "status", "running"])

        assert result.exit_code == 0, result.output
        method, url = api.request.call_args.args
        assert method == "PATCH"
        assert url.endswith(f"/api/v1/sessions/{SESSION_ID}/status")
        assert api.request.call_args.kwargs["json"] == {"status": "running"}
        assert "now active" in result.output

    def test_status_without_current_session_fails(self, runner, api):
        api.request.return_value = make_response({"session": None})

        result = runner.invoke(cli, ["session", "status", "active"])

        assert result.exit_code == 1
        assert "no pending or active session" in result.output

    def test_api_error_detail_is_shown(self, runner, api):
        api.request.return_value = make_response(
            {"error": "INVALID_STATUS_TRANSITION", "detail": "Cannot change session status"},
            400,
        )

        result = runner.invoke(cli, ["session", "status", "pending", "--session-id", SESSION_ID])

        assert result.exit_code == 1
        assert "INVALID_STATUS_TRANSITION" in result.output

    def test_clear_requires_confirmation(self, runner, api):
        result = runner.invoke(cli, ["session", "clear"], input="n\n")

        assert result.exit_code == 0
        api.request.assert_not_called()

    def test_list_json_output(self, runner, api):
        payload = {"sessions": [{"id": SESSION_ID, "session_code": "482913"}], "total": 1}
        api.request.return_value = make_response(payload)

        result = runner.invoke(cli, ["--output", "json", "session", "list"])

        assert result.exit_code == 0
        assert json.loads(result.output) == payload


class TestReportingCommands:
    """Test leaderboard, points and container commands."""

    def test_leaderboard_table(self, runner, api):
        api.request.return_value = make_response({
            "entries": [
                {"rank": 1, "display_name": "Team A", "container_code": "12345678",
                 "score": 105, "levels_completed": 1, "status": "healthy"},
            ],
        })

        result = runner.invoke(cli, ["leaderboard", "--session-id", SESSION_ID])

        assert result.exit_code == 0, result.output
        assert "Team A" in result.output
        assert "105" in result.output

    def test_points_passes_penalty(self, runner, api):
        api.request.return_value = make_response({"hint_penalty": 0, "containers": []})

        result = runner.invoke(cli, ["points", "--session-id", SESSION_ID, "--hint-penalty", "0"])

        assert result.exit_code == 0, result.output
        assert api.request.call_args.kwargs["params"] == {"hint_penalty": 0}

    def test_containers_remove_forced(self, runner, api):
        api.request.return_value = make_response({
            "kind": "all",
            "action": "remove",
            "results": {
                "attacker": {"count": 2, "failed": []},
                "victim": {"count": 1, "failed": [{"name": "range-s1-level2", "error": "busy"}]},
            },
        })

        result = runner.invoke(cli, ["containers", "all", "remove", "--force"])

        assert result.exit_code == 0, result.output
        assert api.request.call_args.args == ("POST", "http://localhost:8000/api/v1/containers/all/remove")
        assert "attacker: 2 remove" in result.output
        assert "failed range-s1-level2: busy" in result.output

    def test_connection_error(self, runner, api):
        api.request.side_effect = requests.ConnectionError("connection refused")

        result = runner.invoke(cli, ["health"])

        assert result.exit_code == 1
        assert "connection refused" in result.output
