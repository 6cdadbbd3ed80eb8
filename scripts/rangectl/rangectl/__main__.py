"""
Range Admin CLI - rangectl
Python Click-based admin tool for the CTF Range Orchestrator.
"""

import json
from typing import Any, Dict, Optional

import click
import requests


# ============================================
# CLI Configuration
# ============================================

class Context:
    """CLI context for global settings."""

    def __init__(self):
        self.api_url: str = "http://localhost:8000"
        self.api_key: Optional[str] = None
        self.output_format: str = "table"
        self.quiet: bool = False


pass_context = click.make_pass_decorator(Context, ensure=True)


def setup_api_client(ctx: Context) -> requests.Session:
    """Create API client with auth headers."""
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json"})
    if ctx.api_key:
        session.headers.update({"Authorization": f"Bearer {ctx.api_key}"})
    return session


def api_call(ctx: Context, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
    """Call the API and return the decoded body; exits with status 1 on failure."""
    session = setup_api_client(ctx)
    try:
        response = session.request(method, f"{ctx.api_url}/api/v1{path}", **kwargs)
        response.raise_for_status()
        return response.json()
    except requests.HTTPError as e:
        detail = str(e)
        try:
            body = e.response.json()
            detail = f"{body.get('error')}: {body.get('detail')}"
        except ValueError:
            pass
        click.echo(f"Error: {detail}", err=True)
    except requests.RequestException as e:
        click.echo(f"Error: {e}", err=True)
    raise SystemExit(1)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def resolve_session_id(ctx: Context, session_id: Optional[str]) -> str:
    """Explicit session id, or the current pending/active session."""
    if session_id:
        return session_id
    current = api_call(ctx, "GET", "/sessions/current").get("session")
    if not current:
        click.echo("Error: no pending or active session", err=True)
        raise SystemExit(1)
    return current["id"]


# ============================================
# Base Commands
# ============================================

@click.group()
@click.option(
    "--api-url",
    default="http://localhost:8000",
    help="API URL for the range orchestrator",
    envvar="RANGE_API_URL",
)
@click.option(
    "--api-key",
    help="API key for authentication",
    envvar="RANGE_API_KEY",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress output except errors",
)
@click.pass_context
def cli(
    ctx: click.Context,
    api_url: str,
    api_key: Optional[str],
    output: str,
    quiet: bool,
):
    """CTF Range Orchestrator Admin CLI"""
    ctx.ensure_object(Context)
    ctx.obj.api_url = api_url.rstrip("/")
    ctx.obj.api_key = api_key
    ctx.obj.output_format = output
    ctx.obj.quiet = quiet


@cli.command("health")
@pass_context
def health(ctx: Context):
    """Check orchestrator health"""
    result = api_call(ctx, "GET", "/health")

    if ctx.output_format == "json":
        echo_json(result)
    else:
        status = result.get("status", "unknown")
        click.secho(f"Status: {status}", fg="green" if status == "healthy" else "red")
        for name, check in result.get("checks", {}).items():
            check_status = check.get("status", "unknown")
            click.secho(
                f"  {name}: {check_status}",
                fg="green" if check_status == "healthy" else "red",
            )


# ============================================
# Session Commands
# ============================================

@cli.group()
def session():
    """Session lifecycle commands"""
    pass


def _print_session(data: Dict[str, Any]) -> None:
    click.echo(f"Session:  {data.get('id')}")
    click.echo(f"Code:     {data.get('session_code')}")
    click.echo(f"Status:   {data.get('status')}")
    click.echo(f"Mode:     {data.get('mode')}")
    click.echo(f"Players:  {data.get('max_players')} max, {data.get('max_players_per_team')} per container")
    if data.get("mode") == "team":
        click.echo(f"Teams:    {data.get('team_count')}")
    levels = data.get("levels") or []
    if levels:
        click.echo("Levels:")
        for level in levels:
            click.echo(f"  {level.get('level_key'):<10} {level.get('service_name'):<32} {level.get('completion_point')} pts")


@session.command("create")
@click.option("--duration", type=int, help="Duration in seconds")
@click.option("--max-players", type=int, help="Maximum players in the session")
@click.option("--per-team", type=int, default=1, show_default=True, help="Players per container (1 = free-for-all)")
@click.option("--team-count", type=int, help="Number of teams (team mode)")
@click.option("--levels", help="Comma-separated level keys")
@click.option("--mode", type=click.Choice(["ffa", "team"]), help="Expected mode")
@pass_context
def session_create(
    ctx: Context,
    duration: Optional[int],
    max_players: Optional[int],
    per_team: int,
    team_count: Optional[int],
    levels: Optional[str],
    mode: Optional[str],
):
    """Create a session (completes the current one)"""
    data = {
        "duration_seconds": duration,
        "max_players": max_players,
        "max_players_per_team": per_team,
        "team_count": team_count,
        "selected_levels": levels,
        "mode": mode,
    }
    result = api_call(ctx, "POST", "/sessions", json={k: v for k, v in data.items() if v is not None})

    if ctx.output_format == "json":
        echo_json(result)
    elif not ctx.quiet:
        click.secho(f"Session created: {result.get('session_code')}", fg="green")
        _print_session(result)


@session.command("list")
@pass_context
def session_list(ctx: Context):
    """List sessions"""
    result = api_call(ctx, "GET", "/sessions")

    if ctx.output_format == "json":
        echo_json(result)
        return

    click.echo(f"{'ID':<38} {'Code':<8} {'Status':<10} {'Mode':<6} {'Players':<8} {'Created'}")
    click.echo("-" * 100)
    for item in result.get("sessions", []):
        click.echo(
            f"{item.get('id', ''):<38} "
            f"{item.get('session_code', ''):<8} "
            f"{item.get('status', ''):<10} "
            f"{item.get('mode', ''):<6} "
            f"{item.get('player_count', 0):<8} "
            f"{item.get('created_at') or ''}"
        )


@session.command("current")
@pass_context
def session_current(ctx: Context):
    """Show the pending or active session"""
    result = api_call(ctx, "GET", "/sessions/current")

    if ctx.output_format == "json":
        echo_json(result)
    elif result.get("session"):
        _print_session(result["session"])
    else:
        click.echo("No pending or active session")


@session.command("status")
@click.argument("status")
@click.option("--session-id", help="Session ID (defaults to the current session)")
@pass_context
def session_status(ctx: Context, status: str, session_id: Optional[str]):
    """Change session status (pending, active, completed or an alias)"""
    session_id = resolve_session_id(ctx, session_id)
    result = api_call(ctx, "PATCH", f"/sessions/{session_id}/status", json={"status": status})

    if ctx.output_format == "json":
        echo_json(result)
    elif not ctx.quiet:
        click.echo(f"Session {result.get('session_code')} is now {result.get('status')}")


@session.command("clear")
@click.option("--force", is_flag=True, help="Skip confirmation")
@pass_context
def session_clear(ctx: Context, force: bool):
    """Delete every session and remove all range containers"""
    if not force:
        if not click.confirm("Delete ALL sessions, players, events and containers?"):
            return

    result = api_call(ctx, "DELETE", "/sessions")

    if ctx.output_format == "json":
        echo_json(result)
    elif not ctx.quiet:
        deleted = result.get("deleted", {})
        click.echo(
            f"Deleted {deleted.get('range_sessions', 0)} sessions, "
            f"{deleted.get('players', 0)} players, "
            f"{deleted.get('container_events', 0)} events"
        )


# ============================================
# Scoring Commands
# ============================================

@cli.command("leaderboard")
@click.option("--session-id", help="Session ID (defaults to the current session)")
@pass_context
def leaderboard(ctx: Context, session_id: Optional[str]):
    """Show the session leaderboard"""
    session_id = resolve_session_id(ctx, session_id)
    result = api_call(ctx, "GET", f"/sessions/{session_id}/leaderboard")

    if ctx.output_format == "json":
        echo_json(result)
        return

    click.echo(f"{'Rank':<6} {'Name':<30} {'Code':<10} {'Score':<8} {'Levels':<7} {'Status'}")
    click.echo("-" * 75)
    for entry in result.get("entries", []):
        click.echo(
            f"{entry.get('rank', ''):<6} "
            f"{entry.get('display_name', '')[:30]:<30} "
            f"{entry.get('container_code', ''):<10} "
            f"{entry.get('score', 0):<8} "
            f"{entry.get('levels_completed', 0):<7} "
            f"{entry.get('status', '')}"
        )


@cli.command("points")
@click.option("--session-id", help="Session ID (defaults to the current session)")
@click.option("--hint-penalty", type=int, help="Override the per-hint penalty")
@pass_context
def points(ctx: Context, session_id: Optional[str], hint_penalty: Optional[int]):
    """Show the per-container score breakdown"""
    session_id = resolve_session_id(ctx, session_id)
    params = {"hint_penalty": hint_penalty} if hint_penalty is not None else None
    result = api_call(ctx, "GET", f"/sessions/{session_id}/points", params=params)

    if ctx.output_format == "json":
        echo_json(result)
        return

    click.echo(f"Hint penalty: {result.get('hint_penalty')}")
    click.echo(f"{'Code':<10} {'Flags':<7} {'Levels':<7} {'Hints':<6} {'Total'}")
    click.echo("-" * 45)
    for row in result.get("containers", []):
        click.echo(
            f"{row.get('container_code', ''):<10} "
            f"{row.get('flag_score', 0):<7} "
            f"{row.get('level_score', 0):<7} "
            f"{row.get('hint_used', 0):<6} "
            f"{row.get('total_score', 0)}"
        )


@cli.command("events")
@click.option("--session-id", help="Session ID (defaults to the current session)")
@click.option("--limit", type=int, help="Maximum events to show")
@pass_context
def events(ctx: Context, session_id: Optional[str], limit: Optional[int]):
    """Show recent gameplay events"""
    session_id = resolve_session_id(ctx, session_id)
    params = {"limit": limit} if limit else None
    result = api_call(ctx, "GET", f"/sessions/{session_id}/events", params=params)

    if ctx.output_format == "json":
        echo_json(result)
        return

    for event in result.get("events", []):
        point = event.get("point")
        click.echo(
            f"{event.get('created_at', '')}  "
            f"{event.get('container_code', ''):<10} "
            f"{event.get('event_type', ''):<16} "
            f"{'' if point is None else point}"
        )


# ============================================
# Container Commands
# ============================================

@cli.command("containers")
@click.argument("kind", type=click.Choice(["attacker", "victim", "all"]))
@click.argument("action", type=click.Choice(["start", "stop", "remove"]))
@click.option("--force", is_flag=True, help="Skip confirmation for remove")
@pass_context
def containers(ctx: Context, kind: str, action: str, force: bool):
    """Start, stop or remove all range containers of a kind"""
    if action == "remove" and not force:
        if not click.confirm(f"Remove all {kind} containers?"):
            return

    result = api_call(ctx, "POST", f"/containers/{kind}/{action}")

    if ctx.output_format == "json":
        echo_json(result)
        return

    for name, outcome in result.get("results", {}).items():
        click.echo(f"{name}: {outcome.get('count', 0)} {action}")
        for failure in outcome.get("failed", []):
            click.secho(f"  failed {failure.get('name')}: {failure.get('error')}", fg="red")


# ============================================
# Main Entry Point
# ============================================

if __name__ == "__main__":
    cli()
