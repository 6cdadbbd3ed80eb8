"""
CTF Range Orchestrator - Game Domain Entities
Session lifecycle rules, game modes, level selection and player naming
"""

import json
import math
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ctfrange.core.exceptions import InvalidStatusTransition, ValidationError


class SessionStatus(str, Enum):
    """Session lifecycle statuses."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: "str | SessionStatus") -> "SessionStatus":
        """Parse a status name, accepting the aliases clients send."""
        if isinstance(value, SessionStatus):
            return value
        normalized = str(value or "").strip().lower()
        status = STATUS_ALIASES.get(normalized)
        if status is None:
            allowed = ", ".join(sorted(STATUS_ALIASES))
            raise ValidationError(
                f"Invalid session status '{value}' (expected one of: {allowed})",
                status=value,
            )
        return status

    @property
    def is_terminal(self) -> bool:
        return self == SessionStatus.COMPLETED


STATUS_ALIASES: Dict[str, SessionStatus] = {
    "pending": SessionStatus.PENDING,
    "lobby": SessionStatus.PENDING,
    "paused": SessionStatus.PENDING,
    "active": SessionStatus.ACTIVE,
    "running": SessionStatus.ACTIVE,
    "started": SessionStatus.ACTIVE,
    "completed": SessionStatus.COMPLETED,
    "finished": SessionStatus.COMPLETED,
    "ended": SessionStatus.COMPLETED,
    "stopped": SessionStatus.COMPLETED,
    "terminated": SessionStatus.COMPLETED,
}

NON_TERMINAL_STATUSES: Tuple[str, ...] = (
    SessionStatus.PENDING.value,
    SessionStatus.ACTIVE.value,
)

# active -> pending is the pause transition
ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.ACTIVE, SessionStatus.COMPLETED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED, SessionStatus.PENDING}),
    SessionStatus.COMPLETED: frozenset(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """
    Check a status transition.

    Returns:
        False when the status does not change (no-op), True when it does

    Raises:
        InvalidStatusTransition: transition is not allowed
    """
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(
            f"Cannot change session status from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
    return True


class SessionMode(str, Enum):
    """Container allocation strategy."""
    FREE_FOR_ALL = "ffa"
    TEAM = "team"

    @classmethod
    def for_team_size(cls, max_players_per_team: int) -> "SessionMode":
        return cls.TEAM if max_players_per_team > 1 else cls.FREE_FOR_ALL


class ContainerStatus(str, Enum):
    """Attacker container lifecycle statuses."""
    CREATING = "creating"
    STARTED = "started"
    HEALTHY = "healthy"
    STOPPED = "stopped"
    REMOVED = "removed"


JOINABLE_CONTAINER_STATUSES: Tuple[str, ...] = (
    ContainerStatus.CREATING.value,
    ContainerStatus.STARTED.value,
    ContainerStatus.HEALTHY.value,
)


class EventType(str, Enum):
    """Gameplay event types."""
    FLAG_CAPTURED = "flag_captured"
    LEVEL_COMPLETED = "level_completed"
    HINT_REQUESTED = "hint_requested"
    BREACH_DETECTED = "breach_detected"
    PLAYER_JOINED = "player_joined"

    @classmethod
    def parse(cls, value: "str | EventType") -> "EventType":
        if isinstance(value, EventType):
            return value
        normalized = str(value or "").strip().lower()
        try:
            return cls(EVENT_ALIASES.get(normalized, normalized))
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"Unknown event type '{value}' (expected one of: {allowed})",
                event_type=value,
            ) from None


EVENT_ALIASES: Dict[str, str] = {
    "foundflag_accepted": EventType.FLAG_CAPTURED.value,
    "flag": EventType.FLAG_CAPTURED.value,
    "breach": EventType.BREACH_DETECTED.value,
    "hint": EventType.HINT_REQUESTED.value,
    "hint_accessed": EventType.HINT_REQUESTED.value,
}


@dataclass
class GameSettings:
    """Validated parameters for a new session."""
    duration_seconds: int
    max_players: int
    max_players_per_team: int
    team_count: int
    level_keys: List[str] = field(default_factory=list)

    @property
    def mode(self) -> SessionMode:
        return SessionMode.for_team_size(self.max_players_per_team)

    @classmethod
    def build(
        cls,
        *,
        duration_seconds: int,
        max_players: int,
        max_players_per_team: int = 1,
        team_count: Optional[int] = None,
        level_keys: List[str],
        mode: Optional[str] = None,
    ) -> "GameSettings":
        if duration_seconds <= 0:
            raise ValidationError("durationSeconds must be positive")
        if max_players < 1:
            raise ValidationError("maxPlayers must be at least 1")
        if max_players_per_team < 1:
            raise ValidationError("maxPlayersPerTeam must be at least 1")

        derived_mode = SessionMode.for_team_size(max_players_per_team)
        if mode is not None:
            try:
                requested = SessionMode(str(mode).strip().lower())
            except ValueError:
                raise ValidationError(f"Unknown session mode '{mode}'") from None
            if requested != derived_mode:
                raise ValidationError(
                    f"Mode '{requested.value}' conflicts with maxPlayersPerTeam={max_players_per_team}",
                )

        if derived_mode == SessionMode.TEAM:
            if team_count is None or team_count < 1:
                team_count = math.ceil(max_players / max_players_per_team)
        else:
            team_count = 0

        return cls(
            duration_seconds=duration_seconds,
            max_players=max_players,
            max_players_per_team=max_players_per_team,
            team_count=team_count,
            level_keys=level_keys,
        )


def coerce_level_selection(selected: Any) -> List[str]:
    """Accept a list, a JSON array string, or a comma-separated string."""
    if selected is None:
        return []
    if isinstance(selected, (list, tuple, set)):
        return [str(item) for item in selected]

    raw = str(selected).strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    return [part for part in raw.split(",")]


def parse_level_keys(selected: Any, allowed: Iterable[str]) -> List[str]:
    """
    Normalize a level selection against the allow-list.

    Keys are trimmed, lower-cased, deduplicated (first occurrence wins) and
    unknown keys are dropped.

    Raises:
        ValidationError: no valid key remains
    """
    allowed_set: Set[str] = {key.lower() for key in allowed}
    result: List[str] = []
    for item in coerce_level_selection(selected):
        key = item.strip().lower()
        if key and key in allowed_set and key not in result:
            result.append(key)

    if not result:
        allowed_list = ", ".join(sorted(allowed_set))
        raise ValidationError(
            f"selectedLevels must include at least one valid level ({allowed_list})",
            allowed=sorted(allowed_set),
        )
    return result


def service_name_for(session_code: str, level_key: str) -> str:
    """Globally unique service name for a level within a session."""
    return f"range-s{session_code}-{level_key}"


def normalize_display_name(name: Optional[str], min_length: int = 2, max_length: int = 20) -> str:
    """
    Validate a display name and return it stripped.

    Raises:
        ValidationError: missing or out-of-range length
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Display name is required")
    if not min_length <= len(cleaned) <= max_length:
        raise ValidationError(
            f"Display name must be between {min_length} and {max_length} characters",
            length=len(cleaned),
        )
    return cleaned


def name_key(name: str) -> str:
    """Case-insensitive uniqueness key for a display name."""
    return name.strip().lower()


def team_label(index: int) -> str:
    """Team A, Team B, ... Team Z, Team AA, ..."""
    letters = string.ascii_uppercase
    label = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        label = letters[remainder] + label
    return f"Team {label}"
