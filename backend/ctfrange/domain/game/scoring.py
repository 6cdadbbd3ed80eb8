"""
CTF Range Orchestrator - Scoring Projection

A container's score is derived from its full event history on every
recompute. Nothing here mutates stored state.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import UUID

from .entities import EventType


@dataclass(frozen=True)
class ScoringEvent:
    """The parts of a stored event that matter for scoring."""
    event_type: str
    point: Optional[int] = None
    level_key: Optional[str] = None

    @classmethod
    def from_metadata(
        cls,
        event_type: str,
        point: Optional[int],
        metadata: Optional[Mapping[str, Any]],
    ) -> "ScoringEvent":
        return cls(
            event_type=event_type,
            point=point,
            level_key=level_key_from_metadata(metadata),
        )


@dataclass(frozen=True)
class LevelPoint:
    """Configured completion value of a session level."""
    level_key: str
    service_name: str
    completion_point: int


@dataclass
class ScoreBreakdown:
    """Per-container score components."""
    flag_score: int = 0
    level_score: int = 0
    hints_used: int = 0
    hint_penalty: int = 0
    levels_completed: List[str] = field(default_factory=list)
    container_id: Optional[UUID] = None
    container_code: Optional[str] = None

    @property
    def total(self) -> int:
        return self.flag_score + self.level_score - self.hints_used * self.hint_penalty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container_id": str(self.container_id) if self.container_id else None,
            "container_code": self.container_code,
            "flag_score": self.flag_score,
            "level_score": self.level_score,
            "hint_used": self.hints_used,
            "hint_penalty": self.hint_penalty,
            "levels_completed": list(self.levels_completed),
            "total_score": self.total,
        }


def level_key_from_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Level key carried by an event (``levelKey`` or ``level``), or None."""
    if not metadata:
        return None
    for key in ("levelKey", "level_key", "level"):
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def match_level(levels: Sequence[LevelPoint], level_key: str) -> Optional[LevelPoint]:
    """
    Find the level a key refers to.

    Exact service-name match first, then exact level key, then a
    case-insensitive partial service-name match.
    """
    if not level_key:
        return None
    needle = level_key.strip().lower()
    for level in levels:
        if level.service_name.lower() == needle:
            return level
    for level in levels:
        if level.level_key.lower() == needle:
            return level
    for level in levels:
        if needle in level.service_name.lower():
            return level
    return None


def compute_score(
    events: Iterable[ScoringEvent],
    levels: Sequence[LevelPoint],
    hint_penalty: int,
) -> ScoreBreakdown:
    """
    Derive a score from an ordered event history.

    flag points + distinct completed level points - hints * penalty.
    A level counts once however many completion events reference it; a key
    that matches no configured level falls back to the point stored on its
    first completion event.
    """
    breakdown = ScoreBreakdown(hint_penalty=hint_penalty)
    seen_levels: Dict[str, int] = {}

    for event in events:
        if event.event_type == EventType.FLAG_CAPTURED.value:
            breakdown.flag_score += event.point or 0

        elif event.event_type == EventType.HINT_REQUESTED.value:
            breakdown.hints_used += 1

        elif event.event_type == EventType.LEVEL_COMPLETED.value and event.level_key:
            level = match_level(levels, event.level_key)
            dedup_key = level.service_name if level else event.level_key.strip().lower()
            if dedup_key in seen_levels:
                continue
            seen_levels[dedup_key] = level.completion_point if level else (event.point or 0)
            breakdown.levels_completed.append(level.level_key if level else dedup_key)

    breakdown.level_score = sum(seen_levels.values())
    return breakdown
