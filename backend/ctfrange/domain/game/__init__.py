"""
Game Domain Module

Session rules, container statuses, event types and the scoring projection.
"""

from ctfrange.domain.game.entities import (
    ContainerStatus,
    EventType,
    GameSettings,
    SessionMode,
    SessionStatus,
)
from ctfrange.domain.game.scoring import (
    LevelPoint,
    ScoreBreakdown,
    ScoringEvent,
    compute_score,
)

__all__ = [
    "ContainerStatus",
    "EventType",
    "GameSettings",
    "SessionMode",
    "SessionStatus",
    "LevelPoint",
    "ScoreBreakdown",
    "ScoringEvent",
    "compute_score",
]
