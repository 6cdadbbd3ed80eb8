"""
CTF Range Orchestrator - Persistence Models

Sessions, levels, player containers, players and the append-only event log.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ctfrange.domain.game.entities import ContainerStatus, SessionMode, SessionStatus
from ctfrange.infrastructure.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class GameSession(Base):
    """One timed instance of the training game."""

    __tablename__ = "range_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_code: Mapped[str] = mapped_column(String(6), unique=True, index=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=3600)
    max_players: Mapped[int] = mapped_column(Integer, default=10)
    max_players_per_team: Mapped[int] = mapped_column(Integer, default=1)
    team_count: Mapped[int] = mapped_column(Integer, default=0)
    selected_levels: Mapped[List[str]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(
        String(16), default=SessionStatus.PENDING.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    destroyed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    levels: Mapped[List["Level"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def mode(self) -> SessionMode:
        return SessionMode.for_team_size(self.max_players_per_team)

    @property
    def is_team_mode(self) -> bool:
        return self.mode == SessionMode.TEAM

    @property
    def status_enum(self) -> SessionStatus:
        return SessionStatus(self.status)

    @property
    def is_joinable(self) -> bool:
        return not self.status_enum.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "session_code": self.session_code,
            "duration_seconds": self.duration_seconds,
            "max_players": self.max_players,
            "max_players_per_team": self.max_players_per_team,
            "team_count": self.team_count,
            "mode": self.mode.value,
            "selected_levels": list(self.selected_levels or []),
            "status": self.status,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "destroyed_at": _iso(self.destroyed_at),
        }


class Level(Base):
    """A scored target service within a session."""

    __tablename__ = "levels"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("range_sessions.id", ondelete="CASCADE"), index=True
    )
    level_key: Mapped[str] = mapped_column(String(64))
    service_name: Mapped[str] = mapped_column(String(128), unique=True)
    completion_point: Mapped[int] = mapped_column(Integer, default=0)

    session: Mapped[GameSession] = relationship(back_populates="levels")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "level_key": self.level_key,
            "service_name": self.service_name,
            "completion_point": self.completion_point,
        }


class PlayerContainer(Base):
    """An attacker sandbox owned by one player (FFA) or one team."""

    __tablename__ = "player_containers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    container_code: Mapped[str] = mapped_column(String(8), unique=True, index=True)
    container_url: Mapped[Optional[str]] = mapped_column(String(255))
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("range_sessions.id", ondelete="CASCADE"), index=True
    )
    team_number: Mapped[Optional[int]] = mapped_column(Integer)
    user_connected_count: Mapped[int] = mapped_column(Integer, default=0)
    total_score: Mapped[int] = mapped_column(Integer, default=0)
    hint_used: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=ContainerStatus.CREATING.value)
    runtime_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    runtime_name: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    players: Mapped[List["Player"]] = relationship(
        back_populates="container", lazy="selectin", order_by="Player.joined_at"
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "container_code": self.container_code,
            "container_url": self.container_url,
            "session_id": str(self.session_id),
            "team_number": self.team_number,
            "user_connected_count": self.user_connected_count,
            "total_score": self.total_score,
            "hint_used": self.hint_used,
            "status": self.status,
            "runtime_id": self.runtime_id[:12] if self.runtime_id else None,
            "created_at": _iso(self.created_at),
        }


class Player(Base):
    """A joined player. Display names are unique per session, ignoring case."""

    __tablename__ = "players"
    __table_args__ = (
        UniqueConstraint("session_id", "name_key", name="uq_players_session_name"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("range_sessions.id", ondelete="CASCADE"), index=True
    )
    container_id: Mapped[UUID] = mapped_column(
        ForeignKey("player_containers.id", ondelete="CASCADE"), index=True
    )
    display_name: Mapped[str] = mapped_column(String(32))
    name_key: Mapped[str] = mapped_column(String(32))
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    container: Mapped[PlayerContainer] = relationship(back_populates="players")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "display_name": self.display_name,
            "container_id": str(self.container_id),
            "session_id": str(self.session_id),
            "joined_at": _iso(self.joined_at),
        }


class ContainerEvent(Base):
    """Immutable gameplay event. Scores are derived from these rows only."""

    __tablename__ = "container_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    container_id: Mapped[UUID] = mapped_column(
        ForeignKey("player_containers.id", ondelete="CASCADE"), index=True
    )
    event_type: Mapped[str] = mapped_column(String(32), index=True)
    point: Mapped[Optional[int]] = mapped_column(Integer)
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "container_id": str(self.container_id),
            "point": self.point,
            "metadata": dict(self.event_metadata or {}),
            "created_at": _iso(self.created_at),
        }
