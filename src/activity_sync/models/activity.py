"""
Canonical synced records: games, sessions, achievements, media, contributions.

Every table is written exclusively by the persistence layer during a sync.
Rows are keyed by (platform, external_id); sessions by (game_id, start_time);
playtime snapshots by (game_id, day).
"""
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class Game(SQLModel, table=True):
    """One row per owned/played game (Steam appid, HoYoverse game id)."""

    __table_args__ = (UniqueConstraint("platform", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)
    external_id: str = Field(index=True)
    title: str
    occurred_at: Optional[datetime] = None  # last played
    playtime_minutes: Optional[int] = None  # lifetime total, monotonic except on reset
    progress: Optional[float] = None
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class GameSession(SQLModel, table=True):
    """A played interval. Adapters deliver at-least-once, so (game_id, start_time) dedups."""

    __table_args__ = (UniqueConstraint("game_id", "start_time"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    platform: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: int = 0


class PlaytimeSnapshot(SQLModel, table=True):
    """Daily lifetime-playtime snapshot and the non-negative delta against the prior day."""

    __table_args__ = (UniqueConstraint("game_id", "day"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    day: date
    total_minutes: int
    delta_minutes: Optional[int] = None  # None on the first snapshot


class GameAchievement(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("platform", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)
    external_id: str = Field(index=True)  # "<game external id>:<achievement key>"
    game_id: Optional[int] = Field(default=None, foreign_key="game.id", index=True)
    title: str
    description: Optional[str] = None
    is_unlocked: bool = False
    occurred_at: Optional[datetime] = None  # unlock time
    progress: Optional[float] = None
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class MediaWatch(SQLModel, table=True):
    """Watched video/episode/film/book entry (Bilibili, Douban, Jellyfin)."""

    __table_args__ = (UniqueConstraint("platform", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)
    external_id: str = Field(index=True)
    title: str
    media_type: Optional[str] = None  # "video", "movie", "episode", "book", ...
    occurred_at: Optional[datetime] = None  # watched / marked at
    duration_seconds: Optional[int] = None
    progress: Optional[float] = None  # 0.0–1.0
    rating: Optional[float] = None
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class GitHubContribution(SQLModel, table=True):
    """One commit (or other contribution event) authored by the user."""

    __table_args__ = (UniqueConstraint("platform", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(default="GITHUB", index=True)
    external_id: str = Field(index=True)  # "<repo full name>@<sha>"
    title: str  # first line of the commit message
    repo: Optional[str] = Field(default=None, index=True)
    occurred_at: Optional[datetime] = None
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    synced_at: datetime = Field(default_factory=datetime.utcnow)
