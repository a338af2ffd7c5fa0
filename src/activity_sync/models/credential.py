"""External platform credentials."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Platform(str, Enum):
    STEAM = "STEAM"
    GITHUB = "GITHUB"
    BILIBILI = "BILIBILI"
    DOUBAN = "DOUBAN"
    HOYOVERSE = "HOYOVERSE"
    JELLYFIN = "JELLYFIN"


class CredentialType(str, Enum):
    API_KEY = "API_KEY"
    COOKIE = "COOKIE"
    PERSONAL_ACCESS_TOKEN = "PERSONAL_ACCESS_TOKEN"


class SyncFrequency(str, Enum):
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    SIX_TIMES_DAILY = "six_times_daily"

    @property
    def interval(self) -> timedelta:
        """Minimum gap between two automatic syncs."""
        per_day = {
            SyncFrequency.DAILY: 1,
            SyncFrequency.TWICE_DAILY: 2,
            SyncFrequency.THREE_TIMES_DAILY: 3,
            SyncFrequency.FOUR_TIMES_DAILY: 4,
            SyncFrequency.SIX_TIMES_DAILY: 6,
        }[self]
        return timedelta(hours=24 / per_day)


class Credential(SQLModel, table=True):
    """One row per integration. `value` is tagged ciphertext or legacy plaintext."""

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: Platform = Field(index=True)
    type: CredentialType
    value: str
    # Free-form platform config, e.g. steamUserId, jellyfinUrl, userId
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    is_valid: bool = True
    last_validated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    usage_count: int = 0
    failure_count: int = 0
    last_error: Optional[str] = None

    auto_sync: bool = False
    sync_frequency: SyncFrequency = SyncFrequency.DAILY

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def meta(self) -> Dict[str, Any]:
        return self.metadata_json or {}
