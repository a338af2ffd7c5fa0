"""
Jellyfin played-items adapter (API token auth).

metadata.jellyfinUrl is the server base URL. metadata.userId selects the
library user; without it the first user named metadata.username, or else the
first user on the server, is used.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import httpx

from activity_sync.adapters.base import (
    CanonicalRecord,
    FetchResult,
    ProbeOutcome,
    RawRecord,
    RecordKind,
    check_status,
    page_failure,
    parse_iso,
    try_parse_iso,
    probe_outcome,
)
from activity_sync.adapters.http import RetryPolicy, json_body, request_with_retry
from activity_sync.errors import AdapterError, AuthRejected, CredentialMissing
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

TICKS_PER_SECOND = 10_000_000


@dataclass
class JellyfinAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    page_size: int = 100
    max_pages: int = 20
    platform: Platform = Platform.JELLYFIN

    @staticmethod
    def _base(secret: PlatformSecret) -> str:
        url = secret.metadata.get("jellyfinUrl")
        if not url:
            raise CredentialMissing("jellyfinUrl missing from Jellyfin credential metadata")
        return str(url).rstrip("/")

    async def _get(self, secret: PlatformSecret, path: str, params=None) -> Any:
        response = await request_with_retry(
            self.client, "GET", f"{self._base(secret)}{path}",
            params=params, headers={"X-Emby-Token": secret.value},
            policy=self.policy, bucket=self.bucket,
        )
        check_status(response)
        return json_body(response)

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            info = await self._get(secret, "/System/Info")
        except AdapterError as exc:
            return probe_outcome(exc)
        return ProbeOutcome.OK if info.get("ServerName") else ProbeOutcome.UNREACHABLE

    async def _user_id(self, secret: PlatformSecret) -> str:
        if secret.metadata.get("userId"):
            return str(secret.metadata["userId"])
        users = await self._get(secret, "/Users")
        if not users:
            raise AuthRejected("Jellyfin token cannot see any users")
        wanted = secret.metadata.get("username")
        for user in users:
            if wanted and user.get("Name") == wanted:
                return user["Id"]
        return users[0]["Id"]

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        records: List[RawRecord] = []
        try:
            user_id = await self._user_id(secret)
        except AdapterError as exc:
            return page_failure(records, exc)

        for page in range(self.max_pages):
            try:
                data = await self._get(secret, f"/Users/{user_id}/Items", {
                    "Recursive": "true",
                    "Filters": "IsPlayed",
                    "IncludeItemTypes": "Movie,Episode",
                    "SortBy": "DatePlayed",
                    "SortOrder": "Descending",
                    "Fields": "UserData,RunTimeTicks,ProductionYear",
                    "StartIndex": page * self.page_size,
                    "Limit": self.page_size,
                })
            except AdapterError as exc:
                return page_failure(records, exc)

            items = data.get("Items") or []
            fresh = [i for i in items if (_played_at_or_none(i) or since) >= since]
            records.extend(fresh)
            if len(items) < self.page_size or len(fresh) < len(items):
                break

        newest = max(filter(None, map(_played_at_or_none, records)), default=None)
        return FetchResult(records=records, next_cursor=newest.isoformat() if newest else None)

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        user_data = raw.get("UserData") or {}
        title = raw["Name"]
        if raw.get("Type") == "Episode" and raw.get("SeriesName"):
            title = f"{raw['SeriesName']} - {title}"
        ticks = raw.get("RunTimeTicks")
        if user_data.get("Played"):
            progress = 1.0
        elif user_data.get("PlayedPercentage") is not None:
            progress = round(float(user_data["PlayedPercentage"]) / 100.0, 4)
        else:
            progress = None
        return CanonicalRecord(
            external_id=raw["Id"],
            platform=self.platform,
            kind=RecordKind.MEDIA,
            title=title,
            occurred_at=_played_at(raw),
            duration=int(ticks // TICKS_PER_SECOND) if ticks else None,
            progress=progress,
            metadata={
                "media_type": (raw.get("Type") or "").lower() or None,
                "series": raw.get("SeriesName"),
                "year": raw.get("ProductionYear"),
                "play_count": user_data.get("PlayCount"),
            },
        )


def _played_at(item: Dict[str, Any]):
    return parse_iso((item.get("UserData") or {}).get("LastPlayedDate"))


def _played_at_or_none(item: Dict[str, Any]):
    return try_parse_iso((item.get("UserData") or {}).get("LastPlayedDate"))
