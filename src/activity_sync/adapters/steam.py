"""
Steam Web API adapter.

Secret value is the Web API key; metadata.steamUserId is the 64-bit Steam ID.

A private profile is reported distinctly from a rate limit: Steam answers a
private profile with HTTP 200 and an empty `response` object for owned games,
and with communityvisibilitystate != 3 in the player summary.

Records yielded per sync:
  game         one per owned game played since the cursor (lifetime playtime)
  session      one per recently played game (two-week playtime)
  achievement  per recently played game, when the game has achievements
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from activity_sync.adapters.base import (
    CanonicalRecord,
    FetchResult,
    ProbeOutcome,
    RawRecord,
    RecordKind,
    check_status,
    page_failure,
    probe_outcome,
    to_timestamp,
    utc_from_timestamp,
)
from activity_sync.adapters.http import RetryPolicy, json_body, request_with_retry
from activity_sync.errors import AdapterError, CredentialMissing, PrivateProfile
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

logger = logging.getLogger(__name__)

PUBLIC_VISIBILITY = 3


@dataclass
class SteamAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    base_url: str = "https://api.steampowered.com"
    fetch_achievements: bool = True
    platform: Platform = Platform.STEAM

    def _steam_id(self, secret: PlatformSecret) -> str:
        steam_id = secret.metadata.get("steamUserId") or secret.metadata.get("steamId")
        if not steam_id:
            raise CredentialMissing("steamUserId missing from Steam credential metadata")
        return str(steam_id)

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await request_with_retry(
            self.client, "GET", f"{self.base_url}{path}",
            params=params, policy=self.policy, bucket=self.bucket,
        )
        check_status(response)
        return json_body(response)

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            data = await self._get(
                "/ISteamUser/GetPlayerSummaries/v2/",
                {"key": secret.value, "steamids": self._steam_id(secret)},
            )
        except AdapterError as exc:
            return probe_outcome(exc)
        players = (data.get("response") or {}).get("players") or []
        if not players:
            return ProbeOutcome.AUTH_REJECTED
        if players[0].get("communityvisibilitystate") != PUBLIC_VISIBILITY:
            return ProbeOutcome.PRIVATE_PROFILE
        return ProbeOutcome.OK

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        steam_id = self._steam_id(secret)
        since_ts = to_timestamp(since)
        records: List[RawRecord] = []

        try:
            owned = await self._get(
                "/IPlayerService/GetOwnedGames/v1/",
                {
                    "key": secret.value,
                    "steamid": steam_id,
                    "include_appinfo": 1,
                    "include_played_free_games": 1,
                },
            )
        except AdapterError as exc:
            return page_failure(records, exc)

        response = owned.get("response") or {}
        if "games" not in response:
            return page_failure(records, PrivateProfile("Steam profile game details are private"))

        for game in response["games"]:
            if (game.get("rtime_last_played") or 0) >= since_ts:
                records.append({"kind": RecordKind.GAME.value, **game})

        try:
            recent = await self._get(
                "/IPlayerService/GetRecentlyPlayedGames/v1/",
                {"key": secret.value, "steamid": steam_id},
            )
        except AdapterError as exc:
            return page_failure(records, exc)

        last_played = {g["appid"]: g.get("rtime_last_played") for g in response["games"]}
        for game in (recent.get("response") or {}).get("games") or []:
            if not game.get("playtime_2weeks"):
                continue
            records.append({
                "kind": RecordKind.SESSION.value,
                "rtime_last_played": last_played.get(game["appid"]),
                **game,
            })
            if self.fetch_achievements:
                try:
                    records.extend(await self._achievements(secret, steam_id, game))
                except AdapterError as exc:
                    return page_failure(records, exc)

        return FetchResult(records=records, next_cursor=str(max(
            [r.get("rtime_last_played") or 0 for r in records] + [since_ts]
        )))

    async def _achievements(self, secret, steam_id, game) -> List[RawRecord]:
        response = await request_with_retry(
            self.client, "GET", f"{self.base_url}/ISteamUserStats/GetPlayerAchievements/v1/",
            params={"key": secret.value, "steamid": steam_id, "appid": game["appid"], "l": "english"},
            policy=self.policy, bucket=self.bucket,
        )
        # 400: game has no stats; 403: achievements hidden for this game
        if response.status_code in (400, 403):
            logger.debug("No achievements for appid %s (%d)", game["appid"], response.status_code)
            return []
        check_status(response)
        stats = json_body(response).get("playerstats") or {}
        return [
            {"kind": RecordKind.ACHIEVEMENT.value, "appid": game["appid"], "game_name": game.get("name"), **ach}
            for ach in stats.get("achievements") or []
        ]

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        kind = RecordKind(raw["kind"])
        appid = str(raw["appid"])

        if kind == RecordKind.GAME:
            return CanonicalRecord(
                external_id=appid,
                platform=self.platform,
                kind=kind,
                title=raw["name"],
                occurred_at=utc_from_timestamp(raw.get("rtime_last_played")),
                duration=int(raw.get("playtime_forever") or 0),
                metadata={
                    "img_icon_url": raw.get("img_icon_url"),
                    "playtime_2weeks": raw.get("playtime_2weeks"),
                },
            )

        if kind == RecordKind.SESSION:
            start = utc_from_timestamp(raw.get("rtime_last_played"))
            if start is None:
                raise ValueError(f"Steam session for appid {appid} has no last-played time")
            return CanonicalRecord(
                external_id=f"{appid}@{int(raw['rtime_last_played'])}",
                platform=self.platform,
                kind=kind,
                title=raw.get("name") or appid,
                occurred_at=start,
                duration=int(raw["playtime_2weeks"]),
                metadata={"game_external_id": appid},
            )

        unlocked = raw.get("achieved") == 1
        return CanonicalRecord(
            external_id=f"{appid}:{raw['apiname']}",
            platform=self.platform,
            kind=kind,
            title=raw.get("name") or raw["apiname"],
            occurred_at=utc_from_timestamp(raw.get("unlocktime")) if unlocked else None,
            progress=1.0 if unlocked else 0.0,
            metadata={
                "game_external_id": appid,
                "game_name": raw.get("game_name"),
                "description": raw.get("description"),
            },
        )
