"""
HoYoverse game-record adapter (cookie auth).

The cookie must carry BOTH ltoken and ltuid (or their _v2 names). A cookie
with only one of them is rejected before any request is made.

The record card lists one entry per game role (Genshin, Star Rail, ZZZ, ...)
with level and summary stats. It is a snapshot with no timestamps, so each
sync re-delivers every role and the upsert layer reports them as existing.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

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
)
from activity_sync.adapters.http import USER_AGENT, RetryPolicy, json_body, request_with_retry
from activity_sync.errors import AdapterError, AuthRejected, RateLimited, Unreachable
from activity_sync.models.credential import Platform
from activity_sync.vault.formats import hoyo_cookie_pair
from activity_sync.vault.vault import PlatformSecret

AUTH_RETCODES = {-100, 10001, 10103}
THROTTLE_RETCODES = {-110, 10101}


@dataclass
class HoYoverseAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    base_url: str = "https://api-takumi-record.mihoyo.com"
    platform: Platform = Platform.HOYOVERSE

    async def _card(self, secret: PlatformSecret) -> Dict[str, Any]:
        pair = hoyo_cookie_pair(secret.value)
        if pair is None:
            raise AuthRejected("HoYoverse cookie needs both ltoken and ltuid")
        response = await request_with_retry(
            self.client, "GET", f"{self.base_url}/game_record/card/wapi/getGameRecordCard",
            params={"uid": pair["ltuid"]},
            headers={"Cookie": secret.value, "User-Agent": USER_AGENT},
            policy=self.policy, bucket=self.bucket,
        )
        check_status(response)
        data = json_body(response)
        retcode = data.get("retcode", 0)
        if retcode in AUTH_RETCODES:
            raise AuthRejected(data.get("message") or "HoYoverse rejected the cookie", details={"retcode": retcode})
        if retcode in THROTTLE_RETCODES:
            raise RateLimited(data.get("message") or "HoYoverse throttled the request", details={"retcode": retcode})
        if retcode != 0:
            raise Unreachable(data.get("message") or f"HoYoverse error {retcode}", details={"retcode": retcode})
        return data.get("data") or {}

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            await self._card(secret)
        except AdapterError as exc:
            return probe_outcome(exc)
        return ProbeOutcome.OK

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        try:
            card = await self._card(secret)
        except AdapterError as exc:
            return page_failure([], exc)
        fetched_at = datetime.utcnow().replace(microsecond=0)
        records = [{**game, "fetched_at": fetched_at.isoformat()} for game in card.get("list") or []]
        return FetchResult(records=records, next_cursor=fetched_at.isoformat())

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        stats = {item.get("name"): item.get("value") for item in raw.get("data") or []}
        return CanonicalRecord(
            external_id=f"{raw['game_id']}:{raw['game_role_id']}",
            platform=self.platform,
            kind=RecordKind.GAME,
            title=raw.get("game_name") or str(raw["game_id"]),
            occurred_at=datetime.fromisoformat(raw["fetched_at"]),
            progress=float(raw["level"]) if raw.get("level") is not None else None,
            metadata={
                "nickname": raw.get("nickname"),
                "region": raw.get("region_name") or raw.get("region"),
                "level": raw.get("level"),
                "stats": stats,
            },
        )
