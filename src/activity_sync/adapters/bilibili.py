"""
Bilibili watch-history adapter (cookie auth).

The history endpoint is cursor-paged: each response carries the (max, view_at)
pair to send for the next page. Business-level errors arrive as HTTP 200 with
a non-zero `code`: -101 means the cookie is not logged in, -412 means the
request was throttled.
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
    probe_outcome,
    to_timestamp,
    utc_from_timestamp,
)
from activity_sync.adapters.http import USER_AGENT, RetryPolicy, json_body, request_with_retry
from activity_sync.errors import AdapterError, AuthRejected, RateLimited, Unreachable
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

NOT_LOGGED_IN = -101
THROTTLED = -412
FINISHED = -1  # `progress` value for a fully watched video


@dataclass
class BilibiliAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    base_url: str = "https://api.bilibili.com"
    page_size: int = 20
    max_pages: int = 25
    platform: Platform = Platform.BILIBILI

    async def _get(self, secret: PlatformSecret, path: str, params=None) -> Dict[str, Any]:
        response = await request_with_retry(
            self.client, "GET", f"{self.base_url}{path}",
            params=params,
            headers={"Cookie": secret.value, "User-Agent": USER_AGENT, "Referer": "https://www.bilibili.com"},
            policy=self.policy, bucket=self.bucket,
        )
        if response.status_code == 412:
            raise RateLimited("Bilibili throttled the request", status_code=412)
        check_status(response)
        data = json_body(response)
        code = data.get("code", 0)
        if code == NOT_LOGGED_IN:
            raise AuthRejected("Bilibili cookie is not logged in", details={"code": code})
        if code == THROTTLED:
            raise RateLimited("Bilibili throttled the request", details={"code": code})
        if code != 0:
            raise Unreachable(data.get("message") or f"Bilibili error {code}", details={"code": code})
        return data.get("data") or {}

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            nav = await self._get(secret, "/x/web-interface/nav")
        except AdapterError as exc:
            return probe_outcome(exc)
        return ProbeOutcome.OK if nav.get("isLogin") else ProbeOutcome.AUTH_REJECTED

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        since_ts = to_timestamp(since)
        records: List[RawRecord] = []
        cursor = {"max": 0, "view_at": 0, "business": ""}

        for _ in range(self.max_pages):
            try:
                page = await self._get(
                    secret, "/x/web-interface/history/cursor",
                    {**cursor, "ps": self.page_size, "type": "archive"},
                )
            except AdapterError as exc:
                return page_failure(records, exc, next_cursor=str(cursor["view_at"] or ""))

            items = page.get("list") or []
            fresh = [i for i in items if (i.get("view_at") or 0) >= since_ts]
            records.extend(fresh)
            next_cursor = page.get("cursor") or {}
            if not items or len(fresh) < len(items) or not next_cursor.get("max"):
                break
            cursor = {
                "max": next_cursor["max"],
                "view_at": next_cursor.get("view_at", 0),
                "business": next_cursor.get("business", ""),
            }

        newest = max((r.get("view_at") or 0 for r in records), default=since_ts)
        return FetchResult(records=records, next_cursor=str(newest))

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        history = raw.get("history") or {}
        external_id = history.get("bvid") or raw.get("bvid") or str(history["oid"])
        duration = raw.get("duration") or None
        progress_s = raw.get("progress")
        if progress_s == FINISHED:
            progress = 1.0
        elif duration and progress_s is not None:
            progress = round(min(1.0, max(0.0, progress_s / duration)), 4)
        else:
            progress = None
        return CanonicalRecord(
            external_id=external_id,
            platform=self.platform,
            kind=RecordKind.MEDIA,
            title=raw["title"],
            occurred_at=utc_from_timestamp(raw.get("view_at")),
            duration=int(duration) if duration else None,
            progress=progress,
            metadata={
                "media_type": "video",
                "author": raw.get("author_name"),
                "cover": raw.get("cover"),
                "business": history.get("business"),
            },
        )
