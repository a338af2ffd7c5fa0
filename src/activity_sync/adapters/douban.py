"""
Douban collection adapter (cookie auth, HTML scraping).

There is no JSON API for a user's marked films, so the adapter walks the
"collect" list pages (15 items each, newest first) and parses them with
BeautifulSoup. Douban only records the mark date, so occurred_at is midnight
UTC of that day.

Douban sends logged-out sessions to passport.douban.com and answers
throttled clients with 403 (sometimes 418).
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

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
from activity_sync.adapters.http import USER_AGENT, RetryPolicy, request_with_retry
from activity_sync.errors import AdapterError, AuthRejected, CredentialMissing, RateLimited
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

logger = logging.getLogger(__name__)

_SUBJECT_RE = re.compile(r"/subject/(\d+)")
_RATING_RE = re.compile(r"rating(\d)-t")
_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def parse_collection_page(html: str) -> List[Dict[str, Any]]:
    """Extract {subject_id, title, url, date, rating, comment} dicts from a collect page."""
    soup = BeautifulSoup(html, "html.parser")
    items = []
    for node in soup.select("div.item"):
        link = node.select_one("li.title a") or node.select_one(".title a")
        if link is None:
            continue
        href = link.get("href", "")
        match = _SUBJECT_RE.search(href)
        if not match:
            continue
        date_node = node.select_one("span.date")
        date_match = _DATE_RE.search(date_node.get_text()) if date_node else None
        rating = None
        for span in node.select("span[class]"):
            for cls in span.get("class", []):
                rating_match = _RATING_RE.match(cls)
                if rating_match:
                    rating = int(rating_match.group(1))
        comment = node.select_one("span.comment")
        items.append({
            "subject_id": match.group(1),
            "title": " ".join(link.get_text().split()),
            "url": href,
            "date": date_match.group(0) if date_match else None,
            "rating": rating,
            "comment": comment.get_text(strip=True) if comment else None,
        })
    return items


@dataclass
class DoubanAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    base_url: str = "https://movie.douban.com"
    account_url: str = "https://www.douban.com/mine/"
    page_size: int = 15
    max_pages: int = 20
    platform: Platform = Platform.DOUBAN

    def _headers(self, secret: PlatformSecret) -> Dict[str, str]:
        return {"Cookie": secret.value, "User-Agent": USER_AGENT, "Referer": "https://www.douban.com/"}

    async def _get_html(self, secret: PlatformSecret, url: str, params=None) -> httpx.Response:
        response = await request_with_retry(
            self.client, "GET", url,
            params=params, headers=self._headers(secret),
            policy=self.policy, bucket=self.bucket, follow_redirects=True,
        )
        if "passport.douban.com" in str(response.url) or "/login" in response.url.path:
            raise AuthRejected("Douban cookie is invalid or expired (redirected to login)")
        if response.status_code in (403, 418):
            raise RateLimited("Douban refused the request", status_code=response.status_code)
        check_status(response, auth_codes=(401,))
        return response

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            await self._get_html(secret, self.account_url)
        except AdapterError as exc:
            return probe_outcome(exc)
        return ProbeOutcome.OK

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        user_id = secret.metadata.get("userId")
        if not user_id:
            raise CredentialMissing("userId missing from Douban credential metadata")
        since_day = since.date()
        records: List[RawRecord] = []
        newest: Optional[str] = None

        for page in range(self.max_pages):
            try:
                response = await self._get_html(
                    secret, f"{self.base_url}/people/{user_id}/collect",
                    {"start": page * self.page_size, "sort": "time", "mode": "grid"},
                )
            except AdapterError as exc:
                return page_failure(records, exc, next_cursor=newest)

            items = parse_collection_page(response.text)
            fresh = [
                i for i in items
                if i["date"] is None or datetime.strptime(i["date"], "%Y-%m-%d").date() >= since_day
            ]
            records.extend(fresh)
            if fresh and newest is None:
                newest = fresh[0]["date"]
            if len(items) < self.page_size or len(fresh) < len(items):
                break

        return FetchResult(records=records, next_cursor=newest)

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        return CanonicalRecord(
            external_id=raw["subject_id"],
            platform=self.platform,
            kind=RecordKind.MEDIA,
            title=raw["title"],
            occurred_at=datetime.strptime(raw["date"], "%Y-%m-%d") if raw.get("date") else None,
            progress=1.0,
            metadata={
                "media_type": "movie",
                "url": raw.get("url"),
                "rating": raw.get("rating"),
                "comment": raw.get("comment"),
            },
        )
