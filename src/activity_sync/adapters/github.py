"""
GitHub adapter: commits authored by the token's user across their repositories.

Pagination follows the `Link: rel="next"` header and stops early on GitHub's
secondary rate limit (403/429 with Retry-After, X-RateLimit-Remaining: 0, or
a "secondary rate limit" message). Once the signal is seen no further pages
are requested for any repository in this fetch.

Per-repository commit listings run concurrently, bounded by max_concurrency.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

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
    probe_outcome,
    try_parse_iso,
)
from activity_sync.adapters.http import RetryPolicy, json_body, request_with_retry
from activity_sync.errors import AdapterError, RateLimited, Unreachable
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

logger = logging.getLogger(__name__)


def is_secondary_rate_limit(response: httpx.Response) -> bool:
    """GitHub's abuse/secondary limit, which arrives as 403 or 429 rather than a 5xx."""
    if response.status_code not in (403, 429):
        return False
    if response.headers.get("retry-after") is not None:
        return True
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    try:
        body = response.json()
    except ValueError:
        body = response.text
    message = str(body.get("message", "")) if isinstance(body, dict) else str(body)
    return "rate limit" in message.lower()


@dataclass
class GitHubAdapter:
    client: httpx.AsyncClient
    bucket: Any = None
    policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    base_url: str = "https://api.github.com"
    per_page: int = 100
    max_pages: int = 10
    max_concurrency: int = 4
    platform: Platform = Platform.GITHUB

    def _headers(self, secret: PlatformSecret) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {secret.value}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _get(self, secret: PlatformSecret, url: str, params=None) -> httpx.Response:
        response = await request_with_retry(
            self.client, "GET", url,
            params=params, headers=self._headers(secret),
            policy=self.policy, bucket=self.bucket,
        )
        if is_secondary_rate_limit(response):
            retry_after = response.headers.get("retry-after")
            raise RateLimited(
                "GitHub secondary rate limit hit",
                status_code=response.status_code,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                details={"url": url},
            )
        check_status(response)
        return response

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        try:
            await self._get(secret, f"{self.base_url}/user")
        except AdapterError as exc:
            return probe_outcome(exc)
        return ProbeOutcome.OK

    async def _paginate(
        self, secret: PlatformSecret, url: str, params: Dict[str, Any], stop: asyncio.Event,
        *, empty_on_conflict: bool = False,
    ) -> Tuple[List[Dict[str, Any]], Optional[AdapterError]]:
        """
        Collect items across pages. Returns (items, error that ended pagination early).

        With empty_on_conflict a 409 ends pagination cleanly; GitHub answers
        commit listings of an empty repository with 409.
        """
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        next_params: Optional[Dict[str, Any]] = {**params, "per_page": self.per_page}
        for _ in range(self.max_pages):
            if next_url is None or stop.is_set():
                break
            try:
                response = await self._get(secret, next_url, next_params)
                page = json_body(response)
            except RateLimited as exc:
                stop.set()
                return items, exc
            except AdapterError as exc:
                if empty_on_conflict and exc.status_code == 409:
                    break
                return items, exc
            if not page:
                break
            items.extend(page)
            next_url = response.links.get("next", {}).get("url")
            next_params = None  # the next link already carries the query string
        return items, None

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        stop = asyncio.Event()
        try:
            user = json_body(await self._get(secret, f"{self.base_url}/user"))
        except AdapterError as exc:
            return page_failure([], exc)
        login = user.get("login") if isinstance(user, dict) else None
        if not login:
            return page_failure([], Unreachable("GitHub /user response has no login"))

        repos, error = await self._paginate(
            secret, f"{self.base_url}/user/repos",
            {"sort": "pushed", "direction": "desc", "affiliation": "owner,collaborator"},
            stop,
        )
        active = [
            r for r in repos
            if (try_parse_iso(r.get("pushed_at")) or datetime.min) >= since
        ]
        if error is not None and not active:
            return page_failure([], error)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        since_iso = since.strftime("%Y-%m-%dT%H:%M:%SZ")

        async def commits_for(repo: Dict[str, Any]):
            async with semaphore:
                return repo["full_name"], await self._paginate(
                    secret,
                    f"{self.base_url}/repos/{repo['full_name']}/commits",
                    {"author": login, "since": since_iso},
                    stop,
                    empty_on_conflict=True,
                )

        records: List[RawRecord] = []
        errors: List[AdapterError] = [error] if error is not None else []
        for full_name, (commits, repo_error) in await asyncio.gather(*(commits_for(r) for r in active)):
            records.extend({"repo": full_name, **c} for c in commits)
            if repo_error is not None:
                logger.warning("GitHub commits for %s incomplete: %s", full_name, repo_error)
                errors.append(repo_error)

        cursor = max(
            (c["commit"]["author"]["date"] for c in records if c.get("commit")),
            default=None,
        )
        if errors:
            # Prefer reporting the rate limit: it is why pagination stopped
            first = next((e for e in errors if isinstance(e, RateLimited)), errors[0])
            return page_failure(records, first, next_cursor=cursor)
        return FetchResult(records=records, next_cursor=cursor)

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        commit = raw["commit"]
        message = commit.get("message") or ""
        return CanonicalRecord(
            external_id=f"{raw['repo']}@{raw['sha']}",
            platform=self.platform,
            kind=RecordKind.CONTRIBUTION,
            title=message.splitlines()[0] if message else raw["sha"][:7],
            occurred_at=parse_iso(commit["author"]["date"]),
            metadata={
                "repo": raw["repo"],
                "sha": raw["sha"],
                "url": raw.get("html_url"),
            },
        )
