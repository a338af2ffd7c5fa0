"""
Outbound HTTP with bounded retries.

Rules:
- Network errors (httpx.RequestError), 5xx and 429 are retried with
  exponential backoff plus jitter, capped per sleep and by a hard deadline.
- Other 4xx responses are returned untouched; adapters decide what they mean
  (auth rejected, private profile, GitHub's secondary rate limit, ...).
- When retries run out the helper raises Unreachable or RateLimited instead
  of returning a bad response.

Bounds (5 attempts, 30 s max sleep, 120 s deadline) come from Settings and
can be overridden per RetryPolicy.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from activity_sync.config import get_settings
from activity_sync.errors import RateLimited, Unreachable

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    jitter_ratio: float = 0.1
    deadline_seconds: float = 120.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.http_max_attempts,
            backoff_seconds=settings.http_backoff_seconds,
            max_backoff_seconds=settings.http_max_backoff_seconds,
            deadline_seconds=settings.http_deadline_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Sleep before retry number `attempt` (1-based)."""
        if self.backoff_seconds <= 0:
            return 0.0
        delay = min(self.backoff_seconds * (2 ** max(0, attempt - 1)), self.max_backoff_seconds)
        if self.jitter_ratio > 0:
            delay += random.random() * delay * self.jitter_ratio
        return min(delay, self.max_backoff_seconds)


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: Optional[RetryPolicy] = None,
    bucket=None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Issue one logical request, retrying transient failures.

    Args:
        client: Shared AsyncClient for the job.
        method: HTTP verb.
        url: Absolute URL.
        policy: Retry bounds; defaults to Settings.
        bucket: Optional TokenBucket; one token is taken per attempt.

    Returns:
        The first response that is neither 5xx nor 429.

    Raises:
        RateLimited: 429 persisted through every attempt.
        Unreachable: network errors / 5xx persisted, or the deadline passed.
    """
    policy = policy or RetryPolicy.from_settings()
    attempts = max(1, policy.max_attempts)
    started = policy.clock()
    last_error: Optional[Exception] = None
    last_status: Optional[int] = None

    for attempt in range(1, attempts + 1):
        if bucket is not None:
            await bucket.acquire()
        delay = policy.backoff(attempt)
        try:
            response = await client.request(method.upper(), url, **kwargs)
        except httpx.RequestError as exc:
            last_error, last_status = exc, None
            logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt, attempts, exc)
        else:
            if response.status_code == 429:
                last_error, last_status = None, 429
                retry_after = _retry_after(response)
                if retry_after is not None:
                    delay = min(retry_after, policy.max_backoff_seconds)
            elif response.status_code >= 500:
                last_error, last_status = None, response.status_code
            else:
                return response
            logger.warning(
                "%s %s returned %d (attempt %d/%d)", method, url, response.status_code, attempt, attempts,
            )

        if attempt >= attempts:
            break
        if policy.clock() - started + delay > policy.deadline_seconds:
            logger.warning("%s %s gave up: deadline of %.0fs reached", method, url, policy.deadline_seconds)
            break
        if delay > 0:
            await policy.sleep(delay)

    details = {"url": url, "method": method.upper(), "attempts": attempt}
    if last_status == 429:
        raise RateLimited(f"Rate limited by {url}", status_code=429, details=details)
    if last_error is not None:
        raise Unreachable(f"{type(last_error).__name__}: {last_error}", details=details) from last_error
    raise Unreachable(f"{url} returned {last_status}", status_code=last_status, details=details)


def json_body(response: httpx.Response) -> Any:
    """Decode JSON or raise Unreachable (HTML error pages, truncated bodies)."""
    try:
        return response.json()
    except ValueError as exc:
        raise Unreachable(
            f"{response.request.url} returned non-JSON body",
            status_code=response.status_code,
        ) from exc
