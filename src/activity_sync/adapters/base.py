"""
Platform adapter contract.

Every platform is a flat dataclass holding its own config, the job's
httpx.AsyncClient, an optional TokenBucket and a RetryPolicy. There is no
base class: adapters satisfy the PlatformAdapter protocol structurally and
share behaviour only through the helper functions in this module.

    probe(secret)                    → ProbeOutcome
    fetch_incremental(secret, since) → FetchResult
    normalize(raw)                   → CanonicalRecord

fetch_incremental never raises for a failed page. It returns what it has
collected with `partial=True` and the error attached. A failure before any
record was collected comes back as `partial=False` with the error set, which
the orchestrator finalizes as FAILED.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from activity_sync.errors import AdapterError, AuthRejected, PrivateProfile, RateLimited, Unreachable
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

RawRecord = Dict[str, Any]


class ProbeOutcome(str, Enum):
    OK = "ok"
    AUTH_REJECTED = "auth_rejected"
    PRIVATE_PROFILE = "private_profile"
    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"


class RecordKind(str, Enum):
    GAME = "game"
    SESSION = "session"
    ACHIEVEMENT = "achievement"
    MEDIA = "media"
    CONTRIBUTION = "contribution"


@dataclass
class CanonicalRecord:
    """Normalized, cross-platform shape of one synced item."""

    external_id: str
    platform: Platform
    kind: RecordKind
    title: str
    occurred_at: Optional[datetime] = None  # naive UTC
    duration: Optional[int] = None  # minutes for games/sessions, seconds for media
    progress: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    records: List[RawRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    partial: bool = False
    error: Optional[AdapterError] = None


@runtime_checkable
class PlatformAdapter(Protocol):
    platform: Platform

    async def probe(self, secret: PlatformSecret) -> ProbeOutcome:
        ...

    async def fetch_incremental(self, secret: PlatformSecret, since: datetime) -> FetchResult:
        ...

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        ...


# ── Shared helpers ────────────────────────────────────────────────────────────

def page_failure(
    records: List[RawRecord],
    error: AdapterError,
    next_cursor: Optional[str] = None,
) -> FetchResult:
    """FetchResult for a page that failed after retries."""
    return FetchResult(
        records=records,
        next_cursor=next_cursor,
        partial=bool(records),
        error=error,
    )


def probe_outcome(error: AdapterError) -> ProbeOutcome:
    """Map an adapter exception onto a probe outcome."""
    if isinstance(error, PrivateProfile):
        return ProbeOutcome.PRIVATE_PROFILE
    if isinstance(error, AuthRejected):
        return ProbeOutcome.AUTH_REJECTED
    if isinstance(error, RateLimited):
        return ProbeOutcome.RATE_LIMITED
    return ProbeOutcome.UNREACHABLE


def check_status(response, *, auth_codes=(401, 403)) -> None:
    """Raise AuthRejected for auth failures and Unreachable for other 4xx."""
    if response.status_code in auth_codes:
        raise AuthRejected(
            f"{response.request.url.host} rejected the credential ({response.status_code})",
            status_code=response.status_code,
        )
    if response.status_code >= 400:
        raise Unreachable(
            f"{response.request.url.host} returned {response.status_code}",
            status_code=response.status_code,
        )


def utc_from_timestamp(ts: Optional[float]) -> Optional[datetime]:
    """Unix seconds → naive UTC datetime; None/0 → None."""
    if not ts:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).replace(tzinfo=None)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 (with Z or offset, up to 7 fractional digits) → naive UTC."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # Jellyfin emits 7 fractional digits; fromisoformat accepts at most 6
    if "." in text:
        head, _, rest = text.partition(".")
        digits = "".join(ch for ch in rest if ch.isdigit())
        tz = rest[len(digits):]
        text = f"{head}.{digits[:6]}{tz}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def try_parse_iso(value: Optional[str]) -> Optional[datetime]:
    """parse_iso for fetch-time filtering: malformed values read as unknown."""
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        return None


def to_timestamp(dt: datetime) -> int:
    """Naive UTC datetime → unix seconds."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
