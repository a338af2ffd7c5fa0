"""
Offline credential format checks.

These run before any network call: a credential that fails here is rejected
without ever being probed against its platform.
"""
import re
from typing import Any, Dict, Iterable, Optional

from activity_sync.models.credential import Platform

STEAM_USER_ID_RE = re.compile(r"^765\d{14}$")
STEAM_API_KEY_RE = re.compile(r"^[A-Za-z0-9]{20,}$")
GITHUB_TOKEN_PREFIXES = ("ghp_", "gho_", "ghu_", "ghs_", "ghr_", "github_pat_")


def parse_cookie(cookie: str, fields: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Split a `k=v; k2=v2` cookie string. Values may themselves contain '='.

    Args:
        cookie: Raw Cookie header value.
        fields: If given, only these keys are kept.
    """
    wanted = set(fields) if fields is not None else None
    result: Dict[str, str] = {}
    for pair in (cookie or "").split(";"):
        key, sep, value = pair.strip().partition("=")
        if not sep or not key or not value:
            continue
        if wanted is None or key in wanted:
            result[key] = value
    return result


def hoyo_cookie_pair(cookie: str) -> Optional[Dict[str, str]]:
    """Return {"ltoken", "ltuid"} if BOTH are present (v1 or v2 names), else None."""
    parts = parse_cookie(cookie)
    ltoken = parts.get("ltoken") or parts.get("ltoken_v2")
    ltuid = parts.get("ltuid") or parts.get("ltuid_v2")
    if not ltoken or not ltuid:
        return None
    return {"ltoken": ltoken, "ltuid": ltuid}


def check_format(platform: Platform, value: str, metadata: Dict[str, Any]) -> Optional[str]:
    """Return an error message if the secret/metadata is malformed, else None."""
    value = (value or "").strip()
    metadata = metadata or {}
    if not value:
        return "Credential value is empty"

    if platform == Platform.STEAM:
        if not STEAM_API_KEY_RE.match(value):
            return "Invalid Steam API Key format"
        steam_id = str(metadata.get("steamUserId") or "")
        if not STEAM_USER_ID_RE.match(steam_id):
            return "steamUserId must be a 17-digit Steam ID starting with 765"
        return None

    if platform == Platform.GITHUB:
        if not value.startswith(GITHUB_TOKEN_PREFIXES) and len(value) < 40:
            return "Invalid GitHub token format (expected ghp_, github_pat_, ...)"
        return None

    if platform == Platform.BILIBILI:
        if not parse_cookie(value, ["SESSDATA"]):
            return "SESSDATA not found in cookie"
        return None

    if platform == Platform.DOUBAN:
        if not parse_cookie(value, ["bid", "dbcl2"]):
            return "Cookie missing required Douban fields (bid or dbcl2)"
        return None

    if platform == Platform.HOYOVERSE:
        if hoyo_cookie_pair(value) is None:
            return "HoYoverse cookie needs both ltoken and ltuid"
        return None

    if platform == Platform.JELLYFIN:
        if len(value) < 20:
            return "Jellyfin API token is too short"
        url = str(metadata.get("jellyfinUrl") or "")
        if not url.startswith(("http://", "https://")):
            return "jellyfinUrl must start with http:// or https://"
        return None

    return f"Platform {platform} is not supported"
