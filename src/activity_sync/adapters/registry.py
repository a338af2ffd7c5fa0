"""Platform → adapter lookup. Adding a platform means adding one entry here."""
from typing import Any, Optional

import httpx

from activity_sync.adapters.bilibili import BilibiliAdapter
from activity_sync.adapters.douban import DoubanAdapter
from activity_sync.adapters.github import GitHubAdapter
from activity_sync.adapters.http import RetryPolicy
from activity_sync.adapters.hoyoverse import HoYoverseAdapter
from activity_sync.adapters.jellyfin import JellyfinAdapter
from activity_sync.adapters.steam import SteamAdapter
from activity_sync.models.credential import Platform

ADAPTERS = {
    Platform.STEAM: SteamAdapter,
    Platform.GITHUB: GitHubAdapter,
    Platform.BILIBILI: BilibiliAdapter,
    Platform.DOUBAN: DoubanAdapter,
    Platform.HOYOVERSE: HoYoverseAdapter,
    Platform.JELLYFIN: JellyfinAdapter,
}


def build_adapter(
    platform: Platform,
    client: httpx.AsyncClient,
    *,
    bucket: Any = None,
    policy: Optional[RetryPolicy] = None,
):
    """Instantiate the adapter for `platform` around the job's HTTP client."""
    try:
        adapter_cls = ADAPTERS[Platform(platform)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"No adapter for platform {platform!r}") from exc
    kwargs = {"client": client, "bucket": bucket}
    if policy is not None:
        kwargs["policy"] = policy
    return adapter_cls(**kwargs)
