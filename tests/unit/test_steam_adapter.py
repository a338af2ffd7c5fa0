"""Tests for SteamAdapter against a mocked Steam Web API."""
from datetime import datetime

import httpx
import pytest

from activity_sync.adapters.base import ProbeOutcome, RecordKind
from activity_sync.adapters.steam import SteamAdapter
from activity_sync.errors import CredentialMissing, PrivateProfile, RateLimited
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

from conftest import STEAM_ID, STEAM_KEY, mock_client

SINCE = datetime(2025, 1, 1)
RECENT_TS = 1736000000  # 2025-01-04
OLD_TS = 1700000000  # 2023-11-14

SECRET = PlatformSecret(platform=Platform.STEAM, value=STEAM_KEY, metadata={"steamUserId": STEAM_ID})

OWNED = {"response": {"game_count": 2, "games": [
    {"appid": 570, "name": "Dota 2", "playtime_forever": 6000, "rtime_last_played": RECENT_TS},
    {"appid": 440, "name": "Team Fortress 2", "playtime_forever": 120, "rtime_last_played": OLD_TS},
]}}
RECENT = {"response": {"total_count": 1, "games": [
    {"appid": 570, "name": "Dota 2", "playtime_2weeks": 90, "playtime_forever": 6000},
]}}
ACHIEVEMENTS = {"playerstats": {"steamID": STEAM_ID, "gameName": "Dota 2", "achievements": [
    {"apiname": "WIN_ONE", "achieved": 1, "unlocktime": RECENT_TS, "name": "First Win"},
    {"apiname": "WIN_MANY", "achieved": 0, "unlocktime": 0, "name": "Many Wins"},
]}}


def _steam(routes):
    """Handler mapping a path fragment to a Response (or a callable returning one)."""

    def handler(request: httpx.Request) -> httpx.Response:
        for fragment, response in routes.items():
            if fragment in request.url.path:
                return response(request) if callable(response) else response
        return httpx.Response(404)

    return handler


@pytest.fixture
def happy_routes():
    return {
        "GetOwnedGames": httpx.Response(200, json=OWNED),
        "GetRecentlyPlayedGames": httpx.Response(200, json=RECENT),
        "GetPlayerAchievements": httpx.Response(200, json=ACHIEVEMENTS),
    }


class TestFetch:
    @pytest.mark.asyncio
    async def test_collects_games_sessions_achievements(self, happy_routes, no_retry):
        async with mock_client(_steam(happy_routes)) as client:
            result = await SteamAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.error is None
        assert not result.partial
        kinds = [r["kind"] for r in result.records]
        assert kinds == ["game", "session", "achievement", "achievement"]
        # Team Fortress 2 was last played before the cursor
        assert all(r.get("appid") != 440 for r in result.records)
        assert result.next_cursor == str(RECENT_TS)

    @pytest.mark.asyncio
    async def test_private_profile_is_not_a_rate_limit(self, no_retry):
        routes = {"GetOwnedGames": httpx.Response(200, json={"response": {}})}
        async with mock_client(_steam(routes)) as client:
            result = await SteamAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, PrivateProfile)
        assert not isinstance(result.error, RateLimited)
        assert result.records == []
        assert not result.partial

    @pytest.mark.asyncio
    async def test_rate_limit_on_first_page(self, no_retry):
        routes = {"GetOwnedGames": httpx.Response(429)}
        async with mock_client(_steam(routes)) as client:
            result = await SteamAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, RateLimited)
        assert not result.partial

    @pytest.mark.asyncio
    async def test_failure_after_owned_games_is_partial(self, no_retry):
        routes = {
            "GetOwnedGames": httpx.Response(200, json=OWNED),
            "GetRecentlyPlayedGames": httpx.Response(503),
        }
        async with mock_client(_steam(routes)) as client:
            result = await SteamAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.partial
        assert len(result.records) == 1
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_hidden_achievements_are_skipped(self, happy_routes, no_retry):
        happy_routes["GetPlayerAchievements"] = httpx.Response(403)
        async with mock_client(_steam(happy_routes)) as client:
            result = await SteamAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.error is None
        assert [r["kind"] for r in result.records] == ["game", "session"]

    @pytest.mark.asyncio
    async def test_missing_steam_id(self, no_retry):
        secret = PlatformSecret(platform=Platform.STEAM, value=STEAM_KEY, metadata={})
        async with mock_client(_steam({})) as client:
            with pytest.raises(CredentialMissing):
                await SteamAdapter(client=client, policy=no_retry).fetch_incremental(secret, SINCE)


class TestProbe:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body, expected", [
        ({"response": {"players": [{"communityvisibilitystate": 3}]}}, ProbeOutcome.OK),
        ({"response": {"players": [{"communityvisibilitystate": 1}]}}, ProbeOutcome.PRIVATE_PROFILE),
        ({"response": {"players": []}}, ProbeOutcome.AUTH_REJECTED),
    ])
    async def test_outcomes(self, no_retry, body, expected):
        routes = {"GetPlayerSummaries": httpx.Response(200, json=body)}
        async with mock_client(_steam(routes)) as client:
            assert await SteamAdapter(client=client, policy=no_retry).probe(SECRET) == expected

    @pytest.mark.asyncio
    async def test_forbidden_key(self, no_retry):
        routes = {"GetPlayerSummaries": httpx.Response(403)}
        async with mock_client(_steam(routes)) as client:
            assert await SteamAdapter(client=client, policy=no_retry).probe(SECRET) == ProbeOutcome.AUTH_REJECTED

    @pytest.mark.asyncio
    async def test_server_down(self, no_retry):
        routes = {"GetPlayerSummaries": httpx.Response(500)}
        async with mock_client(_steam(routes)) as client:
            assert await SteamAdapter(client=client, policy=no_retry).probe(SECRET) == ProbeOutcome.UNREACHABLE


class TestNormalize:
    def setup_method(self):
        self.adapter = SteamAdapter(client=None, policy=None)

    def test_game(self):
        record = self.adapter.normalize({"kind": "game", **OWNED["response"]["games"][0]})
        assert record.external_id == "570"
        assert record.kind == RecordKind.GAME
        assert record.duration == 6000
        assert record.occurred_at == datetime(2025, 1, 4, 14, 13, 20)

    def test_session(self):
        record = self.adapter.normalize({"kind": "session", "rtime_last_played": RECENT_TS,
                                         **RECENT["response"]["games"][0]})
        assert record.external_id == f"570@{RECENT_TS}"
        assert record.duration == 90
        assert record.metadata["game_external_id"] == "570"

    def test_session_without_time_is_malformed(self):
        with pytest.raises(ValueError):
            self.adapter.normalize({"kind": "session", "appid": 570, "playtime_2weeks": 5})

    def test_achievement(self):
        unlocked = self.adapter.normalize({"kind": "achievement", "appid": 570,
                                           **ACHIEVEMENTS["playerstats"]["achievements"][0]})
        locked = self.adapter.normalize({"kind": "achievement", "appid": 570,
                                         **ACHIEVEMENTS["playerstats"]["achievements"][1]})
        assert unlocked.external_id == "570:WIN_ONE"
        assert unlocked.progress == 1.0
        assert locked.progress == 0.0
        assert locked.occurred_at is None
