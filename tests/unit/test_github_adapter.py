"""Tests for GitHubAdapter: pagination, secondary rate limits, concurrency."""
from datetime import datetime

import httpx
import pytest

from activity_sync.adapters.base import ProbeOutcome, RecordKind
from activity_sync.adapters.github import GitHubAdapter, is_secondary_rate_limit
from activity_sync.errors import AuthRejected, RateLimited, Unreachable
from activity_sync.models.credential import Platform
from activity_sync.vault.vault import PlatformSecret

from conftest import mock_client

SINCE = datetime(2025, 1, 1)
SECRET = PlatformSecret(platform=Platform.GITHUB, value="ghp_" + "a" * 36)
API = "https://api.github.com"


def _commit(sha, date="2025-01-10T12:00:00Z", message="Fix bug\n\nDetails"):
    return {"sha": sha, "html_url": f"https://github.com/x/{sha}",
            "commit": {"message": message, "author": {"date": date}}}


def _repo(name, pushed_at="2025-01-10T12:00:00Z"):
    return {"full_name": name, "pushed_at": pushed_at}


def _response(request, status=200, **kwargs):
    return httpx.Response(status, request=request, **kwargs)


class TestSecondaryRateLimit:
    def _resp(self, status, headers=None, json=None):
        return httpx.Response(status, headers=headers or {}, json=json if json is not None else {},
                              request=httpx.Request("GET", API))

    def test_retry_after(self):
        assert is_secondary_rate_limit(self._resp(403, {"retry-after": "60"}))

    def test_remaining_zero(self):
        assert is_secondary_rate_limit(self._resp(403, {"x-ratelimit-remaining": "0"}))

    def test_message(self):
        assert is_secondary_rate_limit(
            self._resp(403, json={"message": "You have exceeded a secondary rate limit."}))

    def test_plain_forbidden_is_not_a_rate_limit(self):
        assert not is_secondary_rate_limit(self._resp(403, json={"message": "Resource not accessible"}))

    def test_list_body(self):
        assert not is_secondary_rate_limit(self._resp(403, json=[]))

    def test_success_is_never_a_rate_limit(self):
        assert not is_secondary_rate_limit(self._resp(200, {"x-ratelimit-remaining": "0"}))


class TestFetch:
    @pytest.mark.asyncio
    async def test_commits_across_repos_and_pages(self, no_retry):
        def handler(request):
            path = request.url.path
            if path == "/user":
                return _response(request, json={"login": "octo"})
            if path == "/user/repos":
                return _response(request, json=[
                    _repo("octo/a"), _repo("octo/b"), _repo("octo/stale", "2024-06-01T00:00:00Z"),
                ])
            if path == "/repos/octo/a/commits":
                if request.url.params.get("page") == "2":
                    return _response(request, json=[_commit("a2", "2025-01-12T08:00:00Z")])
                return _response(request, json=[_commit("a1")], headers={
                    "link": f'<{API}/repos/octo/a/commits?page=2>; rel="next"',
                })
            if path == "/repos/octo/b/commits":
                assert request.url.params["author"] == "octo"
                assert request.url.params["since"] == "2025-01-01T00:00:00Z"
                return _response(request, json=[_commit("b1")])
            raise AssertionError(f"unexpected request {request.url}")

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.error is None
        assert sorted(f"{r['repo']}@{r['sha']}" for r in result.records) == [
            "octo/a@a1", "octo/a@a2", "octo/b@b1",
        ]
        assert result.next_cursor == "2025-01-12T08:00:00Z"

    @pytest.mark.asyncio
    async def test_stops_on_secondary_rate_limit(self, no_retry):
        requested = []

        def handler(request):
            requested.append(request.url.path + "?" + request.url.query.decode())
            path = request.url.path
            if path == "/user":
                return _response(request, json={"login": "octo"})
            if path == "/user/repos":
                return _response(request, json=[_repo("octo/a")])
            if request.url.params.get("page") == "2":
                return _response(request, 403, headers={"retry-after": "30"},
                                 json={"message": "You have exceeded a secondary rate limit"})
            if request.url.params.get("page") == "3":
                raise AssertionError("pagination must stop after the secondary rate limit")
            return _response(request, json=[_commit("a1")], headers={
                "link": f'<{API}/repos/octo/a/commits?page=2>; rel="next"',
            })

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, RateLimited)
        assert result.error.retry_after == 30.0
        assert result.partial
        assert [r["sha"] for r in result.records] == ["a1"]

    @pytest.mark.asyncio
    async def test_html_page_keeps_other_repos_commits(self, no_retry):
        def handler(request):
            path = request.url.path
            if path == "/user":
                return _response(request, json={"login": "octo"})
            if path == "/user/repos":
                return _response(request, json=[_repo("octo/good"), _repo("octo/broken")])
            if path == "/repos/octo/good/commits":
                return _response(request, json=[_commit("g1"), _commit("g2")])
            return _response(request, text="<html>oops</html>")

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.partial
        assert isinstance(result.error, Unreachable)
        assert sorted(r["sha"] for r in result.records) == ["g1", "g2"]

    @pytest.mark.asyncio
    async def test_html_user_response_fails_first_page(self, no_retry):
        async with mock_client(lambda r: _response(r, text="<html>maintenance</html>")) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, Unreachable)
        assert not result.partial
        assert result.records == []

    @pytest.mark.asyncio
    async def test_empty_repository_is_not_an_error(self, no_retry):
        def handler(request):
            path = request.url.path
            if path == "/user":
                return _response(request, json={"login": "octo"})
            if path == "/user/repos":
                return _response(request, json=[_repo("octo/a"), _repo("octo/new")])
            if path == "/repos/octo/new/commits":
                return _response(request, 409, json={"message": "Git Repository is empty."})
            return _response(request, json=[_commit("a1")])

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert result.error is None
        assert not result.partial
        assert [r["sha"] for r in result.records] == ["a1"]

    @pytest.mark.asyncio
    async def test_conflict_outside_commit_listing_still_fails(self, no_retry):
        def handler(request):
            if request.url.path == "/user":
                return _response(request, json={"login": "octo"})
            return _response(request, 409, json={"message": "Conflict"})

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, Unreachable)
        assert result.error.status_code == 409

    @pytest.mark.asyncio
    async def test_bad_token_fails_first_page(self, no_retry):
        def handler(request):
            return _response(request, 401, json={"message": "Bad credentials"})

        async with mock_client(handler) as client:
            result = await GitHubAdapter(client=client, policy=no_retry).fetch_incremental(SECRET, SINCE)

        assert isinstance(result.error, AuthRejected)
        assert not result.partial
        assert result.records == []

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, no_retry):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            return _response(request, json={"login": "octo"})

        async with mock_client(handler) as client:
            assert await GitHubAdapter(client=client, policy=no_retry).probe(SECRET) == ProbeOutcome.OK
        assert seen["auth"] == f"Bearer {SECRET.value}"


class TestNormalize:
    def test_commit(self):
        record = GitHubAdapter(client=None, policy=None).normalize({"repo": "octo/a", **_commit("abc1234")})
        assert record.external_id == "octo/a@abc1234"
        assert record.kind == RecordKind.CONTRIBUTION
        assert record.title == "Fix bug"
        assert record.occurred_at == datetime(2025, 1, 10, 12, 0)

    def test_missing_commit_is_malformed(self):
        with pytest.raises(KeyError):
            GitHubAdapter(client=None, policy=None).normalize({"repo": "octo/a", "sha": "x"})
