"""Tests for vibechannel.remote.github: HTTP mocked with httpx.MockTransport."""

import base64
import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from vibechannel.core.models import EntryType, Quota, VersionToken
from vibechannel.remote.base import (
    Conflict,
    MalformedRemoteContent,
    NotFound,
    RateLimited,
    TransportFailure,
    Unauthorized,
)
from vibechannel.remote.github import GitHubGateway, resolve_token

RATE_HEADERS = {
    "X-RateLimit-Remaining": "4990",
    "X-RateLimit-Limit": "5000",
    "X-RateLimit-Reset": "1736935200",
}


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def _gateway(handler, token: str | None = "tok", **kwargs) -> GitHubGateway:
    return GitHubGateway(
        "acme", "chat", token, transport=httpx.MockTransport(handler), **kwargs
    )


class TestResolveToken:
    def test_config_token(self):
        assert resolve_token({"github": {"token": "abc"}}) == "abc"

    def test_env_token(self, monkeypatch):
        monkeypatch.setenv("VIBECHANNEL_TOKEN", "from-env")
        assert resolve_token({"github": {"token": "keyring"}}) == "from-env"

    def test_keyring_token(self, monkeypatch):
        monkeypatch.delenv("VIBECHANNEL_TOKEN", raising=False)
        with patch("keyring.get_password", return_value="from-keyring") as get:
            assert resolve_token({"github": {"token": "keyring"}}) == "from-keyring"
        get.assert_called_once_with("vibechannel", "github_token")

    def test_keyring_failure(self, monkeypatch):
        monkeypatch.delenv("VIBECHANNEL_TOKEN", raising=False)
        with patch("keyring.get_password", side_effect=RuntimeError("no backend")):
            assert resolve_token({}) is None


class TestFromConfig:
    def test_requires_owner_and_repo(self):
        with pytest.raises(ValueError):
            GitHubGateway.from_config({"github": {"owner": "acme"}})

    def test_builds(self):
        gw = GitHubGateway.from_config(
            {"github": {"owner": "acme", "repo": "chat", "token": "t", "branch": "main"}}
        )
        assert gw.repository == "acme/chat"
        assert gw.branch == "main"
        assert gw.has_token


class TestRequests:
    @pytest.mark.asyncio
    async def test_list(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json=[
                    {"name": "a.md", "type": "file", "sha": "s1"},
                    {"name": "sub", "type": "dir", "sha": "s2"},
                    {"name": "link", "type": "symlink", "sha": "s3"},
                ],
                headers=RATE_HEADERS,
            )

        async with _gateway(handler) as gw:
            entries = await gw.list("general")

        assert seen["url"].path == "/repos/acme/chat/contents/general"
        assert seen["url"].params["ref"] == "vibechannel"
        assert seen["auth"] == "Bearer tok"
        assert [(e.name, e.type) for e in entries] == [
            ("a.md", EntryType.FILE),
            ("sub", EntryType.DIR),
        ]
        assert entries[0].version_token == VersionToken("s1")

    @pytest.mark.asyncio
    async def test_root_prefix(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json=[])

        async with _gateway(handler, root="/chat/") as gw:
            await gw.list()
            await gw.list("general")
        assert paths == [
            "/repos/acme/chat/contents/chat",
            "/repos/acme/chat/contents/chat/general",
        ]

    @pytest.mark.asyncio
    async def test_get_decodes_base64(self):
        content = "---\nfrom: alice\n---\n\nhéllo"

        def handler(request):
            encoded = _b64(content)
            wrapped = "\n".join(encoded[i : i + 20] for i in range(0, len(encoded), 20))
            return httpx.Response(200, json={"type": "file", "sha": "abc", "content": wrapped})

        async with _gateway(handler) as gw:
            remote = await gw.get("general/x.md")
        assert remote.content == content
        assert remote.version_token == VersionToken("abc")

    @pytest.mark.asyncio
    async def test_get_bad_base64(self):
        def handler(request):
            return httpx.Response(200, json={"type": "file", "sha": "abc", "content": "!!!"})

        async with _gateway(handler) as gw:
            with pytest.raises(MalformedRemoteContent):
                await gw.get("general/x.md")

    @pytest.mark.asyncio
    async def test_create_sends_body(self):
        bodies = []

        def handler(request):
            assert request.method == "PUT"
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"content": {"sha": "new"}})

        async with _gateway(handler) as gw:
            token = await gw.create("general/x.md", "hi", message="Message from alice")
        assert token == VersionToken("new")
        assert bodies[0] == {
            "message": "Message from alice",
            "content": _b64("hi"),
            "branch": "vibechannel",
        }

    @pytest.mark.asyncio
    async def test_update_sends_sha(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"content": {"sha": "v2"}})

        async with _gateway(handler) as gw:
            token = await gw.update("general/x.md", "hi", VersionToken("v1"))
        assert token == VersionToken("v2")
        assert bodies[0]["sha"] == "v1"

    @pytest.mark.asyncio
    async def test_delete(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(200, json={"commit": {}})

        async with _gateway(handler) as gw:
            await gw.delete("general/x.md", VersionToken("v1"))
        assert methods == ["DELETE"]

    @pytest.mark.asyncio
    async def test_latest_commit(self):
        def handler(request):
            assert request.url.params["path"] == "general"
            assert request.url.params["sha"] == "vibechannel"
            return httpx.Response(
                200,
                json=[{
                    "sha": "c1",
                    "commit": {
                        "message": "Message from alice",
                        "committer": {"date": "2025-01-15T10:30:45Z"},
                    },
                }],
            )

        async with _gateway(handler) as gw:
            commit = await gw.latest_commit("general")
        assert commit.id == "c1"
        assert commit.message == "Message from alice"
        assert commit.date == datetime(2025, 1, 15, 10, 30, 45, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_latest_commit_empty(self):
        async with _gateway(lambda r: httpx.Response(200, json=[])) as gw:
            with pytest.raises(NotFound):
                await gw.latest_commit()


class TestHasChanged:
    @pytest.mark.asyncio
    async def test_etag_flow(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("If-None-Match"))
            if request.headers.get("If-None-Match") == '"e1"':
                return httpx.Response(304)
            return httpx.Response(200, json=[], headers={"ETag": '"e1"'})

        async with _gateway(handler) as gw:
            first = await gw.has_changed(None, "general")
            second = await gw.has_changed(first.marker, "general")

        assert first.changed
        assert first.marker == '"e1"'
        assert not second.changed
        assert second.marker == '"e1"'
        assert seen == [None, '"e1"']


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, headers, write, expected",
        [
            (401, {}, False, Unauthorized),
            (403, {"X-RateLimit-Remaining": "0", "X-RateLimit-Limit": "5000"}, False, RateLimited),
            (403, {"X-RateLimit-Remaining": "10", "X-RateLimit-Limit": "5000"}, False, Unauthorized),
            (429, {}, False, RateLimited),
            (404, {}, False, NotFound),
            (409, {}, True, Conflict),
            (422, {}, True, Conflict),
            (422, {}, False, TransportFailure),
            (500, {}, False, TransportFailure),
        ],
    )
    async def test_status(self, status, headers, write, expected):
        def handler(request):
            return httpx.Response(status, json={"message": "nope"}, headers=headers)

        async with _gateway(handler) as gw:
            with pytest.raises(expected):
                if write:
                    await gw.update("general/x.md", "c", VersionToken("v"))
                else:
                    await gw.get("general/x.md")

    @pytest.mark.asyncio
    async def test_delete_missing_is_conflict(self):
        async with _gateway(lambda r: httpx.Response(404, json={})) as gw:
            with pytest.raises(Conflict):
                await gw.delete("general/x.md", VersionToken("v"))

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _gateway(handler) as gw:
            with pytest.raises(TransportFailure):
                await gw.list()

    @pytest.mark.asyncio
    async def test_no_token(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[])

        async with _gateway(handler, token=None) as gw:
            with pytest.raises(Unauthorized):
                await gw.list()
        assert calls == []

    @pytest.mark.asyncio
    async def test_rate_limited_carries_reset(self):
        headers = {"X-RateLimit-Remaining": "0", "X-RateLimit-Limit": "60", "X-RateLimit-Reset": "1736935200"}

        async with _gateway(lambda r: httpx.Response(403, json={}, headers=headers)) as gw:
            with pytest.raises(RateLimited) as exc:
                await gw.list()
        assert exc.value.reset_at == datetime.fromtimestamp(1736935200, tz=timezone.utc)


class TestQuota:
    @pytest.mark.asyncio
    async def test_observer_called(self):
        reports: list[Quota] = []

        async with _gateway(
            lambda r: httpx.Response(200, json=[], headers=RATE_HEADERS), on_quota=reports.append
        ) as gw:
            await gw.list()

        assert len(reports) == 1
        assert reports[0].remaining == 4990
        assert reports[0].limit == 5000
        assert reports[0].reset_at == datetime.fromtimestamp(1736935200, tz=timezone.utc)
        assert gw.last_quota is reports[0]

    @pytest.mark.asyncio
    async def test_no_headers_no_report(self):
        reports: list[Quota] = []
        async with _gateway(lambda r: httpx.Response(200, json=[]), on_quota=reports.append) as gw:
            await gw.list()
        assert reports == []
