"""GitHub contents-API gateway.

All channel content lives on a dedicated branch (default ``vibechannel``).
Files are read and written through the REST contents endpoints, so no local
git checkout is needed. The blob SHA GitHub returns for every file is the
version token; writes that send a stale SHA are rejected with 409.

Conditional polling uses the commits endpoint with ``If-None-Match``: a 304
answer means nothing changed and does not count against the rate limit.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from datetime import datetime, timezone
from urllib.parse import quote

import httpx

from vibechannel import __version__
from vibechannel.core.models import (
    ChangeCheck,
    EntryType,
    Quota,
    RemoteCommit,
    RemoteEntry,
    RemoteFile,
    VersionToken,
)
from vibechannel.remote.base import (
    Conflict,
    MalformedRemoteContent,
    NotFound,
    QuotaObserver,
    RateLimited,
    TransportFailure,
    Unauthorized,
)

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"
DEFAULT_BRANCH = "vibechannel"


def _get_keyring_token() -> str | None:
    """Retrieve the GitHub token from the system keyring."""
    try:
        import keyring

        return keyring.get_password("vibechannel", "github_token")
    except Exception:
        log.debug("Keyring unavailable", exc_info=True)
        return None


def store_token(token: str) -> None:
    """Save the GitHub token to the system keyring."""
    import keyring

    keyring.set_password("vibechannel", "github_token", token)


def resolve_token(config: dict | None = None) -> str | None:
    """Resolve the GitHub token: config > VIBECHANNEL_TOKEN > keyring."""
    token = ((config or {}).get("github") or {}).get("token")
    if token and token != "keyring":
        return str(token)
    env_token = os.environ.get("VIBECHANNEL_TOKEN")
    if env_token:
        return env_token
    return _get_keyring_token()


class GitHubGateway:
    """RemoteGateway over the GitHub REST API for one repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str | None,
        *,
        branch: str = DEFAULT_BRANCH,
        root: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        on_quota: QuotaObserver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.root = root.strip("/")
        self._token = token
        self._on_quota = on_quota
        self.last_quota: Quota | None = None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": f"vibechannel-python/{__version__}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    @classmethod
    def from_config(
        cls, config: dict, on_quota: QuotaObserver | None = None
    ) -> GitHubGateway:
        gh = config.get("github", {})
        if not gh.get("owner") or not gh.get("repo"):
            raise ValueError("github.owner and github.repo must be set in config.yaml")
        return cls(
            gh["owner"],
            gh["repo"],
            resolve_token(config),
            branch=gh.get("branch", DEFAULT_BRANCH),
            root=gh.get("root", ""),
            base_url=gh.get("base_url", DEFAULT_BASE_URL),
            timeout=gh.get("timeout", 30.0),
            on_quota=on_quota,
        )

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubGateway:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- RemoteGateway ---

    async def list(self, path: str = "") -> list[RemoteEntry]:
        resp = await self._request("GET", self._contents_url(path), params={"ref": self.branch})
        data = resp.json()
        if not isinstance(data, list):
            raise NotFound(f"Not a directory: {path}")
        entries = []
        for item in data:
            kind = item.get("type")
            if kind not in (EntryType.FILE.value, EntryType.DIR.value):
                continue
            sha = item.get("sha")
            entries.append(
                RemoteEntry(
                    name=item["name"],
                    type=EntryType(kind),
                    version_token=VersionToken(sha) if sha else None,
                )
            )
        return entries

    async def get(self, path: str) -> RemoteFile:
        resp = await self._request("GET", self._contents_url(path), params={"ref": self.branch})
        data = resp.json()
        if not isinstance(data, dict) or data.get("type") != "file":
            raise NotFound(f"Not a file: {path}")
        try:
            raw = base64.b64decode((data.get("content") or "").replace("\n", ""), validate=True)
            content = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise MalformedRemoteContent(f"Failed to decode file content of {path}: {e}") from e
        return RemoteFile(content=content, version_token=VersionToken(data["sha"]))

    async def create(
        self, path: str, content: str, *, message: str | None = None
    ) -> VersionToken:
        body = {
            "message": message or f"Create {path}",
            "content": _b64(content),
            "branch": self.branch,
        }
        resp = await self._request("PUT", self._contents_url(path), json=body, write=True)
        return VersionToken(resp.json()["content"]["sha"])

    async def update(
        self,
        path: str,
        content: str,
        expected: VersionToken,
        *,
        message: str | None = None,
    ) -> VersionToken:
        body = {
            "message": message or f"Update {path}",
            "content": _b64(content),
            "sha": expected.value,
            "branch": self.branch,
        }
        resp = await self._request("PUT", self._contents_url(path), json=body, write=True)
        return VersionToken(resp.json()["content"]["sha"])

    async def delete(
        self, path: str, expected: VersionToken, *, message: str | None = None
    ) -> None:
        body = {
            "message": message or f"Delete {path}",
            "sha": expected.value,
            "branch": self.branch,
        }
        try:
            await self._request("DELETE", self._contents_url(path), json=body, write=True)
        except NotFound as e:
            # Already gone: someone else changed the state we held a token for
            raise Conflict(f"{path} no longer exists") from e

    async def latest_commit(self, path: str | None = None) -> RemoteCommit:
        resp = await self._request("GET", self._commits_url(), params=self._commit_params(path))
        commits = resp.json()
        if not commits:
            raise NotFound(f"No commits for {path or self.branch}")
        latest = commits[0]
        info = latest.get("commit", {})
        date_str = (info.get("committer") or {}).get("date")
        return RemoteCommit(
            id=latest["sha"],
            date=_parse_github_date(date_str),
            message=info.get("message", ""),
        )

    async def has_changed(
        self, marker: str | None, path: str | None = None
    ) -> ChangeCheck:
        headers = {"If-None-Match": marker} if marker else None
        resp = await self._request(
            "GET", self._commits_url(), params=self._commit_params(path), headers=headers
        )
        if resp.status_code == 304:
            return ChangeCheck(changed=False, marker=marker)
        return ChangeCheck(changed=True, marker=resp.headers.get("ETag", marker))

    # --- Internal ---

    def _full_path(self, path: str) -> str:
        parts = [p for p in (self.root, path.strip("/")) if p]
        return "/".join(parts)

    def _contents_url(self, path: str) -> str:
        full = self._full_path(path)
        base = f"/repos/{self.owner}/{self.repo}/contents"
        return f"{base}/{quote(full, safe='/')}" if full else base

    def _commits_url(self) -> str:
        return f"/repos/{self.owner}/{self.repo}/commits"

    def _commit_params(self, path: str | None) -> dict:
        params: dict = {"per_page": 1, "sha": self.branch}
        full = self._full_path(path or "")
        if full:
            params["path"] = full
        return params

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
        write: bool = False,
    ) -> httpx.Response:
        if not self._token:
            raise Unauthorized("No GitHub token configured - please sign in")

        request_headers = {"Authorization": f"Bearer {self._token}"}
        if headers:
            request_headers.update(headers)

        try:
            resp = await self._client.request(
                method, url, params=params, json=json, headers=request_headers
            )
        except httpx.TransportError as e:
            raise TransportFailure(f"GitHub unreachable: {e}") from e

        self._extract_quota(resp)
        log.debug("HTTP %s %s -> %d", method, url, resp.status_code)
        _raise_for_status(resp, write=write, reset_at=self.last_quota and self.last_quota.reset_at)
        return resp

    def _extract_quota(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        limit = resp.headers.get("X-RateLimit-Limit")
        if remaining is None or limit is None:
            return
        try:
            quota = Quota(remaining=int(remaining), limit=int(limit))
        except ValueError:
            return
        reset = resp.headers.get("X-RateLimit-Reset")
        if reset:
            try:
                quota.reset_at = datetime.fromtimestamp(float(reset), tz=timezone.utc)
            except ValueError:
                pass
        self.last_quota = quota
        if self._on_quota is not None:
            self._on_quota(quota)


def _raise_for_status(
    resp: httpx.Response, *, write: bool, reset_at: datetime | None
) -> None:
    """Translate an HTTP status into the sync error taxonomy."""
    code = resp.status_code
    if code < 300 or code == 304:
        return
    detail = _error_message(resp)
    if code == 401:
        raise Unauthorized("Unauthorized - please sign in again")
    if code in (403, 429):
        if resp.headers.get("X-RateLimit-Remaining") == "0" or code == 429:
            raise RateLimited("Rate limit exceeded - please try again later", reset_at=reset_at)
        raise Unauthorized(f"Forbidden: {detail}")
    if code == 404:
        raise NotFound(f"Resource not found: {resp.request.url.path}")
    if code == 409 or (code == 422 and write):
        raise Conflict(f"Version conflict: {detail}")
    raise TransportFailure(f"HTTP error {code}: {detail}")


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return ""


def _b64(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


def _parse_github_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
