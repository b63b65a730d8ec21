"""In-process RemoteGateway backed by a dict, for tests and offline use.

Mirrors the semantics of a git-backed file host: version tokens are git blob
SHA-1s, every write is a commit, and the change marker is the commit count.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone

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
    NotFound,
    QuotaObserver,
    RateLimited,
)

log = logging.getLogger(__name__)


def blob_sha(content: str) -> VersionToken:
    """Git blob SHA-1 of a file's content."""
    data = content.encode("utf-8")
    h = hashlib.sha1(b"blob %d\0" % len(data))
    h.update(data)
    return VersionToken(h.hexdigest())


class MemoryGateway:
    """Dict-backed gateway for one repository."""

    def __init__(
        self,
        repository: str = "local/vibechannel",
        *,
        quota_limit: int | None = None,
        on_quota: QuotaObserver | None = None,
    ) -> None:
        self._repository = repository
        self._files: dict[str, str] = {}
        self._commits: list[tuple[RemoteCommit, str]] = []  # (commit, path)
        self._on_quota = on_quota
        self._quota_limit = quota_limit
        self._remaining = quota_limit
        self._failures: list[Exception] = []
        self.calls: list[tuple[str, str]] = []  # (operation, path)

    @property
    def repository(self) -> str:
        return self._repository

    # --- Test helpers ---

    def put_file(
        self, path: str, content: str, message: str | None = None
    ) -> VersionToken:
        """Write a file directly, as another client would. Not counted as a call."""
        path = _norm(path)
        self._files[path] = content
        self._commit(path, message or f"Write {path}")
        return blob_sha(content)

    def remove_file(self, path: str, message: str | None = None) -> None:
        path = _norm(path)
        self._files.pop(path, None)
        self._commit(path, message or f"Delete {path}")

    def read_file(self, path: str) -> str | None:
        return self._files.get(_norm(path))

    def fail_next(self, error: Exception) -> None:
        """Raise error from the next gateway call."""
        self._failures.append(error)

    @property
    def revision(self) -> int:
        return len(self._commits)

    # --- RemoteGateway ---

    async def list(self, path: str = "") -> list[RemoteEntry]:
        self._call("list", path)
        prefix = _norm(path)
        prefix = f"{prefix}/" if prefix else ""
        entries: dict[str, RemoteEntry] = {}
        for file_path, content in self._files.items():
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            name, sep, _ = rest.partition("/")
            if sep:
                entries.setdefault(name, RemoteEntry(name=name, type=EntryType.DIR))
            else:
                entries[name] = RemoteEntry(
                    name=name, type=EntryType.FILE, version_token=blob_sha(content)
                )
        if not entries and prefix:
            raise NotFound(f"Resource not found: {path}")
        return [entries[k] for k in sorted(entries)]

    async def get(self, path: str) -> RemoteFile:
        self._call("get", path)
        content = self._files.get(_norm(path))
        if content is None:
            raise NotFound(f"Resource not found: {path}")
        return RemoteFile(content=content, version_token=blob_sha(content))

    async def create(
        self, path: str, content: str, *, message: str | None = None
    ) -> VersionToken:
        self._call("create", path)
        path = _norm(path)
        if path in self._files:
            raise Conflict(f"File already exists: {path}")
        return self.put_file(path, content, message)

    async def update(
        self,
        path: str,
        content: str,
        expected: VersionToken,
        *,
        message: str | None = None,
    ) -> VersionToken:
        self._call("update", path)
        self._check_token(path, expected)
        return self.put_file(path, content, message)

    async def delete(
        self, path: str, expected: VersionToken, *, message: str | None = None
    ) -> None:
        self._call("delete", path)
        self._check_token(path, expected)
        self.remove_file(path, message)

    async def latest_commit(self, path: str | None = None) -> RemoteCommit:
        self._call("latest_commit", path or "")
        for commit, commit_path in reversed(self._commits):
            if _touches(commit_path, path):
                return commit
        raise NotFound(f"No commits for {path or 'branch'}")

    async def has_changed(
        self, marker: str | None, path: str | None = None
    ) -> ChangeCheck:
        self._call("has_changed", path or "")
        current = str(sum(1 for _, p in self._commits if _touches(p, path)))
        return ChangeCheck(changed=marker != current, marker=current)

    # --- Internal ---

    def _call(self, operation: str, path: str) -> None:
        self.calls.append((operation, path))
        if self._failures:
            log.debug("Injected failure for %s %s", operation, path)
            raise self._failures.pop(0)
        if self._remaining is None:
            return
        if self._remaining <= 0:
            self._report_quota()
            raise RateLimited("Rate limit exceeded - please try again later")
        self._remaining -= 1
        self._report_quota()

    def _report_quota(self) -> None:
        if self._on_quota is not None and self._quota_limit is not None:
            self._on_quota(Quota(remaining=self._remaining, limit=self._quota_limit))

    def _check_token(self, path: str, expected: VersionToken) -> None:
        content = self._files.get(_norm(path))
        if content is None:
            raise Conflict(f"{path} no longer exists")
        if blob_sha(content) != expected:
            raise Conflict(f"{path} has changed (expected {expected})")

    def _commit(self, path: str, message: str) -> None:
        n = len(self._commits) + 1
        sha = hashlib.sha1(f"{n}:{path}".encode()).hexdigest()
        commit = RemoteCommit(id=sha, date=datetime.now(timezone.utc), message=message)
        self._commits.append((commit, path))


def _norm(path: str) -> str:
    return path.strip("/")


def _touches(commit_path: str, path: str | None) -> bool:
    target = _norm(path or "")
    return not target or commit_path == target or commit_path.startswith(f"{target}/")
