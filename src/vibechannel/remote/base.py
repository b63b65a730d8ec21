"""RemoteGateway Protocol and the error taxonomy surfaced to callers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Protocol, runtime_checkable

from vibechannel.core.models import (
    ChangeCheck,
    Quota,
    RemoteCommit,
    RemoteEntry,
    RemoteFile,
    VersionToken,
)

QuotaObserver = Callable[[Quota], None]


# --- Errors ---


class SyncError(Exception):
    """Base error for sync operations."""


class Unauthorized(SyncError):
    """Credential missing, invalid or expired. Re-authenticate, don't retry."""


class NotFound(SyncError):
    """Path absent on the remote."""


class RateLimited(SyncError):
    """Request quota exhausted. Back off until reset_at."""

    def __init__(self, message: str = "Rate limit exceeded", reset_at: datetime | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class Conflict(SyncError):
    """Version token did not match the current remote state. Refetch first."""


class MalformedRemoteContent(SyncError):
    """A remote file could not be decoded as a message."""


class TransportFailure(SyncError):
    """Network or transport error, surfaced as-is."""


class MissingVersionToken(SyncError):
    """Update or delete attempted on a message that was never synced."""


# --- Protocol ---


@runtime_checkable
class RemoteGateway(Protocol):
    """Contract for the remote file-hosting backend of one repository.

    Paths are relative to the repository's channel root ("general",
    "general/20250115T103045-alice-a3f8x2.md"). Implementations report
    quota from every response to the observer given at construction.
    """

    @property
    def repository(self) -> str:
        """Repository id: 'owner/name'."""
        ...

    async def list(self, path: str = "") -> list[RemoteEntry]:
        """List a directory. Raises NotFound if it does not exist."""
        ...

    async def get(self, path: str) -> RemoteFile:
        """Fetch file content and its version token."""
        ...

    async def create(
        self, path: str, content: str, *, message: str | None = None
    ) -> VersionToken:
        """Create a file. Raises Conflict if the path already exists."""
        ...

    async def update(
        self,
        path: str,
        content: str,
        expected: VersionToken,
        *,
        message: str | None = None,
    ) -> VersionToken:
        """Replace a file. Raises Conflict if expected is not the current token."""
        ...

    async def delete(
        self, path: str, expected: VersionToken, *, message: str | None = None
    ) -> None:
        """Delete a file. Raises Conflict if expected is not the current token."""
        ...

    async def latest_commit(self, path: str | None = None) -> RemoteCommit:
        """Latest commit touching path (or the whole branch)."""
        ...

    async def has_changed(
        self, marker: str | None, path: str | None = None
    ) -> ChangeCheck:
        """Cheap conditional check against a previously returned marker.

        A None marker means no baseline yet and always reports a change.
        """
        ...
