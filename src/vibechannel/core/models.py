"""Core data models for VibeChannel."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


# --- Enums ---


class EntryType(str, Enum):
    FILE = "file"
    DIR = "dir"


class QuotaLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


# --- Helpers ---


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Core Models ---


@dataclass(frozen=True)
class VersionToken:
    """Opaque remote content hash. Required to update or delete a file."""

    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("VersionToken cannot be empty")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Message:
    """A single message file in a channel."""

    id: str  # filename without .md
    filename: str
    sender: str
    created: datetime
    body: str
    reply_to: str | None = None
    tags: tuple[str, ...] = ()
    edited: datetime | None = None
    version_token: VersionToken | None = None  # None until synced

    def with_edit(
        self, body: str, edited: datetime, version_token: VersionToken
    ) -> Message:
        """Return the edited copy of this message."""
        return dataclasses.replace(
            self, body=body.strip(), edited=edited, version_token=version_token
        )

    def with_version_token(self, version_token: VersionToken | None) -> Message:
        return dataclasses.replace(self, version_token=version_token)


@dataclass(frozen=True)
class ChannelKey:
    """Composite key of a channel: owner/repo/channel."""

    owner: str
    repo: str
    channel: str

    @property
    def repository_id(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.repo}/{self.channel}"

    @classmethod
    def parse(cls, value: str) -> ChannelKey:
        """Parse 'owner/repo/channel'."""
        parts = value.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid channel key: {value!r} (expected owner/repo/channel)")
        return cls(*parts)

    def __str__(self) -> str:
        return self.id


@dataclass
class Channel:
    """A named partition of messages, backed by one remote directory."""

    name: str
    unread_count: int = 0
    last_read_message_id: str | None = None
    last_synced_at: datetime | None = None  # set only after a full listing


@dataclass
class Repository:
    """The remote location (owner + name) a set of channels belongs to."""

    owner: str
    name: str
    last_synced_at: datetime | None = None
    last_remote_commit_id: str | None = None

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"


# --- Gateway Models ---


@dataclass(frozen=True)
class RemoteEntry:
    """One entry of a remote directory listing."""

    name: str
    type: EntryType
    version_token: VersionToken | None = None


@dataclass(frozen=True)
class RemoteFile:
    """File content plus the token identifying that exact content."""

    content: str
    version_token: VersionToken


@dataclass(frozen=True)
class RemoteCommit:
    """Latest commit touching a path."""

    id: str
    date: datetime | None = None
    message: str = ""


@dataclass(frozen=True)
class ChangeCheck:
    """Result of a conditional 'has anything changed' check."""

    changed: bool
    marker: str | None  # pass back on the next check


@dataclass
class Quota:
    """Remote request quota as reported by the last gateway response."""

    remaining: int = 5000
    limit: int = 5000
    reset_at: datetime | None = None
    updated_at: datetime = field(default_factory=_now)

    @property
    def usage_percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return (self.limit - self.remaining) / self.limit * 100

    @property
    def level(self) -> QuotaLevel:
        if self.remaining <= 0:
            return QuotaLevel.EXHAUSTED
        usage = self.usage_percentage
        if usage >= 95:
            return QuotaLevel.CRITICAL
        if usage >= 80:
            return QuotaLevel.WARNING
        return QuotaLevel.OK
