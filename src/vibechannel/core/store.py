"""SQLite mirror of remote state: repositories -> channels -> messages."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from vibechannel.core.fileutil import ensure_dir, ensure_file_permissions
from vibechannel.core.models import (
    Channel,
    ChannelKey,
    Message,
    Quota,
    Repository,
    VersionToken,
)

log = logging.getLogger(__name__)

DEFAULT_STALENESS_SECONDS = 60
DEFAULT_RETENTION = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LocalStore:
    """Persisted, keyed mirror with per-entity staleness timestamps.

    Keys: ``owner/repo`` for repositories, ``owner/repo/channel`` for
    channels; messages are keyed by (channel, message id). Each channel
    holds at most ``retention`` of its most recent messages.

    Mutations of one channel are serialized by a per-channel lock and run
    in a single transaction, so a reader sees either the old or the new
    snapshot of a channel, never a mix.
    """

    def __init__(
        self,
        db_path: Path | str,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.db_path = db_path
        self.retention = retention
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._open()
        return self._conn

    def _open(self) -> sqlite3.Connection:
        in_memory = str(self.db_path) == ":memory:"
        if not in_memory:
            ensure_dir(Path(self.db_path).parent)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        if not in_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        conn.executescript(_SCHEMA)
        if not in_memory:
            ensure_file_permissions(Path(self.db_path))
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _channel_lock(self, channel_id: str) -> Iterator[None]:
        """One reader or writer of a channel snapshot at a time."""
        with self._locks_guard:
            lock = self._locks.setdefault(channel_id, threading.Lock())
        with lock:
            yield

    # --- Staleness ---

    def is_stale(
        self,
        key: ChannelKey | str,
        threshold_seconds: float = DEFAULT_STALENESS_SECONDS,
    ) -> bool:
        """True if never synced, or last synced more than threshold seconds ago.

        Accepts a channel key or an ``owner/repo`` repository key.
        """
        key_str = str(key)
        table = "repositories" if key_str.count("/") == 1 else "channels"
        row = self.conn.execute(
            f"SELECT last_synced_at FROM {table} WHERE id = ?", (key_str,)
        ).fetchone()
        if row is None or not row["last_synced_at"]:
            return True
        age = (self._clock() - _parse_dt(row["last_synced_at"])).total_seconds()
        return age > threshold_seconds

    # --- Messages ---

    def get_channel_messages(self, key: ChannelKey | str) -> list[Message]:
        """Cached messages of a channel, ascending by date. Empty if absent."""
        with self._channel_lock(str(key)):
            rows = self.conn.execute(
                "SELECT * FROM messages WHERE channel_id = ? ORDER BY created, id",
                (str(key),),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def get_message(self, key: ChannelKey | str, message_id: str) -> Message | None:
        row = self.conn.execute(
            "SELECT * FROM messages WHERE channel_id = ? AND id = ?",
            (str(key), message_id),
        ).fetchone()
        return _row_to_message(row) if row else None

    def replace_channel_messages(
        self, key: ChannelKey | str, messages: Iterable[Message]
    ) -> list[Message]:
        """Atomically swap a channel's message set and stamp last_synced_at.

        Keeps only the most recent ``retention`` messages by date.
        Returns the messages actually stored.
        """
        key = _channel_key(key)
        by_id: dict[str, Message] = {}
        for message in messages:
            by_id[message.id] = message
        kept = sorted(by_id.values(), key=lambda m: (m.created, m.id))[-self.retention :]

        with self._channel_lock(key.id), self.conn:
            self._ensure_channel(key)
            self.conn.execute("DELETE FROM messages WHERE channel_id = ?", (key.id,))
            self.conn.executemany(_INSERT_MESSAGE, [_message_params(key.id, m) for m in kept])
            self.conn.execute(
                "UPDATE channels SET last_synced_at = ? WHERE id = ?",
                (_format_dt(self._clock()), key.id),
            )
            self._refresh_unread(key.id)

        log.debug("Cached %d messages for %s", len(kept), key)
        return kept

    def upsert_message(self, key: ChannelKey | str, message: Message) -> None:
        """Insert or overwrite one message. Does not touch last_synced_at."""
        key = _channel_key(key)
        with self._channel_lock(key.id), self.conn:
            self._ensure_channel(key)
            self.conn.execute(_INSERT_MESSAGE, _message_params(key.id, message))
            evicted = self.conn.execute(
                """DELETE FROM messages
                   WHERE channel_id = ? AND id NOT IN (
                       SELECT id FROM messages WHERE channel_id = ?
                       ORDER BY created DESC, id DESC LIMIT ?
                   )""",
                (key.id, key.id, self.retention),
            ).rowcount
            self._refresh_unread(key.id)
        if evicted:
            log.debug("Evicted %d old messages from %s", evicted, key)

    def remove_message(self, key: ChannelKey | str, message_id: str) -> bool:
        """Remove one message. Returns True if it was cached."""
        key_str = str(key)
        with self._channel_lock(key_str), self.conn:
            cursor = self.conn.execute(
                "DELETE FROM messages WHERE channel_id = ? AND id = ?",
                (key_str, message_id),
            )
            self._refresh_unread(key_str)
        return cursor.rowcount > 0

    # --- Channels ---

    def get_channel(self, key: ChannelKey | str) -> Channel | None:
        row = self.conn.execute(
            "SELECT * FROM channels WHERE id = ?", (str(key),)
        ).fetchone()
        return _row_to_channel(row) if row else None

    def get_channels(self, repository_id: str) -> list[Channel]:
        """Cached channels of a repository, sorted by name."""
        rows = self.conn.execute(
            "SELECT * FROM channels WHERE repository_id = ? ORDER BY name",
            (repository_id,),
        ).fetchall()
        return [_row_to_channel(r) for r in rows]

    def ensure_channel(self, key: ChannelKey | str) -> Channel:
        """Register a channel without marking it synced."""
        key = _channel_key(key)
        with self.conn:
            self._ensure_channel(key)
        return self.get_channel(key)

    def replace_channels(
        self,
        repository_id: str,
        names: Iterable[str],
        commit_id: str | None = None,
    ) -> list[Channel]:
        """Sync the channel list of a repository and stamp its last_synced_at.

        Channels no longer listed are dropped along with their messages.
        """
        owner, _, repo = repository_id.partition("/")
        wanted = {f"{repository_id}/{name}": name for name in names}
        with self.conn:
            self._ensure_repository(owner, repo)
            existing = {
                r["id"]
                for r in self.conn.execute(
                    "SELECT id FROM channels WHERE repository_id = ?", (repository_id,)
                )
            }
            for channel_id in existing - wanted.keys():
                self.conn.execute("DELETE FROM channels WHERE id = ?", (channel_id,))
            for channel_id, name in wanted.items():
                self.conn.execute(
                    "INSERT OR IGNORE INTO channels (id, repository_id, name) VALUES (?, ?, ?)",
                    (channel_id, repository_id, name),
                )
            params: list = [_format_dt(self._clock())]
            sql = "UPDATE repositories SET last_synced_at = ?"
            if commit_id is not None:
                sql += ", last_remote_commit_id = ?"
                params.append(commit_id)
            self.conn.execute(sql + " WHERE id = ?", (*params, repository_id))
        return self.get_channels(repository_id)

    def mark_read(self, key: ChannelKey | str, message_id: str) -> None:
        """Record the last message read in a channel and recount unread."""
        key = _channel_key(key)
        with self._channel_lock(key.id), self.conn:
            self._ensure_channel(key)
            self.conn.execute(
                "UPDATE channels SET last_read_message_id = ? WHERE id = ?",
                (message_id, key.id),
            )
            self._refresh_unread(key.id)

    # --- Repositories ---

    def get_repository(self, repository_id: str) -> Repository | None:
        row = self.conn.execute(
            "SELECT * FROM repositories WHERE id = ?", (repository_id,)
        ).fetchone()
        if row is None:
            return None
        return Repository(
            owner=row["owner"],
            name=row["name"],
            last_synced_at=_parse_dt(row["last_synced_at"]),
            last_remote_commit_id=row["last_remote_commit_id"],
        )

    # --- Quota ---

    def save_quota(self, quota: Quota) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT OR REPLACE INTO quota (id, remaining, "limit", reset_at, updated_at)
                   VALUES ('github', ?, ?, ?, ?)""",
                (
                    quota.remaining,
                    quota.limit,
                    _format_dt(quota.reset_at),
                    _format_dt(quota.updated_at),
                ),
            )

    def load_quota(self) -> Quota | None:
        row = self.conn.execute("SELECT * FROM quota WHERE id = 'github'").fetchone()
        if row is None:
            return None
        return Quota(
            remaining=row["remaining"],
            limit=row["limit"],
            reset_at=_parse_dt(row["reset_at"]),
            updated_at=_parse_dt(row["updated_at"]) or _now(),
        )

    # --- Internal ---

    def _ensure_repository(self, owner: str, name: str) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO repositories (id, owner, name) VALUES (?, ?, ?)",
            (f"{owner}/{name}", owner, name),
        )

    def _ensure_channel(self, key: ChannelKey) -> None:
        self._ensure_repository(key.owner, key.repo)
        self.conn.execute(
            "INSERT OR IGNORE INTO channels (id, repository_id, name) VALUES (?, ?, ?)",
            (key.id, key.repository_id, key.channel),
        )

    def _refresh_unread(self, channel_id: str) -> None:
        # Message ids start with the creation timestamp, so id order is date order
        self.conn.execute(
            """UPDATE channels SET unread_count = (
                   SELECT COUNT(*) FROM messages
                   WHERE messages.channel_id = channels.id
                     AND (channels.last_read_message_id IS NULL
                          OR messages.id > channels.last_read_message_id)
               ) WHERE id = ?""",
            (channel_id,),
        )


# --- Schema ---

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    owner TEXT,
    name TEXT,
    last_synced_at TEXT,
    last_remote_commit_id TEXT
);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    repository_id TEXT REFERENCES repositories(id) ON DELETE CASCADE,
    name TEXT,
    unread_count INTEGER DEFAULT 0,
    last_read_message_id TEXT,
    last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    channel_id TEXT REFERENCES channels(id) ON DELETE CASCADE,
    id TEXT,
    filename TEXT,
    sender TEXT,
    created TEXT,
    edited TEXT,
    reply_to TEXT,
    tags TEXT,
    body TEXT,
    version_token TEXT,
    PRIMARY KEY (channel_id, id)
);

CREATE INDEX IF NOT EXISTS messages_by_date ON messages(channel_id, created);

CREATE TABLE IF NOT EXISTS quota (
    id TEXT PRIMARY KEY,
    remaining INTEGER,
    "limit" INTEGER,
    reset_at TEXT,
    updated_at TEXT
);
"""

_INSERT_MESSAGE = """INSERT OR REPLACE INTO messages
    (channel_id, id, filename, sender, created, edited, reply_to, tags, body, version_token)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""


def _channel_key(key: ChannelKey | str) -> ChannelKey:
    if isinstance(key, ChannelKey):
        return key
    return ChannelKey.parse(key)


def _message_params(channel_id: str, m: Message) -> tuple:
    return (
        channel_id,
        m.id,
        m.filename,
        m.sender,
        _format_dt(m.created),
        _format_dt(m.edited),
        m.reply_to,
        json.dumps(list(m.tags)),
        m.body,
        m.version_token.value if m.version_token else None,
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    token = row["version_token"]
    return Message(
        id=row["id"],
        filename=row["filename"],
        sender=row["sender"],
        created=_parse_dt(row["created"]),
        body=row["body"],
        reply_to=row["reply_to"],
        tags=tuple(json.loads(row["tags"] or "[]")),
        edited=_parse_dt(row["edited"]),
        version_token=VersionToken(token) if token else None,
    )


def _row_to_channel(row: sqlite3.Row) -> Channel:
    return Channel(
        name=row["name"],
        unread_count=row["unread_count"] or 0,
        last_read_message_id=row["last_read_message_id"],
        last_synced_at=_parse_dt(row["last_synced_at"]),
    )


def _format_dt(dt: datetime | None) -> str | None:
    """Format datetime as a sortable UTC ISO string."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
