"""Tests for vibechannel.core.store."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vibechannel.core.models import ChannelKey, Message, Quota, VersionToken
from vibechannel.core.store import LocalStore

KEY = ChannelKey("acme", "chat", "general")
T0 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _msg(n: int, sender: str = "alice", **kwargs) -> Message:
    created = T0 + timedelta(minutes=n)
    mid = f"{created:%Y%m%dT%H%M%S}-{sender}-m{n:05d}"
    return Message(
        id=mid,
        filename=f"{mid}.md",
        sender=sender,
        created=created,
        body=f"message {n}",
        version_token=VersionToken(f"sha{n}"),
        **kwargs,
    )


class _Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def store(clock: _Clock) -> LocalStore:
    s = LocalStore(":memory:", clock=clock)
    yield s
    s.close()


class TestSchema:
    def test_creates_db_file(self, tmp_path: Path):
        s = LocalStore(tmp_path / "home" / "cache.db")
        tables = {
            r["name"]
            for r in s.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"repositories", "channels", "messages", "quota"} <= tables
        assert (tmp_path / "home" / "cache.db").exists()
        s.close()

    def test_persists_across_reopen(self, tmp_path: Path):
        path = tmp_path / "cache.db"
        s = LocalStore(path)
        s.replace_channel_messages(KEY, [_msg(1)])
        s.close()

        s = LocalStore(path)
        assert [m.id for m in s.get_channel_messages(KEY)] == [_msg(1).id]
        s.close()


class TestStaleness:
    def test_unknown_key_is_stale(self, store: LocalStore):
        assert store.is_stale(KEY)
        assert store.is_stale("acme/chat")

    def test_fresh_after_replace(self, store: LocalStore, clock: _Clock):
        store.replace_channel_messages(KEY, [_msg(1)])
        assert not store.is_stale(KEY)
        clock.advance(60)
        assert not store.is_stale(KEY)
        clock.advance(1)
        assert store.is_stale(KEY)

    def test_custom_threshold(self, store: LocalStore, clock: _Clock):
        store.replace_channel_messages(KEY, [_msg(1)])
        clock.advance(10)
        assert store.is_stale(KEY, threshold_seconds=5)

    def test_upsert_does_not_refresh(self, store: LocalStore):
        store.upsert_message(KEY, _msg(1))
        assert store.is_stale(KEY)

    def test_repository_staleness(self, store: LocalStore, clock: _Clock):
        store.replace_channels("acme/chat", ["general"])
        assert not store.is_stale("acme/chat")
        clock.advance(120)
        assert store.is_stale("acme/chat")


class TestMessages:
    def test_empty_channel(self, store: LocalStore):
        assert store.get_channel_messages(KEY) == []

    def test_replace_sorts_and_dedupes(self, store: LocalStore):
        kept = store.replace_channel_messages(KEY, [_msg(3), _msg(1), _msg(2), _msg(1)])
        assert [m.body for m in kept] == ["message 1", "message 2", "message 3"]
        assert [m.body for m in store.get_channel_messages(KEY)] == [
            "message 1", "message 2", "message 3",
        ]

    def test_replace_drops_previous_set(self, store: LocalStore):
        store.replace_channel_messages(KEY, [_msg(1), _msg(2)])
        store.replace_channel_messages(KEY, [_msg(3)])
        assert [m.body for m in store.get_channel_messages(KEY)] == ["message 3"]

    def test_fields_round_trip(self, store: LocalStore):
        original = _msg(
            1,
            reply_to="20250115T100000-bob-xyz.md",
            tags=("a", "b"),
            edited=T0 + timedelta(hours=1),
        )
        store.upsert_message(KEY, original)
        assert store.get_message(KEY, original.id) == original

    def test_upsert_overwrites(self, store: LocalStore):
        store.upsert_message(KEY, _msg(1))
        edited = _msg(1).with_edit("changed", T0, VersionToken("new"))
        store.upsert_message(KEY, edited)
        got = store.get_message(KEY, edited.id)
        assert got.body == "changed"
        assert got.version_token == VersionToken("new")
        assert len(store.get_channel_messages(KEY)) == 1

    def test_remove(self, store: LocalStore):
        store.upsert_message(KEY, _msg(1))
        assert store.remove_message(KEY, _msg(1).id)
        assert not store.remove_message(KEY, _msg(1).id)
        assert store.get_channel_messages(KEY) == []

    def test_channels_isolated(self, store: LocalStore):
        other = ChannelKey("acme", "chat", "random")
        store.upsert_message(KEY, _msg(1))
        store.upsert_message(other, _msg(2))
        assert [m.body for m in store.get_channel_messages(KEY)] == ["message 1"]
        assert [m.body for m in store.get_channel_messages(other)] == ["message 2"]

    def test_string_keys(self, store: LocalStore):
        store.upsert_message("acme/chat/general", _msg(1))
        assert len(store.get_channel_messages(KEY)) == 1


class TestRetention:
    def test_replace_keeps_most_recent(self, clock: _Clock):
        s = LocalStore(":memory:", retention=500, clock=clock)
        s.replace_channel_messages(KEY, [_msg(n) for n in range(600)])
        cached = s.get_channel_messages(KEY)
        assert len(cached) == 500
        assert cached[0].body == "message 100"
        assert cached[-1].body == "message 599"
        s.close()

    def test_501st_upsert_evicts_oldest(self, store: LocalStore):
        store.replace_channel_messages(KEY, [_msg(n) for n in range(500)])
        store.upsert_message(KEY, _msg(500))
        cached = store.get_channel_messages(KEY)
        assert len(cached) == 500
        assert cached[0].body == "message 1"
        assert cached[-1].body == "message 500"

    def test_small_retention(self, clock: _Clock):
        s = LocalStore(":memory:", retention=3, clock=clock)
        for n in range(5):
            s.upsert_message(KEY, _msg(n))
        assert [m.body for m in s.get_channel_messages(KEY)] == [
            "message 2", "message 3", "message 4",
        ]
        s.close()


class TestChannels:
    def test_replace_channels(self, store: LocalStore):
        channels = store.replace_channels("acme/chat", ["random", "general"], commit_id="c1")
        assert [c.name for c in channels] == ["general", "random"]
        repo = store.get_repository("acme/chat")
        assert repo.owner == "acme"
        assert repo.name == "chat"
        assert repo.last_remote_commit_id == "c1"
        assert repo.last_synced_at is not None

    def test_removed_channel_drops_messages(self, store: LocalStore):
        store.replace_channels("acme/chat", ["general", "random"])
        store.upsert_message(KEY, _msg(1))
        store.replace_channels("acme/chat", ["random"])
        assert [c.name for c in store.get_channels("acme/chat")] == ["random"]
        assert store.get_channel_messages(KEY) == []

    def test_ensure_channel(self, store: LocalStore):
        channel = store.ensure_channel(KEY)
        assert channel.name == "general"
        assert channel.last_synced_at is None
        assert store.is_stale(KEY)

    def test_unread_counts(self, store: LocalStore):
        store.replace_channel_messages(KEY, [_msg(1), _msg(2), _msg(3)])
        assert store.get_channel(KEY).unread_count == 3

        store.mark_read(KEY, _msg(2).id)
        channel = store.get_channel(KEY)
        assert channel.unread_count == 1
        assert channel.last_read_message_id == _msg(2).id

        store.upsert_message(KEY, _msg(4))
        assert store.get_channel(KEY).unread_count == 2

    def test_get_missing_channel(self, store: LocalStore):
        assert store.get_channel(KEY) is None
        assert store.get_repository("nobody/nothing") is None


class TestQuota:
    def test_save_and_load(self, store: LocalStore):
        assert store.load_quota() is None
        reset = datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)
        store.save_quota(Quota(remaining=42, limit=5000, reset_at=reset))
        quota = store.load_quota()
        assert quota.remaining == 42
        assert quota.limit == 5000
        assert quota.reset_at == reset


class TestConcurrency:
    def test_readers_never_see_mixed_snapshot(self, tmp_path: Path):
        s = LocalStore(tmp_path / "cache.db")
        old = [_msg(n, sender="old") for n in range(50)]
        new = [_msg(n, sender="new") for n in range(50)]
        s.replace_channel_messages(KEY, old)
        senders_seen: list[set] = []

        def writer():
            for i in range(20):
                s.replace_channel_messages(KEY, new if i % 2 == 0 else old)

        def reader():
            for _ in range(50):
                senders_seen.append({m.sender for m in s.get_channel_messages(KEY)})

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(len(seen) == 1 for seen in senders_seen)
        s.close()
