"""Read-only views over a channel's messages (linear scans, no index)."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import tzinfo

from vibechannel.core.codec import message_id
from vibechannel.core.models import Message

ROOT_THREAD = "root"


def participants(messages: Iterable[Message]) -> list[str]:
    """Sorted unique senders."""
    return sorted({m.sender for m in messages})


def all_tags(messages: Iterable[Message]) -> list[str]:
    """Sorted unique tags."""
    return sorted({tag for m in messages for tag in m.tags})


def filter_by_participant(messages: Iterable[Message], sender: str) -> list[Message]:
    sender = sender.lower()
    return [m for m in messages if m.sender.lower() == sender]


def filter_by_tag(messages: Iterable[Message], tag: str) -> list[Message]:
    tag = tag.lower()
    return [m for m in messages if any(t.lower() == tag for t in m.tags)]


def search_messages(messages: Iterable[Message], query: str) -> list[Message]:
    """Case-insensitive substring match on body or sender."""
    query = query.lower()
    return [m for m in messages if query in m.body.lower() or query in m.sender.lower()]


def group_by_date(
    messages: Iterable[Message], tz: tzinfo | None = None
) -> dict[str, list[Message]]:
    """Group by calendar day (YYYY-MM-DD) in tz, local time if None.

    Keys keep the order in which days first appear.
    """
    groups: dict[str, list[Message]] = {}
    for m in messages:
        day = m.created.astimezone(tz).strftime("%Y-%m-%d")
        groups.setdefault(day, []).append(m)
    return groups


def build_threads(messages: Iterable[Message]) -> dict[str, list[Message]]:
    """Map parent message id -> replies; top-level messages go under 'root'.

    A reply whose parent is not in the set still groups under the parent id.
    """
    threads: dict[str, list[Message]] = {}
    for m in messages:
        parent = message_id(m.reply_to) if m.reply_to else ROOT_THREAD
        threads.setdefault(parent, []).append(m)
    return threads
