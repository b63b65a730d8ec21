"""SyncEngine: read-through cache and write-through mutations for channels.

Reads are served from the LocalStore while a channel snapshot is fresh;
otherwise the channel directory is listed and every message file fetched and
decoded. Writes go to the remote first and are mirrored into the store only
after the remote accepted them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from vibechannel.core import codec
from vibechannel.core.fileutil import safe_channel_name
from vibechannel.core.models import Channel, ChannelKey, EntryType, Message
from vibechannel.core.store import DEFAULT_STALENESS_SECONDS, LocalStore
from vibechannel.remote.base import (
    Conflict,
    MalformedRemoteContent,
    MissingVersionToken,
    NotFound,
    RemoteGateway,
    Unauthorized,
)

log = logging.getLogger(__name__)

# Parallel file fetches while refreshing one channel
MAX_CONCURRENT_FETCHES = 8

CHANNEL_MARKER = ".gitkeep"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Channel-scoped sync between a RemoteGateway and a LocalStore.

    Channels are addressed by name; the cache key is derived from the
    gateway's repository (``owner/repo/channel``). Nothing is retried here:
    every gateway error except per-file decode failures reaches the caller.
    """

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway | None,
        *,
        repository: str | None = None,
        staleness_seconds: float = DEFAULT_STALENESS_SECONDS,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.repository = repository or (gateway.repository if gateway else None)
        if not self.repository or self.repository.count("/") != 1:
            raise ValueError(f"Repository must be 'owner/name', got {self.repository!r}")
        self.staleness_seconds = staleness_seconds
        self._clock = clock

    def channel_key(self, channel: str) -> ChannelKey:
        owner, _, repo = self.repository.partition("/")
        return ChannelKey(owner, repo, channel)

    def _require_gateway(self) -> RemoteGateway:
        if self.gateway is None:
            raise Unauthorized("No credential configured - please sign in")
        return self.gateway

    # --- Channels ---

    async def fetch_channels(self, force_refresh: bool = False) -> list[Channel]:
        """List channels: every non-hidden directory at the remote root."""
        cached = self.store.get_channels(self.repository)
        if (
            not force_refresh
            and cached
            and not self.store.is_stale(self.repository, self.staleness_seconds)
        ):
            return cached

        gateway = self._require_gateway()
        entries = await gateway.list("")
        names = [
            e.name for e in entries if e.type == EntryType.DIR and not e.name.startswith(".")
        ]
        try:
            commit_id = (await gateway.latest_commit()).id
        except NotFound:
            commit_id = None

        channels = self.store.replace_channels(self.repository, names, commit_id)
        log.info("Refreshed %d channels of %s", len(channels), self.repository)
        return channels

    async def create_channel(self, name: str) -> Channel:
        """Create a channel directory by committing a placeholder file into it."""
        gateway = self._require_gateway()
        name = safe_channel_name(name)
        await gateway.create(f"{name}/{CHANNEL_MARKER}", "", message=f"Create channel {name}")
        log.info("Created channel %s in %s", name, self.repository)
        return self.store.ensure_channel(self.channel_key(name))

    def mark_read(self, channel: str, message_id: str | None = None) -> Channel | None:
        """Mark a channel read up to message_id (default: the newest cached)."""
        key = self.channel_key(channel)
        if message_id is None:
            messages = self.store.get_channel_messages(key)
            if not messages:
                return self.store.get_channel(key)
            message_id = messages[-1].id
        self.store.mark_read(key, message_id)
        return self.store.get_channel(key)

    # --- Messages ---

    def cached_messages(self, channel: str) -> list[Message]:
        return self.store.get_channel_messages(self.channel_key(channel))

    async def fetch_messages(
        self, channel: str, force_refresh: bool = False
    ) -> list[Message]:
        """Messages of a channel, ascending by date.

        Serves the cache when it is fresh and non-empty; otherwise refetches
        the whole channel. Files that fail to decode are logged and skipped.
        """
        key = self.channel_key(channel)
        if not force_refresh and not self.store.is_stale(key, self.staleness_seconds):
            cached = self.store.get_channel_messages(key)
            if cached:
                log.debug("Serving %d cached messages for %s", len(cached), key)
                return cached

        gateway = self._require_gateway()
        entries = await gateway.list(channel)
        names = [
            e.name for e in entries if e.type == EntryType.FILE and codec.is_message_file(e.name)
        ]

        semaphore = asyncio.Semaphore(MAX_CONCURRENT_FETCHES)

        async def fetch_one(name: str) -> Message | None:
            async with semaphore:
                return await self._fetch_message(gateway, channel, name)

        tasks = [asyncio.create_task(fetch_one(n)) for n in names]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # First failure wins; stop the rest and collect their outcomes.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        messages = sorted(
            (m for m in results if m is not None), key=lambda m: (m.created, m.id)
        )
        skipped = len(names) - len(messages)

        kept = self.store.replace_channel_messages(key, messages)
        log.info(
            "Refreshed %s: %d messages%s",
            key,
            len(kept),
            f" ({skipped} skipped)" if skipped else "",
        )
        return kept

    async def send_message(
        self,
        channel: str,
        sender: str,
        body: str,
        reply_to: str | None = None,
        tags: list[str] | None = None,
    ) -> Message:
        """Create a new message file and cache it."""
        gateway = self._require_gateway()
        filename, document = codec.encode(
            sender, body, reply_to=reply_to, tags=tags, now=self._clock()
        )
        token = await gateway.create(
            f"{channel}/{filename}", document, message=f"Message from {sender}"
        )
        try:
            message = codec.decode(filename, document, token)
        except codec.DecodeError as e:
            raise MalformedRemoteContent(str(e)) from e

        self.store.upsert_message(self.channel_key(channel), message)
        log.info("Sent %s to %s", message.id, channel)
        return message

    async def edit_message(
        self, channel: str, message: Message, new_body: str
    ) -> Message:
        """Replace a message's body. Raises Conflict if it changed remotely."""
        if message.version_token is None:
            raise MissingVersionToken(f"Message {message.id} has no version token")
        gateway = self._require_gateway()

        edited_at = self._clock().replace(microsecond=0)
        document = codec.render_document(
            message.sender,
            message.created,
            new_body,
            reply_to=message.reply_to,
            tags=message.tags,
            edited=edited_at,
        )
        token = await gateway.update(
            f"{channel}/{message.filename}",
            document,
            message.version_token,
            message="Edit message",
        )
        updated = message.with_edit(new_body, edited_at, token)
        self.store.upsert_message(self.channel_key(channel), updated)
        log.info("Edited %s in %s", message.id, channel)
        return updated

    async def delete_message(self, channel: str, message: Message) -> None:
        """Delete a message file.

        On Conflict the message is still dropped from the cache, then the
        Conflict is re-raised so the caller can refetch.
        """
        if message.version_token is None:
            raise MissingVersionToken(f"Message {message.id} has no version token")
        gateway = self._require_gateway()
        key = self.channel_key(channel)

        try:
            await gateway.delete(
                f"{channel}/{message.filename}",
                message.version_token,
                message="Delete message",
            )
        except Conflict:
            log.warning("Delete of %s conflicted; removing it locally anyway", message.id)
            self.store.remove_message(key, message.id)
            raise

        self.store.remove_message(key, message.id)
        log.info("Deleted %s from %s", message.id, channel)

    # --- Internal ---

    async def _fetch_message(
        self, gateway: RemoteGateway, channel: str, filename: str
    ) -> Message | None:
        try:
            remote = await gateway.get(f"{channel}/{filename}")
        except NotFound:
            log.debug("Message %s disappeared during refresh", filename)
            return None
        except MalformedRemoteContent as e:
            log.warning("Skipping unreadable message %s: %s", filename, e)
            return None
        try:
            return codec.decode(filename, remote.content, remote.version_token)
        except codec.DecodeError as e:
            log.warning("Skipping malformed message %s: %s", filename, e)
            return None
