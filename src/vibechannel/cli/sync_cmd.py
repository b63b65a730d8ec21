"""CLI sync commands: vc channels, vc messages, vc send, vc watch, vc quota."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from vibechannel.core.codec import normalize_sender
from vibechannel.core.config import load_config, resolve_home
from vibechannel.core.models import Message, QuotaLevel
from vibechannel.core.store import LocalStore
from vibechannel.remote.base import (
    Conflict,
    RateLimited,
    RemoteGateway,
    SyncError,
    Unauthorized,
)
from vibechannel.sync.engine import SyncEngine
from vibechannel.sync.ratelimit import RateLimitTracker

_home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Override VIBECHANNEL_HOME path.",
)


class _Session:
    """Config, store, quota tracker, gateway and engine for one command."""

    def __init__(self, home: Path | None) -> None:
        self.home = home or resolve_home()
        self.config = load_config(self.home / "config.yaml")
        sync_cfg = self.config.get("sync", {})
        self.store = LocalStore(
            self.home / "cache.db", retention=sync_cfg.get("retention", 500)
        )
        self.tracker = RateLimitTracker(self.store)
        self.gateway = _make_gateway(self.config, self.tracker)
        gh = self.config.get("github", {})
        repository = f"{gh.get('owner')}/{gh.get('repo')}" if gh.get("owner") else None
        self.engine = SyncEngine(
            self.store,
            self.gateway,
            repository=repository,
            staleness_seconds=sync_cfg.get("staleness_seconds", 60),
        )

    async def aclose(self) -> None:
        aclose = getattr(self.gateway, "aclose", None)
        if aclose is not None:
            await aclose()
        self.store.close()


def _make_gateway(config: dict, tracker: RateLimitTracker) -> RemoteGateway | None:
    """GitHub gateway for the configured repository, None without a token."""
    from vibechannel.remote.github import GitHubGateway, resolve_token

    if not resolve_token(config):
        return None
    return GitHubGateway.from_config(config, on_quota=tracker)


def _open_session(home: Path | None) -> _Session | None:
    try:
        return _Session(home)
    except ValueError as e:
        click.echo(f"Error: {e}")
        click.echo("Set github.owner and github.repo in config.yaml.")
        return None


def _run(session: _Session, coro_fn) -> object:
    """Run coro_fn(session) to completion, reporting sync errors."""

    async def main():
        try:
            return await coro_fn(session)
        finally:
            await session.aclose()

    try:
        return asyncio.run(main())
    except Unauthorized as e:
        click.echo(f"Authentication error: {e}")
        click.echo("Set VIBECHANNEL_TOKEN or store a token with keyring.")
    except RateLimited as e:
        reset = f" (resets {e.reset_at:%H:%M:%S} UTC)" if e.reset_at else ""
        click.echo(f"Rate limited: {e}{reset}")
    except Conflict as e:
        click.echo(f"Conflict: {e}. Refresh and try again.")
    except SyncError as e:
        click.echo(f"Sync error: {e}")
    return None


def _format_message(m: Message) -> str:
    edited = " (edited)" if m.edited else ""
    reply = f" (reply to {m.reply_to})" if m.reply_to else ""
    tags = f" [{', '.join(m.tags)}]" if m.tags else ""
    return f"{m.created:%Y-%m-%d %H:%M} {m.sender}{edited}{reply}{tags}\n  {m.body}"


# --- Commands ---


@click.command("channels")
@click.option("--refresh", is_flag=True, help="Ignore the cache and list from remote.")
@_home_option
def channels_cmd(refresh: bool, home: Path | None) -> None:
    """List channels of the configured repository."""
    session = _open_session(home)
    if session is None:
        return

    channels = _run(session, lambda s: s.engine.fetch_channels(force_refresh=refresh))
    if channels is None:
        return
    if not channels:
        click.echo("No channels.")
        return
    for ch in channels:
        unread = f" ({ch.unread_count} unread)" if ch.unread_count else ""
        click.echo(f"#{ch.name}{unread}")


@click.command("create")
@click.argument("name")
@_home_option
def create_cmd(name: str, home: Path | None) -> None:
    """Create a new channel."""
    session = _open_session(home)
    if session is None:
        return
    try:
        channel = _run(session, lambda s: s.engine.create_channel(name))
    except ValueError as e:
        click.echo(f"Error: {e}")
        return
    if channel is not None:
        click.echo(f"Created #{channel.name}")


@click.command("messages")
@click.argument("channel")
@click.option("--refresh", is_flag=True, help="Ignore the cache and fetch from remote.")
@click.option("--limit", "-n", default=20, help="Show the last N messages.")
@click.option("--mark-read", is_flag=True, help="Mark the channel read.")
@_home_option
def messages_cmd(
    channel: str, refresh: bool, limit: int, mark_read: bool, home: Path | None
) -> None:
    """Show messages of a channel."""
    session = _open_session(home)
    if session is None:
        return

    async def fetch(s: _Session) -> list[Message]:
        messages = await s.engine.fetch_messages(channel, force_refresh=refresh)
        if mark_read:
            s.engine.mark_read(channel)
        return messages

    messages = _run(session, fetch)
    if messages is None:
        return
    if not messages:
        click.echo(f"No messages in #{channel}.")
        return
    for m in messages[-limit:]:
        click.echo(_format_message(m))


@click.command("send")
@click.argument("channel")
@click.argument("body")
@click.option("--reply-to", default=None, help="Filename of the message to reply to.")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--as", "sender", default=None, help="Sender name (default: user.name).")
@_home_option
def send_cmd(
    channel: str,
    body: str,
    reply_to: str | None,
    tags: tuple[str, ...],
    sender: str | None,
    home: Path | None,
) -> None:
    """Send a message to a channel."""
    session = _open_session(home)
    if session is None:
        return

    name = normalize_sender(sender or session.config.get("user", {}).get("name") or "")
    if not name:
        click.echo("Error: No sender. Set user.name in config.yaml or pass --as.")
        return
    if not body.strip():
        click.echo("Error: Message body is empty.")
        return

    message = _run(
        session,
        lambda s: s.engine.send_message(
            channel, name, body, reply_to=reply_to, tags=list(tags) or None
        ),
    )
    if message is not None:
        click.echo(f"Sent {message.filename}")


@click.command("watch")
@click.argument("channel")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between checks.")
@click.option("--count", type=int, default=None, help="Exit after N changes.")
@_home_option
def watch_cmd(
    channel: str, interval: float | None, count: int | None, home: Path | None
) -> None:
    """Watch a channel and print new messages as they arrive."""
    from vibechannel.sync.poller import PollerRegistry

    session = _open_session(home)
    if session is None:
        return
    if session.gateway is None:
        click.echo("Authentication error: No credential configured.")
        return
    every = interval or session.config.get("sync", {}).get("poll_interval", 10)

    async def watch(s: _Session) -> None:
        seen = {m.id for m in s.engine.cached_messages(channel)}
        registry = PollerRegistry()
        poller = await registry.open(
            s.engine.channel_key(channel), s.gateway, channel, interval=every
        )
        click.echo(f"Watching #{channel} every {every:g}s (Ctrl+C to stop)")
        changes = 0
        try:
            async for _ in poller.changes():
                messages = await s.engine.fetch_messages(channel, force_refresh=True)
                for m in messages:
                    if m.id not in seen:
                        seen.add(m.id)
                        click.echo(_format_message(m))
                changes += 1
                if count is not None and changes >= count:
                    break
        finally:
            await registry.close_all()

    try:
        _run(session, watch)
    except KeyboardInterrupt:
        click.echo("Stopped.")


@click.command("quota")
@_home_option
def quota_cmd(home: Path | None) -> None:
    """Show the last known API rate-limit state."""
    home_path = home or resolve_home()
    store = LocalStore(home_path / "cache.db")
    try:
        quota = RateLimitTracker(store).quota
    finally:
        store.close()

    if quota is None:
        click.echo("No rate-limit data yet.")
        return
    click.echo(
        f"Remaining: {quota.remaining}/{quota.limit} "
        f"({quota.usage_percentage:.0f}% used) [{quota.level.value}]"
    )
    if quota.reset_at is not None:
        click.echo(f"Resets at: {quota.reset_at:%Y-%m-%d %H:%M:%S} UTC")
    if quota.level in (QuotaLevel.CRITICAL, QuotaLevel.EXHAUSTED):
        click.echo("Warning: rate limit nearly exhausted.")
