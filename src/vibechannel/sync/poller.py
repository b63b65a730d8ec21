"""Change poller: background conditional checks for one channel.

Each poller is one asyncio task. The loop checks immediately, then sleeps
``interval`` seconds and repeats. Cancellation is cooperative through an
asyncio.Event that is checked at every check boundary and doubles as the
interruptible sleep, so a check that is already in flight always completes.

Changes are delivered on a queue (``changes()`` / ``next_change()``) and to
an optional ``on_change(channel)`` callback, sync or async. Errors from the
check or the callback are logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum

from vibechannel.core.models import ChangeCheck, ChannelKey
from vibechannel.remote.base import RemoteGateway

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10.0

ChangeCallback = Callable[[str], object]


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    CANCELLED = "cancelled"


class ChangePoller:
    """Poll one channel for remote changes."""

    def __init__(
        self,
        gateway: RemoteGateway,
        channel: str,
        *,
        interval: float = DEFAULT_INTERVAL,
        on_change: ChangeCallback | None = None,
        marker: str | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.gateway = gateway
        self.channel = channel
        self.interval = interval
        self.marker = marker
        self._on_change = on_change
        self._state = PollerState.IDLE
        self._cancel = asyncio.Event()
        self._queue: asyncio.Queue[ChangeCheck | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self.checks = 0

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start polling. Must be called from a running event loop."""
        if self._state == PollerState.CANCELLED:
            raise RuntimeError(f"Poller for {self.channel} was cancelled")
        if self.is_running:
            return self._task
        self._cancel.clear()
        self._drain_end_markers()
        self._state = PollerState.POLLING
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"poller:{self.channel}"
        )
        log.info("Poller started: %s every %.1fs", self.channel, self.interval)
        return self._task

    def cancel(self) -> None:
        """Signal the loop to exit at the next boundary. Final for this poller."""
        self._state = PollerState.CANCELLED
        self._cancel.set()

    async def stop(self) -> None:
        """Stop and wait for the loop to finish. The poller may be restarted."""
        self._cancel.set()
        await self._wait()
        if self._state != PollerState.CANCELLED:
            self._state = PollerState.IDLE

    async def aclose(self) -> None:
        """Cancel and wait for the loop to finish."""
        self.cancel()
        await self._wait()

    async def check_once(self) -> bool:
        """Run one conditional check. Returns True if a change was reported."""
        self.checks += 1
        try:
            result = await self.gateway.has_changed(self.marker, self.channel)
        except Exception:
            log.warning("Poll of %s failed", self.channel, exc_info=True)
            return False

        self.marker = result.marker
        if not result.changed:
            return False

        log.debug("Change detected in %s (marker %s)", self.channel, result.marker)
        self._queue.put_nowait(result)
        if self._on_change is not None:
            try:
                outcome = self._on_change(self.channel)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                log.warning("Change callback for %s failed", self.channel, exc_info=True)
        return True

    async def next_change(self, timeout: float | None = None) -> ChangeCheck | None:
        """Wait for the next change. None once the poller has stopped."""
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            self._queue.put_nowait(None)  # keep the end marker for other readers
        return item

    async def changes(self) -> AsyncIterator[ChangeCheck]:
        """Iterate over changes until the poller stops."""
        while True:
            item = await self.next_change()
            if item is None:
                return
            yield item

    # --- Internal ---

    async def _run(self) -> None:
        try:
            while not self._cancel.is_set():
                await self.check_once()
                if self._cancel.is_set():
                    break
                try:
                    await asyncio.wait_for(self._cancel.wait(), self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._queue.put_nowait(None)
            log.info("Poller stopped: %s", self.channel)

    def _drain_end_markers(self) -> None:
        pending = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                pending.append(item)
        for item in pending:
            self._queue.put_nowait(item)

    async def _wait(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None


class PollerRegistry:
    """Keeps at most one live poller per channel key."""

    def __init__(self) -> None:
        self._pollers: dict[str, ChangePoller] = {}
        self._lock = asyncio.Lock()

    async def open(
        self,
        key: ChannelKey | str,
        gateway: RemoteGateway,
        channel: str | None = None,
        *,
        interval: float = DEFAULT_INTERVAL,
        on_change: ChangeCallback | None = None,
    ) -> ChangePoller:
        """Start a poller for key, cancelling and awaiting any previous one."""
        key_str = str(key)
        if channel is None:
            channel = key.channel if isinstance(key, ChannelKey) else key_str.rsplit("/", 1)[-1]
        async with self._lock:
            previous = self._pollers.pop(key_str, None)
            if previous is not None:
                await previous.aclose()
            poller = ChangePoller(gateway, channel, interval=interval, on_change=on_change)
            self._pollers[key_str] = poller
            poller.start()
        return poller

    async def close(self, key: ChannelKey | str) -> bool:
        async with self._lock:
            poller = self._pollers.pop(str(key), None)
            if poller is None:
                return False
            await poller.aclose()
            return True

    async def close_all(self) -> None:
        async with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
            for poller in pollers:
                await poller.aclose()

    def get(self, key: ChannelKey | str) -> ChangePoller | None:
        return self._pollers.get(str(key))

    def __contains__(self, key: object) -> bool:
        return str(key) in self._pollers

    def __len__(self) -> int:
        return len(self._pollers)
