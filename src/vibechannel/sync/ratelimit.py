"""Process-wide remote quota state, fed by the gateway's quota observer."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from vibechannel.core.models import Quota, QuotaLevel
from vibechannel.core.store import LocalStore

log = logging.getLogger(__name__)

QuotaListener = Callable[[Quota, QuotaLevel], None]


class RateLimitTracker:
    """Holds the latest reported Quota.

    Create one per configured credential and pass it as the gateway's
    ``on_quota`` observer. Each report is persisted to the store (if any)
    and forwarded to listeners; level changes are logged.
    """

    def __init__(self, store: LocalStore | None = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._listeners: list[QuotaListener] = []
        self._quota: Quota | None = store.load_quota() if store else None

    def __call__(self, quota: Quota) -> None:
        self.update(quota)

    @property
    def quota(self) -> Quota | None:
        return self._quota

    @property
    def level(self) -> QuotaLevel:
        if self._quota is None:
            return QuotaLevel.OK
        return self._quota.level

    def add_listener(self, listener: QuotaListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: QuotaListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def update(self, quota: Quota) -> None:
        with self._lock:
            previous = self.level
            self._quota = quota
            if self._store is not None:
                self._store.save_quota(quota)
        level = quota.level

        if level != previous:
            if level == QuotaLevel.OK:
                log.info("Rate limit back to normal: %d/%d left", quota.remaining, quota.limit)
            else:
                log.warning(
                    "Rate limit %s: %d/%d requests left (%.0f%% used)",
                    level.value,
                    quota.remaining,
                    quota.limit,
                    quota.usage_percentage,
                )

        for listener in list(self._listeners):
            listener(quota, level)

    def is_exhausted(self, now: datetime | None = None) -> bool:
        """True while quota is zero and the reset time has not passed."""
        if self._quota is None or self._quota.remaining > 0:
            return False
        if self._quota.reset_at is None:
            return True
        return (now or datetime.now(timezone.utc)) < self._quota.reset_at

    def seconds_until_reset(self, now: datetime | None = None) -> float:
        if self._quota is None or self._quota.reset_at is None:
            return 0.0
        delta = self._quota.reset_at - (now or datetime.now(timezone.utc))
        return max(delta.total_seconds(), 0.0)
