"""Change notification for reactive store reads.

A ChangeHub tracks subscriptions scoped to a tenant (and optionally one
station). Mutations call ``notify``; each subscriber wakes at most once per
burst of notifications, so a slow reader only sees the latest snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Subscription:
    tenant_id: str
    station_id: int | None
    dirty: asyncio.Event = field(default_factory=asyncio.Event)

    def matches(self, tenant_id: str, station_id: int | None) -> bool:
        if tenant_id != self.tenant_id:
            return False
        # A tenant-wide change touches every station scope
        return station_id is None or self.station_id is None or station_id == self.station_id


class ChangeHub:
    """Publish/subscribe hub used by the observation store.

    Must be used from a single event loop.
    """

    def __init__(self) -> None:
        self._subscriptions: set[_Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def notify(self, tenant_id: str, station_id: int | None = None) -> None:
        """Mark every subscription whose scope covers the change as dirty."""
        for sub in self._subscriptions:
            if sub.matches(tenant_id, station_id):
                sub.dirty.set()

    async def watch(self, tenant_id: str, station_id: int | None = None) -> AsyncIterator[None]:
        """Yield once immediately, then once per (conflated) change."""
        sub = _Subscription(tenant_id, station_id)
        self._subscriptions.add(sub)
        logger.debug("Subscribed to %s/%s", tenant_id, station_id)
        try:
            yield
            while True:
                await sub.dirty.wait()
                sub.dirty.clear()
                yield
        finally:
            self._subscriptions.discard(sub)
            logger.debug("Unsubscribed from %s/%s", tenant_id, station_id)
