"""Event fan-out for migration subscribers.

The migration core publishes four kinds of events per migration: progress,
log, completion and error. Delivery is best effort: a failing subscriber is
logged and skipped, it never fails the migration.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from store_migration.utils.logging import get_logger

logger = get_logger(__name__)

PROGRESS = "progress"
LOG = "log"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class MigrationEvent:
    """One published event."""

    kind: str
    migration_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> str:
        """Channel name, e.g. ``migration:progress:<id>``."""
        return f"migration:{self.kind}:{self.migration_id}"


class EventPublisher(Protocol):
    """Interface the migration core publishes through."""

    async def publish_progress(self, migration_id: str, payload: dict[str, Any]) -> None: ...

    async def publish_log(self, migration_id: str, entry: dict[str, Any]) -> None: ...

    async def publish_completion(self, migration_id: str) -> None: ...

    async def publish_error(self, migration_id: str, module: str, error: str) -> None: ...


class NullPublisher:
    """Publisher that drops every event."""

    async def publish_progress(self, migration_id: str, payload: dict[str, Any]) -> None:
        return None

    async def publish_log(self, migration_id: str, entry: dict[str, Any]) -> None:
        return None

    async def publish_completion(self, migration_id: str) -> None:
        return None

    async def publish_error(self, migration_id: str, module: str, error: str) -> None:
        return None


EventCallback = Callable[[MigrationEvent], Awaitable[None] | None]


@dataclass(eq=False)
class Subscription:
    """A subscriber to one migration (or to all, when ``migration_id`` is None)."""

    migration_id: str | None
    callback: EventCallback | None = None
    queue: asyncio.Queue | None = None

    def matches(self, event: MigrationEvent) -> bool:
        return self.migration_id is None or self.migration_id == event.migration_id


class LocalEventBus:
    """In-process publish/subscribe keyed by migration identifier.

    Subscribers receive events either through an ``asyncio.Queue`` or a
    callback (sync or async).

    Usage:
        bus = LocalEventBus()
        sub = bus.subscribe(migration_id)
        event = await sub.queue.get()
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self, migration_id: str | None = None, callback: EventCallback | None = None
    ) -> Subscription:
        """Register a subscriber.

        Args:
            migration_id: Migration to follow, or None for every migration
            callback: Called with each event; when omitted, events go to ``queue``

        Returns:
            The subscription (pass it to ``unsubscribe``)
        """
        queue = None if callback else asyncio.Queue(maxsize=self.queue_size)
        subscription = Subscription(migration_id=migration_id, callback=callback, queue=queue)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber; unknown subscriptions are ignored."""
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _deliver(self, event: MigrationEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                if subscription.callback is not None:
                    result = subscription.callback(event)
                    if inspect.isawaitable(result):
                        await result
                elif subscription.queue is not None:
                    subscription.queue.put_nowait(event)
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    channel=event.channel,
                    error=str(e),
                )

    async def publish_progress(self, migration_id: str, payload: dict[str, Any]) -> None:
        await self._deliver(MigrationEvent(PROGRESS, migration_id, dict(payload)))

    async def publish_log(self, migration_id: str, entry: dict[str, Any]) -> None:
        await self._deliver(MigrationEvent(LOG, migration_id, dict(entry)))

    async def publish_completion(self, migration_id: str) -> None:
        await self._deliver(
            MigrationEvent(
                COMPLETE,
                migration_id,
                {"migration_id": migration_id, "completed_at": datetime.now(UTC).isoformat()},
            )
        )

    async def publish_error(self, migration_id: str, module: str, error: str) -> None:
        await self._deliver(
            MigrationEvent(
                ERROR,
                migration_id,
                {
                    "migration_id": migration_id,
                    "module": module,
                    "error": error,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
        )


async def safe_publish(coro: Awaitable[None], channel: str) -> None:
    """Await a publish call, logging instead of raising on failure.

    Used by the core around third-party publishers whose delivery errors must
    not fail a migration.
    """
    try:
        await coro
    except Exception as e:
        logger.warning("event_publish_failed", channel=channel, error=str(e))
