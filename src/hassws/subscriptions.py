"""Live event subscriptions and their delivery sinks."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import UnknownSubscription
from .messages import WSEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[WSEvent], Awaitable[None] | None]


class Subscription:
    """One standing ``subscribe_events`` registration.

    Events go to ``handler`` when one is given. Coroutine handlers are run
    as their own tasks so they may issue commands on the same connection.
    Without a handler, events are queued for :meth:`HassClient.events`.
    """

    def __init__(self, event_type: str | None, handler: EventHandler | None = None) -> None:
        self.id: int | None = None
        self.event_type = event_type
        self.handler = handler
        self.closed = False
        self.queue: asyncio.Queue[WSEvent | None] = asyncio.Queue()
        self._tasks: set[asyncio.Task[Any]] = set()

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, event_type={self.event_type!r}, closed={self.closed})"

    def deliver(self, event: WSEvent) -> None:
        if self.closed:
            return
        if self.handler is None:
            self.queue.put_nowait(event)
            return
        try:
            outcome = self.handler(event)
        except Exception:
            logger.exception("Event handler for subscription %s failed", self.id)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Event handler for subscription %s failed: %s",
                self.id,
                task.exception(),
            )

    def close(self) -> None:
        """Signal that no further events will arrive.

        Handler tasks still running are cancelled, except the one doing
        the closing (a handler may unsubscribe itself).
        """
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(None)
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()


class SubscriptionTable:
    """Subscriptions keyed by the id acknowledged by the gateway.

    The lock guards the mapping only; delivery happens outside it so a
    handler can subscribe or unsubscribe without deadlocking.
    """

    def __init__(self) -> None:
        self._entries: dict[int, Subscription] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, subscription_id: object) -> bool:
        return subscription_id in self._entries

    def ids(self) -> list[int]:
        with self._lock:
            return sorted(self._entries)

    def add(self, subscription_id: int, subscription: Subscription) -> None:
        with self._lock:
            if subscription_id in self._entries:
                raise ValueError(f"subscription {subscription_id} already registered")
            subscription.id = subscription_id
            self._entries[subscription_id] = subscription
        logger.debug(
            "Subscription %s active (event_type=%s)",
            subscription_id,
            subscription.event_type or "*",
        )

    def get(self, subscription_id: int) -> Subscription | None:
        with self._lock:
            return self._entries.get(subscription_id)

    def remove(self, subscription_id: int) -> Subscription:
        with self._lock:
            try:
                return self._entries.pop(subscription_id)
            except KeyError:
                raise UnknownSubscription(subscription_id) from None

    def discard(self, subscription_id: int) -> Subscription | None:
        with self._lock:
            return self._entries.pop(subscription_id, None)

    def close_all(self) -> int:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for subscription in entries:
            subscription.close()
        return len(entries)
