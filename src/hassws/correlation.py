"""Message id allocation and request/response correlation."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class SequenceCounter:
    """Monotonic message id allocator, one per connection.

    Ids start at 1 and are never reused. 0 is never handed out; frames
    without an id are modelled with ``None`` instead.
    """

    def __init__(self, start: int = 1) -> None:
        if start < 1:
            raise ValueError("message ids start at 1")
        # next() on itertools.count is atomic under the GIL
        self._counter = itertools.count(start)

    def next(self) -> int:
        return next(self._counter)


@dataclass
class _Pending:
    future: asyncio.Future[Any]
    on_ack: Callable[[Any], None] | None = None


class PendingTable:
    """Outstanding requests keyed by message id.

    Each entry is popped before delivery, so a response reaches its waiter
    at most once and a duplicate response is silently a no-op.
    """

    def __init__(self) -> None:
        self._entries: dict[int, _Pending] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._entries

    def register(
        self,
        msg_id: int,
        future: asyncio.Future[Any] | None = None,
        on_ack: Callable[[Any], None] | None = None,
    ) -> asyncio.Future[Any]:
        """Create (or adopt) the delivery slot for *msg_id*.

        Must be called before the command is transmitted. ``on_ack`` runs
        synchronously with a successful ``result`` before the waiter wakes.
        """
        if future is None:
            future = asyncio.get_running_loop().create_future()
        with self._lock:
            if msg_id in self._entries:
                raise ValueError(f"message id {msg_id} is already pending")
            self._entries[msg_id] = _Pending(future, on_ack)
        return future

    def _pop(self, msg_id: int) -> _Pending | None:
        with self._lock:
            return self._entries.pop(msg_id, None)

    def resolve(self, msg_id: int, response: Any) -> bool:
        """Deliver *response* to the waiter for *msg_id*; False if none."""
        entry = self._pop(msg_id)
        if entry is None:
            return False
        if entry.on_ack is not None and getattr(response, "success", False):
            try:
                entry.on_ack(response)
            except Exception as exc:
                logger.exception("Acknowledgment hook failed for id=%s", msg_id)
                if not entry.future.done():
                    entry.future.set_exception(exc)
                return True
        if entry.future.done():
            logger.debug("Waiter for id=%s gone; response discarded.", msg_id)
            return False
        entry.future.set_result(response)
        return True

    def fail(self, msg_id: int, error: BaseException) -> bool:
        """Deliver *error* to the waiter for *msg_id*; False if none."""
        entry = self._pop(msg_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(error)
        return True

    def cancel_all(self, error: BaseException) -> int:
        """Fail every outstanding request with *error*. Returns the count."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        failed = 0
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(error)
                failed += 1
        return failed
