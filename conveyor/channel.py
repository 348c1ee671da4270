"""Bounded FIFO channel with completion tracking and an explicit closed state."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Generic, Optional, TypeVar, Union

from conveyor.constants import CANCELLED, CLOSED, STOP, TIMED_OUT, Signal
from conveyor.errors import (
    ChannelClosedError,
    ChannelFullError,
    ConfigError,
    InvariantError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class ChannelStats:
    """Observable state of a channel."""

    capacity: int
    depth: int
    in_flight: int
    total_put: int
    total_get: int
    closed: bool


class BoundedChannel(Generic[T]):
    """
    An ordered, capacity-limited queue connecting two pipeline stages.

    Works like :class:`asyncio.Queue` (``put`` suspends while full, ``get``
    suspends while empty, ``mark_done``/``drain_wait`` mirror
    ``task_done``/``join``) with three additions:

      * an explicit closed state: ``get`` on a closed, empty channel returns
        :data:`Signal.CLOSED` instead of suspending forever;
      * cooperative cancellation: ``get(cancel=event)`` returns
        :data:`Signal.CANCELLED` once ``event`` is set and the getter is idle;
      * ``mark_done`` raises :class:`InvariantError` instead of silently
        accepting more completions than items.

    Every operation runs without suspending while it mutates state, so no lock
    is needed on a single event loop. Waiters park on their own futures and a
    cancelled waiter hands its wake-up to the next one.
    """

    def __init__(self, capacity: int = 0, name: Optional[str] = None) -> None:
        """Create an empty channel.

        Parameters
        ----------
        capacity:
            Maximum number of pending items. ``0`` means unbounded.
        name:
            Optional name used in logs and ``repr``.
        """
        if capacity < 0:
            raise ConfigError(f"channel capacity must be >= 0, got {capacity}")
        self._capacity = capacity
        self._name = name or "channel"
        self._pending: Deque[Any] = deque()
        self._getters: Deque[asyncio.Future[None]] = deque()
        self._putters: Deque[asyncio.Future[None]] = deque()
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = False
        self._total_put = 0
        self._total_get = 0

    # ─── introspection ──────────────────────────────────────────────────
    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        """Items put but not yet marked done."""
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return len(self._pending)

    def pending_items(self) -> int:
        """Queued work items, not counting sentinels."""
        return sum(1 for item in self._pending if item is not STOP)

    def empty(self) -> bool:
        return not self._pending

    def full(self) -> bool:
        if self._capacity <= 0:
            return False
        return len(self._pending) >= self._capacity

    def stats(self) -> ChannelStats:
        """Return a snapshot of the channel's observable state."""
        return ChannelStats(
            capacity=self._capacity,
            depth=len(self._pending),
            in_flight=self._in_flight,
            total_put=self._total_put,
            total_get=self._total_get,
            closed=self._closed,
        )

    def __repr__(self) -> str:
        cap = self._capacity if self._capacity else "inf"
        state = " closed" if self._closed else ""
        return (
            f"<BoundedChannel '{self._name}' {len(self._pending)}/{cap} "
            f"in_flight={self._in_flight}{state}>"
        )

    # ─── internals ──────────────────────────────────────────────────────
    @staticmethod
    def _wakeup_next(waiters: Deque[asyncio.Future[None]]) -> None:
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    @staticmethod
    def _wakeup_all(waiters: Deque[asyncio.Future[None]]) -> None:
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    @staticmethod
    def _discard(waiters: Deque[asyncio.Future[None]], waiter: asyncio.Future[None]) -> None:
        try:
            waiters.remove(waiter)
        except ValueError:
            pass

    def _append(self, item: Any, *, counted: bool) -> None:
        self._pending.append(item)
        if counted:
            self._in_flight += 1
            self._total_put += 1
            self._drained.clear()
        self._wakeup_next(self._getters)

    # ─── producer side ──────────────────────────────────────────────────
    async def put(self, item: T) -> None:
        """Append ``item``, suspending while the channel is full."""
        loop = asyncio.get_running_loop()
        while self.full():
            if self._closed:
                raise ChannelClosedError(f"cannot put into closed channel '{self._name}'")
            putter = loop.create_future()
            self._putters.append(putter)
            try:
                await putter
            except asyncio.CancelledError:
                putter.cancel()
                self._discard(self._putters, putter)
                if not self.full() and not putter.cancelled():
                    self._wakeup_next(self._putters)
                raise
        if self._closed:
            raise ChannelClosedError(f"cannot put into closed channel '{self._name}'")
        self._append(item, counted=True)

    def put_nowait(self, item: T) -> None:
        """Append ``item`` or raise :class:`ChannelFullError` immediately."""
        if self._closed:
            raise ChannelClosedError(f"cannot put into closed channel '{self._name}'")
        if self.full():
            raise ChannelFullError(f"channel '{self._name}' is full ({self._capacity})")
        self._append(item, counted=True)

    def requeue(self, item: Any) -> None:
        """Re-enqueue a failed item, ignoring the capacity bound.

        A worker re-queueing into its own input while that input is full would
        otherwise wait on itself. The overshoot is bounded by the number of
        consumers. Requeueing into a closed channel is allowed: the item is
        still delivered before CLOSED.
        """
        self._append(item, counted=True)

    def signal_stop(self) -> None:
        """Enqueue the :data:`STOP` sentinel.

        Sentinels ignore capacity and do not count towards ``in_flight``, so a
        channel that carried them still drains.
        """
        self._append(STOP, counted=False)

    def close(self) -> None:
        """Mark the channel closed. Idempotent.

        Pending items are still delivered; afterwards ``get`` returns
        :data:`Signal.CLOSED`. Blocked putters raise :class:`ChannelClosedError`.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug("Channel %s closed (pending=%d)", self._name, len(self._pending))
        self._wakeup_all(self._getters)
        self._wakeup_all(self._putters)

    # ─── consumer side ──────────────────────────────────────────────────
    async def get(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Union[T, Signal]:
        """Pop the oldest item.

        Returns :data:`Signal.CLOSED` when the channel is closed and empty,
        :data:`Signal.CANCELLED` when ``cancel`` is set while nothing is
        pending, and :data:`Signal.TIMED_OUT` when ``timeout`` seconds pass
        without an item. The timeout is an absolute deadline, recomputed after
        every wake-up.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._pending:
            if self._closed:
                return CLOSED
            if cancel is not None and cancel.is_set():
                return CANCELLED
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return TIMED_OUT
            getter = loop.create_future()
            self._getters.append(getter)
            try:
                if remaining is None:
                    await getter
                else:
                    await asyncio.wait_for(getter, remaining)
            except asyncio.TimeoutError:
                # loop once more: an item that raced the timer still wins
                self._discard(self._getters, getter)
            except asyncio.CancelledError:
                getter.cancel()
                self._discard(self._getters, getter)
                if self._pending and not getter.cancelled():
                    self._wakeup_next(self._getters)
                raise
        item = self._pending.popleft()
        if item is not STOP:
            self._total_get += 1
        self._wakeup_next(self._putters)
        return item

    def interrupt(self) -> None:
        """Wake every idle getter so it re-checks its ``cancel`` event."""
        self._wakeup_all(self._getters)

    def mark_done(self) -> None:
        """Record that one previously put item has been fully processed."""
        if self._in_flight <= 0:
            raise InvariantError(
                f"mark_done() called more times than items were put on '{self._name}'"
            )
        self._in_flight -= 1
        if self._in_flight == 0:
            self._drained.set()

    async def drain_wait(self) -> None:
        """Wait until every item put so far has been marked done."""
        while self._in_flight:
            await self._drained.wait()
