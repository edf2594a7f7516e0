"""Bounded in-process retry queue for failed store writes.

Readings whose write failed wait here and are re-delivered on a timer. The
queue is process-local and intentionally lossy: when it is full the oldest
item is evicted, and an item that fails ``max_attempts`` ticks is dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pyfleet import _constants as c
from pyfleet.exceptions import RetryExhaustedError, StoreError
from pyfleet.models import Reading

_logger = logging.getLogger(__name__)

DeliverFn = Callable[[Reading], Awaitable[Any]]


@dataclass
class RetryItem:
    """A reading waiting for re-delivery."""

    reading: Reading
    enqueued_at: float
    attempt_count: int = 0
    last_attempt_at: float | None = None


class RetryQueue:
    """FIFO of failed writes, drained every *interval* seconds.

    Parameters
    ----------
    deliver
        Coroutine function that writes one reading. Raising
        :class:`~pyfleet.exceptions.StoreError` counts as a failed attempt;
        any other exception drops the item as exhausted and propagates.
    capacity
        Maximum queued items; enqueueing into a full queue evicts the oldest.
    max_attempts
        Ticks an item may fail before it is dropped.
    interval
        Seconds between drains once :meth:`start` was called.
    on_exhausted
        Called with a :class:`~pyfleet.exceptions.RetryExhaustedError` for
        every dropped item.
    """

    def __init__(
        self,
        deliver: DeliverFn,
        *,
        capacity: int = c.RETRY_CAPACITY,
        max_attempts: int = c.RETRY_MAX_ATTEMPTS,
        interval: float = c.RETRY_INTERVAL_SECONDS,
        on_exhausted: Callable[[RetryExhaustedError], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deliver = deliver
        self._capacity = capacity
        self._max_attempts = max_attempts
        self._interval = interval
        self._on_exhausted = on_exhausted
        self._clock = clock
        self._queue: deque[RetryItem] = deque()
        self._draining = False
        self._task: asyncio.Task[None] | None = None
        self._stats = {"enqueued": 0, "delivered": 0, "evicted": 0, "exhausted": 0}

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def items(self) -> list[RetryItem]:
        """Snapshot of the queue, oldest first."""
        return list(self._queue)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, reading: Reading) -> None:
        """Queue *reading* for the next drain, evicting the oldest item if full."""
        if len(self._queue) >= self._capacity:
            removed = self._queue.popleft()
            self._stats["evicted"] += 1
            _logger.warning(
                "Retry queue full, dropping oldest reading %s/%s ts=%s",
                removed.reading.kind,
                removed.reading.device_id,
                removed.reading.ts,
            )
        self._queue.append(RetryItem(reading=reading, enqueued_at=self._clock()))
        self._stats["enqueued"] += 1
        _logger.debug(
            "Queued %s/%s ts=%s for retry (queue size: %d)",
            reading.kind,
            reading.device_id,
            reading.ts,
            len(self._queue),
        )

    async def drain_tick(self) -> int:
        """Attempt every item queued when the tick started, once.

        Returns the number of successful deliveries. An overlapping call
        returns ``0`` immediately.
        """
        if self._draining:
            _logger.debug("Retry drain already running, skipping tick")
            return 0
        self._draining = True
        try:
            return await self._drain()
        finally:
            self._draining = False

    async def _drain(self) -> int:
        pending = len(self._queue)
        delivered = 0
        failed: list[RetryItem] = []

        try:
            for _ in range(pending):
                if not self._queue:
                    break
                item = self._queue.popleft()
                item.attempt_count += 1
                item.last_attempt_at = self._clock()
                try:
                    await self._deliver(item.reading)
                except StoreError as exc:
                    if item.attempt_count >= self._max_attempts:
                        self._exhaust(item, exc)
                    else:
                        _logger.debug(
                            "Retry %d/%d failed for %s/%s: %s",
                            item.attempt_count,
                            self._max_attempts,
                            item.reading.kind,
                            item.reading.device_id,
                            exc,
                        )
                        failed.append(item)
                except Exception as exc:
                    # Not a store failure: retrying cannot help.
                    self._exhaust(item, exc)
                    raise
                else:
                    delivered += 1
                    self._stats["delivered"] += 1
        finally:
            # Failed items keep their place ahead of anything queued during the tick.
            self._queue.extendleft(reversed(failed))
            while len(self._queue) > self._capacity:
                removed = self._queue.popleft()
                self._stats["evicted"] += 1
                _logger.warning("Retry queue full, dropping oldest reading %s/%s", removed.reading.kind, removed.reading.device_id)

        if delivered:
            _logger.info("Re-delivered %d queued readings (%d still pending)", delivered, len(self._queue))
        return delivered

    def _exhaust(self, item: RetryItem, cause: Exception) -> None:
        self._stats["exhausted"] += 1
        error = RetryExhaustedError(
            f"Dropping {item.reading.kind}/{item.reading.device_id} ts={item.reading.ts} "
            f"after {item.attempt_count} attempts: {cause}",
            device_id=item.reading.device_id,
            attempts=item.attempt_count,
        )
        _logger.error("%s", error)
        if self._on_exhausted is not None:
            self._on_exhausted(error)

    def start(self) -> None:
        """Start the drain timer on the running loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="pyfleet-retry-drain")
        _logger.debug("Retry drain timer started (interval %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        _logger.debug("Retry drain timer stopped with %d pending", len(self._queue))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.drain_tick()
            except Exception:
                _logger.exception("Retry drain tick failed; timer keeps running")
