"""Batch aggregator: groups reports so they are transmitted together.

A batch is flushed when:
- the queue reaches `batch_size` (immediately),
- `flush_delay_ms` elapses after the first unflushed report (one timer at a time),
- a page_hide/before_unload signal arrives, or a caller invokes `flush()`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from monitor.models import EventRecord, QueuedItem

from .signals import SignalBus

logger = logging.getLogger(__name__)

BatchSender = Callable[[list[EventRecord]], Awaitable[object] | None]

_FLUSH_SIGNALS = ("page_hide", "before_unload")


class BatchAggregator:
    """Accumulates reports and hands them downstream as ordered batches."""

    def __init__(
        self,
        *,
        sender: BatchSender,
        batch_size: int = 10,
        flush_delay_ms: int = 1000,
        signals: SignalBus | None = None,
    ) -> None:
        """Create an aggregator.

        Args:
            sender: Receives each flushed batch. May return an awaitable, which is
                scheduled as a tracked task; its failures are logged.
            batch_size: Queue length that triggers an immediate flush.
            flush_delay_ms: Delay before a partial batch is flushed.
            signals: Optional bus; lifecycle signals trigger `flush()`.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0. Got: {batch_size}")
        if flush_delay_ms < 0:
            raise ValueError(f"flush_delay_ms must be >= 0. Got: {flush_delay_ms}")

        self._sender = sender
        self.batch_size = batch_size
        self.flush_delay_ms = flush_delay_ms

        self._queue: list[QueuedItem] = []
        self._timer: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[object]] = set()

        self._signals = signals
        if signals is not None:
            for signal in _FLUSH_SIGNALS:
                signals.subscribe(signal, self.flush)

    def add(self, report: EventRecord) -> None:
        """Queue a report, flushing now or scheduling a delayed flush."""
        self._queue.append(QueuedItem(report=report))
        if len(self._queue) >= self.batch_size:
            self.flush()
        else:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        """Arm the delayed flush unless one is already pending."""
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.flush_delay_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush(self) -> None:
        """Drain the whole queue into one batch and hand it to the sender."""
        self._cancel_timer()
        if not self._queue:
            return

        batch = [item.report for item in self._queue]
        self._queue = []
        logger.debug("Flushing batch of %d report(s)", len(batch))
        self._dispatch(batch)

    def _dispatch(self, batch: list[EventRecord]) -> None:
        try:
            result = self._sender(batch)
        except Exception:  # noqa: BLE001 - never raise into the host application
            logger.exception("Batch sender failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_sent)

    def _on_sent(self, task: asyncio.Task[object]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Failed to send batch: %s", exc)

    def size(self) -> int:
        return len(self._queue)

    def clear(self) -> None:
        """Discard queued reports without sending them."""
        self._cancel_timer()
        self._queue = []

    def detach(self) -> None:
        """Deregister lifecycle listeners and cancel the pending timer."""
        self._cancel_timer()
        if self._signals is not None:
            for signal in _FLUSH_SIGNALS:
                self._signals.unsubscribe(signal, self.flush)
            self._signals = None

    async def aclose(self) -> None:
        """Flush remaining reports, detach, and wait for in-flight batches.

        Safe to call multiple times.
        """
        self.flush()
        self.detach()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
