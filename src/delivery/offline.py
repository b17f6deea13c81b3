"""Durable offline store: the last-resort sink before the transport.

State machine: {online, offline}. The initial state comes from a connectivity
probe. An `online` signal flips the flag and starts exactly one retry pass; an
`offline` signal only flips the flag.

While offline, reports are wrapped as `CachedItem`s in a bounded FIFO queue
(oldest evicted) and the full queue is re-serialized to storage after every
mutation. Storage problems degrade the store to memory-only operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from monitor.errors import MaxRetriesExceeded, PersistenceFailure
from monitor.metrics import PipelineMetrics
from monitor.models import BatchPayload, CachedItem, EventRecord, Payload

from .signals import SignalBus
from .storage import CacheStorage
from .transport import Transport

logger = logging.getLogger(__name__)

_QUEUE_ADAPTER: TypeAdapter[list[CachedItem]] = TypeAdapter(list[CachedItem])


class OfflineStore:
    """Sends when online, caches and retries when offline."""

    def __init__(
        self,
        *,
        transport: Transport,
        storage_key: str,
        storage: CacheStorage | None = None,
        max_cache_size: int = 100,
        max_retries: int = 3,
        connectivity_probe: Callable[[], bool] | None = None,
        signals: SignalBus | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        """Create a store and recover any previously persisted queue.

        Args:
            transport: Delivery primitive for live sends and retries.
            storage_key: Key of the serialized queue in `storage`.
            storage: Durable backend; None means memory-only.
            max_cache_size: Bound of the cached queue (oldest evicted).
            max_retries: Failed retries tolerated before a report is dropped.
            connectivity_probe: Returns the initial online state (default: online).
            signals: Optional bus delivering online/offline signals.
            metrics: Shared counters (a private instance is used when omitted).
        """
        if max_cache_size <= 0:
            raise ValueError(f"max_cache_size must be > 0. Got: {max_cache_size}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0. Got: {max_retries}")

        self._transport = transport
        self._storage = storage
        self.storage_key = storage_key
        self.max_cache_size = max_cache_size
        self.max_retries = max_retries
        self._metrics = metrics or PipelineMetrics()

        self._queue: list[CachedItem] = []
        self._retry_lock = asyncio.Lock()
        self._retry_tasks: set[asyncio.Task[None]] = set()

        self._online = self._probe(connectivity_probe)
        self._load()

        self._signals = signals
        if signals is not None:
            signals.subscribe("online", self._handle_online)
            signals.subscribe("offline", self._handle_offline)

    @staticmethod
    def _probe(connectivity_probe: Callable[[], bool] | None) -> bool:
        if connectivity_probe is None:
            return True
        try:
            return bool(connectivity_probe())
        except Exception:  # noqa: BLE001 - assume online and let sends fail
            logger.exception("Connectivity probe failed; assuming online")
            return True

    @property
    def is_online(self) -> bool:
        return self._online

    def size(self) -> int:
        return len(self._queue)

    def cached(self) -> list[CachedItem]:
        """Point-in-time copy of the cached queue (oldest first)."""
        return list(self._queue)

    async def send(self, payload: Payload) -> bool:
        """Deliver now when online; otherwise cache and return False."""
        if self._online:
            return await self._deliver(payload)
        self.cache(payload)
        return False

    def cache(self, payload: Payload) -> None:
        """Append the payload's report(s) to the bounded queue and persist it."""
        reports: list[EventRecord] = payload.reports if isinstance(payload, BatchPayload) else [payload]
        for report in reports:
            self._queue.append(CachedItem(report=report))
            if len(self._queue) > self.max_cache_size:
                evicted = self._queue.pop(0)
                self._metrics.cache_evictions += 1
                logger.debug("Offline cache full; evicted report %s", evicted.report.event_id)
        self._persist()

    async def _deliver(self, payload: Payload) -> bool:
        """Call the transport, treating exceptions as failures, and record timing."""
        start = time.perf_counter()
        try:
            ok = bool(await self._transport.send(payload))
        except Exception as exc:  # noqa: BLE001 - a raising transport is a failed attempt
            logger.debug("Transport raised: %s", exc)
            ok = False
        self._metrics.record_upload((time.perf_counter() - start) * 1000.0, success=ok)
        return ok

    def _contains(self, item: CachedItem) -> bool:
        return any(cached is item for cached in self._queue)

    def _remove(self, item: CachedItem) -> None:
        for index, cached in enumerate(self._queue):
            if cached is item:
                del self._queue[index]
                return

    async def retry_pass(self) -> None:
        """Retry every cached report once, oldest first.

        Passes are serialized: a call made while a pass is running waits for it
        and then walks the same live queue, so no report is sent twice in one
        round or lost.
        """
        async with self._retry_lock:
            if not self._queue:
                return

            failed = 0
            for item in list(self._queue):
                # Skip items evicted or removed since the pass started.
                if not self._contains(item):
                    continue

                if await self._deliver(item.report):
                    self._remove(item)
                    continue

                item.retry_count += 1
                if item.retry_count > self.max_retries:
                    self._remove(item)
                    self._metrics.permanent_drops += 1
                    logger.error(
                        "%s",
                        MaxRetriesExceeded(
                            event_id=item.report.event_id,
                            retry_count=item.retry_count,
                            max_retries=self.max_retries,
                        ),
                    )
                else:
                    failed += 1

            self._persist()
            if failed:
                logger.warning("%d cached report(s) failed to send, will retry later", failed)

    def _handle_online(self) -> None:
        was_online = self._online
        self._online = True
        if was_online:
            return
        logger.info("Network restored, retrying %d cached report(s)", len(self._queue))
        self.schedule_retry()

    def _handle_offline(self) -> None:
        if self._online:
            logger.info("Network disconnected, caching reports")
        self._online = False

    def schedule_retry(self) -> asyncio.Task[None]:
        """Start a retry pass as a tracked task (for signal handlers and timers)."""
        task = asyncio.get_running_loop().create_task(self.retry_pass(), name="offline-retry-pass")
        self._retry_tasks.add(task)
        task.add_done_callback(self._on_retry_done)
        return task

    def _on_retry_done(self, task: asyncio.Task[None]) -> None:
        self._retry_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Retry pass failed: %s", task.exception())

    def _persist(self) -> None:
        """Re-serialize the full queue to storage; degrade to memory-only on failure."""
        if self._storage is None:
            return
        try:
            data = _QUEUE_ADAPTER.dump_json(self._queue, by_alias=True).decode("utf-8")
        except PydanticSerializationError as exc:
            logger.error("Offline cache queue is not serializable, dropping offending reports: %s", exc)
            self._queue = [item for item in self._queue if self._serializable(item)]
            data = _QUEUE_ADAPTER.dump_json(self._queue, by_alias=True).decode("utf-8")
        try:
            self._storage.write(self.storage_key, data)
        except PersistenceFailure as exc:
            self._degrade(exc)

    def rekey(self, storage_key: str) -> None:
        """Move the cached queue to `storage_key`, leaving an empty queue under the old key."""
        if storage_key == self.storage_key:
            return
        if self._storage is not None:
            try:
                self._storage.write(self.storage_key, "[]")
            except PersistenceFailure as exc:
                self._degrade(exc)
        logger.info("Offline cache moved from %r to %r", self.storage_key, storage_key)
        self.storage_key = storage_key
        self._persist()

    def _serializable(self, item: CachedItem) -> bool:
        try:
            item.model_dump_json(by_alias=True)
        except PydanticSerializationError:
            self._metrics.permanent_drops += 1
            logger.error("Dropping unserializable report %s", item.report.event_id)
            return False
        return True

    def _load(self) -> None:
        """Recover a queue persisted by a previous process."""
        if self._storage is None:
            return
        try:
            raw = self._storage.read(self.storage_key)
        except PersistenceFailure as exc:
            self._degrade(exc)
            return
        if not raw:
            return
        try:
            items = _QUEUE_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.error("Discarding unreadable offline cache %r: %s", self.storage_key, exc)
            return
        # Honor the current bound even if the persisted queue was larger.
        self._queue = items[-self.max_cache_size :]
        logger.info("Loaded %d cached report(s) from storage", len(self._queue))

    def _degrade(self, exc: PersistenceFailure) -> None:
        self._metrics.persistence_failures += 1
        logger.warning("Offline cache storage unavailable, continuing in memory only: %s", exc)
        self._storage = None

    def clear(self) -> None:
        self._queue = []
        self._persist()

    def detach(self) -> None:
        """Deregister connectivity listeners."""
        if self._signals is not None:
            self._signals.unsubscribe("online", self._handle_online)
            self._signals.unsubscribe("offline", self._handle_offline)
            self._signals = None

    async def aclose(self) -> None:
        """Detach, wait for running retry passes and persist the final state.

        Safe to call multiple times.
        """
        self.detach()
        if self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
        self._persist()
