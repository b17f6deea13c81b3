"""Error monitor: capture, enrich and report events through the delivery pipeline.

One `ErrorMonitor` owns all pipeline state for one app id:

    capture() -> filter -> sample -> before_capture hooks -> build record
              -> after_capture hooks -> report() -> before_report hooks
              -> BatchAggregator (when batching) -> OfflineStore -> Transport

Nothing here raises into the host application; failures are logged and counted.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import random
import time
import traceback
import uuid
import warnings
from collections.abc import Callable, Coroutine, Mapping
from re import Pattern
from typing import Any

from pydantic import ValidationError

from config import PipelineConfig, default_storage_key
from delivery.batch import BatchAggregator
from delivery.offline import OfflineStore
from delivery.signals import SignalBus
from delivery.storage import CacheStorage
from delivery.transport import CallbackTransport, HttpTransport, Reporter, Transport

from .errors import CaptureDropped, FilteredDrop, HookVeto, SampledOut
from .history import HistoryRing
from .hooks import Plugin, RecordHook, apply_update
from .metrics import HealthSnapshot, PipelineMetrics
from .models import (
    BatchPayload,
    Breadcrumb,
    CaptureOptions,
    EventContext,
    EventRecord,
    Level,
    RawEvent,
    Viewport,
)

logger = logging.getLogger(__name__)

# Loggers whose level follows `PipelineConfig.debug`.
_PACKAGE_LOGGERS = ("monitor", "delivery")

ContextProvider = Callable[[], Mapping[str, Any]]


def generate_id() -> str:
    """Return a unique, time-prefixed identifier (`<epoch_ms>-<random>`)."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:13]}"


def default_context() -> dict[str, Any]:
    """Describe the host process when no context provider is supplied."""
    return {
        "user_agent": f"{platform.python_implementation()}/{platform.python_version()} ({platform.system()})",
        "url": "",
        "viewport": {"width": 0, "height": 0},
    }


def normalize_event(raw: Any) -> RawEvent:
    """Coerce any capture input into a `RawEvent` without raising."""
    if isinstance(raw, RawEvent):
        return raw
    if isinstance(raw, BaseException):
        return RawEvent(
            type="custom",
            message=str(raw) or type(raw).__name__,
            stack="".join(traceback.format_exception(type(raw), raw, raw.__traceback__)),
        )
    if isinstance(raw, Mapping):
        try:
            return RawEvent.model_validate(raw)
        except ValidationError:
            # Keep what is usable; anything malformed degrades to defaults.
            message = raw.get("message")
            context = raw.get("context")
            return RawEvent(
                type="custom",
                message=message if isinstance(message, str) else "",
                context=dict(context) if isinstance(context, Mapping) else {},
            )
    return RawEvent(type="custom", message="" if raw is None else str(raw))


class ErrorMonitor:
    """Capture orchestrator and owner of the delivery pipeline."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        transport: Transport | None = None,
        storage: CacheStorage | None = None,
        signals: SignalBus | None = None,
        connectivity_probe: Callable[[], bool] | None = None,
        context_provider: ContextProvider | None = None,
        reporter: Reporter | None = None,
    ) -> None:
        """Create a monitor and wire its pipeline.

        Args:
            config: Pipeline configuration.
            transport: Delivery primitive. Defaults to `CallbackTransport(reporter)`
                when a reporter is given, else `HttpTransport(config.dsn)`.
            storage: Durable backend for the offline cache (memory-only when None).
            signals: Bus carrying lifecycle/connectivity signals; a private bus is
                created when omitted (reachable as `monitor.signals`).
            connectivity_probe: Returns the initial online state.
            context_provider: Returns `user_agent`, `url` and `viewport` for events.
            reporter: Custom report function used instead of HTTP.
        """
        if not config.app_id:
            warnings.warn("PipelineConfig.app_id is empty; reports cannot be attributed", stacklevel=2)

        self.config = config
        self.signals = signals or SignalBus()
        self.metrics = PipelineMetrics()
        self.session_id = generate_id()

        self._initialized = False
        self._plugins: list[Plugin] = []
        self._breadcrumbs: HistoryRing[Breadcrumb] = HistoryRing(config.breadcrumb_capacity)
        self._context_provider = context_provider or default_context
        self._pending: set[asyncio.Task[bool]] = set()
        self._apply_log_level()

        if transport is None:
            transport = CallbackTransport(reporter) if reporter is not None else HttpTransport(config.dsn)
        self._transport = transport

        self._store: OfflineStore | None = None
        if config.offline_cache:
            self._store = OfflineStore(
                transport=transport,
                storage_key=config.storage_key,
                storage=storage,
                max_cache_size=config.max_cache_size,
                max_retries=config.max_retries,
                connectivity_probe=connectivity_probe,
                signals=self.signals,
                metrics=self.metrics,
            )

        self._batch: BatchAggregator | None = None
        if config.batching:
            self._batch = BatchAggregator(
                sender=self._send_batch,
                batch_size=config.batch_size,
                flush_delay_ms=config.flush_delay_ms,
                signals=self.signals,
            )

    def _apply_log_level(self) -> None:
        if not self.config.debug:
            return
        for name in _PACKAGE_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> None:
        """Mark the monitor ready and run plugin `setup` hooks (idempotent)."""
        if self._initialized:
            logger.warning("Already initialized")
            return
        self._initialized = True
        for plugin in self._plugins:
            self._run_setup(plugin)
        logger.info("Initialized with app_id=%s", self.config.app_id)

    def use(self, plugin: Plugin) -> None:
        """Register a plugin; its `setup` runs now if the monitor is initialized."""
        self._plugins.append(plugin)
        if self._initialized:
            self._run_setup(plugin)

    def _run_setup(self, plugin: Plugin) -> None:
        if plugin.setup is None:
            return
        try:
            plugin.setup(self)
        except Exception:  # noqa: BLE001 - a broken plugin must not break the host
            logger.exception("Plugin %s setup failed", plugin.name)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def plugins(self) -> list[Plugin]:
        return list(self._plugins)

    # -- configuration ------------------------------------------------------

    def update_config(self, **changes: Any) -> None:
        """Apply validated config changes (raises `ValueError` on invalid values).

        A new `app_id` also re-derives the storage key unless it was set
        explicitly. The offline queue follows the storage key.
        """
        derived_key = self.config.storage_key == default_storage_key(self.config.app_id)
        for key, value in changes.items():
            setattr(self.config, key, value)
        if "app_id" in changes and "storage_key" not in changes and derived_key:
            self.config.storage_key = default_storage_key(self.config.app_id)
        self._apply_log_level()
        if self._batch is not None:
            self._batch.batch_size = self.config.batch_size
            self._batch.flush_delay_ms = self.config.flush_delay_ms
        if self._store is not None:
            self._store.max_cache_size = self.config.max_cache_size
            self._store.max_retries = self.config.max_retries
            self._store.rekey(self.config.storage_key)
        logger.debug("Config updated: %s", sorted(changes))

    def enable(self) -> None:
        self.config.enabled = True
        logger.info("Monitor enabled")

    def disable(self) -> None:
        self.config.enabled = False
        logger.info("Monitor disabled")

    def add_filter(self, pattern: str | Pattern[str]) -> None:
        """Add a message pattern to the ignore list."""
        self.config.filter.ignore_errors = [*self.config.filter.ignore_errors, pattern]  # type: ignore[list-item]

    def remove_filter(self, pattern: str | Pattern[str]) -> None:
        """Remove a message pattern (matched by pattern text) from the ignore list."""
        text = pattern if isinstance(pattern, str) else pattern.pattern
        self.config.filter.ignore_errors = [p for p in self.config.filter.ignore_errors if p.pattern != text]

    def set_sample_rate(self, rate: float) -> None:
        self.config.sample_rate = min(1.0, max(0.0, rate))

    def set_error_sample_rate(self, rate: float) -> None:
        self.config.error_sample_rate = min(1.0, max(0.0, rate))

    def set_user(self, user: Mapping[str, Any]) -> None:
        """Set the default user id and merge the remaining user fields into tags."""
        user_id = user.get("id")
        self.config.user_id = None if user_id is None else str(user_id)
        self.config.tags = {**self.config.tags, **{k: str(v) for k, v in user.items() if v is not None}}

    # -- breadcrumbs --------------------------------------------------------

    def add_breadcrumb(
        self,
        crumb: Breadcrumb | Mapping[str, Any] | None = None,
        *,
        type: str = "default",
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record recent activity; the oldest breadcrumb is dropped at capacity."""
        try:
            if crumb is None:
                crumb = Breadcrumb(type=type, message=message, data=data)
            elif not isinstance(crumb, Breadcrumb):
                crumb = Breadcrumb.model_validate(crumb)
        except ValidationError as exc:
            logger.debug("Ignoring malformed breadcrumb: %s", exc)
            return
        self._breadcrumbs.push(crumb)

    def breadcrumbs(self) -> list[Breadcrumb]:
        return self._breadcrumbs.snapshot()

    # -- capture ------------------------------------------------------------

    def capture(self, raw_event: Any, options: CaptureOptions | Mapping[str, Any] | None = None) -> None:
        """Capture an event. Never raises; drops are silent apart from debug logs."""
        if not self._initialized:
            logger.warning("capture() called before init(); ignoring event")
            return
        if not self.config.enabled:
            return

        start = time.perf_counter()
        try:
            record = self._build(normalize_event(raw_event), self._coerce_options(options))
        except CaptureDropped as drop:
            self.metrics.record_drop(drop.reason)
            logger.debug("Event dropped (%s): %s", drop.reason, drop)
            return
        except Exception:  # noqa: BLE001 - capture must never crash the host
            logger.exception("Failed to capture event")
            return
        self.metrics.record_processing((time.perf_counter() - start) * 1000.0)
        self.report(record)

    def capture_error(self, error: BaseException, options: CaptureOptions | Mapping[str, Any] | None = None) -> None:
        self.capture(error, options)

    def capture_message(
        self,
        message: str,
        level: Level = "info",
        options: CaptureOptions | Mapping[str, Any] | None = None,
    ) -> None:
        """Capture a plain message as a custom event at `level`."""
        opts = self._coerce_options(options).model_copy(update={"level": level})
        self.capture(RawEvent(type="custom", message=message), opts)

    @staticmethod
    def _coerce_options(options: CaptureOptions | Mapping[str, Any] | None) -> CaptureOptions:
        if isinstance(options, CaptureOptions):
            return options
        if options is None:
            return CaptureOptions()
        try:
            return CaptureOptions.model_validate(options)
        except ValidationError as exc:
            logger.debug("Ignoring malformed capture options: %s", exc)
            return CaptureOptions()

    def _build(self, event: RawEvent, opts: CaptureOptions) -> EventRecord:
        """Run policy and hooks, then assemble the record (raises `CaptureDropped`)."""
        if not opts.skip_filter:
            self._check_filters(event)
        if not opts.skip_sampling:
            self._check_sampling(opts.level)

        for plugin in self._plugins:
            if plugin.before_capture is None:
                continue
            try:
                result = plugin.before_capture(event)
            except Exception:  # noqa: BLE001 - skip the broken hook
                logger.exception("Plugin %s before_capture failed", plugin.name)
                continue
            if result is None:
                raise HookVeto(f"vetoed by plugin {plugin.name}")
            event = normalize_event(result)

        record = EventRecord(
            app_id=self.config.app_id,
            session_id=self.session_id,
            event_id=generate_id(),
            type=event.type,
            level=opts.level,
            message=event.message,
            stack=event.stack,
            context=self._build_context(opts),
            breadcrumbs=self._breadcrumbs.snapshot(),
            extra={**event.context, **opts.extra},
        )

        return self._run_record_hooks(record, "after_capture", [(p.name, p.after_capture) for p in self._plugins])

    def _check_filters(self, event: RawEvent) -> None:
        for pattern in self.config.filter.ignore_errors:
            if pattern.search(event.message):
                raise FilteredDrop(f"message matched {pattern.pattern!r}")
        url = event.context.get("url")
        if isinstance(url, str) and url:
            for pattern in self.config.filter.ignore_urls:
                if pattern.search(url):
                    raise FilteredDrop(f"url matched {pattern.pattern!r}")

    def _check_sampling(self, level: str) -> None:
        rate = self.config.error_sample_rate if level in ("error", "fatal") else self.config.sample_rate
        if random.random() > rate:
            raise SampledOut(f"sample rate {rate}")

    def _build_context(self, opts: CaptureOptions) -> EventContext:
        try:
            env = dict(self._context_provider())
        except Exception:  # noqa: BLE001 - degrade to empty context
            logger.exception("Context provider failed")
            env = {}

        user_id = opts.user.get("id")
        if user_id is None:
            user_id = self.config.user_id
        try:
            viewport = Viewport.model_validate(env.get("viewport") or {})
        except ValidationError:
            viewport = Viewport()
        return EventContext(
            user_agent=str(env.get("user_agent") or env.get("userAgent") or ""),
            url=str(env.get("url") or ""),
            viewport=viewport,
            user_id=None if user_id is None else str(user_id),
            tags={**self._release_tags(), **self.config.tags, **opts.tags},
        )

    def _release_tags(self) -> dict[str, str]:
        tags: dict[str, str] = {}
        if self.config.environment:
            tags["environment"] = self.config.environment
        if self.config.release:
            tags["release"] = self.config.release
        return tags

    def _run_record_hooks(
        self,
        record: EventRecord,
        stage: str,
        hooks: list[tuple[str, RecordHook | None]],
    ) -> EventRecord:
        for name, hook in hooks:
            if hook is None:
                continue
            try:
                record = apply_update(record, hook(record))
            except Exception:  # noqa: BLE001 - skip the broken hook
                logger.exception("Plugin %s %s failed", name, stage)
        return record

    # -- reporting ----------------------------------------------------------

    def report(self, record: EventRecord) -> None:
        """Run `before_report` hooks and hand the record to the next stage."""
        try:
            record = self._run_record_hooks(
                record, "before_report", [(p.name, p.before_report) for p in self._plugins]
            )
            if self._batch is not None:
                self._batch.add(record)
            else:
                self._spawn(self._send_one(record))
        except Exception:  # noqa: BLE001 - reporting must never crash the host
            logger.exception("Failed to report event %s", record.event_id)

    async def _send_one(self, record: EventRecord) -> bool:
        if self._store is not None:
            return await self._store.send(record)
        return await self._transport.send(record)

    async def _send_batch(self, reports: list[EventRecord]) -> bool:
        payload = BatchPayload(reports=reports)
        if self._store is not None:
            return await self._store.send(payload)
        return await self._transport.send(payload)

    def _spawn(self, coro: Coroutine[Any, Any, bool]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_sent)

    def _on_sent(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Failed to send report: %s", task.exception())

    def flush(self) -> None:
        """Flush buffered reports now (e.g. before the host process exits)."""
        if self._batch is not None:
            self._batch.flush()

    async def retry_cached(self) -> None:
        """Run one retry pass over the offline cache (for caller-driven timers)."""
        if self._store is not None:
            await self._store.retry_pass()

    # -- introspection ------------------------------------------------------

    def health(self) -> HealthSnapshot:
        """Return counters, queue sizes and a health verdict."""
        issues = self.metrics.issues()
        return HealthSnapshot(
            healthy=not issues,
            issues=issues,
            online=self._store.is_online if self._store is not None else True,
            batch_queue_size=self._batch.size() if self._batch is not None else 0,
            cache_size=self._store.size() if self._store is not None else 0,
            metrics=self.metrics.snapshot(),
        )

    @property
    def store(self) -> OfflineStore | None:
        return self._store

    @property
    def aggregator(self) -> BatchAggregator | None:
        return self._batch

    # -- teardown -----------------------------------------------------------

    async def aclose(self) -> None:
        """Flush, deregister listeners, tear down plugins and wait for in-flight work.

        Safe to call multiple times. Background HTTP sends already handed to the
        transport are allowed to finish on their own.
        """
        if self._batch is not None:
            await self._batch.aclose()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._store is not None:
            await self._store.aclose()
        self._transport.close()

        for plugin in self._plugins:
            if plugin.teardown is None:
                continue
            try:
                plugin.teardown()
            except Exception:  # noqa: BLE001 - keep tearing down the rest
                logger.exception("Plugin %s teardown failed", plugin.name)

        self._plugins = []
        self._breadcrumbs.clear()
        if self._initialized:
            logger.info("Destroyed")
        self._initialized = False


def create_error_monitor(config: PipelineConfig, **kwargs: Any) -> ErrorMonitor:
    """Create a monitor for `config`; keyword arguments go to `ErrorMonitor`."""
    return ErrorMonitor(config, **kwargs)
