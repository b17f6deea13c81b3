from __future__ import annotations

import asyncio
import json
import logging

import pytest

from delivery.offline import OfflineStore
from delivery.signals import SignalBus
from delivery.storage import InMemoryCacheStorage
from monitor.errors import PersistenceFailure
from monitor.metrics import PipelineMetrics
from monitor.models import BatchPayload, EventRecord, Payload

KEY = "error_monitor_cache_app"


def _record(event_id: str) -> EventRecord:
    return EventRecord(app_id="app", session_id="s", event_id=event_id, message=f"boom {event_id}")


def _sent_ids(payloads: list[Payload]) -> list[str]:
    ids: list[str] = []
    for p in payloads:
        if isinstance(p, BatchPayload):
            ids.extend(r.event_id for r in p.reports)
        else:
            ids.append(p.event_id)
    return ids


class _FakeTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[Payload] = []

    async def send(self, payload: Payload) -> bool:
        self.sent.append(payload)
        return not self.fail

    def close(self) -> None:
        pass


class _RaisingTransport(_FakeTransport):
    async def send(self, payload: Payload) -> bool:
        self.sent.append(payload)
        raise ConnectionError("socket closed")


class _BrokenStorage:
    def __init__(self) -> None:
        self.write_attempts = 0

    def read(self, key: str) -> str | None:
        return None

    def write(self, key: str, data: str) -> None:
        self.write_attempts += 1
        raise PersistenceFailure("disk full")

    def close(self) -> None:
        pass


def _store(transport: _FakeTransport, **kwargs) -> OfflineStore:
    kwargs.setdefault("storage_key", KEY)
    return OfflineStore(transport=transport, **kwargs)


@pytest.mark.asyncio
async def test_online_send_goes_straight_to_transport_without_storage() -> None:
    transport = _FakeTransport()
    storage = InMemoryCacheStorage()
    store = _store(transport, storage=storage)

    assert await store.send(_record("x")) is True
    assert _sent_ids(transport.sent) == ["x"]
    assert storage.writes == 0
    assert storage.read(KEY) is None


@pytest.mark.asyncio
async def test_offline_send_persists_and_reconnect_retries_oldest_first() -> None:
    transport = _FakeTransport()
    storage = InMemoryCacheStorage()
    bus = SignalBus()
    store = _store(transport, storage=storage, signals=bus, connectivity_probe=lambda: False)

    assert await store.send(_record("a")) is False
    assert await store.send(BatchPayload(reports=[_record("b"), _record("c")])) is False
    assert transport.sent == []
    persisted = json.loads(storage.read(KEY) or "[]")
    assert [item["report"]["eventId"] for item in persisted] == ["a", "b", "c"]
    assert all(item["retryCount"] == 0 for item in persisted)

    bus.publish("online")
    await store.aclose()

    assert store.is_online
    assert _sent_ids(transport.sent) == ["a", "b", "c"]
    assert store.size() == 0
    assert json.loads(storage.read(KEY) or "") == []


@pytest.mark.asyncio
async def test_cache_evicts_oldest_beyond_max_size_and_retries_in_order() -> None:
    transport = _FakeTransport()
    bus = SignalBus()
    metrics = PipelineMetrics()
    store = _store(transport, signals=bus, max_cache_size=2, connectivity_probe=lambda: False, metrics=metrics)

    for event_id in ["X", "Y", "Z"]:
        store.cache(_record(event_id))

    assert [item.report.event_id for item in store.cached()] == ["Y", "Z"]
    assert metrics.cache_evictions == 1

    bus.publish("online")
    await store.aclose()
    assert _sent_ids(transport.sent) == ["Y", "Z"]


@pytest.mark.asyncio
async def test_item_dropped_after_max_retries(caplog: pytest.LogCaptureFixture) -> None:
    transport = _FakeTransport(fail=True)
    metrics = PipelineMetrics()
    store = _store(transport, max_retries=3, connectivity_probe=lambda: False, metrics=metrics)
    store.cache(_record("doomed"))

    for expected_count in [1, 2, 3]:
        await store.retry_pass()
        assert store.cached()[0].retry_count == expected_count

    with caplog.at_level(logging.ERROR, logger="delivery.offline"):
        await store.retry_pass()

    assert store.size() == 0
    assert len(transport.sent) == 4
    assert metrics.permanent_drops == 1
    assert "doomed" in caplog.text

    await store.retry_pass()
    assert len(transport.sent) == 4


@pytest.mark.asyncio
async def test_raising_transport_counts_as_failure() -> None:
    transport = _RaisingTransport()
    store = _store(transport, connectivity_probe=lambda: False)
    store.cache(_record("a"))

    await store.retry_pass()

    assert store.cached()[0].retry_count == 1
    assert await _store(_RaisingTransport()).send(_record("b")) is False


@pytest.mark.asyncio
async def test_only_offline_to_online_transition_triggers_retry() -> None:
    transport = _FakeTransport()
    bus = SignalBus()
    store = _store(transport, signals=bus)
    store.cache(_record("a"))

    # Already online: the signal does not start a pass.
    bus.publish("online")
    await asyncio.sleep(0)
    assert transport.sent == []

    bus.publish("offline")
    assert not store.is_online
    assert await store.send(_record("b")) is False
    assert transport.sent == []

    bus.publish("online")
    await store.aclose()
    assert _sent_ids(transport.sent) == ["a", "b"]


@pytest.mark.asyncio
async def test_overlapping_retry_passes_never_resend_an_item() -> None:
    release = asyncio.Event()
    sent: list[str] = []

    class _SlowTransport(_FakeTransport):
        async def send(self, payload: Payload) -> bool:
            await release.wait()
            assert isinstance(payload, EventRecord)
            sent.append(payload.event_id)
            return True

    store = _store(_SlowTransport(), connectivity_probe=lambda: False)
    for event_id in ["a", "b", "c"]:
        store.cache(_record(event_id))

    first = store.schedule_retry()
    second = store.schedule_retry()
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(first, second)

    assert sent == ["a", "b", "c"]
    assert store.size() == 0


@pytest.mark.asyncio
async def test_persisted_queue_is_recovered_on_construction() -> None:
    storage = InMemoryCacheStorage()
    first = _store(_FakeTransport(), storage=storage, connectivity_probe=lambda: False)
    first.cache(_record("survivor"))

    transport = _FakeTransport()
    second = _store(transport, storage=storage, connectivity_probe=lambda: False)
    assert [item.report.event_id for item in second.cached()] == ["survivor"]

    await second.retry_pass()
    assert _sent_ids(transport.sent) == ["survivor"]


def test_unreadable_persisted_queue_is_discarded() -> None:
    storage = InMemoryCacheStorage({KEY: "{not json"})
    store = _store(_FakeTransport(), storage=storage)
    assert store.size() == 0


@pytest.mark.asyncio
async def test_storage_failure_degrades_to_memory_only(caplog: pytest.LogCaptureFixture) -> None:
    storage = _BrokenStorage()
    metrics = PipelineMetrics()
    store = _store(_FakeTransport(), storage=storage, connectivity_probe=lambda: False, metrics=metrics)

    with caplog.at_level(logging.WARNING, logger="delivery.offline"):
        store.cache(_record("a"))
        store.cache(_record("b"))

    assert store.size() == 2
    assert storage.write_attempts == 1
    assert metrics.persistence_failures == 1
    assert caplog.text.count("memory only") == 1

    await store.retry_pass()
    assert store.size() == 0


def test_detach_removes_connectivity_listeners() -> None:
    bus = SignalBus()
    store = _store(_FakeTransport(), signals=bus)
    assert bus.subscriber_count("online") == 1

    store.detach()
    assert bus.subscriber_count("online") == 0
    assert bus.subscriber_count("offline") == 0


@pytest.mark.asyncio
async def test_unserializable_report_is_dropped_and_later_reports_still_persist(
    caplog: pytest.LogCaptureFixture,
) -> None:
    storage = InMemoryCacheStorage()
    metrics = PipelineMetrics()
    store = _store(_FakeTransport(), storage=storage, metrics=metrics, connectivity_probe=lambda: False)

    bad = EventRecord(app_id="app", session_id="s", event_id="bad", extra={"note": "ok"})
    # Frozen models still hold mutable dicts.
    assert bad.extra is not None
    bad.extra["handle"] = object()

    with caplog.at_level(logging.ERROR, logger="delivery.offline"):
        assert await store.send(bad) is False
        assert await store.send(_record("good")) is False
    await store.aclose()

    assert [item.report.event_id for item in store.cached()] == ["good"]
    persisted = json.loads(storage.read(KEY) or "[]")
    assert [item["report"]["eventId"] for item in persisted] == ["good"]
    assert metrics.permanent_drops == 1
    assert "bad" in caplog.text


@pytest.mark.asyncio
async def test_rekey_moves_the_persisted_queue() -> None:
    storage = InMemoryCacheStorage()
    store = _store(_FakeTransport(), storage=storage, connectivity_probe=lambda: False)
    await store.send(_record("a"))

    store.rekey("error_monitor_cache_other")
    store.rekey("error_monitor_cache_other")

    assert store.storage_key == "error_monitor_cache_other"
    assert json.loads(storage.read(KEY) or "") == []
    moved = json.loads(storage.read("error_monitor_cache_other") or "[]")
    assert [item["report"]["eventId"] for item in moved] == ["a"]
