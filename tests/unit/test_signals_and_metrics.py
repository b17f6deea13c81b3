from __future__ import annotations

import logging

import pytest

from delivery.signals import SignalBus
from monitor.metrics import PipelineMetrics


def test_signal_bus_calls_handlers_in_order_and_survives_failures(caplog: pytest.LogCaptureFixture) -> None:
    bus = SignalBus()
    calls: list[str] = []

    def broken() -> None:
        raise RuntimeError("handler bug")

    bus.subscribe("offline", lambda: calls.append("first"))
    bus.subscribe("offline", broken)
    bus.subscribe("offline", lambda: calls.append("third"))

    with caplog.at_level(logging.ERROR, logger="delivery.signals"):
        bus.publish("offline")

    assert calls == ["first", "third"]
    assert "offline" in caplog.text


def test_unsubscribe_and_unknown_signals_are_harmless() -> None:
    bus = SignalBus()
    calls: list[str] = []
    handler = bus.subscribe("page_hide", lambda: calls.append("hide"))

    bus.publish("online")
    bus.unsubscribe("page_hide", handler)
    bus.unsubscribe("page_hide", handler)
    bus.publish("page_hide")

    assert calls == []
    assert bus.subscriber_count("page_hide") == 0


def test_metrics_snapshot_and_health_issues() -> None:
    metrics = PipelineMetrics()
    assert metrics.issues() == []

    metrics.record_processing(2.0)
    metrics.record_processing(30.0)
    metrics.record_drop("sampled")
    metrics.record_upload(100.0, success=True)
    metrics.record_upload(5.0, success=False)

    snap = metrics.snapshot()
    assert snap.captured == 2
    assert snap.average_processing_ms == 16.0
    assert snap.max_processing_ms == 30.0
    assert snap.dropped == {"sampled": 1}
    assert snap.uploads == 1
    assert snap.failed_uploads == 1
    assert snap.average_upload_ms == 100.0

    issues = metrics.issues()
    assert any("Slow event processing" in i for i in issues)
    assert any("High upload failure rate: 50.0%" in i for i in issues)
