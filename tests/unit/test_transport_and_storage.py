from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import requests

from delivery.storage import DuckDBCacheStorage, InMemoryCacheStorage
from delivery.transport import CallbackTransport, HttpTransport, encode_payload
from monitor.models import BatchPayload, EventContext, EventRecord


def _record(event_id: str = "e1") -> EventRecord:
    return EventRecord(
        app_id="app",
        session_id="s1",
        event_id=event_id,
        message="boom",
        context=EventContext(user_agent="ua", url="https://app.local/cart"),
    )


class _FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _FakePost:
    def __init__(self, *, status_code: int = 200, exc: Exception | None = None) -> None:
        self.status_code = status_code
        self.exc = exc
        self.calls: list[dict[str, Any]] = []

    def __call__(self, url: str, *, data: str, headers: dict[str, str], timeout: float) -> _FakeResponse:
        self.calls.append({"url": url, "body": json.loads(data), "headers": headers})
        if self.exc is not None:
            raise self.exc
        return _FakeResponse(self.status_code)


def test_wire_payload_uses_camel_case_keys() -> None:
    single = json.loads(encode_payload(_record()))
    assert single["appId"] == "app"
    assert single["sessionId"] == "s1"
    assert single["context"]["userAgent"] == "ua"
    assert "stack" not in single

    batch = json.loads(encode_payload(BatchPayload(reports=[_record("a"), _record("b")])))
    assert [r["eventId"] for r in batch["reports"]] == ["a", "b"]


@pytest.mark.asyncio
async def test_blocking_post_success(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePost(status_code=204)
    monkeypatch.setattr("delivery.transport.requests.post", fake)

    transport = HttpTransport("http://collector.local/collect", background=False)
    assert await transport.send(_record()) is True
    assert fake.calls[0]["url"] == "http://collector.local/collect"
    assert fake.calls[0]["headers"]["Content-Type"] == "application/json"
    assert fake.calls[0]["body"]["eventId"] == "e1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fake",
    [_FakePost(status_code=500), _FakePost(status_code=429), _FakePost(exc=requests.ConnectionError("down"))],
)
async def test_blocking_post_failures_return_false(monkeypatch: pytest.MonkeyPatch, fake: _FakePost) -> None:
    monkeypatch.setattr("delivery.transport.requests.post", fake)

    transport = HttpTransport("http://collector.local/collect", background=False)
    assert await transport.send(_record()) is False


@pytest.mark.asyncio
async def test_background_send_is_fire_and_forget(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePost(status_code=500)
    monkeypatch.setattr("delivery.transport.requests.post", fake)

    transport = HttpTransport("http://collector.local/collect", background=True)
    # Queued counts as success even though the collector will reject it.
    assert await transport.send(_record()) is True
    assert transport._executor is not None
    transport._executor.shutdown(wait=True)
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_closed_background_path_falls_back_to_blocking(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePost(status_code=503)
    monkeypatch.setattr("delivery.transport.requests.post", fake)

    transport = HttpTransport("http://collector.local/collect", background=True)
    transport.close()

    # The blocking path reports the real outcome.
    assert await transport.send(_record()) is False
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_missing_dsn_fails_without_request(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePost()
    monkeypatch.setattr("delivery.transport.requests.post", fake)

    assert await HttpTransport("", background=False).send(_record()) is False
    assert fake.calls == []


@pytest.mark.asyncio
async def test_callback_transport_sync_async_and_failing_reporters() -> None:
    received: list[dict[str, Any]] = []

    async def async_reporter(data: dict[str, Any]) -> None:
        received.append(data)

    def failing_reporter(data: dict[str, Any]) -> None:
        raise RuntimeError("nope")

    assert await CallbackTransport(received.append).send(_record("a")) is True
    assert await CallbackTransport(async_reporter).send(BatchPayload(reports=[_record("b")])) is True
    assert await CallbackTransport(failing_reporter).send(_record("c")) is False

    assert received[0]["eventId"] == "a"
    assert received[1]["reports"][0]["eventId"] == "b"


def test_in_memory_storage_round_trip() -> None:
    storage = InMemoryCacheStorage()
    assert storage.read("k") is None
    storage.write("k", "[1]")
    storage.write("k", "[2]")
    assert storage.read("k") == "[2]"
    assert storage.writes == 2


def test_duckdb_storage_replaces_value_and_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "cache.duckdb"

    storage = DuckDBCacheStorage(path=db_path)
    assert storage.read("app") is None
    storage.write("app", '[{"a":1}]')
    storage.write("app", '[{"a":2}]')
    storage.write("other", "[]")
    assert storage.read("app") == '[{"a":2}]'
    storage.close()

    reopened = DuckDBCacheStorage(path=db_path)
    try:
        assert reopened.read("app") == '[{"a":2}]'
        assert reopened.read("other") == "[]"
    finally:
        reopened.close()


@pytest.mark.asyncio
async def test_transports_handle_non_json_extra(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePost()
    monkeypatch.setattr("delivery.transport.requests.post", fake)
    http = HttpTransport("http://collector.local/collect", background=False)
    received: list[dict[str, Any]] = []
    callback = CallbackTransport(received.append)

    coerced = EventRecord(app_id="app", session_id="s1", event_id="e1", extra={"path": Path("/tmp/x"), "ids": (1, 2)})
    assert await http.send(coerced) is True
    assert await callback.send(coerced) is True
    assert fake.calls[0]["body"]["extra"] == {"path": str(Path("/tmp/x")), "ids": [1, 2]}
    assert received[0]["extra"]["ids"] == [1, 2]

    mutated = EventRecord(app_id="app", session_id="s1", event_id="e2", extra={})
    assert mutated.extra is not None
    mutated.extra["handle"] = object()
    assert await http.send(mutated) is False
    assert await callback.send(mutated) is False
    assert len(fake.calls) == 1
