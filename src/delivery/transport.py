"""Best-effort transports that deliver payloads to the collector.

Every transport exposes `async send(payload) -> bool` and never raises: the
offline store only needs to know whether an attempt succeeded.

`HttpTransport` uses `requests`. It prefers a fire-and-forget POST on a
background thread (the request outlives teardown, like a browser beacon). When
that path is disabled or its executor has been shut down, it falls back to a
blocking POST executed via `asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

import requests  # type: ignore

from monitor.errors import TransportFailure
from monitor.models import Payload

logger = logging.getLogger(__name__)

Reporter = Callable[[dict[str, Any]], Awaitable[None] | None]


class Transport(Protocol):
    """Delivers a single record or a batch to the collector."""

    async def send(self, payload: Payload) -> bool:
        """Attempt delivery; return True on success, False on failure."""

    def close(self) -> None:
        """Release resources; in-flight background sends may still complete."""


def encode_payload(payload: Payload) -> str:
    """Serialize a payload to its JSON wire form."""
    return json.dumps(payload.to_wire(), separators=(",", ":"), default=str)


class HttpTransport:
    """POSTs JSON payloads to the collector DSN."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout: float = 10.0,
        background: bool = True,
        max_workers: int = 2,
    ) -> None:
        """Create a transport for `dsn`.

        Args:
            dsn: Collector endpoint URL.
            timeout: Per-request timeout (seconds) for both send paths.
            background: Prefer the fire-and-forget path when True.
            max_workers: Threads used by the fire-and-forget path.
        """
        self.dsn = dsn
        self.timeout = timeout
        self._executor: ThreadPoolExecutor | None = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="monitor-transport") if background else None
        )

    def _post(self, body: str) -> None:
        """Execute the HTTP request synchronously (runs in a worker thread)."""
        try:
            resp = requests.post(
                self.dsn,
                data=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportFailure(f"POST {self.dsn} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise TransportFailure(f"Collector HTTP {resp.status_code}", status_code=resp.status_code)

    def _log_background_result(self, fut: Future[None]) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.error("Background send failed: %s", exc)

    def _try_background(self, body: str) -> bool:
        """Queue a fire-and-forget POST; False when the background path is unavailable."""
        if self._executor is None:
            return False
        try:
            fut = self._executor.submit(self._post, body)
        except RuntimeError:
            # Executor already shut down.
            return False
        fut.add_done_callback(self._log_background_result)
        return True

    async def send(self, payload: Payload) -> bool:
        if not self.dsn:
            logger.debug("No DSN configured; dropping send")
            return False
        try:
            body = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Cannot encode payload: %s", exc)
            return False

        if self._try_background(body):
            return True

        try:
            await asyncio.to_thread(self._post, body)
        except TransportFailure as exc:
            logger.debug("Send failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        """Stop accepting background sends without waiting for in-flight ones."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)


class CallbackTransport:
    """Hands payloads to a caller-supplied reporter function.

    The reporter receives the wire dict and may be sync or async. Any exception
    counts as a failed attempt.
    """

    def __init__(self, reporter: Reporter) -> None:
        """Create a transport around `reporter`."""
        self._reporter = reporter

    async def send(self, payload: Payload) -> bool:
        try:
            result = self._reporter(payload.to_wire())
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001 - reporter failures are retryable
            logger.debug("Reporter failed: %s", exc)
            return False
        return True

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""
