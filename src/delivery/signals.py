"""In-process signal bus for host lifecycle and connectivity notifications.

Collaborators (whatever watches the page/process lifecycle or the network)
publish signals; pipeline components subscribe handlers. Current signals:

- page_hide / before_unload: the host is about to be discarded; flush buffers.
- online / offline: network reachability changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Literal

Signal = Literal["page_hide", "before_unload", "online", "offline"]
Handler = Callable[[], object]

logger = logging.getLogger(__name__)


class SignalBus:
    """Fan-out bus for lifecycle signals (collaborators -> pipeline components)."""

    def __init__(self) -> None:
        """Create a bus with no subscribers."""
        self._subscribers: dict[Signal, list[Handler]] = {}

    def subscribe(self, signal: Signal, handler: Handler) -> Handler:
        """Register `handler` for `signal`; returns it so callers can keep the reference."""
        self._subscribers.setdefault(signal, []).append(handler)
        return handler

    def unsubscribe(self, signal: Signal, handler: Handler) -> None:
        """Remove a handler (no-op if it was not subscribed)."""
        handlers = self._subscribers.get(signal, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, signal: Signal) -> int:
        return len(self._subscribers.get(signal, []))

    def publish(self, signal: Signal) -> None:
        """Call every handler for `signal` in subscription order (best-effort)."""
        for handler in list(self._subscribers.get(signal, [])):
            try:
                handler()
            except Exception:  # noqa: BLE001 - one bad handler must not starve the rest
                logger.exception("Signal handler for %r failed", signal)
