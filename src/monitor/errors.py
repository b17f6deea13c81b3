"""Exceptions used inside the delivery pipeline.

None of these reach the host application: each is raised and caught at the
boundary where it occurs (capture, transport, storage, retry pass).
"""

from __future__ import annotations

from typing import Literal

DropReason = Literal["filtered", "sampled", "vetoed"]


class MonitorError(RuntimeError):
    """Base class for pipeline errors."""


class CaptureDropped(MonitorError):
    """An event was intentionally dropped during capture (not an error)."""

    reason: DropReason = "filtered"


class FilteredDrop(CaptureDropped):
    """The event matched an ignore pattern."""

    reason: DropReason = "filtered"


class SampledOut(CaptureDropped):
    """The event lost the sampling draw."""

    reason: DropReason = "sampled"


class HookVeto(CaptureDropped):
    """A before-capture hook returned `None`."""

    reason: DropReason = "vetoed"


class TransportFailure(MonitorError):
    """A send attempt failed (retryable)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Create a failure, optionally capturing the HTTP status code."""
        self.status_code = status_code
        super().__init__(message)


class PersistenceFailure(MonitorError):
    """Durable storage could not be read or written."""


class MaxRetriesExceeded(MonitorError):
    """A cached report exhausted its retries and was permanently dropped."""

    def __init__(self, *, event_id: str, retry_count: int, max_retries: int) -> None:
        """Create an error describing the dropped report."""
        self.event_id = event_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(f"Dropping report {event_id} after {retry_count} failed retries (max {max_retries})")
