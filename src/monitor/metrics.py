"""Pipeline health metrics.

Counts and latencies are kept in memory only; `snapshot()` returns an immutable
copy suitable for logging or exposing on a status endpoint.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from .errors import DropReason

# Thresholds used by `is_healthy()`.
SLOW_PROCESSING_MS = 10.0
SLOW_UPLOAD_MS = 500.0
MAX_UPLOAD_FAILURE_RATE = 0.05


@dataclass
class _Timings:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float | None = None
    max_ms: float | None = None

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = duration_ms if self.max_ms is None else max(self.max_ms, duration_ms)

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class MetricsSnapshot(BaseModel):
    """Point-in-time copy of pipeline counters."""

    model_config = ConfigDict(frozen=True)

    captured: int = 0
    dropped: dict[str, int] = Field(default_factory=dict)

    processed: int = 0
    average_processing_ms: float = 0.0
    max_processing_ms: float = 0.0

    uploads: int = 0
    failed_uploads: int = 0
    average_upload_ms: float = 0.0
    max_upload_ms: float = 0.0

    cache_evictions: int = 0
    permanent_drops: int = 0
    persistence_failures: int = 0


class HealthSnapshot(BaseModel):
    """Metrics plus live queue state and a health verdict."""

    model_config = ConfigDict(frozen=True)

    healthy: bool
    issues: list[str]
    online: bool
    batch_queue_size: int
    cache_size: int
    metrics: MetricsSnapshot


@dataclass
class PipelineMetrics:
    """Mutable counters shared by the monitor, aggregator and offline store."""

    captured: int = 0
    dropped: Counter[str] = field(default_factory=Counter)
    cache_evictions: int = 0
    permanent_drops: int = 0
    persistence_failures: int = 0
    failed_uploads: int = 0

    _processing: _Timings = field(default_factory=_Timings)
    _uploads: _Timings = field(default_factory=_Timings)

    def record_drop(self, reason: DropReason) -> None:
        self.dropped[reason] += 1

    def record_processing(self, duration_ms: float) -> None:
        self.captured += 1
        self._processing.add(duration_ms)

    def record_upload(self, duration_ms: float, *, success: bool) -> None:
        """Record one transport attempt; only successful attempts count toward latency."""
        if success:
            self._uploads.add(duration_ms)
        else:
            self.failed_uploads += 1

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            captured=self.captured,
            dropped=dict(self.dropped),
            processed=self._processing.count,
            average_processing_ms=self._processing.average_ms,
            max_processing_ms=self._processing.max_ms or 0.0,
            uploads=self._uploads.count,
            failed_uploads=self.failed_uploads,
            average_upload_ms=self._uploads.average_ms,
            max_upload_ms=self._uploads.max_ms or 0.0,
            cache_evictions=self.cache_evictions,
            permanent_drops=self.permanent_drops,
            persistence_failures=self.persistence_failures,
        )

    def issues(self) -> list[str]:
        """Return human-readable health issues (empty when healthy)."""
        issues: list[str] = []
        if self._processing.average_ms > SLOW_PROCESSING_MS:
            issues.append(f"Slow event processing: {self._processing.average_ms:.2f}ms average")
        if self._uploads.average_ms > SLOW_UPLOAD_MS:
            issues.append(f"Slow uploads: {self._uploads.average_ms:.2f}ms average")
        attempts = self._uploads.count + self.failed_uploads
        if attempts:
            failure_rate = self.failed_uploads / attempts
            if failure_rate > MAX_UPLOAD_FAILURE_RATE:
                issues.append(f"High upload failure rate: {failure_rate * 100:.1f}%")
        return issues
