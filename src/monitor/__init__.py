"""Error monitor capture layer.

This package turns observed errors and messages into `EventRecord`s:
- A bounded breadcrumb history attached to every record.
- Filter, sampling and plugin-hook policy applied before a record is built.
- Health counters describing what was captured, dropped and delivered.

The orchestrator itself lives in `monitor.core` (it depends on the `delivery`
package, which in turn depends on the records defined here).
"""

from .history import HistoryRing
from .hooks import Plugin
from .metrics import HealthSnapshot, MetricsSnapshot, PipelineMetrics
from .models import BatchPayload, Breadcrumb, CachedItem, CaptureOptions, EventContext, EventRecord, RawEvent

__all__ = [
    "BatchPayload",
    "Breadcrumb",
    "CachedItem",
    "CaptureOptions",
    "EventContext",
    "EventRecord",
    "HealthSnapshot",
    "HistoryRing",
    "MetricsSnapshot",
    "PipelineMetrics",
    "Plugin",
    "RawEvent",
]
