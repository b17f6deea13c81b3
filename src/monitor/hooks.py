"""Plugin hook interface.

A plugin is a bundle of optional callables. The monitor checks each field for
presence and calls it; any field may be left as `None`.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias

from .models import EventRecord, RawEvent

if TYPE_CHECKING:
    from .core import ErrorMonitor

# A hook may return a full record, a mapping of fields to merge, or None (no change).
RecordUpdate: TypeAlias = EventRecord | Mapping[str, Any] | None
RecordHook: TypeAlias = Callable[[EventRecord], RecordUpdate]


@dataclass(frozen=True)
class Plugin:
    """Optional capabilities a collaborator can register with the monitor."""

    name: str
    version: str | None = None

    setup: Callable[[ErrorMonitor], None] | None = None
    # Return the (possibly transformed) event, or None to veto capture.
    before_capture: Callable[[RawEvent], RawEvent | None] | None = None
    after_capture: RecordHook | None = None
    before_report: RecordHook | None = None
    teardown: Callable[[], None] | None = None


def apply_update(record: EventRecord, update: RecordUpdate) -> EventRecord:
    """Merge a hook's return value into `record`."""
    if update is None:
        return record
    if isinstance(update, EventRecord):
        return update
    return record.merged(update)
