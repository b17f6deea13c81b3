"""Event record models.

Records are designed to be:
- Immutable once built (hooks merge fields by copying, never in place).
- Serialized with camelCase keys so the wire format matches the collector.
- Lenient on input: unknown fields are ignored, missing ones take defaults.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EventType: TypeAlias = Literal["js", "promise", "network", "resource", "custom"] | str
Level = Literal["debug", "info", "warn", "error", "fatal"]

LEVELS: tuple[Level, ...] = ("debug", "info", "warn", "error", "fatal")


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


_JSON_SCALARS = (str, int, float, bool, type(None))


def json_safe(value: Any) -> Any:
    """Coerce free-form data into JSON-compatible values; unknown objects become `str()`."""
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)


class _Model(BaseModel):
    # camelCase on the wire, snake_case in Python; accept either on input.
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Breadcrumb(_Model):
    """A timestamped note of recent application activity."""

    timestamp: int = Field(default_factory=now_ms)
    type: str = "default"
    message: str = ""
    data: dict[str, Any] | None = None

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data(cls, v: object) -> object:
        return json_safe(v)


class RawEvent(_Model):
    """The normalized input handed to `ErrorMonitor.capture` by detectors."""

    type: EventType = "custom"
    message: str = ""
    stack: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("context", mode="before")
    @classmethod
    def coerce_context(cls, v: object) -> object:
        """Detectors may attach arbitrary objects; keep only JSON-safe values."""
        return json_safe(v)


class Viewport(_Model):
    width: int = 0
    height: int = 0


class EventContext(_Model):
    """Environment the event was observed in."""

    user_agent: str = ""
    url: str = ""
    viewport: Viewport = Field(default_factory=Viewport)
    user_id: str | None = None
    tags: dict[str, str] | None = None


class EventRecord(_Model):
    """The fully assembled error report ready for transmission."""

    app_id: str
    timestamp: int = Field(default_factory=now_ms)
    session_id: str
    event_id: str

    type: str = "custom"
    level: str = "error"
    message: str = ""
    stack: str | None = None

    context: EventContext = Field(default_factory=EventContext)
    breadcrumbs: list[Breadcrumb] = Field(default_factory=list)
    extra: dict[str, Any] | None = None

    @field_validator("extra", mode="before")
    @classmethod
    def coerce_extra(cls, v: object) -> object:
        return json_safe(v)

    def merged(self, changes: Mapping[str, Any]) -> EventRecord:
        """Return a validated copy with `changes` merged in (snake or camel keys)."""
        if not changes:
            return self
        data = self.model_dump()
        for key, value in changes.items():
            field = _FIELD_BY_ALIAS.get(key, key)
            data[field] = value
        return EventRecord.model_validate(data)


_FIELD_BY_ALIAS: dict[str, str] = {to_camel(name): name for name in EventRecord.model_fields}


class CaptureOptions(_Model):
    """Per-call options for `ErrorMonitor.capture`."""

    level: Level = "error"
    tags: dict[str, str] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)
    user: dict[str, Any] = Field(default_factory=dict)
    skip_sampling: bool = False
    skip_filter: bool = False


class QueuedItem(_Model):
    """A report waiting in the batch aggregator."""

    report: EventRecord
    enqueued_at: int = Field(default_factory=now_ms)


class CachedItem(BaseModel):
    """A report persisted by the offline store.

    Not frozen: `retry_count` is incremented in place by the retry pass.
    Membership checks use identity (see `OfflineStore`), not equality.
    """

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    report: EventRecord
    cached_at: int = Field(default_factory=now_ms)
    retry_count: int = 0


class BatchPayload(_Model):
    """Wire payload for a flushed batch: `{"reports": [...]}`."""

    reports: list[EventRecord]


Payload: TypeAlias = EventRecord | BatchPayload
