"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into a strongly-typed `PipelineConfig`.
- Validating ranges and providing actionable error messages.
"""

from __future__ import annotations

import os
import re
from typing import TypeVar

import dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_T = TypeVar("_T", int, float)

DEFAULT_BREADCRUMB_CAPACITY = 50
DEFAULT_BATCH_SIZE = 10
DEFAULT_FLUSH_DELAY_MS = 1000
DEFAULT_MAX_CACHE_SIZE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_SAMPLE_RATE = 1.0


def _get_required_env(name: str) -> str:
    """Read a required env var or raise a helpful error."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required. Please set it in your .env file.")
    if value.startswith("your_") and value.endswith("_here"):
        raise ValueError(f"{name} is required. Please replace the placeholder value in your .env file.")
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_patterns(name: str) -> list[str]:
    """Read a comma-separated list of regular expressions."""
    raw = os.getenv(name, "")
    return [p.strip() for p in raw.split(",") if p.strip()]


def default_storage_key(app_id: str) -> str:
    return f"error_monitor_cache_{app_id}"


class FilterConfig(BaseModel):
    """Patterns used to silently drop captured events."""

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    ignore_errors: list[re.Pattern[str]] = Field(default_factory=list, description="Message patterns to drop")
    ignore_urls: list[re.Pattern[str]] = Field(default_factory=list, description="Context URL patterns to drop")

    @field_validator("ignore_errors", "ignore_urls", mode="before")
    @classmethod
    def compile_patterns(cls, v: object) -> list[re.Pattern[str]]:
        """Accept plain strings as well as pre-compiled patterns."""
        if v is None:
            return []
        if isinstance(v, (str, re.Pattern)):
            v = [v]
        compiled: list[re.Pattern[str]] = []
        for p in v:  # type: ignore[union-attr]
            if isinstance(p, re.Pattern):
                compiled.append(p)
                continue
            try:
                compiled.append(re.compile(p))
            except re.error as exc:
                raise ValueError(f"invalid regular expression {p!r}: {exc}") from exc
        return compiled


class PipelineConfig(BaseModel):
    """Configuration for a single error monitor pipeline (one per app id)."""

    model_config = ConfigDict(validate_assignment=True)

    app_id: str = Field(default="", description="Application identifier; keys the offline cache")
    dsn: str = Field(default="", description="Collection endpoint URL")
    environment: str | None = Field(default=None, description="Deployment environment label")
    release: str | None = Field(default=None, description="Release/version label")
    user_id: str | None = Field(default=None, description="Default user id attached to events")
    tags: dict[str, str] = Field(default_factory=dict, description="Default tags attached to events")

    enabled: bool = Field(default=True, description="Global capture switch")
    debug: bool = Field(default=False, description="Enable debug-level logging for the pipeline")

    sample_rate: float = Field(default=DEFAULT_SAMPLE_RATE, description="Sample rate for non-error levels")
    error_sample_rate: float = Field(default=DEFAULT_SAMPLE_RATE, description="Sample rate for error/fatal levels")

    batching: bool = Field(default=True, description="Route reports through the batch aggregator")
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, description="Flush when this many reports are queued")
    flush_delay_ms: int = Field(default=DEFAULT_FLUSH_DELAY_MS, description="Delay before a partial batch flushes")

    offline_cache: bool = Field(default=True, description="Cache reports while offline")
    max_cache_size: int = Field(default=DEFAULT_MAX_CACHE_SIZE, description="Max cached reports (oldest evicted)")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, description="Retries before a cached report is dropped")
    storage_key: str = Field(default="", description="Durable storage key (derived from app_id when empty)")

    breadcrumb_capacity: int = Field(default=DEFAULT_BREADCRUMB_CAPACITY, description="History ring size")

    filter: FilterConfig = Field(default_factory=FilterConfig, description="Ignore patterns")

    @field_validator("batch_size", "max_cache_size", "breadcrumb_capacity")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Sizes must be strictly positive."""
        if v <= 0:
            raise ValueError(f"must be > 0. Got: {v}")
        return v

    @field_validator("flush_delay_ms", "max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Delays and retry counts must be >= 0."""
        if v < 0:
            raise ValueError(f"must be >= 0. Got: {v}")
        return v

    @field_validator("sample_rate", "error_sample_rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        """Sample rates are probabilities."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"must be within [0, 1]. Got: {v}")
        return v

    @model_validator(mode="after")
    def derive_storage_key(self) -> PipelineConfig:
        """Derive the storage key from the app id when not set explicitly."""
        if not self.storage_key:
            # Bypass validate_assignment to avoid re-running this validator.
            object.__setattr__(self, "storage_key", default_storage_key(self.app_id))
        return self


def load_config() -> PipelineConfig:
    """Load pipeline configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when required configuration is
      missing, still contains placeholder values, or is out of range.
    """
    # Load variables from `.env` into the process environment (without overriding
    # already-set env vars).
    dotenv.load_dotenv()

    return PipelineConfig(
        app_id=_get_required_env("MONITOR_APP_ID"),
        dsn=os.getenv("MONITOR_DSN", "").strip(),
        environment=os.getenv("MONITOR_ENVIRONMENT") or None,
        release=os.getenv("MONITOR_RELEASE") or None,
        enabled=_get_env_bool("MONITOR_ENABLED", True),
        debug=_get_env_bool("MONITOR_DEBUG", False),
        sample_rate=_get_env_number("MONITOR_SAMPLE_RATE", DEFAULT_SAMPLE_RATE, float),
        error_sample_rate=_get_env_number("MONITOR_ERROR_SAMPLE_RATE", DEFAULT_SAMPLE_RATE, float),
        batching=_get_env_bool("MONITOR_BATCHING", True),
        batch_size=_get_env_number("MONITOR_BATCH_SIZE", DEFAULT_BATCH_SIZE, int),
        flush_delay_ms=_get_env_number("MONITOR_FLUSH_DELAY_MS", DEFAULT_FLUSH_DELAY_MS, int),
        offline_cache=_get_env_bool("MONITOR_OFFLINE_CACHE", True),
        max_cache_size=_get_env_number("MONITOR_MAX_CACHE_SIZE", DEFAULT_MAX_CACHE_SIZE, int),
        max_retries=_get_env_number("MONITOR_MAX_RETRIES", DEFAULT_MAX_RETRIES, int),
        storage_key=os.getenv("MONITOR_STORAGE_KEY", "").strip(),
        filter=FilterConfig(
            ignore_errors=_get_env_patterns("MONITOR_IGNORE_ERRORS"),
            ignore_urls=_get_env_patterns("MONITOR_IGNORE_URLS"),
        ),
    )
