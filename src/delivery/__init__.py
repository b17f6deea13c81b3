"""Delivery stages between the monitor and the collector.

- BatchAggregator: groups reports and flushes on size, time or lifecycle signals.
- OfflineStore: sends when online; caches, persists and retries when offline.
- Transports: best-effort, never-raising delivery primitives.
- Storages: durable backends for the offline cache.
"""

from .batch import BatchAggregator
from .offline import OfflineStore
from .signals import SignalBus
from .storage import CacheStorage, DuckDBCacheStorage, InMemoryCacheStorage
from .transport import CallbackTransport, HttpTransport, Transport

__all__ = [
    "BatchAggregator",
    "CacheStorage",
    "CallbackTransport",
    "DuckDBCacheStorage",
    "HttpTransport",
    "InMemoryCacheStorage",
    "OfflineStore",
    "SignalBus",
    "Transport",
]
