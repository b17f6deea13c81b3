"""Demo entrypoint wiring together the delivery pipeline.

This module intentionally contains a small, end-to-end "smoke test" that:

- Loads configuration from environment.
- Builds a monitor with a DuckDB-backed offline cache.
- Records breadcrumbs, captures an exception and a message.
- Simulates a connectivity drop and recovery to exercise the offline cache.

It is **not** intended to be production wiring; it is a convenient manual
integration harness. Point `MONITOR_DSN` at a collector to see the payloads.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from config import load_config
from delivery.storage import DuckDBCacheStorage
from monitor.core import ErrorMonitor


async def run_demo() -> None:
    """Capture a few events, go offline, come back online, then tear down."""
    cfg = load_config()

    repo_root = Path(__file__).resolve().parent.parent
    db_path = os.getenv("MONITOR_CACHE_DB_PATH", str(repo_root / "offline_cache.duckdb"))
    storage = DuckDBCacheStorage(path=db_path)

    monitor = ErrorMonitor(cfg, storage=storage)
    monitor.init()
    try:
        monitor.add_breadcrumb(type="navigation", message="demo started")

        try:
            raise ValueError("demo failure")
        except ValueError as exc:
            monitor.capture_error(exc, {"tags": {"source": "demo"}})

        monitor.capture_message("demo message", level="warn")
        monitor.flush()

        # Reports captured while offline land in the DuckDB cache.
        monitor.signals.publish("offline")
        monitor.capture_message("captured while offline", level="error")
        monitor.flush()
        await asyncio.sleep(0.1)

        monitor.signals.publish("online")
        await monitor.retry_cached()

        print(monitor.health().model_dump_json(indent=2))
    finally:
        await monitor.aclose()
        storage.close()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
