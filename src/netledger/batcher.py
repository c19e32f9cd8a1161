"""Buffered writes of per-tick usage records.

Sampling appends records to an in-memory buffer; flush() hands the buffer to
storage on its own cadence, so the sampling loop never waits on disk I/O.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator

import structlog

from netledger.config import StorageConfig
from netledger.storage import (
    AppMetadata,
    UsageRecord,
    insert_batch,
    open_database,
    update_daily_summary,
    upsert_app_metadata,
)

log = structlog.get_logger()


@dataclass
class FlushResult:
    """What one flush did."""

    records: int = 0
    upload: int = 0
    download: int = 0
    discarded: int = 0
    failed: bool = False


def build_metadata(records: list[UsageRecord], now: int) -> list[AppMetadata]:
    """One AppMetadata per app name in the batch.

    first_seen is the earliest record timestamp for that name, last_seen is
    the flush time. Missing executable paths fall back to the app name.
    """
    by_name: dict[str, AppMetadata] = {}
    for record in records:
        meta = by_name.get(record.app_name)
        if meta is None:
            by_name[record.app_name] = AppMetadata(
                app_name=record.app_name,
                executable_path=record.executable_path or record.app_name,
                first_seen=record.timestamp,
                last_seen=now,
            )
            continue
        meta.first_seen = min(meta.first_seen, record.timestamp)
        if record.executable_path and meta.executable_path == record.app_name:
            meta.executable_path = record.executable_path
    return list(by_name.values())


class WriteBatcher:
    """Append-only record buffer with its own lock, flushed to the database."""

    def __init__(self, db_path: Path, storage: StorageConfig | None = None) -> None:
        self.db_path = db_path
        self.storage = storage or StorageConfig()
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()  # Serializes flushes and wipes
        self._pending: list[UsageRecord] = []
        self._persist_lock = threading.Lock()
        self._persist = True

    @property
    def persistence_enabled(self) -> bool:
        with self._persist_lock:
            return self._persist

    def set_persistence_enabled(self, enabled: bool) -> None:
        with self._persist_lock:
            self._persist = enabled
        log.info("persistence_changed", enabled=enabled)

    def append(self, records: list[UsageRecord]) -> None:
        if not records:
            return
        with self._lock:
            self._pending.extend(records)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def swap(self) -> list[UsageRecord]:
        """Take the pending buffer, leaving an empty one in its place."""
        with self._lock:
            batch, self._pending = self._pending, []
        return batch

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold off flushes, waiting for one already writing to commit first."""
        with self._write_lock:
            yield

    def flush(self, *, now: float | None = None) -> FlushResult:
        """Write everything pending. Blocking: run in a worker thread.

        A failed insert is rolled back and logged; its records are not
        re-queued. Metadata and summary failures after a successful insert
        are logged individually.
        """
        with self._write_lock:
            return self._flush(now)

    def _flush(self, now: float | None) -> FlushResult:
        batch = self.swap()
        if not batch:
            return FlushResult()

        if not self.persistence_enabled:
            log.debug("flush_discarded", records=len(batch))
            return FlushResult(discarded=len(batch))

        now = time.time() if now is None else now
        upload = sum(r.upload_bytes for r in batch)
        download = sum(r.download_bytes for r in batch)
        result = FlushResult(records=len(batch), upload=upload, download=download)

        with open_database(self.db_path, self.storage) as conn:
            try:
                insert_batch(conn, batch, db_path=self.db_path, storage=self.storage)
            except Exception as e:
                log.error("flush_failed", records=len(batch), error=str(e))
                return FlushResult(discarded=len(batch), failed=True)

            for meta in build_metadata(batch, int(now)):
                try:
                    upsert_app_metadata(conn, meta)
                except Exception as e:
                    log.error("metadata_update_failed", app=meta.app_name, error=str(e))

            today = datetime.fromtimestamp(now).strftime("%Y-%m-%d")
            try:
                update_daily_summary(conn, today, upload, download)
            except Exception as e:
                log.error("summary_update_failed", date=today, error=str(e))

        log.debug("flush_complete", records=result.records, upload=upload, download=download)
        return result
