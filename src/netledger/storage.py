"""SQLite storage layer for netledger."""

import shutil
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Generator

import structlog

from netledger.config import StorageConfig

log = structlog.get_logger()

SCHEMA_VERSION = 2  # v2: expires_at / is_temporary on usage_records

SECONDS_PER_DAY = 86400

SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_name TEXT NOT NULL,
    process_id INTEGER,
    upload_bytes INTEGER NOT NULL,
    download_bytes INTEGER NOT NULL,
    timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_records(timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_app ON usage_records(app_name);

CREATE TABLE IF NOT EXISTS daily_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date TEXT UNIQUE NOT NULL,
    total_upload INTEGER NOT NULL,
    total_download INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS app_metadata (
    app_name TEXT PRIMARY KEY,
    executable_path TEXT,
    first_seen INTEGER NOT NULL,
    last_seen INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Indexes on migrated columns must be created after the migration runs
POST_MIGRATION_SCHEMA = """
CREATE INDEX IF NOT EXISTS idx_usage_expires ON usage_records(expires_at);
CREATE INDEX IF NOT EXISTS idx_usage_temporary ON usage_records(is_temporary);
"""

# Columns added after the first release: (name, DDL)
MIGRATED_COLUMNS = [
    ("expires_at", "ALTER TABLE usage_records ADD COLUMN expires_at INTEGER"),
    ("is_temporary", "ALTER TABLE usage_records ADD COLUMN is_temporary INTEGER DEFAULT 0"),
]


class StorageError(Exception):
    """Base class for durable storage failures surfaced to callers."""


class StorageFullError(StorageError):
    """Raised when a write would exceed the file size ceiling or exhaust the disk."""


class StorageCorruptError(StorageError):
    """Raised when the database fails its integrity check."""


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""

    pass


@dataclass
class UsageRecord:
    """One attributed (process, tick) row.

    executable_path is carried in memory for app metadata only; it is not a
    usage_records column.
    """

    app_name: str
    process_id: int
    upload_bytes: int
    download_bytes: int
    timestamp: int
    expires_at: int
    is_temporary: bool = False
    executable_path: str | None = None
    id: int | None = None


@dataclass
class DailySummary:
    """Cumulative traffic for one local calendar date."""

    date: str
    total_upload: int = 0
    total_download: int = 0


@dataclass
class AppMetadata:
    """First/last sighting of a process name."""

    app_name: str
    executable_path: str
    first_seen: int
    last_seen: int


@dataclass
class AppUsageStat:
    """Aggregated usage for one app over a time range."""

    app_name: str
    total_upload: int
    total_download: int
    last_seen: int


@dataclass
class StorageStats:
    """Basic storage health figures."""

    size_bytes: int
    record_count: int
    oldest_record_timestamp: int | None


# --- Connection & Schema ---


def get_connection(db_path: Path, storage: StorageConfig | None = None) -> sqlite3.Connection:
    """Open a connection with WAL, NORMAL sync, busy timeout and bounded cache."""
    storage = storage or StorageConfig()
    conn = sqlite3.connect(db_path, timeout=storage.busy_timeout_ms / 1000)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute(f"PRAGMA busy_timeout={int(storage.busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA cache_size=-{int(storage.cache_size_kib)}")
    return conn


@contextmanager
def open_database(
    db_path: Path, storage: StorageConfig | None = None
) -> Generator[sqlite3.Connection, None, None]:
    """Short-lived connection for one unit of work.

    Each worker thread opens its own connection; connections are never shared
    across threads.
    """
    conn = get_connection(db_path, storage)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def require_database(
    db_path: Path, *, exit_on_missing: bool = False
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands requiring database access.

    Args:
        db_path: Path to the database file
        exit_on_missing: If True, raise SystemExit(1) on missing database.
                        If False, raise DatabaseNotAvailable.

    Raises:
        DatabaseNotAvailable: If database doesn't exist and exit_on_missing is False
        SystemExit: If database doesn't exist and exit_on_missing is True
    """
    import click

    if not db_path.exists():
        if exit_on_missing:
            click.echo("Error: Database not found", err=True)
            raise SystemExit(1)
        click.echo("Database not found. Run 'netledger daemon' first.")
        raise DatabaseNotAvailable()

    with open_database(db_path) as conn:
        yield conn


def verify_integrity(db_path: Path) -> None:
    """Run PRAGMA integrity_check on an existing file.

    Raises:
        StorageCorruptError: If the file cannot be read or the check is not "ok".
    """
    try:
        conn = sqlite3.connect(db_path)
        try:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        finally:
            conn.close()
    except sqlite3.DatabaseError as e:
        raise StorageCorruptError(f"integrity check failed: {e}") from e

    result = row[0] if row else None
    if result != "ok":
        raise StorageCorruptError(f"database integrity check failed: {result}")


def quarantine_database(db_path: Path) -> Path:
    """Move a corrupt database aside and remove its WAL/SHM side files.

    Returns the path the corrupt file was moved to.
    """
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = db_path.with_name(f"{db_path.name}.corrupted.{stamp}")
    db_path.rename(backup_path)
    for suffix in ("-wal", "-shm"):
        side = db_path.with_name(db_path.name + suffix)
        if side.exists():
            side.unlink()
    return backup_path


def init_database(db_path: Path, storage: StorageConfig | None = None) -> str:
    """Create or upgrade the database.

    Existing files are integrity-checked first. A corrupt file is renamed aside
    with a timestamp suffix and a fresh database is created in its place.
    Schema changes are additive only: missing columns are added in place.

    Returns:
        "created", "existing" or "recovered"
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    status = "created"
    if db_path.exists():
        status = "existing"
        try:
            verify_integrity(db_path)
        except StorageCorruptError as e:
            backup_path = quarantine_database(db_path)
            log.warning(
                "database_corrupt",
                error=str(e),
                backup=str(backup_path),
                action="recreate",
            )
            status = "recovered"

    with open_database(db_path, storage) as conn:
        conn.executescript(SCHEMA)
        added = migrate_schema(conn)
        conn.executescript(POST_MIGRATION_SCHEMA)
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        conn.commit()

    log.info(
        "database_initialized",
        path=str(db_path),
        status=status,
        version=SCHEMA_VERSION,
        migrated=added,
    )
    return status


def migrate_schema(conn: sqlite3.Connection) -> list[str]:
    """Add any missing usage_records columns. Returns names of added columns."""
    existing = {row[1] for row in conn.execute("PRAGMA table_info(usage_records)")}
    added = []
    for name, ddl in MIGRATED_COLUMNS:
        if name not in existing:
            conn.execute(ddl)
            added.append(name)
            log.info("database_migrated", column=name)
    return added


# --- Usage Records ---

_INSERT_USAGE = """INSERT INTO usage_records
    (app_name, process_id, upload_bytes, download_bytes, timestamp, is_temporary, expires_at)
    VALUES (?, ?, ?, ?, ?, ?, ?)"""


def _record_params(record: UsageRecord) -> tuple:
    return (
        record.app_name,
        record.process_id,
        record.upload_bytes,
        record.download_bytes,
        record.timestamp,
        1 if record.is_temporary else 0,
        record.expires_at,
    )


def _is_busy(error: sqlite3.OperationalError) -> bool:
    """True for SQLITE_BUSY / SQLITE_LOCKED conditions."""
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None and (code & 0xFF) in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED):
        return True
    message = str(error).lower()
    return "locked" in message or "busy" in message


def insert_usage_record(
    conn: sqlite3.Connection,
    record: UsageRecord,
    storage: StorageConfig | None = None,
) -> int:
    """Insert a single usage record, retrying only while the database is busy.

    Attempts and the initial backoff come from `storage`
    (insert_max_attempts, insert_base_delay); the delay doubles per retry.
    Any other error propagates immediately.

    Returns:
        Row id of the inserted record
    """
    storage = storage or StorageConfig()
    max_attempts = storage.insert_max_attempts
    if max_attempts < 1:
        raise ValueError(f"insert_max_attempts must be >= 1, got {max_attempts}")

    delay = storage.insert_base_delay
    attempt = 1
    while True:
        try:
            with conn:
                cursor = conn.execute(_INSERT_USAGE, _record_params(record))
            result = cursor.lastrowid
            assert result is not None
            return result
        except sqlite3.OperationalError as e:
            if not _is_busy(e) or attempt >= max_attempts:
                raise
            log.debug("insert_busy_retry", attempt=attempt, delay=delay)
            time.sleep(delay)
            delay *= 2
            attempt += 1


def check_capacity(db_path: Path, storage: StorageConfig) -> None:
    """Fail fast before a large write that would exhaust the file ceiling or disk.

    Raises:
        StorageFullError: If the file exceeds max_db_bytes or free space is low
    """
    if db_path.exists():
        size = db_path.stat().st_size
        if size > storage.max_db_bytes:
            raise StorageFullError(
                f"database file is {size} bytes, exceeds safety limit of "
                f"{storage.max_db_bytes} bytes"
            )

    try:
        free = shutil.disk_usage(db_path.parent).free
    except OSError as e:
        log.warning("disk_space_check_failed", error=str(e))
        return

    if free < storage.min_free_bytes:
        raise StorageFullError(
            f"insufficient disk space: {free} bytes available, "
            f"need at least {storage.min_free_bytes} bytes"
        )


def insert_batch(
    conn: sqlite3.Connection,
    records: list[UsageRecord],
    *,
    db_path: Path | None = None,
    storage: StorageConfig | None = None,
) -> int:
    """Insert records in one transaction (all or nothing).

    Batches larger than storage.large_batch_threshold are checked against the
    file size ceiling and free disk space first. Batches are not retried.

    Returns:
        Number of records inserted

    Raises:
        StorageFullError: If the capacity check fails
        sqlite3.Error: If the insert fails (transaction rolled back)
    """
    if not records:
        return 0

    storage = storage or StorageConfig()
    if db_path is not None and len(records) > storage.large_batch_threshold:
        check_capacity(db_path, storage)

    with conn:
        conn.executemany(_INSERT_USAGE, [_record_params(r) for r in records])
    return len(records)


def get_usage_by_time_range(
    conn: sqlite3.Connection, start_time: int, end_time: int
) -> list[UsageRecord]:
    """Get raw records with start_time <= timestamp <= end_time, newest first."""
    cursor = conn.execute(
        """SELECT id, app_name, process_id, upload_bytes, download_bytes, timestamp,
                  is_temporary, COALESCE(expires_at, 0)
           FROM usage_records
           WHERE timestamp BETWEEN ? AND ?
           ORDER BY timestamp DESC""",
        (start_time, end_time),
    )
    return [
        UsageRecord(
            id=r[0],
            app_name=r[1],
            process_id=r[2],
            upload_bytes=r[3],
            download_bytes=r[4],
            timestamp=r[5],
            is_temporary=r[6] == 1,
            expires_at=r[7],
        )
        for r in cursor.fetchall()
    ]


def get_app_usage_stats(
    conn: sqlite3.Connection, start_time: int, end_time: int
) -> list[AppUsageStat]:
    """Aggregate usage per app between start_time and end_time, busiest first."""
    cursor = conn.execute(
        """SELECT app_name,
                  SUM(upload_bytes) AS total_upload,
                  SUM(download_bytes) AS total_download,
                  MAX(timestamp) AS last_seen
           FROM usage_records
           WHERE timestamp BETWEEN ? AND ?
           GROUP BY app_name
           ORDER BY (total_upload + total_download) DESC""",
        (start_time, end_time),
    )
    return [
        AppUsageStat(app_name=r[0], total_upload=r[1], total_download=r[2], last_seen=r[3])
        for r in cursor.fetchall()
    ]


def get_app_usage_with_retention(
    conn: sqlite3.Connection, days: int, *, now: float | None = None
) -> list[AppUsageStat]:
    """Aggregate usage over the last `days` days (days <= 0 means all time)."""
    now = time.time() if now is None else now
    start_time = 0 if days <= 0 else int(now - days * SECONDS_PER_DAY)
    return get_app_usage_stats(conn, start_time, int(now))


def get_24h_usage(conn: sqlite3.Connection, *, now: float | None = None) -> dict[str, int]:
    """Total upload/download over the last 24 hours."""
    now = time.time() if now is None else now
    row = conn.execute(
        "SELECT SUM(upload_bytes), SUM(download_bytes) FROM usage_records WHERE timestamp >= ?",
        (int(now - SECONDS_PER_DAY),),
    ).fetchone()
    return {"upload": row[0] or 0, "download": row[1] or 0}


# --- Daily Summaries & Metadata ---


def update_daily_summary(conn: sqlite3.Connection, date: str, upload: int, download: int) -> None:
    """Add traffic to a date's summary, creating the row if needed."""
    with conn:
        conn.execute(
            """INSERT INTO daily_summaries (date, total_upload, total_download)
               VALUES (?, ?, ?)
               ON CONFLICT(date) DO UPDATE SET
                   total_upload = total_upload + excluded.total_upload,
                   total_download = total_download + excluded.total_download""",
            (date, upload, download),
        )


def get_daily_summary(conn: sqlite3.Connection, date: str) -> DailySummary:
    """Get the summary for a date (zeros if nothing was recorded)."""
    row = conn.execute(
        "SELECT date, total_upload, total_download FROM daily_summaries WHERE date = ?",
        (date,),
    ).fetchone()
    if not row:
        return DailySummary(date=date)
    return DailySummary(date=row[0], total_upload=row[1], total_download=row[2])


def get_recent_summaries(conn: sqlite3.Connection, days: int) -> list[DailySummary]:
    """Get the most recent `days` daily summaries, newest first."""
    cursor = conn.execute(
        """SELECT date, total_upload, total_download
           FROM daily_summaries
           ORDER BY date DESC
           LIMIT ?""",
        (days,),
    )
    return [DailySummary(date=r[0], total_upload=r[1], total_download=r[2]) for r in cursor]


def upsert_app_metadata(conn: sqlite3.Connection, metadata: AppMetadata) -> None:
    """Insert or refresh app metadata. first_seen is kept; last_seen only advances."""
    with conn:
        conn.execute(
            """INSERT INTO app_metadata (app_name, executable_path, first_seen, last_seen)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(app_name) DO UPDATE SET
                   executable_path = excluded.executable_path,
                   last_seen = MAX(last_seen, excluded.last_seen)""",
            (
                metadata.app_name,
                metadata.executable_path,
                metadata.first_seen,
                metadata.last_seen,
            ),
        )


def get_app_metadata(conn: sqlite3.Connection, app_name: str) -> AppMetadata | None:
    """Get metadata for one app."""
    row = conn.execute(
        """SELECT app_name, executable_path, first_seen, last_seen
           FROM app_metadata WHERE app_name = ?""",
        (app_name,),
    ).fetchone()
    if not row:
        return None
    return AppMetadata(
        app_name=row[0], executable_path=row[1], first_seen=row[2], last_seen=row[3]
    )


# --- Retention & Maintenance ---


def delete_expired(conn: sqlite3.Connection, *, now: float | None = None) -> int:
    """Delete records whose expires_at has passed. Returns rows deleted."""
    now = time.time() if now is None else now
    with conn:
        cursor = conn.execute(
            "DELETE FROM usage_records WHERE expires_at > 0 AND expires_at < ?",
            (int(now),),
        )
    deleted = cursor.rowcount
    if deleted > 0:
        log.info("expired_records_deleted", deleted=deleted)
    return deleted


def delete_older_than(conn: sqlite3.Connection, cutoff: float) -> tuple[int, int]:
    """Delete raw records and daily summaries strictly before cutoff.

    Summaries are compared by local calendar date of the cutoff.

    Returns:
        (records_deleted, summaries_deleted)
    """
    cutoff_date = datetime.fromtimestamp(cutoff).strftime("%Y-%m-%d")
    with conn:
        records = conn.execute(
            "DELETE FROM usage_records WHERE timestamp < ? AND is_temporary = 0",
            (int(cutoff),),
        ).rowcount
        summaries = conn.execute(
            "DELETE FROM daily_summaries WHERE date < ?", (cutoff_date,)
        ).rowcount
    log.info(
        "prune_complete",
        records_deleted=records,
        summaries_deleted=summaries,
        cutoff=int(cutoff),
    )
    return records, summaries


def clear_all(conn: sqlite3.Connection) -> None:
    """Delete all usage records and daily summaries."""
    with conn:
        conn.execute("DELETE FROM usage_records")
        conn.execute("DELETE FROM daily_summaries")
    log.info("database_cleared")


def vacuum(conn: sqlite3.Connection) -> None:
    """Reclaim free pages. Must run outside a transaction."""
    conn.commit()
    conn.execute("VACUUM")
    log.info("database_vacuumed")


def get_storage_stats(conn: sqlite3.Connection, db_path: Path) -> StorageStats:
    """Report file size, record count and the oldest record's timestamp."""
    size = db_path.stat().st_size if db_path.exists() else 0
    count, oldest = conn.execute("SELECT COUNT(*), MIN(timestamp) FROM usage_records").fetchone()
    return StorageStats(size_bytes=size, record_count=count, oldest_record_timestamp=oldest)


# --- Settings ---


def get_setting(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a value from the settings table."""
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a value in the settings table."""
    with conn:
        conn.execute(
            """INSERT INTO settings (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, value),
        )


def get_all_settings(conn: sqlite3.Connection) -> dict[str, str]:
    """Get all settings as a dict."""
    return {k: v for k, v in conn.execute("SELECT key, value FROM settings")}
