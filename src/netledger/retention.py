"""Retention policy: how long raw history and daily rollups are kept.

The retention setting is a single integer:

- N > 0: keep N days
- 0: keep about one minute (testing mode)
- -1: keep forever (raw records still expire after their 24h TTL)
- -2: do not persist at all (the write batcher discards every flush)
"""

import sqlite3
import time
from dataclasses import dataclass

import structlog

from netledger.storage import SECONDS_PER_DAY, delete_expired, delete_older_than, vacuum

log = structlog.get_logger()

RETENTION_DO_NOT_SAVE = -2
RETENTION_FOREVER = -1
RETENTION_TESTING = 0

TESTING_WINDOW_SECONDS = 60


@dataclass
class RetentionResult:
    """Outcome of one retention pass."""

    expired_deleted: int = 0
    records_deleted: int = 0
    summaries_deleted: int = 0
    vacuumed: bool = False


def validate_retention(setting: int) -> int:
    """Return the setting unchanged, or raise ValueError if it is not a known policy."""
    if setting < RETENTION_DO_NOT_SAVE:
        raise ValueError(f"Invalid data retention: {setting} (must be >= -2)")
    return setting


def persistence_enabled(setting: int) -> bool:
    """Whether flushes should write to storage under this setting."""
    return setting != RETENTION_DO_NOT_SAVE


def retention_cutoff(
    setting: int,
    *,
    now: float | None = None,
    testing_window: int = TESTING_WINDOW_SECONDS,
) -> float | None:
    """Timestamp before which history is deleted, or None for no age-based deletion."""
    validate_retention(setting)
    now = time.time() if now is None else now
    if setting == RETENTION_TESTING:
        return now - testing_window
    if setting > 0:
        return now - setting * SECONDS_PER_DAY
    return None


def apply_retention(
    conn: sqlite3.Connection,
    setting: int,
    *,
    now: float | None = None,
    reclaim: bool = False,
    testing_window: int = TESTING_WINDOW_SECONDS,
) -> RetentionResult:
    """Run the expiry sweep plus age-based deletion for `setting`.

    Expired raw records are always removed, whatever the setting. Errors
    propagate to the caller.

    Args:
        conn: Database connection
        setting: Retention setting (see module docstring)
        now: Reference time (defaults to time.time())
        reclaim: VACUUM afterwards to return freed pages to the filesystem
        testing_window: Seconds kept when setting is 0
    """
    now = time.time() if now is None else now
    result = RetentionResult()
    result.expired_deleted = delete_expired(conn, now=now)

    cutoff = retention_cutoff(setting, now=now, testing_window=testing_window)
    if cutoff is not None:
        result.records_deleted, result.summaries_deleted = delete_older_than(conn, cutoff)

    if reclaim:
        vacuum(conn)
        result.vacuumed = True

    log.info(
        "retention_applied",
        setting=setting,
        expired=result.expired_deleted,
        records=result.records_deleted,
        summaries=result.summaries_deleted,
        vacuumed=result.vacuumed,
    )
    return result
