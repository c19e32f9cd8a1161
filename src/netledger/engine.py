"""Attribution and persistence engine.

The engine owns the sampler, the live stat store and the write batcher, and
runs the background tasks that drive them:

- sampling loop (every sample_interval, default 0.5s)
- flush loop (every flush_interval, default 10s)
- expiry loop (every 60s): expired raw records, plus the testing-mode cutoff
- retention sweep (every 30 min): date-based pruning for N-day retention
- maintenance (every 24h): full retention pass plus VACUUM

All loops stop on one shared shutdown event. Counter reads and storage I/O
run in the default executor so sampling never waits on disk.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

import psutil
import structlog

from netledger.batcher import FlushResult, WriteBatcher
from netledger.config import Config
from netledger.counters import CounterSource, CounterSourceError, get_counter_source
from netledger.retention import (
    RETENTION_TESTING,
    RetentionResult,
    apply_retention,
    persistence_enabled,
    retention_cutoff,
    validate_retention,
)
from netledger.sampler import AttributionSampler, ProcessUsage, SamplerState, StatStore
from netledger.settings import DatabaseSettings, SettingsAccess, UserSettings
from netledger.storage import (
    AppUsageStat,
    DailySummary,
    StorageStats,
    clear_all,
    delete_expired,
    delete_older_than,
    get_24h_usage,
    get_app_usage_with_retention,
    get_daily_summary,
    get_recent_summaries,
    get_storage_stats,
    init_database,
    open_database,
    vacuum,
)

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class EngineStatus:
    """Point-in-time view of the engine for reporting."""

    running: bool
    paused: bool
    update_interval: float
    last_update: float | None


class Engine:
    """Samples network usage, keeps live per-process stats and persists history."""

    def __init__(
        self,
        config: Config,
        source: CounterSource | None = None,
        settings: SettingsAccess | None = None,
    ):
        self.config = config
        self.source = source or get_counter_source()
        self.settings = settings or DatabaseSettings(config.db_path, config.storage)

        self.store = StatStore()
        self.sampler = AttributionSampler(
            self.store,
            weights=config.attribution,
            inactivity_seconds=config.system.inactivity_seconds,
        )
        self.batcher = WriteBatcher(config.db_path, config.storage)

        self._state = SamplerState.INITIALIZING
        self._state_lock = threading.Lock()
        self._pause_requested = False  # pause() before start() finished
        self._retention = config.retention.default_days
        self._retention_lock = threading.Lock()
        self._last_update: float | None = None
        self.database_status: str | None = None

        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.tick_count = 0

    # --- State ---

    @property
    def state(self) -> SamplerState:
        with self._state_lock:
            return self._state

    @property
    def paused(self) -> bool:
        return self.state == SamplerState.PAUSED

    @property
    def retention(self) -> int:
        with self._retention_lock:
            return self._retention

    def _set_retention(self, setting: int) -> None:
        with self._retention_lock:
            self._retention = setting
        self.batcher.set_persistence_enabled(persistence_enabled(setting))

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open storage, take the baseline samples and launch the background tasks.

        Raises:
            RuntimeError: If the engine was already started or has been stopped
        """
        with self._state_lock:
            if self._state == SamplerState.STOPPED:
                raise RuntimeError("Engine has been stopped and cannot be restarted")
            if self._state != SamplerState.INITIALIZING:
                raise RuntimeError("Engine is already started")

        self.database_status = await self._in_executor(
            init_database, self.config.db_path, self.config.storage
        )
        user = await self._in_executor(
            UserSettings.load, self.settings, self.config.retention.default_days
        )
        self._set_retention(user.data_retention)

        log.info(
            "engine_starting",
            database=self.database_status,
            retention=user.data_retention,
            sample_interval=self.config.system.sample_interval,
            flush_interval=self.config.system.flush_interval,
        )

        # Baseline, then one real delta, before the steady-state loop
        await self._safe_tick()
        await self._wait(self.config.system.sample_interval)
        await self._safe_tick()

        with self._state_lock:
            if self._state == SamplerState.STOPPED:
                return
            if self._pause_requested:
                self._state = SamplerState.PAUSED
            else:
                self._state = SamplerState.RUNNING

        self._tasks = [
            asyncio.create_task(self._sample_loop(), name="sample"),
            asyncio.create_task(self._flush_loop(), name="flush"),
            asyncio.create_task(self._expiry_loop(), name="expiry"),
            asyncio.create_task(self._retention_loop(), name="retention"),
            asyncio.create_task(self._maintenance_loop(), name="maintenance"),
        ]
        log.info("engine_started")

    async def stop(self) -> None:
        """Stop all loops and flush whatever is still pending."""
        with self._state_lock:
            if self._state == SamplerState.STOPPED:
                return
            self._state = SamplerState.STOPPED

        log.info("engine_stopping")
        self._shutdown_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        try:
            result = await self._in_executor(self.batcher.flush)
            log.info("final_flush_complete", records=result.records, discarded=result.discarded)
        except Exception as e:
            log.exception("final_flush_failed", error=str(e))

        log.info("engine_stopped")

    def pause(self) -> None:
        """Freeze sampling at the next tick boundary.

        During start-up the request is remembered and the engine comes up
        paused once the baseline samples are taken.
        """
        with self._state_lock:
            if self._state == SamplerState.RUNNING:
                self._state = SamplerState.PAUSED
                log.info("engine_paused")
            elif self._state == SamplerState.INITIALIZING:
                self._pause_requested = True
                log.info("engine_pause_pending")

    def resume(self) -> None:
        with self._state_lock:
            self._pause_requested = False
            if self._state == SamplerState.PAUSED:
                self._state = SamplerState.RUNNING
                log.info("engine_resumed")

    def set_persistence_enabled(self, enabled: bool) -> None:
        self.batcher.set_persistence_enabled(enabled)

    # --- Interactive operations (errors propagate) ---

    async def apply_retention_now(self, setting: int) -> RetentionResult:
        """Flush, then run expiry, age-based deletion and VACUUM for `setting`."""
        validate_retention(setting)
        await self.flush()

        def run() -> RetentionResult:
            with open_database(self.config.db_path, self.config.storage) as conn:
                return apply_retention(
                    conn,
                    setting,
                    reclaim=True,
                    testing_window=self.config.retention.testing_window_seconds,
                )

        return await self._in_executor(run)

    async def set_retention(self, setting: int) -> RetentionResult:
        """Change the retention policy, save it and enforce it immediately.

        A setting of -2 turns persistence off; any other value turns it on.
        """
        validate_retention(setting)
        self._set_retention(setting)
        await self._in_executor(UserSettings(data_retention=setting).save, self.settings)
        log.info("retention_changed", setting=setting)
        return await self.apply_retention_now(setting)

    async def clear_all_data(self) -> None:
        """Wipe all records and summaries, then VACUUM.

        A flush already writing is allowed to commit first, so its records are
        wiped as well. Records still waiting in the write buffer are dropped.
        """

        def run() -> int:
            with self.batcher.exclusive():
                dropped = len(self.batcher.swap())
                with open_database(self.config.db_path, self.config.storage) as conn:
                    clear_all(conn)
                    vacuum(conn)
            return dropped

        dropped = await self._in_executor(run)
        log.info("all_data_cleared", pending_dropped=dropped)

    async def flush(self) -> FlushResult:
        """Force a flush of the pending buffer."""
        return await self._in_executor(self.batcher.flush)

    # --- Reporting (blocking, safe from any thread) ---

    def current_stats(self) -> dict[str, ProcessUsage]:
        return self.store.snapshot()

    def status(self) -> EngineStatus:
        state = self.state
        return EngineStatus(
            running=state in (SamplerState.RUNNING, SamplerState.PAUSED),
            paused=state == SamplerState.PAUSED,
            update_interval=self.config.system.sample_interval,
            last_update=self._last_update,
        )

    def daily_totals(self, date: str | None = None) -> DailySummary:
        """Totals for a local date (YYYY-MM-DD), today by default."""
        date = date or datetime.now().strftime("%Y-%m-%d")
        with open_database(self.config.db_path, self.config.storage) as conn:
            return get_daily_summary(conn, date)

    def last_24h_totals(self) -> dict[str, int]:
        with open_database(self.config.db_path, self.config.storage) as conn:
            return get_24h_usage(conn)

    def app_usage_for_retention_window(self, days: int | None = None) -> list[AppUsageStat]:
        """Per-app totals over `days` (current retention setting by default)."""
        days = self.retention if days is None else days
        with open_database(self.config.db_path, self.config.storage) as conn:
            return get_app_usage_with_retention(conn, days)

    def recent_daily_summaries(self, n: int = 7) -> list[DailySummary]:
        with open_database(self.config.db_path, self.config.storage) as conn:
            return get_recent_summaries(conn, n)

    def storage_stats(self) -> StorageStats:
        with open_database(self.config.db_path, self.config.storage) as conn:
            return get_storage_stats(conn, self.config.db_path)

    # --- Background tasks ---

    async def _in_executor(self, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _wait(self, timeout: float) -> bool:
        """Sleep up to timeout. True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _tick(self) -> None:
        snapshot = await self._in_executor(self.source.sample)
        now = time.time()
        records = self.sampler.apply(snapshot, now)
        self.batcher.append(records)
        self._last_update = now
        self.tick_count += 1

    async def _safe_tick(self) -> None:
        """One tick; failures are logged and the tick is skipped."""
        try:
            await self._tick()
        except CounterSourceError as e:
            log.warning("sample_failed", error=str(e))
        except Exception as e:
            log.error("sample_failed", error=str(e))

    async def _sample_loop(self) -> None:
        interval = self.config.system.sample_interval
        heartbeat_every = self.config.system.heartbeat_ticks
        loop = asyncio.get_running_loop()
        ticks = 0

        while not self._shutdown_event.is_set():
            started = loop.time()
            if not self.paused:
                await self._safe_tick()

            ticks += 1
            if heartbeat_every > 0 and ticks >= heartbeat_every:
                self._heartbeat()
                ticks = 0

            sleep_time = interval - (loop.time() - started)
            if await self._wait(max(sleep_time, 0.0)):
                break

    def _heartbeat(self) -> None:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        db_path = self.config.db_path
        db_mb = db_path.stat().st_size / 1024 / 1024 if db_path.exists() else 0
        log.info(
            "engine_heartbeat",
            ticks=self.tick_count,
            processes=len(self.store),
            pending=self.batcher.pending_count(),
            paused=self.paused,
            rss_mb=round(rss_mb, 1),
            db_mb=round(db_mb, 1),
        )

    async def _periodic(self, name: str, interval: float, job: Callable[[], Awaitable]) -> None:
        """Run job every interval until shutdown. Errors are logged only."""
        while not await self._wait(interval):
            try:
                await job()
            except Exception as e:
                log.exception(f"{name}_failed", error=str(e))

    async def _flush_loop(self) -> None:
        await self._periodic("flush", self.config.system.flush_interval, self.flush)

    async def _expiry_loop(self) -> None:
        async def job() -> None:
            await self._in_executor(self._expire)

        await self._periodic("expiry", self.config.retention.expiry_interval, job)

    async def _retention_loop(self) -> None:
        async def job() -> None:
            await self._in_executor(self._sweep)

        await self._periodic("retention_sweep", self.config.retention.sweep_interval, job)

    async def _maintenance_loop(self) -> None:
        async def job() -> None:
            await self._in_executor(self._maintain)

        hours = self.config.retention.maintenance_interval_hours
        await self._periodic("maintenance", hours * 3600, job)

    def _expire(self) -> None:
        """Drop expired raw records; in testing mode also everything past the window."""
        setting = self.retention
        with open_database(self.config.db_path, self.config.storage) as conn:
            delete_expired(conn)
            if setting == RETENTION_TESTING:
                cutoff = retention_cutoff(
                    setting, testing_window=self.config.retention.testing_window_seconds
                )
                assert cutoff is not None
                delete_older_than(conn, cutoff)

    def _sweep(self) -> None:
        """Date-based pruning for N-day retention."""
        setting = self.retention
        if setting <= 0:
            return
        cutoff = retention_cutoff(setting)
        assert cutoff is not None
        with open_database(self.config.db_path, self.config.storage) as conn:
            delete_older_than(conn, cutoff)

    def _maintain(self) -> None:
        log.info("maintenance_starting")
        with open_database(self.config.db_path, self.config.storage) as conn:
            apply_retention(
                conn,
                self.retention,
                reclaim=True,
                testing_window=self.config.retention.testing_window_seconds,
            )
