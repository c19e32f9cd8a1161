"""Per-process traffic attribution.

There is no OS API for bytes per process. Each tick the system-wide counter
delta is split across processes in proportion to a weight derived from the
sockets they own: an ESTABLISHED TCP connection counts far more than a
listening socket or a UDP endpoint. The result is an approximation whose
shares always sum to the measured delta.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator

import structlog

from netledger.config import AttributionConfig
from netledger.counters import Connection, SystemSnapshot
from netledger.storage import UsageRecord

log = structlog.get_logger()

ESTABLISHED = "ESTABLISHED"


class SamplerState(Enum):
    """Lifecycle of the sampling engine. STOPPED is terminal."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class ProcessUsage:
    """Live usage for one process name.

    pid is the last pid seen under this name and may be stale. Totals only
    grow while the entry stays in the live map.
    """

    name: str
    pid: int
    upload_speed: int = 0  # bytes/s
    download_speed: int = 0  # bytes/s
    total_upload: int = 0
    total_download: int = 0
    last_update: float = 0.0  # Wall clock of last tick with traffic (0 = never)


def compute_weights(
    connections: list[Connection], weights: AttributionConfig | None = None
) -> dict[int, float]:
    """Sum connection weights per pid.

    The returned dict preserves the order in which pids were first seen.
    """
    weights = weights or AttributionConfig()
    result: dict[int, float] = {}
    for conn in connections:
        if conn.protocol == "tcp":
            w = weights.established if conn.status == ESTABLISHED else weights.tcp_other
        else:
            w = weights.udp
        result[conn.pid] = result.get(conn.pid, 0.0) + w
    return result


def apportion(delta: int, weights: dict[int, float]) -> dict[int, int]:
    """Split delta across pids in proportion to weight.

    Every pid but the last gets floor(delta * w / W); the last pid gets
    whatever is left, so the shares sum to delta exactly. Returns an empty
    dict when there is nothing to split.
    """
    total = sum(weights.values())
    if delta <= 0 or total <= 0:
        return {}

    shares: dict[int, int] = {}
    pids = list(weights)
    assigned = 0
    for pid in pids[:-1]:
        share = int(delta * weights[pid] // total)
        shares[pid] = share
        assigned += share
    shares[pids[-1]] = delta - assigned
    return shares


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Waiting writers block new readers so a steady stream of readers cannot
    starve the sampler.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StatStore:
    """Process name -> latest ProcessUsage, safe to read from any thread.

    Readers only ever get copies.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._stats: dict[str, ProcessUsage] = {}

    def snapshot(self) -> dict[str, ProcessUsage]:
        with self._lock.read():
            return {name: replace(usage) for name, usage in self._stats.items()}

    def get(self, name: str) -> ProcessUsage | None:
        with self._lock.read():
            usage = self._stats.get(name)
            return replace(usage) if usage else None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._stats)

    @contextmanager
    def writing(self) -> Iterator[dict[str, ProcessUsage]]:
        """Exclusive access to the live map. Keep the body in-memory only."""
        with self._lock.write():
            yield self._stats


@dataclass
class _NameShare:
    pid: int
    exe: str | None
    upload: int = 0
    download: int = 0


class AttributionSampler:
    """Turns successive SystemSnapshots into per-process usage.

    apply() is called once per tick. It updates the StatStore and returns the
    UsageRecords to persist for that tick.
    """

    def __init__(
        self,
        store: StatStore,
        weights: AttributionConfig | None = None,
        inactivity_seconds: float = 3.0,
    ) -> None:
        self.store = store
        self.weights = weights or AttributionConfig()
        self.inactivity_seconds = inactivity_seconds
        self._prev_upload: int | None = None
        self._prev_download: int | None = None

    def system_delta(self, snapshot: SystemSnapshot) -> tuple[int, int]:
        """Upload/download bytes since the previous snapshot.

        Zero on the first call. A counter that went backwards (reset, wrap,
        interface removed) yields zero rather than a negative delta.
        """
        if self._prev_upload is None or self._prev_download is None:
            up = down = 0
        else:
            up = max(0, snapshot.upload - self._prev_upload)
            down = max(0, snapshot.download - self._prev_download)
        self._prev_upload = snapshot.upload
        self._prev_download = snapshot.download
        return up, down

    def attribute(self, snapshot: SystemSnapshot, up: int, down: int) -> dict[str, _NameShare]:
        """Apportion a delta to process names. Unresolved pids are dropped."""
        weights = compute_weights(snapshot.connections, self.weights)
        up_shares = apportion(up, weights)
        down_shares = apportion(down, weights)

        by_name: dict[str, _NameShare] = {}
        for pid in weights:
            ident = snapshot.processes.get(pid)
            if ident is None:
                continue
            share = by_name.get(ident.name)
            if share is None:
                share = by_name[ident.name] = _NameShare(pid=pid, exe=ident.exe)
            share.pid = pid
            share.upload += up_shares.get(pid, 0)
            share.download += down_shares.get(pid, 0)
        return by_name

    def apply(self, snapshot: SystemSnapshot, now: float) -> list[UsageRecord]:
        """Process one tick."""
        up, down = self.system_delta(snapshot)
        shares = self.attribute(snapshot, up, down) if (up or down) else {}

        ttl = self.weights.record_ttl_hours * 3600
        records: list[UsageRecord] = []
        updated: set[str] = set()

        with self.store.writing() as stats:
            for name, share in shares.items():
                if share.upload == 0 and share.download == 0:
                    continue

                usage = stats.get(name)
                if usage is None:
                    usage = stats[name] = ProcessUsage(name=name, pid=share.pid)

                elapsed = now - usage.last_update if usage.last_update > 0 else 1.0
                if elapsed <= 0:
                    elapsed = 1.0

                usage.pid = share.pid
                usage.upload_speed = int(share.upload / elapsed)
                usage.download_speed = int(share.download / elapsed)
                usage.total_upload += share.upload
                usage.total_download += share.download
                usage.last_update = now
                updated.add(name)

                records.append(
                    UsageRecord(
                        app_name=name,
                        process_id=share.pid,
                        upload_bytes=share.upload,
                        download_bytes=share.download,
                        timestamp=int(now),
                        expires_at=int(now + ttl),
                        executable_path=share.exe,
                    )
                )

            for name, usage in stats.items():
                if name not in updated:
                    usage.upload_speed = 0
                    usage.download_speed = 0

            stale = [
                name
                for name, usage in stats.items()
                if now - usage.last_update > self.inactivity_seconds
            ]
            for name in stale:
                del stats[name]

        if stale:
            log.debug("inactive_processes_removed", count=len(stale))
        return records
