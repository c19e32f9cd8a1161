"""Network counter source built on psutil.

The OS exposes aggregate interface counters and, separately, which process
owns each socket. A CounterSource reads both in one pass and returns them as
a SystemSnapshot for the attribution sampler.
"""

import socket
from dataclasses import dataclass, field
from typing import Literal, Protocol

import psutil
import structlog

log = structlog.get_logger()

SocketKind = Literal["tcp", "udp"]


class CounterSourceError(Exception):
    """Raised when the OS refuses or fails a counter/connection query."""


@dataclass
class Connection:
    """One socket and the pid that owns it."""

    pid: int
    protocol: SocketKind
    status: str  # TCP state name ("ESTABLISHED", "LISTEN", ...), "NONE" for UDP


@dataclass
class ProcessIdentity:
    """Display name and best-effort executable path for a pid."""

    name: str
    exe: str | None = None


@dataclass
class SystemSnapshot:
    """Everything the sampler needs from one tick."""

    upload: int  # Cumulative bytes sent since boot
    download: int  # Cumulative bytes received since boot
    connections: list[Connection] = field(default_factory=list)
    processes: dict[int, ProcessIdentity] = field(default_factory=dict)


class CounterSource(Protocol):
    """Anything that can produce a SystemSnapshot."""

    def sample(self) -> SystemSnapshot: ...


class PsutilCounterSource:
    """Counter source for every platform psutil supports.

    Blocking: call from a worker thread. Pid -> name resolution is cached for
    the duration of one sample() call only, since pids are reused.

    psutil.net_connections() needs root on macOS. When it is refused the
    source switches, for good, to asking each process for its own sockets;
    processes we may not inspect are skipped.
    """

    def __init__(self) -> None:
        self.per_process = False

    def sample(self) -> SystemSnapshot:
        try:
            io = psutil.net_io_counters(pernic=False)
            raw = self._inet_sockets()
        except (psutil.Error, OSError) as e:
            raise CounterSourceError(f"network query failed: {e}") from e

        snapshot = SystemSnapshot(
            upload=io.bytes_sent if io else 0,
            download=io.bytes_recv if io else 0,
        )

        tcp: list[Connection] = []
        udp: list[Connection] = []
        for pid, kind, status in raw:
            if not pid:
                continue  # Kernel socket or row we may not inspect
            if kind == socket.SOCK_STREAM:
                tcp.append(Connection(pid=pid, protocol="tcp", status=status))
            elif kind == socket.SOCK_DGRAM:
                udp.append(Connection(pid=pid, protocol="udp", status=psutil.CONN_NONE))

        # TCP rows first, then UDP: attribution order follows first sighting
        snapshot.connections = tcp + udp

        cache: dict[int, ProcessIdentity | None] = {}
        for conn in snapshot.connections:
            if conn.pid not in cache:
                cache[conn.pid] = _resolve(conn.pid)
        snapshot.processes = {pid: ident for pid, ident in cache.items() if ident is not None}

        return snapshot

    def _inet_sockets(self) -> list[tuple[int | None, int, str]]:
        """(pid, socket type, status) for every inet socket we can see."""
        if not self.per_process:
            try:
                return [(c.pid, c.type, c.status) for c in psutil.net_connections(kind="inet")]
            except psutil.AccessDenied:
                self.per_process = True
                log.info("connections_per_process", reason="system-wide query denied")

        rows: list[tuple[int | None, int, str]] = []
        for proc in psutil.process_iter():
            try:
                conns = proc.net_connections(kind="inet")
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            rows.extend((proc.pid, c.type, c.status) for c in conns)
        return rows


def _resolve(pid: int) -> ProcessIdentity | None:
    """Look up a pid's name and executable. None if it cannot be resolved."""
    try:
        proc = psutil.Process(pid)
        name = proc.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        log.debug("pid_unresolved", pid=pid)
        return None
    if not name:
        return None

    try:
        exe = proc.exe() or None
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError):
        exe = None

    return ProcessIdentity(name=name, exe=exe)


def get_counter_source() -> CounterSource:
    """Counter source for the current platform."""
    return PsutilCounterSource()
