"""Background daemon: runs the engine under a PID file until signalled."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil
import structlog

from netledger import logging as console
from netledger.config import Config
from netledger.counters import CounterSource
from netledger.engine import Engine

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    started_at: datetime | None = None
    heartbeat_count: int = 0


class PidFile:
    """Single-instance guard backed by a file holding the daemon's PID."""

    def __init__(self, path: Path):
        self.path = path
        self.owned = False

    def read(self) -> int | None:
        """PID recorded in the file; None when missing or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except FileNotFoundError:
            return None
        except ValueError:
            log.warning("pid_file_invalid", path=str(self.path))
            return None

    def claim(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))
        self.owned = True
        log.debug("pid_file_written", path=str(self.path))

    def release(self) -> None:
        self.path.unlink(missing_ok=True)
        log.debug("pid_file_removed", path=str(self.path))

    def held_by_other(self) -> bool:
        """True if another live netledger process owns the file.

        PIDs get reused after a reboot, so a live process only counts when its
        command line mentions netledger. Stale or unreadable files are removed.
        """
        pid = self.read()
        if pid is None:
            if self.path.exists():
                self.release()
            return False
        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            if "netledger" in " ".join(proc.cmdline()).lower():
                log.info("daemon_already_running_verified", pid=pid)
                console.already_running(pid)
                return True
            reason = f"is {proc.name()}"
        except psutil.NoSuchProcess:
            reason = "not found"
        except psutil.AccessDenied:
            # Another user's process; treat it as a live daemon
            log.warning("pid_check_access_denied", pid=pid)
            return True

        log.warning("pid_file_stale", pid=pid, reason=reason)
        console.stale_pid_file(pid, reason)
        self.release()
        return False


class Daemon:
    """Process wrapper around the engine: PID file, signals, console reporting."""

    def __init__(self, config: Config, source: CounterSource | None = None):
        self.config = config
        self.state = DaemonState()
        self.engine = Engine(config, source=source)
        self.pid_file = PidFile(config.pid_path)
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the engine, then block until a shutdown signal arrives.

        Raises:
            RuntimeError: If another daemon holds the PID file
        """
        from importlib.metadata import version

        pkg_version = version("netledger")
        log.info("daemon_starting", version=pkg_version)
        console.version_info("netledger", pkg_version)

        self._install_signal_handlers()

        if self.pid_file.held_by_other():
            raise RuntimeError("Daemon is already running")
        self.pid_file.claim()

        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            console.config_created(str(self.config.config_path))

        await self.engine.start()
        console.database_status(self.engine.database_status or "unknown", str(self.config.db_path))

        self.state.running = True
        self.state.started_at = datetime.now()
        log.info("daemon_started", retention=self.engine.retention)
        console.daemon_started(self.engine.retention, self.config.system.sample_interval)

        await self._report_loop()

    async def stop(self) -> None:
        """Stop the engine and give up the PID file if this daemon claimed it."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        await self.engine.stop()
        if self.pid_file.owned:
            self.pid_file.release()

        log.info("daemon_stopped", heartbeats=self.state.heartbeat_count)
        console.daemon_stopped()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                # Windows loops lack this; Ctrl+C still interrupts asyncio.run
                log.debug("signal_handler_unavailable", signal=sig.name)

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _report_loop(self) -> None:
        """Print a console heartbeat every heartbeat_ticks samples until shutdown."""
        interval = self.config.system.heartbeat_ticks * self.config.system.sample_interval
        if interval <= 0:
            await self._shutdown_event.wait()
            return
        while True:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                self._heartbeat()

    def _heartbeat(self) -> None:
        stats = self.engine.current_stats()
        db_path = self.config.db_path
        started = self.state.started_at
        self.state.heartbeat_count += 1
        console.heartbeat(
            processes=len(stats),
            upload_speed=sum(u.upload_speed for u in stats.values()),
            download_speed=sum(u.download_speed for u in stats.values()),
            pending=self.engine.batcher.pending_count(),
            rss_mb=psutil.Process().memory_info().rss / 1024 / 1024,
            db_size_mb=db_path.stat().st_size / 1024 / 1024 if db_path.exists() else 0,
            uptime_s=(datetime.now() - started).total_seconds() if started else 0,
        )


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    config = config or Config.load()
    console.configure(config)

    daemon = Daemon(config)
    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
