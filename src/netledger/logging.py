"""Console output and the structured log file.

Two sinks, kept apart:

- the Rich console, for people watching the daemon run (``info``/``warn``/
  ``error`` plus a few lifecycle helpers);
- a rotating JSON Lines file fed by structlog, for machines (``configure``).

Nothing written to the console ends up in the file and vice versa.
"""

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.theme import Theme

from netledger.formatting import format_speed, format_uptime

if TYPE_CHECKING:
    from netledger.config import Config

_THEME = Theme(
    {
        "level.info": "bright_blue",
        "level.warn": "yellow",
        "level.error": "bold red",
        "stamp": "dim",
    }
)

_console = Console(highlight=False, theme=_THEME)

_LEVEL_TAGS = {"info": "info", "warn": "warn", "error": "err"}


class Icon:
    """Markup snippets placed after the level tag."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    SIGNAL = "⚡"
    UP = "[bright_green]▲[/]"
    DOWN = "[bright_cyan]▼[/]"


def _emit(level: str, msg: str, icon: str) -> None:
    tag = _LEVEL_TAGS.get(level, level)
    parts = [
        f"[stamp]{datetime.now():%H:%M:%S}[/]",
        f"[level.{level}]\\[{tag}][/]",
    ]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    _emit("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    _emit("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    _emit("error", msg, icon)


# Lifecycle helpers


def version_info(name: str, version: str) -> None:
    info(f"[bold cyan]{name}[/] {version}")


def config_created(path: str) -> None:
    info(f"Wrote default config to [cyan]{path}[/]")


def database_status(status: str, path: str) -> None:
    """Report how the database was opened: "created", "existing" or "recovered"."""
    if status == "recovered":
        warn(f"Database was corrupt and has been recreated at [cyan]{path}[/]")
        return
    info(f"Database {status} [stamp]({path})[/]")


def daemon_started(retention: int, interval: float) -> None:
    info(f"Sampling every {interval}s [stamp](retention setting {retention})[/]", Icon.OK)


def daemon_stopping() -> None:
    info("Shutting down, flushing pending records", Icon.WAIT)


def daemon_stopped() -> None:
    info("Stopped", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Got [bold]{name}[/]", Icon.SIGNAL)


def already_running(pid: int | None = None) -> None:
    suffix = f" [stamp](PID {pid})[/]" if pid else ""
    error(f"Another daemon already running{suffix}", Icon.FAIL)


def stale_pid_file(pid: int, reason: str) -> None:
    info(f"[stamp]Ignoring stale PID file: PID {pid} {reason}[/]")


def heartbeat(
    processes: int,
    upload_speed: int,
    download_speed: int,
    pending: int,
    rss_mb: float,
    db_size_mb: float,
    uptime_s: float,
) -> None:
    rates = f"{Icon.UP} {format_speed(upload_speed)} {Icon.DOWN} {format_speed(download_speed)}"
    footprint = f"{pending} pending, {rss_mb:.1f}MB RSS, {db_size_mb:.1f}MB DB"
    uptime = format_uptime(uptime_s)
    info(f"[cyan]{processes}[/] active, {rates}, [stamp]{footprint}, up {uptime}[/]", Icon.HEARTBEAT)


# Structured log file


def _stamp_source(source: str) -> structlog.types.Processor:
    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict.setdefault("source", source)
        return event_dict

    return processor


def _shared_processors(source: str) -> list[structlog.types.Processor]:
    """Processors applied to structlog and foreign stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
        _stamp_source(source),
    ]


def configure(config: "Config", source: str = "daemon") -> None:
    """Send structlog events to ``config.log_path`` as JSON Lines.

    The file rotates at ``system.log_max_bytes`` keeping
    ``system.log_backup_count`` old files. Events below INFO are dropped.

    Args:
        config: Supplies the log path and rotation limits
        source: Written as the "source" field of every event
    """
    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    shared = _shared_processors(source)

    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
