"""Formatting utilities for consistent CLI and console output."""

from datetime import datetime

_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(num: int | float) -> str:
    """Format a byte count with binary units.

    Returns:
        "512 B", "1.5 KB", "2.0 GB", ...
    """
    value = float(num)
    for unit in _UNITS[:-1]:
        if abs(value) < 1024:
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} {_UNITS[-1]}"


def format_speed(bytes_per_second: int | float) -> str:
    """Format a transfer rate, e.g. "1.5 MB/s"."""
    return f"{format_bytes(bytes_per_second)}/s"


def format_timestamp(timestamp: float | None) -> str:
    """Local time as "YYYY-MM-DD HH:MM:SS", or "-" when unknown."""
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def format_retention(setting: int) -> str:
    """Human description of a retention setting.

    Args:
        setting: N > 0 days, 0 testing, -1 forever, -2 do not save
    """
    if setting == -2:
        return "do not save"
    if setting == -1:
        return "forever"
    if setting == 0:
        return "testing (1 minute)"
    if setting == 1:
        return "1 day"
    return f"{setting} days"


def format_uptime(seconds: int | float) -> str:
    """Compact duration: "45s", "3m 12s", "2h 05m", "3d 04h"."""
    total = max(0, int(seconds))
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days:
        return f"{days}d {hours:02d}h"
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
