"""CLI commands for netledger."""

import click


@click.group()
@click.version_option()
def main() -> None:
    """Attribute network traffic to processes and keep a usage history."""
    pass


@main.command()
def daemon() -> None:
    """Run the background sampler."""
    import asyncio

    from netledger.daemon import run_daemon

    asyncio.run(run_daemon())


def _daemon_pid(config) -> int | None:
    """PID of the running daemon, or None."""
    import psutil

    from netledger.daemon import PidFile

    pid = PidFile(config.pid_path).read()
    return pid if pid and psutil.pid_exists(pid) else None


@main.command()
def status() -> None:
    """Quick health check."""
    from datetime import datetime

    from netledger.config import Config
    from netledger.formatting import format_bytes, format_retention, format_timestamp
    from netledger.settings import DatabaseSettings, UserSettings
    from netledger.storage import (
        DatabaseNotAvailable,
        get_24h_usage,
        get_daily_summary,
        get_storage_stats,
        require_database,
    )

    config = Config.load()

    pid = _daemon_pid(config)
    click.echo(f"Daemon: {'running (PID ' + str(pid) + ')' if pid else 'stopped'}")

    try:
        with require_database(config.db_path) as conn:
            stats = get_storage_stats(conn, config.db_path)
            today = get_daily_summary(conn, datetime.now().strftime("%Y-%m-%d"))
            last_24h = get_24h_usage(conn)
    except DatabaseNotAvailable:
        return

    access = DatabaseSettings(config.db_path, config.storage)
    retention = UserSettings.load(access, config.retention.default_days).data_retention
    click.echo(f"Database: {config.db_path} ({format_bytes(stats.size_bytes)})")
    click.echo(f"Records: {stats.record_count}")
    click.echo(f"Oldest record: {format_timestamp(stats.oldest_record_timestamp)}")
    click.echo(f"Retention: {format_retention(retention)}")
    click.echo(
        f"Today: {format_bytes(today.total_upload)} up, {format_bytes(today.total_download)} down"
    )
    click.echo(
        f"Last 24h: {format_bytes(last_24h['upload'])} up, "
        f"{format_bytes(last_24h['download'])} down"
    )


@main.command()
@click.option("--days", "-d", default=None, type=int, help="Days to cover (<= 0 for all time)")
@click.option("--limit", "-n", default=20, help="Number of apps to show")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def apps(days: int | None, limit: int, fmt: str) -> None:
    """Per-application traffic totals."""
    import json

    from netledger.config import Config
    from netledger.formatting import format_bytes, format_timestamp
    from netledger.settings import DatabaseSettings, UserSettings
    from netledger.storage import (
        DatabaseNotAvailable,
        get_app_usage_with_retention,
        require_database,
    )

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            if days is None:
                access = DatabaseSettings(config.db_path, config.storage)
                days = UserSettings.load(access, config.retention.default_days).data_retention
            usage = get_app_usage_with_retention(conn, days)
    except DatabaseNotAvailable:
        return

    if not usage:
        click.echo("No usage recorded.")
        return

    usage = usage[:limit]
    if fmt == "json":
        data = [
            {
                "app": u.app_name,
                "upload": u.total_upload,
                "download": u.total_download,
                "last_seen": u.last_seen,
            }
            for u in usage
        ]
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{'App':30}  {'Upload':>10}  {'Download':>10}  {'Last seen':>19}")
    click.echo("-" * 75)
    for u in usage:
        name = u.app_name[:28] + ".." if len(u.app_name) > 30 else u.app_name
        click.echo(
            f"{name:30}  {format_bytes(u.total_upload):>10}  "
            f"{format_bytes(u.total_download):>10}  {format_timestamp(u.last_seen):>19}"
        )


@main.command()
@click.option("--days", "-n", default=7, help="Number of days to show")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json", "csv"]), default="table")
def history(days: int, fmt: str) -> None:
    """Daily traffic totals, newest first."""
    import json

    from netledger.config import Config
    from netledger.formatting import format_bytes
    from netledger.storage import DatabaseNotAvailable, get_recent_summaries, require_database

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            summaries = get_recent_summaries(conn, days)
    except DatabaseNotAvailable:
        return

    if not summaries:
        click.echo("No daily history.")
        return

    if fmt == "json":
        data = [
            {"date": s.date, "upload": s.total_upload, "download": s.total_download}
            for s in summaries
        ]
        click.echo(json.dumps(data, indent=2))
    elif fmt == "csv":
        click.echo("date,upload,download")
        for s in summaries:
            click.echo(f"{s.date},{s.total_upload},{s.total_download}")
    else:
        click.echo(f"{'Date':10}  {'Upload':>10}  {'Download':>10}")
        click.echo("-" * 34)
        for s in summaries:
            click.echo(
                f"{s.date:10}  {format_bytes(s.total_upload):>10}  "
                f"{format_bytes(s.total_download):>10}"
            )


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("value", required=False, type=int)
def retention(value: int | None) -> None:
    """Show or set data retention.

    VALUE is a number of days, 0 for testing (about one minute), -1 to keep
    forever or -2 to stop saving history. Setting a value prunes right away.
    """
    from netledger.config import Config
    from netledger.formatting import format_retention
    from netledger.retention import apply_retention, validate_retention
    from netledger.settings import DatabaseSettings, UserSettings
    from netledger.storage import init_database, open_database

    config = Config.load()
    access = DatabaseSettings(config.db_path, config.storage)

    if value is None:
        if not config.db_path.exists():
            click.echo(f"Retention: {format_retention(config.retention.default_days)} (default)")
            return
        current = UserSettings.load(access, config.retention.default_days)
        click.echo(f"Retention: {format_retention(current.data_retention)}")
        return

    try:
        validate_retention(value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="VALUE") from e

    init_database(config.db_path, config.storage)
    UserSettings(data_retention=value).save(access)
    with open_database(config.db_path, config.storage) as conn:
        result = apply_retention(
            conn,
            value,
            reclaim=True,
            testing_window=config.retention.testing_window_seconds,
        )

    click.echo(f"Retention set to {format_retention(value)}")
    click.echo(
        f"Deleted {result.expired_deleted} expired records, {result.records_deleted} old records, "
        f"{result.summaries_deleted} daily summaries"
    )
    if _daemon_pid(config):
        click.echo("Restart the daemon for the new setting to take effect.")


@main.command()
@click.confirmation_option("--yes", "-y", prompt="Delete all usage history?")
def clear() -> None:
    """Delete all usage records and daily summaries."""
    from netledger.config import Config
    from netledger.storage import DatabaseNotAvailable, clear_all, require_database, vacuum

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            clear_all(conn)
            vacuum(conn)
    except DatabaseNotAvailable:
        return

    click.echo("All usage data cleared.")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from netledger.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"Database: {cfg.db_path}")
    click.echo(f"Log file: {cfg.log_path}")
    click.echo()
    click.echo("[retention]")
    click.echo(f"  default_days = {cfg.retention.default_days}")
    click.echo(f"  expiry_interval = {cfg.retention.expiry_interval}")
    click.echo(f"  sweep_interval = {cfg.retention.sweep_interval}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  flush_interval = {cfg.system.flush_interval}")
    click.echo()
    click.echo("[attribution]")
    click.echo(f"  established = {cfg.attribution.established}")
    click.echo(f"  tcp_other = {cfg.attribution.tcp_other}")
    click.echo(f"  udp = {cfg.attribution.udp}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from netledger.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
