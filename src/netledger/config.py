"""Configuration system for netledger."""

import os
import sys
import tempfile
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class RetentionConfig:
    """Data retention configuration.

    default_days is only used until the user stores a retention setting in the
    database (see netledger.settings). The sweep intervals are fixed cadences
    for the background cleanup tasks.
    """

    default_days: int = 30  # N>0 keep N days, 0 testing (~1 min), -1 forever, -2 don't save
    expiry_interval: float = 60.0  # Seconds between expiry sweeps (24h raw-record ceiling)
    sweep_interval: float = 1800.0  # Seconds between date-based retention sweeps
    maintenance_interval_hours: int = 24  # Hours between full cleanup + vacuum
    testing_window_seconds: int = 60  # Window kept when retention is 0


@dataclass
class SystemConfig:
    """Engine timing configuration."""

    sample_interval: float = 0.5  # Seconds between sampling ticks
    flush_interval: float = 10.0  # Seconds between batch writes
    inactivity_seconds: float = 3.0  # Idle entries are dropped from live stats after this
    heartbeat_ticks: int = 120  # Log heartbeat every N ticks (~60s at 2Hz)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class AttributionConfig:
    """Weights for apportioning system-wide traffic to processes.

    These are policy choices, not measured values:
    - established (10): open TCP sessions carry most active transfer
    - tcp_other (1): listening / half-open / closing TCP sockets
    - udp (0.5): UDP endpoints still move traffic (DNS, streaming)
    """

    established: float = 10.0
    tcp_other: float = 1.0
    udp: float = 0.5
    record_ttl_hours: int = 24  # Raw per-tick records expire after this


@dataclass
class StorageConfig:
    """SQLite storage tuning and safety limits."""

    busy_timeout_ms: int = 10_000
    cache_size_kib: int = 64_000  # Bounded page cache (~64MB)
    max_db_bytes: int = 10 * 1024**3  # Refuse large batches once the file exceeds 10GB
    large_batch_threshold: int = 100  # Batches above this size get capacity checks
    min_free_bytes: int = 100 * 1024**2  # Required free disk space for large batches
    insert_max_attempts: int = 5
    insert_base_delay: float = 0.05  # Seconds, doubled per retry


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _user_data_home() -> Path:
    """Platform-appropriate per-user data directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".local" / "share"


@dataclass
class Config:
    """Main configuration container."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    attribution: AttributionConfig = field(default_factory=AttributionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "netledger"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return _user_data_home() / "netledger"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "netledger"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file, under the platform temp dir."""
        return Path(tempfile.gettempdir()) / "netledger"

    @property
    def db_path(self) -> Path:
        """Database path."""
        return self.data_dir / "netledger.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("retention", "system", "attribution", "storage"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            retention=_load_retention_config(data.get("retention", {})),
            system=_load_system_config(data.get("system", {})),
            attribution=_load_attribution_config(data.get("attribution", {})),
            storage=_load_storage_config(data.get("storage", {})),
        )


def _load_retention_config(data: dict) -> RetentionConfig:
    """Load retention config from TOML data."""
    d = RetentionConfig()
    default_days = data.get("default_days", d.default_days)
    if default_days < -2:
        raise ValueError(f"default_days must be >= -2, got {default_days}")

    expiry_interval = data.get("expiry_interval", d.expiry_interval)
    sweep_interval = data.get("sweep_interval", d.sweep_interval)
    if expiry_interval <= 0:
        raise ValueError(f"expiry_interval must be > 0, got {expiry_interval}")
    if sweep_interval <= 0:
        raise ValueError(f"sweep_interval must be > 0, got {sweep_interval}")

    return RetentionConfig(
        default_days=default_days,
        expiry_interval=expiry_interval,
        sweep_interval=sweep_interval,
        maintenance_interval_hours=data.get(
            "maintenance_interval_hours", d.maintenance_interval_hours
        ),
        testing_window_seconds=data.get("testing_window_seconds", d.testing_window_seconds),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data.

    The flush interval must be coarser than the sample interval: flushing is
    the slow path, sampling the fast path.
    """
    d = SystemConfig()
    sample_interval = data.get("sample_interval", d.sample_interval)
    flush_interval = data.get("flush_interval", d.flush_interval)

    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")
    if flush_interval < sample_interval:
        raise ValueError(
            f"flush_interval ({flush_interval}) must be >= sample_interval ({sample_interval})"
        )

    return SystemConfig(
        sample_interval=sample_interval,
        flush_interval=flush_interval,
        inactivity_seconds=data.get("inactivity_seconds", d.inactivity_seconds),
        heartbeat_ticks=data.get("heartbeat_ticks", d.heartbeat_ticks),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_attribution_config(data: dict) -> AttributionConfig:
    """Load attribution weights from TOML data."""
    d = AttributionConfig()
    established = data.get("established", d.established)
    tcp_other = data.get("tcp_other", d.tcp_other)
    udp = data.get("udp", d.udp)

    for name, value in (("established", established), ("tcp_other", tcp_other), ("udp", udp)):
        if value < 0:
            raise ValueError(f"attribution weight {name} must be >= 0, got {value}")

    record_ttl_hours = data.get("record_ttl_hours", d.record_ttl_hours)
    if record_ttl_hours < 1:
        raise ValueError(f"record_ttl_hours must be >= 1, got {record_ttl_hours}")

    return AttributionConfig(
        established=established,
        tcp_other=tcp_other,
        udp=udp,
        record_ttl_hours=record_ttl_hours,
    )


def _load_storage_config(data: dict) -> StorageConfig:
    """Load storage config from TOML data."""
    d = StorageConfig()
    insert_max_attempts = data.get("insert_max_attempts", d.insert_max_attempts)
    if insert_max_attempts < 1:
        raise ValueError(f"insert_max_attempts must be >= 1, got {insert_max_attempts}")

    return StorageConfig(
        busy_timeout_ms=data.get("busy_timeout_ms", d.busy_timeout_ms),
        cache_size_kib=data.get("cache_size_kib", d.cache_size_kib),
        max_db_bytes=data.get("max_db_bytes", d.max_db_bytes),
        large_batch_threshold=data.get("large_batch_threshold", d.large_batch_threshold),
        min_free_bytes=data.get("min_free_bytes", d.min_free_bytes),
        insert_max_attempts=insert_max_attempts,
        insert_base_delay=data.get("insert_base_delay", d.insert_base_delay),
    )
