"""Shared test fixtures for netledger."""

import sqlite3
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from netledger.config import Config
from netledger.counters import Connection, ProcessIdentity, SystemSnapshot
from netledger.storage import UsageRecord, init_database


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "data_dir",
        new_callable=lambda: property(lambda self: base_path)
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "db_path",
        new_callable=lambda: property(lambda self: base_path / "test.db")
    ))
    stack.enter_context(patch.object(
        Config, "pid_path",
        new_callable=lambda: property(lambda self: base_path / "daemon.pid")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch all Config path properties to use tmp_path.

    Yields the base path for tests that need to reference it directly.
    """
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path


@pytest.fixture
def fast_config(patched_config_paths: Path) -> Config:
    """Config with short intervals so engine tests run quickly."""
    config = Config()
    config.system.sample_interval = 0.01
    config.system.flush_interval = 0.05
    config.system.heartbeat_ticks = 0
    config.retention.expiry_interval = 0.05
    config.retention.sweep_interval = 0.05
    return config


def make_record(
    app_name: str = "firefox",
    process_id: int = 1234,
    upload_bytes: int = 100,
    download_bytes: int = 200,
    timestamp: int | None = None,
    expires_at: int | None = None,
    executable_path: str | None = None,
) -> UsageRecord:
    """Create a UsageRecord for testing. expires_at defaults to timestamp + 24h."""
    ts = int(time.time()) if timestamp is None else timestamp
    return UsageRecord(
        app_name=app_name,
        process_id=process_id,
        upload_bytes=upload_bytes,
        download_bytes=download_bytes,
        timestamp=ts,
        expires_at=ts + 86400 if expires_at is None else expires_at,
        executable_path=executable_path,
    )


def count_records(conn: sqlite3.Connection) -> int:
    """Number of raw usage records."""
    return conn.execute("SELECT COUNT(*) FROM usage_records").fetchone()[0]


def make_snapshot(
    upload: int,
    download: int,
    connections: list[tuple[int, str, str]] | None = None,
    names: dict[int, str] | None = None,
) -> SystemSnapshot:
    """Build a SystemSnapshot from (pid, protocol, status) tuples and pid -> name."""
    return SystemSnapshot(
        upload=upload,
        download=download,
        connections=[
            Connection(pid=pid, protocol=proto, status=status)  # type: ignore[arg-type]
            for pid, proto, status in (connections or [])
        ],
        processes={
            pid: ProcessIdentity(name=name, exe=f"/usr/bin/{name}")
            for pid, name in (names or {}).items()
        },
    )


class FakeCounterSource:
    """Scripted counter source.

    Returns the scripted snapshots in order, then keeps repeating the last
    one. An Exception in the script is raised instead of returned.
    """

    def __init__(self, script: list[SystemSnapshot | Exception]):
        self.script = list(script)
        self.calls = 0

    def sample(self) -> SystemSnapshot:
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item


class GrowingCounterSource:
    """Counter source whose totals grow by a fixed step every call."""

    def __init__(
        self,
        step_up: int = 1000,
        step_down: int = 2000,
        connections: list[tuple[int, str, str]] | None = None,
        names: dict[int, str] | None = None,
    ):
        self.step_up = step_up
        self.step_down = step_down
        self.connections = connections or [(100, "tcp", "ESTABLISHED")]
        self.names = names or {100: "firefox"}
        self.calls = 0

    def sample(self) -> SystemSnapshot:
        self.calls += 1
        return make_snapshot(
            self.calls * self.step_up,
            self.calls * self.step_down,
            self.connections,
            self.names,
        )
