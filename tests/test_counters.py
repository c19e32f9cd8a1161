"""Tests for the psutil counter source."""

import socket
from collections import namedtuple
from unittest.mock import MagicMock, patch

import psutil
import pytest

from netledger.counters import (
    CounterSourceError,
    PsutilCounterSource,
    get_counter_source,
)

sconn = namedtuple("sconn", "fd family type laddr raddr status pid")
snetio = namedtuple(
    "snetio", "bytes_sent bytes_recv packets_sent packets_recv errin errout dropin dropout"
)


def _tcp(pid, status="ESTABLISHED"):
    return sconn(-1, socket.AF_INET, socket.SOCK_STREAM, (), (), status, pid)


def _udp(pid):
    return sconn(-1, socket.AF_INET, socket.SOCK_DGRAM, (), (), psutil.CONN_NONE, pid)


def _process_factory(
    names: dict[int, str],
    denied: frozenset[int] = frozenset(),
    gone: frozenset[int] = frozenset(),
):
    """Build a psutil.Process replacement resolving pids from `names`."""
    created: list[int] = []

    def factory(pid):
        created.append(pid)
        if pid in gone:
            raise psutil.NoSuchProcess(pid)
        proc = MagicMock()
        if pid in denied:
            proc.name.side_effect = psutil.AccessDenied(pid)
        else:
            proc.name.return_value = names[pid]
        proc.exe.return_value = f"/opt/{names.get(pid, 'x')}/bin"
        return proc

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def io_counters():
    with patch(
        "netledger.counters.psutil.net_io_counters",
        return_value=snetio(1000, 2000, 0, 0, 0, 0, 0, 0),
    ) as mock:
        yield mock


def test_sample_reads_aggregate_counters(io_counters):
    with patch("netledger.counters.psutil.net_connections", return_value=[]):
        snapshot = PsutilCounterSource().sample()
    assert snapshot.upload == 1000
    assert snapshot.download == 2000
    assert snapshot.connections == []
    assert snapshot.processes == {}


def test_sample_classifies_connections(io_counters):
    """TCP rows keep their state; UDP rows are listed after TCP rows."""
    rows = [_udp(3), _tcp(1), _tcp(2, "LISTEN")]
    factory = _process_factory({1: "curl", 2: "sshd", 3: "dnsmasq"})
    with (
        patch("netledger.counters.psutil.net_connections", return_value=rows),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        snapshot = PsutilCounterSource().sample()

    assert [(c.pid, c.protocol, c.status) for c in snapshot.connections] == [
        (1, "tcp", "ESTABLISHED"),
        (2, "tcp", "LISTEN"),
        (3, "udp", "NONE"),
    ]
    assert snapshot.processes[1].name == "curl"
    assert snapshot.processes[1].exe == "/opt/curl/bin"


def test_sample_skips_rows_without_pid(io_counters):
    rows = [_tcp(None), _tcp(0), _tcp(5)]
    factory = _process_factory({5: "curl"})
    with (
        patch("netledger.counters.psutil.net_connections", return_value=rows),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        snapshot = PsutilCounterSource().sample()
    assert [c.pid for c in snapshot.connections] == [5]


def test_unresolvable_pids_are_absent(io_counters):
    """Pids that vanished or are off limits are left out of processes."""
    rows = [_tcp(1), _tcp(2), _tcp(3)]
    factory = _process_factory({1: "curl"}, denied={2}, gone={3})
    with (
        patch("netledger.counters.psutil.net_connections", return_value=rows),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        snapshot = PsutilCounterSource().sample()
    assert set(snapshot.processes) == {1}
    assert len(snapshot.connections) == 3


def test_exe_failure_keeps_name(io_counters):
    def factory(pid):
        proc = MagicMock()
        proc.name.return_value = "kworker"
        proc.exe.side_effect = psutil.AccessDenied(pid)
        return proc

    with (
        patch("netledger.counters.psutil.net_connections", return_value=[_tcp(1)]),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        snapshot = PsutilCounterSource().sample()
    assert snapshot.processes[1].name == "kworker"
    assert snapshot.processes[1].exe is None


def test_resolution_cached_within_one_sample_only(io_counters):
    """Each pid is resolved once per sample, and again on the next sample."""
    rows = [_tcp(1), _tcp(1), _udp(1)]
    factory = _process_factory({1: "curl"})
    source = PsutilCounterSource()
    with (
        patch("netledger.counters.psutil.net_connections", return_value=rows),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        source.sample()
        assert factory.created == [1]
        source.sample()
        assert factory.created == [1, 1]


def test_os_failure_raises_counter_source_error(io_counters):
    with patch(
        "netledger.counters.psutil.net_connections",
        side_effect=OSError("netlink unavailable"),
    ):
        with pytest.raises(CounterSourceError):
            PsutilCounterSource().sample()


def _proc(pid, rows=(), error=None):
    proc = MagicMock(pid=pid)
    if error is not None:
        proc.net_connections.side_effect = error
    else:
        proc.net_connections.return_value = list(rows)
    return proc


def test_denied_system_query_falls_back_to_each_process(io_counters):
    """Without root on macOS, sockets are gathered one process at a time."""
    procs = [
        _proc(1, [_tcp(None), _udp(None)]),
        _proc(2, error=psutil.AccessDenied(2)),
        _proc(3, error=psutil.NoSuchProcess(3)),
        _proc(4, [_tcp(None, "LISTEN")]),
    ]
    factory = _process_factory({1: "curl", 4: "sshd"})
    source = PsutilCounterSource()
    with (
        patch(
            "netledger.counters.psutil.net_connections",
            side_effect=psutil.AccessDenied(),
        ) as system_wide,
        patch("netledger.counters.psutil.process_iter", return_value=procs),
        patch("netledger.counters.psutil.Process", side_effect=factory),
    ):
        snapshot = source.sample()
        source.sample()

    assert [(c.pid, c.protocol, c.status) for c in snapshot.connections] == [
        (1, "tcp", "ESTABLISHED"),
        (4, "tcp", "LISTEN"),
        (1, "udp", "NONE"),
    ]
    assert set(snapshot.processes) == {1, 4}
    assert source.per_process is True
    assert system_wide.call_count == 1


def test_get_counter_source():
    assert isinstance(get_counter_source(), PsutilCounterSource)
