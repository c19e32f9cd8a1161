"""Tests for traffic attribution and the live stat store."""

import threading

import pytest

from netledger.config import AttributionConfig
from netledger.counters import Connection
from netledger.sampler import (
    AttributionSampler,
    ReadWriteLock,
    StatStore,
    apportion,
    compute_weights,
)
from tests.conftest import make_snapshot

T0 = 1_700_000_000.0

# === Weights & apportioning ===


def test_compute_weights_by_connection_kind():
    """ESTABLISHED TCP = 10, other TCP = 1, UDP = 0.5, summed per pid."""
    weights = compute_weights(
        [
            Connection(1, "tcp", "ESTABLISHED"),
            Connection(1, "tcp", "LISTEN"),
            Connection(2, "udp", "NONE"),
            Connection(2, "udp", "NONE"),
            Connection(3, "tcp", "TIME_WAIT"),
        ]
    )
    assert weights == {1: 11.0, 2: 1.0, 3: 1.0}


def test_compute_weights_preserves_first_seen_order():
    weights = compute_weights(
        [
            Connection(9, "udp", "NONE"),
            Connection(3, "tcp", "ESTABLISHED"),
            Connection(9, "tcp", "ESTABLISHED"),
        ]
    )
    assert list(weights) == [9, 3]


def test_compute_weights_uses_configured_values():
    custom = AttributionConfig(established=2.0, tcp_other=0.0, udp=1.0)
    weights = compute_weights(
        [Connection(1, "tcp", "ESTABLISHED"), Connection(2, "tcp", "LISTEN")], custom
    )
    assert weights == {1: 2.0, 2: 0.0}


def test_apportion_established_vs_udp():
    """Two established TCP sockets vs one UDP endpoint split 975 / 25."""
    shares = apportion(1000, {1: 20.0, 2: 0.5})
    assert shares == {1: 975, 2: 25}


@pytest.mark.parametrize(
    "delta, weights",
    [
        (1, {1: 1.0, 2: 1.0, 3: 1.0}),
        (999_999, {1: 10.0, 2: 0.5, 3: 1.0, 4: 7.5}),
        (7, {1: 0.5}),
        (123_456_789, {i: float(i % 3 + 1) for i in range(1, 50)}),
    ],
)
def test_apportion_sums_to_delta(delta, weights):
    """Shares always add up to the delta exactly."""
    shares = apportion(delta, weights)
    assert sum(shares.values()) == delta
    assert all(share >= 0 for share in shares.values())


def test_apportion_nothing_to_split():
    assert apportion(0, {1: 10.0}) == {}
    assert apportion(100, {}) == {}
    assert apportion(100, {1: 0.0}) == {}


# === Sampler ===


def _sampler(**kwargs) -> tuple[AttributionSampler, StatStore]:
    store = StatStore()
    return AttributionSampler(store, **kwargs), store


def test_first_sample_is_baseline_only():
    """The first snapshot establishes the baseline and attributes nothing."""
    sampler, store = _sampler()
    snap = make_snapshot(5000, 5000, [(1, "tcp", "ESTABLISHED")], {1: "curl"})
    assert sampler.apply(snap, T0) == []
    assert len(store) == 0


def test_attribution_scenario():
    """Two ESTABLISHED TCP for A plus one UDP for B with delta (1000, 2000)."""
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED"), (1, "tcp", "ESTABLISHED"), (2, "udp", "NONE")]
    names = {1: "app-a", 2: "app-b"}

    sampler.apply(make_snapshot(10_000, 20_000, conns, names), T0)
    records = sampler.apply(make_snapshot(11_000, 22_000, conns, names), T0 + 1)

    by_name = {r.app_name: r for r in records}
    assert by_name["app-a"].upload_bytes == 975
    assert by_name["app-b"].upload_bytes == 25
    assert by_name["app-a"].download_bytes == 1951
    assert by_name["app-b"].download_bytes == 49
    assert sum(r.upload_bytes for r in records) == 1000
    assert sum(r.download_bytes for r in records) == 2000

    a = store.get("app-a")
    assert a is not None
    assert a.total_upload == 975
    assert a.upload_speed == 975  # first update: elapsed treated as 1s


def test_records_carry_expiry_and_identity():
    sampler, _ = _sampler()
    conns = [(7, "tcp", "ESTABLISHED")]
    sampler.apply(make_snapshot(0, 0, conns, {7: "curl"}), T0)
    (record,) = sampler.apply(make_snapshot(100, 200, conns, {7: "curl"}), T0 + 1)

    assert record.process_id == 7
    assert record.timestamp == int(T0 + 1)
    assert record.expires_at == record.timestamp + 24 * 3600
    assert record.is_temporary is False
    assert record.executable_path == "/usr/bin/curl"


def test_speed_uses_elapsed_wall_clock():
    """Speed divides by the real time since the entry's last update."""
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    names = {1: "curl"}
    sampler.apply(make_snapshot(0, 0, conns, names), T0)
    sampler.apply(make_snapshot(1000, 0, conns, names), T0 + 1)
    sampler.apply(make_snapshot(1500, 0, conns, names), T0 + 1.25)

    usage = store.get("curl")
    assert usage is not None
    assert usage.upload_speed == 2000  # 500 bytes over 0.25s
    assert usage.total_upload == 1500


def test_totals_are_monotonic():
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    names = {1: "curl"}
    totals = []
    for i, up in enumerate([0, 100, 100, 350, 200, 900]):
        sampler.apply(make_snapshot(up, up, conns, names), T0 + i * 0.5)
        usage = store.get("curl")
        totals.append(usage.total_upload if usage else 0)
    assert totals == sorted(totals)


def test_counter_reset_clamps_to_zero():
    """A counter that goes backwards yields no traffic, not negative traffic."""
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    names = {1: "curl"}
    sampler.apply(make_snapshot(5000, 5000, conns, names), T0)
    assert sampler.apply(make_snapshot(100, 100, conns, names), T0 + 0.5) == []
    # Next delta is measured from the new, lower baseline
    (record,) = sampler.apply(make_snapshot(300, 100, conns, names), T0 + 1)
    assert record.upload_bytes == 200
    assert record.download_bytes == 0


def test_idle_entry_keeps_totals_with_zero_speed():
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    names = {1: "curl"}
    sampler.apply(make_snapshot(0, 0, conns, names), T0)
    sampler.apply(make_snapshot(100, 100, conns, names), T0 + 1)
    sampler.apply(make_snapshot(100, 100, conns, names), T0 + 2)

    usage = store.get("curl")
    assert usage is not None
    assert usage.upload_speed == 0
    assert usage.download_speed == 0
    assert usage.total_upload == 100


def test_inactive_entry_removed_after_window():
    """An entry with no traffic for more than 3s is gone on the next tick."""
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    names = {1: "curl"}
    sampler.apply(make_snapshot(0, 0, conns, names), T0)
    sampler.apply(make_snapshot(100, 100, conns, names), T0 + 1)

    sampler.apply(make_snapshot(100, 100, conns, names), T0 + 3.9)
    assert store.get("curl") is not None
    sampler.apply(make_snapshot(100, 100, conns, names), T0 + 4.1)
    assert store.get("curl") is None


def test_unresolved_pid_share_is_dropped():
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED"), (2, "tcp", "ESTABLISHED")]
    names = {1: "curl"}  # pid 2 could not be resolved
    sampler.apply(make_snapshot(0, 0, conns, names), T0)
    records = sampler.apply(make_snapshot(1000, 0, conns, names), T0 + 1)

    assert [r.app_name for r in records] == ["curl"]
    assert records[0].upload_bytes == 500
    assert len(store) == 1


def test_shares_of_same_name_are_summed():
    """Several pids with one executable name become one entry."""
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED"), (2, "tcp", "ESTABLISHED"), (3, "tcp", "ESTABLISHED")]
    names = {1: "chrome", 2: "chrome", 3: "curl"}
    sampler.apply(make_snapshot(0, 0, conns, names), T0)
    records = sampler.apply(make_snapshot(900, 0, conns, names), T0 + 1)

    by_name = {r.app_name: r for r in records}
    assert by_name["chrome"].upload_bytes == 600
    assert by_name["curl"].upload_bytes == 300
    assert by_name["chrome"].process_id == 2


def test_no_connections_attributes_nothing():
    sampler, store = _sampler()
    sampler.apply(make_snapshot(0, 0), T0)
    assert sampler.apply(make_snapshot(1000, 1000), T0 + 1) == []
    assert len(store) == 0


# === Stat store ===


def test_snapshot_returns_copies():
    sampler, store = _sampler()
    conns = [(1, "tcp", "ESTABLISHED")]
    sampler.apply(make_snapshot(0, 0, conns, {1: "curl"}), T0)
    sampler.apply(make_snapshot(100, 0, conns, {1: "curl"}), T0 + 1)

    copy = store.snapshot()
    copy["curl"].total_upload = 999_999
    del copy["curl"]

    usage = store.get("curl")
    assert usage is not None
    assert usage.total_upload == 100


def test_rwlock_allows_concurrent_readers():
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=2)

    def reader():
        with lock.read():
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=2)
    assert not inside.broken


def test_rwlock_writer_waits_for_readers():
    lock = ReadWriteLock()
    acquired = threading.Event()

    def writer():
        with lock.write():
            acquired.set()

    with lock.read():
        t = threading.Thread(target=writer)
        t.start()
        assert not acquired.wait(timeout=0.1)
    assert acquired.wait(timeout=2)
    t.join(timeout=2)
