"""Unit tests for the time-windowed history buffer."""

from __future__ import annotations

from ecoguard import HistoryBuffer, HistoryPoint, RiskTier


def _point(timestamp_ms: int, temperature: float = 20.0, tier: RiskTier = RiskTier.NORMAL) -> HistoryPoint:
    return HistoryPoint(
        timestamp_ms=timestamp_ms,
        temperature=temperature,
        pressure=15.0,
        inhibitor_level=300.0,
        tier=tier,
    )


def test_points_older_than_window_are_purged_on_append() -> None:
    buffer = HistoryBuffer(window_ms=300_000)
    for ts in range(0, 400_001, 1_000):
        buffer.append(_point(ts), now_ms=ts)

        retained = buffer.snapshot()
        assert all(ts - p.timestamp_ms <= 300_000 for p in retained)
        assert [p.timestamp_ms for p in retained] == sorted(p.timestamp_ms for p in retained)

    assert len(buffer) == 301
    assert buffer.snapshot()[0].timestamp_ms == 100_000


def test_point_exactly_at_window_edge_is_kept() -> None:
    buffer = HistoryBuffer(window_ms=300_000)
    buffer.append(_point(0), now_ms=0)
    buffer.append(_point(300_000), now_ms=300_000)

    assert len(buffer) == 2

    buffer.append(_point(300_001), now_ms=300_001)
    assert [p.timestamp_ms for p in buffer.snapshot()] == [300_000, 300_001]


def test_snapshot_limit_returns_most_recent_oldest_first() -> None:
    buffer = HistoryBuffer(window_ms=300_000)
    for ts in range(0, 400_001, 1_000):
        buffer.append(_point(ts), now_ms=ts)

    recent = buffer.snapshot(limit=300)
    assert len(recent) == 300
    assert recent[0].timestamp_ms == 101_000
    assert recent[-1].timestamp_ms == 400_000
    assert buffer.snapshot(limit=0) == ()


def test_out_of_order_point_is_clamped_to_keep_order() -> None:
    buffer = HistoryBuffer()
    buffer.append(_point(10_000))
    stored = buffer.append(_point(9_000, temperature=21.0))

    assert stored.timestamp_ms == 10_000
    assert stored.temperature == 21.0
    assert [p.timestamp_ms for p in buffer.snapshot()] == [10_000, 10_000]


def test_now_defaults_to_point_timestamp() -> None:
    buffer = HistoryBuffer(window_ms=5_000)
    buffer.append(_point(0))
    buffer.append(_point(6_000))

    assert [p.timestamp_ms for p in buffer.snapshot()] == [6_000]


def test_to_frame_is_indexed_by_timestamp() -> None:
    buffer = HistoryBuffer()
    buffer.append(_point(1_000, temperature=20.0))
    buffer.append(_point(2_000, temperature=36.0, tier=RiskTier.CRITICAL))

    frame = buffer.to_frame()
    assert list(frame.columns) == ["temperature", "pressure", "inhibitor_level", "tier"]
    assert len(frame) == 2
    assert frame["tier"].tolist() == ["NORMAL", "CRITICAL"]
    assert frame.index.is_monotonic_increasing


def test_empty_frame_and_clear() -> None:
    buffer = HistoryBuffer()
    assert buffer.to_frame().empty
    assert buffer.latest() is None

    buffer.append(_point(1_000))
    assert buffer.latest() is not None
    buffer.clear()
    assert len(buffer) == 0
