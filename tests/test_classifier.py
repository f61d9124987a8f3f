"""Unit tests for the memoryless risk classifier."""

from __future__ import annotations

from ecoguard import ClassifierThresholds, RiskTier, SensorReading, classify, explain, tier_rank


def _reading(
    *,
    temperature: float = 20.0,
    pressure: float = 15.0,
    inhibitor: float = 300.0,
    rate: float = 0.0,
) -> SensorReading:
    return SensorReading(
        temperature=temperature,
        pressure=pressure,
        inhibitor_level=inhibitor,
        timestamp_ms=0,
        temperature_rate_of_change=rate,
    )


def test_nominal_reading_is_normal() -> None:
    assert classify(_reading(temperature=20.0, pressure=15.0, inhibitor=300.0)) == RiskTier.NORMAL


def test_warm_but_below_critical_is_warning_before_range_check() -> None:
    tier, rule, _ = explain(_reading(temperature=35.0, pressure=20.0))

    assert tier == RiskTier.WARNING
    assert rule == 3


def test_temperature_above_critical_limit() -> None:
    tier, rule, _ = explain(_reading(temperature=36.0))

    assert tier == RiskTier.CRITICAL
    assert rule == 2


def test_pressure_above_critical_limit() -> None:
    assert classify(_reading(pressure=55.5)) == RiskTier.CRITICAL


def test_rate_of_change_overrides_otherwise_normal_reading() -> None:
    tier, rule, reason = explain(_reading(temperature=20.0, rate=6.0))

    assert tier == RiskTier.CRITICAL
    assert rule == 1
    assert "6.00" in reason


def test_rate_exactly_at_limit_does_not_trip() -> None:
    assert classify(_reading(rate=5.0)) == RiskTier.NORMAL


def test_low_inhibitor_is_warning() -> None:
    tier, rule, _ = explain(_reading(inhibitor=49.0))

    assert tier == RiskTier.WARNING
    assert rule == 3


def test_low_pressure_falls_back_to_warning() -> None:
    tier, rule, _ = explain(_reading(pressure=1.0))

    assert tier == RiskTier.WARNING
    assert rule == 5


def test_inhibitor_between_alert_and_operating_range_falls_back_to_warning() -> None:
    tier, rule, _ = explain(_reading(inhibitor=80.0))

    assert tier == RiskTier.WARNING
    assert rule == 5


def test_cold_reading_falls_back_to_warning() -> None:
    assert classify(_reading(temperature=14.0)) == RiskTier.WARNING


def test_boundaries_of_operating_envelope_are_normal() -> None:
    assert classify(_reading(temperature=15.0, pressure=2.0, inhibitor=100.0)) == RiskTier.NORMAL
    assert classify(_reading(temperature=25.0, pressure=25.0, inhibitor=500.0)) == RiskTier.NORMAL


def test_classify_is_pure() -> None:
    readings = [
        _reading(),
        _reading(temperature=30.0),
        _reading(pressure=58.0),
        _reading(rate=12.0),
        _reading(pressure=1.5),
    ]
    first = [classify(r) for r in readings]
    for _ in range(5):
        assert [classify(r) for r in readings] == first


def test_custom_thresholds_are_respected() -> None:
    strict = ClassifierThresholds(temperature_critical_c=30.0)

    assert classify(_reading(temperature=31.0), strict) == RiskTier.CRITICAL
    assert classify(_reading(temperature=31.0)) == RiskTier.WARNING


def test_tier_rank_orders_severity() -> None:
    assert tier_rank(RiskTier.NORMAL) < tier_rank(RiskTier.WARNING) < tier_rank(RiskTier.CRITICAL)
