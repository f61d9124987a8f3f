"""
EcoGuard – Safety State & Audit Engine (deterministic, auditable, human-gated)

Run the console with:
  streamlit run app.py

The engine:
1) Classifies live sensor readings into NORMAL / WARNING / CRITICAL tiers.
2) Simulates two historical disaster patterns for operator training:
   pressure runaway (Bhopal E610) and inhibitor depletion (Vizag M6).
3) Keeps a rolling 5-minute history for trend charts and rate-of-change.
4) Writes every tier transition and human authorization to a hash-chained
   compliance ledger that can be re-verified at any time.
5) Accumulates the environmental damage prevented (EDP) by authorized
   interventions and incident resolutions.

EcoGuard never actuates; it only observes, classifies, and records.
Humans remain the final authority.
"""
from __future__ import annotations

import hashlib
import itertools
import json
import logging
import math
import queue
import random
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)


# ============================================================================
# Utilities: hashing, time, deterministic RNG
# ============================================================================

def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_json(obj: Any) -> str:
    return sha256_bytes(json.dumps(obj, sort_keys=True, ensure_ascii=False).encode("utf-8"))


def iso_from_ms(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def tick_rng(seed: int, tick: int, salt: int = 0) -> random.Random:
    """
    Deterministic per-tick RNG derived from (seed, tick, salt).
    Keeps all sensor noise local and replayable given the same seed + tick.
    """
    mixed = (seed ^ (tick * 0x9E3779B9) ^ (salt * 0x85EBCA6B)) & 0xFFFFFFFF
    return random.Random(mixed)


class SystemClock:
    """Wall clock in integer milliseconds."""

    def __call__(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to (tests, step-driven consoles)."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return self._now_ms

    def advance(self, delta_ms: int) -> int:
        with self._lock:
            self._now_ms += int(delta_ms)
            return self._now_ms

    def set(self, now_ms: int) -> None:
        with self._lock:
            self._now_ms = int(now_ms)


Clock = Callable[[], int]


# ============================================================================
# Domain values: tiers, scenarios, readings
# ============================================================================

class RiskTier(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


TIER_RANK: Dict[RiskTier, int] = {RiskTier.NORMAL: 0, RiskTier.WARNING: 1, RiskTier.CRITICAL: 2}


def tier_rank(tier: RiskTier) -> int:
    return TIER_RANK[tier]


class ScenarioKind(str, Enum):
    NONE = "none"
    DISASTER_A = "pressure-runaway"
    DISASTER_B = "inhibitor-depletion"

    @property
    def label(self) -> str:
        return SCENARIO_INFO[self]["label"]

    @property
    def description(self) -> str:
        return SCENARIO_INFO[self]["description"]


SCENARIO_INFO: Dict[ScenarioKind, Dict[str, str]] = {
    ScenarioKind.NONE: {
        "label": "Normal Operations",
        "description": "Steady state operations with normal sensor readings",
    },
    ScenarioKind.DISASTER_A: {
        "label": "Bhopal E610 Scenario",
        "description": "Thermal runaway with pressure buildup in tank E610 (Bhopal incident pattern)",
    },
    ScenarioKind.DISASTER_B: {
        "label": "Vizag M6 Scenario",
        "description": "TBC inhibitor depletion with temperature rise in tank M6 (Vizag incident pattern)",
    },
}

_SCENARIO_BY_VALUE: Dict[str, ScenarioKind] = {k.value: k for k in ScenarioKind}


def scenario_kind_from_name(name: str) -> Optional[ScenarioKind]:
    """Accepts a scenario value ("pressure-runaway") or member name ("DISASTER_A")."""
    text = str(name)
    kind = _SCENARIO_BY_VALUE.get(text)
    if kind is None:
        kind = ScenarioKind.__members__.get(text.upper())
    return kind


@dataclass(frozen=True)
class ChannelValues:
    temperature: float
    pressure: float
    inhibitor_level: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "temperature": self.temperature,
            "pressure": self.pressure,
            "inhibitor_level": self.inhibitor_level,
        }


@dataclass(frozen=True)
class SensorReading:
    temperature: float           # °C
    pressure: float              # psi
    inhibitor_level: float       # ppm
    timestamp_ms: int
    temperature_rate_of_change: float = 0.0  # °C/min

    def channels(self) -> ChannelValues:
        return ChannelValues(self.temperature, self.pressure, self.inhibitor_level)


@dataclass(frozen=True)
class ScenarioRun:
    kind: ScenarioKind = ScenarioKind.NONE
    started_at_ms: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.started_at_ms is not None and self.kind != ScenarioKind.NONE

    def raw_elapsed_s(self, now_ms: int) -> float:
        if self.started_at_ms is None:
            return 0.0
        return (now_ms - self.started_at_ms) / 1000.0

    def elapsed_s(self, now_ms: int) -> float:
        return max(0.0, self.raw_elapsed_s(now_ms))


# ============================================================================
# Configuration – JSON document -> frozen dataclasses
# ============================================================================

@dataclass(frozen=True)
class ClassifierThresholds:
    rate_critical_c_per_min: float = 5.0
    temperature_critical_c: float = 35.0
    pressure_critical_psi: float = 55.0
    temperature_warning_c: float = 25.0
    inhibitor_warning_ppm: float = 50.0
    normal_temperature_c: Tuple[float, float] = (15.0, 25.0)
    normal_pressure_psi: Tuple[float, float] = (2.0, 25.0)
    normal_inhibitor_ppm: Tuple[float, float] = (100.0, 500.0)


@dataclass(frozen=True)
class SensorBounds:
    temperature_general_c: Tuple[float, float] = (10.0, 40.0)
    temperature_scenario_c: Tuple[float, float] = (0.0, 120.0)
    pressure_psi: Tuple[float, float] = (1.0, 60.0)
    inhibitor_ppm: Tuple[float, float] = (0.0, 600.0)


@dataclass(frozen=True)
class PressureRunawayParams:
    t0_c: float = 25.0
    tmax_c: float = 120.0
    tau_s: float = 15.0
    p0_psi: float = 15.0
    p_rate_psi_per_s: float = 0.3
    p_max_psi: float = 60.0
    inhibitor_hold_ppm: float = 200.0


@dataclass(frozen=True)
class InhibitorDepletionParams:
    i0_ppm: float = 200.0
    k_per_s: float = 0.02
    t0_c: float = 25.0
    t_rate_c_per_s: float = 0.1
    t_max_c: float = 40.0
    pressure_hold_psi: float = 15.0


@dataclass(frozen=True)
class SteadyStateParams:
    temperature_c: float = 20.0
    pressure_psi: float = 15.0
    inhibitor_ppm: float = 300.0
    temperature_variance: float = 0.1
    pressure_variance: float = 2.0
    inhibitor_variance: float = 20.0


@dataclass(frozen=True)
class RandomWalkParams:
    temperature_span_c: float = 0.08
    pressure_span_psi: float = 3.0
    inhibitor_span_ppm: float = 5.0
    inhibitor_bias: float = 0.52  # > 0.5 drifts the inhibitor slowly downwards
    reversion: float = 0.05  # fraction of the gap to the operating point closed per tick
    temperature_max_rise_c: float = 0.03  # per tick; keeps recovery warming under the rate limit


@dataclass(frozen=True)
class TimingConfig:
    tick_interval_ms: int = 1000
    steady_state_interval_ms: int = 2000
    scenario_clock_interval_ms: int = 1000
    steady_state_only: bool = False

    @property
    def sensor_interval_ms(self) -> int:
        return self.steady_state_interval_ms if self.steady_state_only else self.tick_interval_ms


@dataclass(frozen=True)
class ImpactConfig:
    baseline_musd: float
    resolution_credit_musd: float
    edp_table_musd: Dict[str, float]


@dataclass(frozen=True)
class EngineConfig:
    id: str
    thresholds: ClassifierThresholds
    bounds: SensorBounds
    pressure_runaway: PressureRunawayParams
    inhibitor_depletion: InhibitorDepletionParams
    steady_state: SteadyStateParams
    random_walk: RandomWalkParams
    baseline: ChannelValues
    timing: TimingConfig
    history_window_ms: int
    history_display_limit: int
    ledger_cap: int
    impact: ImpactConfig
    seed: int
    source_hash: str


DEFAULT_CONFIG_JSON = json.dumps(
    {
        "id": "ecoguard_default_v1",
        "thresholds": {
            "rate_critical_c_per_min": 5.0,
            "temperature_critical_c": 35.0,
            "pressure_critical_psi": 55.0,
            "temperature_warning_c": 25.0,
            "inhibitor_warning_ppm": 50.0,
            "normal_temperature_c": [15.0, 25.0],
            "normal_pressure_psi": [2.0, 25.0],
            "normal_inhibitor_ppm": [100.0, 500.0],
        },
        "bounds": {
            "temperature_general_c": [10.0, 40.0],
            "temperature_scenario_c": [0.0, 120.0],
            "pressure_psi": [1.0, 60.0],
            "inhibitor_ppm": [0.0, 600.0],
        },
        "pressure_runaway": {
            "t0_c": 25.0,
            "tmax_c": 120.0,
            "tau_s": 15.0,
            "p0_psi": 15.0,
            "p_rate_psi_per_s": 0.3,
            "p_max_psi": 60.0,
            "inhibitor_hold_ppm": 200.0,
        },
        "inhibitor_depletion": {
            "i0_ppm": 200.0,
            "k_per_s": 0.02,
            "t0_c": 25.0,
            "t_rate_c_per_s": 0.1,
            "t_max_c": 40.0,
            "pressure_hold_psi": 15.0,
        },
        "steady_state": {
            "temperature_c": 20.0,
            "pressure_psi": 15.0,
            "inhibitor_ppm": 300.0,
            "temperature_variance": 0.1,
            "pressure_variance": 2.0,
            "inhibitor_variance": 20.0,
        },
        "random_walk": {
            "temperature_span_c": 0.08,
            "pressure_span_psi": 3.0,
            "inhibitor_span_ppm": 5.0,
            "inhibitor_bias": 0.52,
            "reversion": 0.05,
            "temperature_max_rise_c": 0.03,
        },
        "baseline": {"temperature": 25.0, "pressure": 15.0, "inhibitor_level": 200.0},
        "timing": {
            "tick_interval_ms": 1000,
            "steady_state_interval_ms": 2000,
            "scenario_clock_interval_ms": 1000,
            "steady_state_only": False,
        },
        "history": {"window_ms": 300_000, "display_limit": 300},
        "ledger": {"cap": 100},
        "impact": {
            "baseline_musd": 0.0,
            "resolution_credit_musd": 12.16,
            "edp_table_musd": {
                "pressure-runaway": 45.2,
                "inhibitor-depletion": 12.16,
                "thermal-runaway": 28.9,
                "default": 15.0,
            },
        },
        "seed": 610,
    },
    sort_keys=True,
)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _pair(value: Any, name: str) -> Tuple[float, float]:
    lo, hi = (float(v) for v in value)
    if lo > hi:
        raise ValueError(f"{name} range is inverted: [{lo}, {hi}]")
    return lo, hi


def build_config_from_dict(cfg: Dict[str, Any]) -> EngineConfig:
    required_top = {"id", "thresholds", "bounds", "timing", "ledger", "impact"}
    missing = required_top - set(cfg.keys())
    if missing:
        raise ValueError(f"Config missing required fields: {sorted(missing)}")

    merged = _deep_merge(json.loads(DEFAULT_CONFIG_JSON), cfg)

    thresholds = ClassifierThresholds(
        **{
            k: _pair(v, k) if k.startswith("normal_") else float(v)
            for k, v in merged["thresholds"].items()
        }
    )
    bounds = SensorBounds(**{k: _pair(v, k) for k, v in merged["bounds"].items()})
    pressure_runaway = PressureRunawayParams(**{k: float(v) for k, v in merged["pressure_runaway"].items()})
    inhibitor_depletion = InhibitorDepletionParams(**{k: float(v) for k, v in merged["inhibitor_depletion"].items()})
    steady_state = SteadyStateParams(**{k: float(v) for k, v in merged["steady_state"].items()})
    random_walk = RandomWalkParams(**{k: float(v) for k, v in merged["random_walk"].items()})
    baseline = ChannelValues(**{k: float(v) for k, v in merged["baseline"].items()})

    timing_raw = merged["timing"]
    timing = TimingConfig(
        tick_interval_ms=int(timing_raw["tick_interval_ms"]),
        steady_state_interval_ms=int(timing_raw["steady_state_interval_ms"]),
        scenario_clock_interval_ms=int(timing_raw["scenario_clock_interval_ms"]),
        steady_state_only=bool(timing_raw["steady_state_only"]),
    )
    if min(timing.tick_interval_ms, timing.steady_state_interval_ms, timing.scenario_clock_interval_ms) <= 0:
        raise ValueError("timer intervals must be > 0 ms")

    history_window_ms = int(merged["history"]["window_ms"])
    history_display_limit = int(merged["history"]["display_limit"])
    if history_window_ms <= 0 or history_display_limit <= 0:
        raise ValueError("history window and display limit must be > 0")

    ledger_cap = int(merged["ledger"]["cap"])
    if ledger_cap < 1:
        raise ValueError("ledger cap must be >= 1")

    if not 0.0 <= random_walk.reversion <= 1.0:
        raise ValueError("random_walk.reversion must be within [0, 1]")

    if pressure_runaway.tau_s <= 0:
        raise ValueError("pressure_runaway.tau_s must be > 0")

    impact_raw = merged["impact"]
    edp_table = {normalize_incident_tag(k): float(v) for k, v in impact_raw["edp_table_musd"].items()}
    if "default" not in edp_table:
        raise ValueError("impact.edp_table_musd must define a 'default' value")
    if any(v < 0 for v in edp_table.values()):
        raise ValueError("impact.edp_table_musd values must be >= 0")
    impact = ImpactConfig(
        baseline_musd=float(impact_raw["baseline_musd"]),
        resolution_credit_musd=float(impact_raw["resolution_credit_musd"]),
        edp_table_musd=edp_table,
    )
    if impact.resolution_credit_musd < 0:
        raise ValueError("impact.resolution_credit_musd must be >= 0")

    return EngineConfig(
        id=str(merged.get("id", "config_unnamed")),
        thresholds=thresholds,
        bounds=bounds,
        pressure_runaway=pressure_runaway,
        inhibitor_depletion=inhibitor_depletion,
        steady_state=steady_state,
        random_walk=random_walk,
        baseline=baseline,
        timing=timing,
        history_window_ms=history_window_ms,
        history_display_limit=history_display_limit,
        ledger_cap=ledger_cap,
        impact=impact,
        seed=int(merged["seed"]),
        source_hash=sha256_json(merged),
    )


@lru_cache(maxsize=1)
def load_default_config() -> EngineConfig:
    return build_config_from_dict(json.loads(DEFAULT_CONFIG_JSON))


def load_config(path: Union[str, Path]) -> EngineConfig:
    """Load a JSON config file; sections it omits fall back to the defaults."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return build_config_from_dict(_deep_merge(json.loads(DEFAULT_CONFIG_JSON), raw))


# ============================================================================
# Scenario model – time-parameterized disaster trajectories
# ============================================================================

def trajectory(
    kind: ScenarioKind,
    elapsed_s: float,
    rng: Optional[random.Random] = None,
    config: Optional[EngineConfig] = None,
) -> ChannelValues:
    """
    Sensor values for a scenario at a given elapsed time.

    - DISASTER_A: T(t) = T0 + (Tmax - T0)(1 - e^(-t/tau)), P(t) = min(P0 + rate*t, Pmax)
    - DISASTER_B: I(t) = I0 * e^(-k t), T(t) = min(T0 + rate*t, Tmax)
    - NONE: fixed operating point plus uniform jitter (only when an rng is given)
    """
    cfg = config or load_default_config()
    t = max(0.0, float(elapsed_s))

    if kind == ScenarioKind.DISASTER_A:
        p = cfg.pressure_runaway
        temperature = p.t0_c + (p.tmax_c - p.t0_c) * (1.0 - math.exp(-t / p.tau_s))
        return ChannelValues(
            temperature=min(temperature, p.tmax_c),
            pressure=min(p.p0_psi + p.p_rate_psi_per_s * t, p.p_max_psi),
            inhibitor_level=p.inhibitor_hold_ppm,
        )

    if kind == ScenarioKind.DISASTER_B:
        p = cfg.inhibitor_depletion
        return ChannelValues(
            temperature=min(p.t0_c + p.t_rate_c_per_s * t, p.t_max_c),
            pressure=p.pressure_hold_psi,
            inhibitor_level=max(p.i0_ppm * math.exp(-p.k_per_s * t), 0.0),
        )

    s = cfg.steady_state

    def jitter(variance: float) -> float:
        if rng is None:
            return 0.0
        return rng.uniform(-variance / 2.0, variance / 2.0)

    return ChannelValues(
        temperature=s.temperature_c + jitter(s.temperature_variance),
        pressure=s.pressure_psi + jitter(s.pressure_variance),
        inhibitor_level=s.inhibitor_ppm + jitter(s.inhibitor_variance),
    )


def _clamp_channel(value: float, bounds: Tuple[float, float], fail_high: bool) -> float:
    lo, hi = bounds
    if math.isnan(value):
        # Unknown value reads as the dangerous end of the range.
        return hi if fail_high else lo
    return clamp(value, lo, hi)


def clamp_channels(
    values: ChannelValues,
    bounds: SensorBounds,
    scenario_mode: bool = False,
) -> Tuple[ChannelValues, bool]:
    """Clamp to physical sensor bounds. Returns (clamped, whether anything changed)."""
    temperature_bounds = bounds.temperature_scenario_c if scenario_mode else bounds.temperature_general_c
    clamped = ChannelValues(
        temperature=_clamp_channel(values.temperature, temperature_bounds, fail_high=True),
        pressure=_clamp_channel(values.pressure, bounds.pressure_psi, fail_high=True),
        inhibitor_level=_clamp_channel(values.inhibitor_level, bounds.inhibitor_ppm, fail_high=False),
    )
    return clamped, clamped != values


# ============================================================================
# Sensor stream – one reading per tick + temperature rate of change
# ============================================================================

class SensorStream:
    """
    Produces SensorReadings from the scenario model (active run), from a bounded
    random walk around the previous reading (generic mode) or from baseline noise
    (steady-state-only mode). Keeps the previous sample for dT/dt.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self._tick = 0
        self._previous: Optional[SensorReading] = None

    @property
    def previous(self) -> Optional[SensorReading]:
        return self._previous

    def sample(self, run: ScenarioRun, now_ms: int) -> SensorReading:
        self._tick += 1
        if run.active:
            raw = trajectory(run.kind, run.elapsed_s(now_ms), config=self.config)
            values, _ = clamp_channels(raw, self.config.bounds, scenario_mode=True)
        elif self.config.timing.steady_state_only:
            rng = tick_rng(self.config.seed, self._tick, salt=4)
            raw = trajectory(ScenarioKind.NONE, 0.0, rng=rng, config=self.config)
            values, _ = clamp_channels(raw, self.config.bounds)
        else:
            values, _ = clamp_channels(self._random_walk(), self.config.bounds)
        return self.observe(values, now_ms)

    def _random_walk(self) -> ChannelValues:
        """
        One step of a noisy walk pulled back towards the steady-state operating
        point, so a plant left hot by a stopped scenario cools back down.
        """
        rng = tick_rng(self.config.seed, self._tick, salt=3)
        w = self.config.random_walk
        s = self.config.steady_state
        prev = self._previous.channels() if self._previous is not None else self.config.baseline

        warm = min(w.reversion * (s.temperature_c - prev.temperature), w.temperature_max_rise_c)
        return ChannelValues(
            temperature=prev.temperature + warm + (rng.random() - 0.5) * w.temperature_span_c,
            pressure=prev.pressure
            + w.reversion * (s.pressure_psi - prev.pressure)
            + (rng.random() - 0.5) * w.pressure_span_psi,
            inhibitor_level=prev.inhibitor_level
            + w.reversion * (s.inhibitor_ppm - prev.inhibitor_level)
            + (rng.random() - w.inhibitor_bias) * w.inhibitor_span_ppm,
        )

    def observe(self, values: ChannelValues, now_ms: int) -> SensorReading:
        rate = 0.0
        if self._previous is not None:
            dt_min = (now_ms - self._previous.timestamp_ms) / 60_000.0
            if dt_min > 0:
                rate = (values.temperature - self._previous.temperature) / dt_min
        reading = SensorReading(
            temperature=values.temperature,
            pressure=values.pressure,
            inhibitor_level=values.inhibitor_level,
            timestamp_ms=now_ms,
            temperature_rate_of_change=rate,
        )
        self._previous = reading
        return reading

    def rebase(self, reading: SensorReading) -> None:
        self._previous = reading

    def reset(self) -> None:
        self._tick = 0
        self._previous = None


# ============================================================================
# Risk classifier – memoryless, first matching rule wins
# ============================================================================

DEFAULT_THRESHOLDS = ClassifierThresholds()


def explain(reading: SensorReading, thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS) -> Tuple[RiskTier, int, str]:
    """Returns (tier, rule number, reason) for the first rule that matches."""
    th = thresholds
    if reading.temperature_rate_of_change > th.rate_critical_c_per_min:
        return RiskTier.CRITICAL, 1, f"temperature rising {reading.temperature_rate_of_change:.2f} °C/min"
    if reading.temperature > th.temperature_critical_c or reading.pressure > th.pressure_critical_psi:
        return RiskTier.CRITICAL, 2, "temperature or pressure above critical limit"
    if reading.temperature > th.temperature_warning_c or reading.inhibitor_level < th.inhibitor_warning_ppm:
        return RiskTier.WARNING, 3, "temperature above warning limit or inhibitor low"

    t_lo, t_hi = th.normal_temperature_c
    p_lo, p_hi = th.normal_pressure_psi
    i_lo, i_hi = th.normal_inhibitor_ppm
    if (
        t_lo <= reading.temperature <= t_hi
        and p_lo <= reading.pressure <= p_hi
        and i_lo <= reading.inhibitor_level <= i_hi
    ):
        return RiskTier.NORMAL, 4, "all channels inside operating envelope"

    return RiskTier.WARNING, 5, "outside operating envelope"


def classify(reading: SensorReading, thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS) -> RiskTier:
    return explain(reading, thresholds)[0]


# ============================================================================
# History buffer – time-windowed, oldest first
# ============================================================================

@dataclass(frozen=True)
class HistoryPoint:
    timestamp_ms: int
    temperature: float
    pressure: float
    inhibitor_level: float
    tier: RiskTier


class HistoryBuffer:
    def __init__(self, window_ms: int = 300_000) -> None:
        self.window_ms = window_ms
        self._points: Deque[HistoryPoint] = deque()

    def append(self, point: HistoryPoint, now_ms: Optional[int] = None) -> HistoryPoint:
        if self._points and point.timestamp_ms < self._points[-1].timestamp_ms:
            logger.warning(
                "history point at %s is older than last retained point %s; clamping",
                point.timestamp_ms,
                self._points[-1].timestamp_ms,
            )
            point = replace(point, timestamp_ms=self._points[-1].timestamp_ms)
        self._points.append(point)

        now = point.timestamp_ms if now_ms is None else now_ms
        while self._points and now - self._points[0].timestamp_ms > self.window_ms:
            self._points.popleft()
        return point

    def snapshot(self, limit: Optional[int] = None) -> Tuple[HistoryPoint, ...]:
        points = tuple(self._points)
        if limit is not None:
            points = points[-limit:] if limit > 0 else ()
        return points

    def latest(self) -> Optional[HistoryPoint]:
        return self._points[-1] if self._points else None

    def clear(self) -> None:
        self._points.clear()

    def __len__(self) -> int:
        return len(self._points)

    def to_frame(self, limit: Optional[int] = None) -> pd.DataFrame:
        rows = [
            {
                "timestamp": pd.to_datetime(p.timestamp_ms, unit="ms", utc=True),
                "temperature": p.temperature,
                "pressure": p.pressure,
                "inhibitor_level": p.inhibitor_level,
                "tier": p.tier.value,
            }
            for p in self.snapshot(limit)
        ]
        if not rows:
            return pd.DataFrame(columns=["temperature", "pressure", "inhibitor_level", "tier"])
        return pd.DataFrame(rows).set_index("timestamp")


# ============================================================================
# Compliance ledger – tamper-evident hash chain with checkpointed eviction
# ============================================================================

class LedgerEntryKind(str, Enum):
    STATE_CHANGE = "state_change"
    AUTHORIZATION = "authorization"


GENESIS_HASH: str = sha256_json({"genesis": "ecoguard-compliance-ledger-v1"})


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    seq: int
    timestamp: str
    timestamp_ms: int
    kind: LedgerEntryKind
    previous_tier: Optional[RiskTier]
    new_tier: RiskTier
    sensor_snapshot: Dict[str, float]
    previous_hash: str
    integrity_hash: str
    authorized_action: Optional[str] = None


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    checked: int
    first_bad_index: Optional[int] = None
    first_bad_id: Optional[str] = None

    @property
    def message(self) -> str:
        if self.ok:
            return f"integrity check passed ({self.checked} entries)"
        return f"integrity check failed at entry {self.first_bad_index} ({self.first_bad_id})"


def _hash_body(entry: LedgerEntry, previous_hash: str) -> Dict[str, Any]:
    return {
        "previous_hash": previous_hash,
        "id": entry.id,
        "seq": entry.seq,
        "timestamp": entry.timestamp,
        "timestamp_ms": entry.timestamp_ms,
        "kind": entry.kind.value,
        "previous_tier": entry.previous_tier.value if entry.previous_tier is not None else None,
        "new_tier": entry.new_tier.value,
        "sensor_snapshot": entry.sensor_snapshot,
        "authorized_action": entry.authorized_action,
    }


def compute_integrity_hash(entry: LedgerEntry, previous_hash: str) -> str:
    body = _hash_body(entry, previous_hash)
    return sha256_bytes((json.dumps(body, sort_keys=True) + previous_hash).encode("utf-8"))


def _entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    d = asdict(entry)
    d["kind"] = entry.kind.value
    d["previous_tier"] = entry.previous_tier.value if entry.previous_tier is not None else None
    d["new_tier"] = entry.new_tier.value
    return d


def _entry_from_dict(d: Dict[str, Any]) -> LedgerEntry:
    prev_tier = d.get("previous_tier")
    return LedgerEntry(
        id=str(d["id"]),
        seq=int(d["seq"]),
        timestamp=str(d["timestamp"]),
        timestamp_ms=int(d["timestamp_ms"]),
        kind=LedgerEntryKind(d["kind"]),
        previous_tier=RiskTier(prev_tier) if prev_tier is not None else None,
        new_tier=RiskTier(d["new_tier"]),
        sensor_snapshot={k: float(v) for k, v in dict(d["sensor_snapshot"]).items()},
        previous_hash=str(d["previous_hash"]),
        integrity_hash=str(d["integrity_hash"]),
        authorized_action=d.get("authorized_action"),
    )


class ComplianceLedger:
    """
    Append-only, hash-chained log of tier transitions and human authorizations.

    - Each entry hashes its own fields plus the previous entry's hash
    - First entry chains from GENESIS_HASH
    - When the cap is exceeded the oldest entry is evicted and its hash becomes
      the anchor, so every retained entry stays verifiable
    """

    def __init__(self, cap: int = 100) -> None:
        self.cap = cap
        self.anchor_hash: str = GENESIS_HASH
        self.evicted_count: int = 0
        self._entries: List[LedgerEntry] = []
        self._seq: int = 0

    @property
    def last_hash(self) -> str:
        return self._entries[-1].integrity_hash if self._entries else self.anchor_hash

    def record_transition(
        self,
        previous_tier: Optional[RiskTier],
        new_tier: RiskTier,
        snapshot: ChannelValues,
        now_ms: int,
    ) -> LedgerEntry:
        return self._append("log", LedgerEntryKind.STATE_CHANGE, previous_tier, new_tier, snapshot, now_ms, None)

    def record_authorization(
        self,
        action_name: str,
        tier: RiskTier,
        snapshot: ChannelValues,
        now_ms: int,
    ) -> LedgerEntry:
        return self._append("auth", LedgerEntryKind.AUTHORIZATION, tier, tier, snapshot, now_ms, action_name)

    def _append(
        self,
        prefix: str,
        kind: LedgerEntryKind,
        previous_tier: Optional[RiskTier],
        new_tier: RiskTier,
        snapshot: ChannelValues,
        now_ms: int,
        action: Optional[str],
    ) -> LedgerEntry:
        self._seq += 1
        prev_hash = self.last_hash
        entry = LedgerEntry(
            id=f"{prefix}-{self._seq:06d}",
            seq=self._seq,
            timestamp=iso_from_ms(now_ms),
            timestamp_ms=now_ms,
            kind=kind,
            previous_tier=previous_tier,
            new_tier=new_tier,
            sensor_snapshot=snapshot.as_dict(),
            previous_hash=prev_hash,
            integrity_hash="",
            authorized_action=action,
        )
        entry = replace(entry, integrity_hash=compute_integrity_hash(entry, prev_hash))
        self._entries.append(entry)
        self._evict()
        return entry

    def _evict(self) -> None:
        while len(self._entries) > self.cap:
            oldest = self._entries.pop(0)
            self.anchor_hash = oldest.integrity_hash
            self.evicted_count += 1

    def recompute_hashes(self) -> List[str]:
        """Hash chain recomputed forward from the anchor using only entry fields."""
        hashes: List[str] = []
        prev = self.anchor_hash
        for e in self._entries:
            prev = compute_integrity_hash(e, prev)
            hashes.append(prev)
        return hashes

    def verify(self) -> ChainVerification:
        prev = self.anchor_hash
        for idx, e in enumerate(self._entries):
            expected_hash = compute_integrity_hash(e, prev)
            if e.previous_hash != prev or e.integrity_hash != expected_hash:
                logger.error("compliance ledger integrity check failed at entry %s (%s)", idx, e.id)
                return ChainVerification(ok=False, checked=idx + 1, first_bad_index=idx, first_bad_id=e.id)
            prev = e.integrity_hash
        return ChainVerification(ok=True, checked=len(self._entries))

    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def snapshot(self) -> Tuple[LedgerEntry, ...]:
        """Newest first, for display."""
        return tuple(reversed(self._entries))

    def tail(self, n: int = 20) -> List[LedgerEntry]:
        return self._entries[-n:]

    def __len__(self) -> int:
        return len(self._entries)

    def to_json(self) -> str:
        return json.dumps(
            {
                "anchor_hash": self.anchor_hash,
                "evicted_count": self.evicted_count,
                "seq": self._seq,
                "entries": [_entry_to_dict(e) for e in self._entries],
            },
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
        )

    def load_from_json(self, raw: str) -> None:
        """
        Replace the ledger with an exported chain. Order, anchor and hash fields
        are taken verbatim; call verify() to check what was loaded.
        """
        data = json.loads(raw)
        self._entries = [_entry_from_dict(e) for e in data.get("entries", [])]
        self.anchor_hash = str(data.get("anchor_hash", GENESIS_HASH))
        self.evicted_count = int(data.get("evicted_count", 0))
        last_seq = self._entries[-1].seq if self._entries else 0
        self._seq = max(int(data.get("seq", last_seq)), last_seq)
        logger.info("loaded %d ledger entries (anchor %s...)", len(self._entries), self.anchor_hash[:12])

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "id": e.id,
                "timestamp": e.timestamp,
                "kind": e.kind.value,
                "previous_tier": e.previous_tier.value if e.previous_tier is not None else "INIT",
                "new_tier": e.new_tier.value,
                "temperature": e.sensor_snapshot["temperature"],
                "pressure": e.sensor_snapshot["pressure"],
                "inhibitor_level": e.sensor_snapshot["inhibitor_level"],
                "authorized_action": e.authorized_action or "",
                "hash": e.integrity_hash[:12] + "...",
            }
            for e in self.snapshot()
        ]
        return pd.DataFrame(rows)


# ============================================================================
# Impact accumulator – environmental damage prevented (EDP), millions USD
# ============================================================================

INCIDENT_ALIASES: Dict[str, str] = {
    "bhopal": "pressure-runaway",
    "vizag": "inhibitor-depletion",
    "thermal": "thermal-runaway",
}


def normalize_incident_tag(tag: Optional[str]) -> str:
    norm = (tag or "default").strip().lower().replace("_", "-").replace(" ", "-") or "default"
    return INCIDENT_ALIASES.get(norm, norm)


@dataclass(frozen=True)
class AuthorizedAction:
    id: str
    action_name: str
    timestamp: str
    timestamp_ms: int
    prevented_incident_tag: str
    damage_value_musd: float


@dataclass(frozen=True)
class ResolutionLogEntry:
    id: str
    timestamp: str
    timestamp_ms: int
    message: str
    damage_value_musd: float


class ImpactAccumulator:
    def __init__(self, impact: ImpactConfig) -> None:
        self.impact = impact
        self._total: float = impact.baseline_musd
        self._increments: List[float] = []
        self._actions: List[AuthorizedAction] = []
        self._resolutions: List[ResolutionLogEntry] = []
        self._ids = itertools.count(1)

    @property
    def total_musd(self) -> float:
        return self._total

    def damage_value_for(self, incident_tag: Optional[str]) -> float:
        table = self.impact.edp_table_musd
        return table.get(normalize_incident_tag(incident_tag), table["default"])

    def _increment(self, amount: float) -> None:
        self._increments.append(amount)
        self._total += amount

    def apply_authorization(self, action_name: str, incident_tag: Optional[str], now_ms: int) -> AuthorizedAction:
        value = self.damage_value_for(incident_tag)
        action = AuthorizedAction(
            id=f"action-{next(self._ids):06d}",
            action_name=action_name,
            timestamp=iso_from_ms(now_ms),
            timestamp_ms=now_ms,
            prevented_incident_tag=normalize_incident_tag(incident_tag),
            damage_value_musd=value,
        )
        self._actions.append(action)
        self._increment(value)
        return action

    def apply_resolution(self, now_ms: int) -> ResolutionLogEntry:
        credit = self.impact.resolution_credit_musd
        ts = iso_from_ms(now_ms)
        entry = ResolutionLogEntry(
            id=f"resolution-{next(self._ids):06d}",
            timestamp=ts,
            timestamp_ms=now_ms,
            message=(
                "SUCCESS: Remote intervention authorized. Personnel evacuated to Safe Assembly Point. "
                f"EDP Impact: +${credit:.2f}M"
            ),
            damage_value_musd=credit,
        )
        self._resolutions.append(entry)
        self._actions.append(
            AuthorizedAction(
                id=f"action-{next(self._ids):06d}",
                action_name="Remote Incident Resolution",
                timestamp=ts,
                timestamp_ms=now_ms,
                prevented_incident_tag="incident-resolution",
                damage_value_musd=credit,
            )
        )
        self._increment(credit)
        return entry

    def increments(self) -> Tuple[float, ...]:
        return tuple(self._increments)

    def authorized_actions(self) -> Tuple[AuthorizedAction, ...]:
        return tuple(self._actions)

    def resolution_log(self) -> Tuple[ResolutionLogEntry, ...]:
        return tuple(self._resolutions)


# ============================================================================
# Workers – fixed plant roster
# ============================================================================

@dataclass(frozen=True)
class Worker:
    id: int
    name: str
    zone: str
    unit: str
    safe: bool
    x: float
    y: float

    @property
    def position(self) -> Tuple[float, float]:
        return self.x, self.y


INITIAL_ROSTER: Tuple[Tuple[int, str, str, str, float, float], ...] = (
    # Unit 610 (hazard storage) – zone A
    (1, "Worker A", "A", "610", 120.0, 80.0),
    (2, "Worker B", "A", "610", 150.0, 100.0),
    (3, "Worker C", "A", "610", 180.0, 120.0),
    # Unit M6 (processing) – zone B
    (4, "Worker D", "B", "M6", 620.0, 80.0),
    (5, "Worker E", "B", "M6", 650.0, 100.0),
    (6, "Worker F", "B", "M6", 680.0, 120.0),
    # Reactor bay – zone C
    (7, "Worker G", "C", "Reactor", 350.0, 270.0),
    (8, "Worker H", "C", "Reactor", 400.0, 300.0),
    (9, "Worker I", "C", "Reactor", 450.0, 320.0),
    (10, "Worker J", "B", "M6", 630.0, 140.0),
)


def initial_roster() -> List[Worker]:
    return [
        Worker(id=wid, name=name, zone=zone, unit=unit, safe=False, x=x, y=y)
        for wid, name, zone, unit, x, y in INITIAL_ROSTER
    ]


# ============================================================================
# Advisories – read-only projections for the operator
# ============================================================================

@dataclass(frozen=True)
class RecommendedAction:
    name: str
    incident_tag: str


def recommended_actions(
    reading: SensorReading,
    tier: RiskTier,
    thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> List[RecommendedAction]:
    actions: List[RecommendedAction] = []
    if reading.pressure > thresholds.pressure_critical_psi:
        actions.append(RecommendedAction("Activate Vent Gas Scrubber", "pressure-runaway"))
        actions.append(RecommendedAction("Initiate Water Curtain", "pressure-runaway"))
    if reading.temperature > thresholds.temperature_critical_c:
        actions.append(RecommendedAction("Emergency Cooling Activation", "thermal-runaway"))
    if reading.inhibitor_level < thresholds.inhibitor_warning_ppm:
        actions.append(RecommendedAction("Inject Emergency TBC Supply", "inhibitor-depletion"))
    if not actions and tier == RiskTier.CRITICAL:
        actions.append(RecommendedAction("Full Emergency Protocol", "default"))
    return actions


def field_instructions(
    reading: SensorReading,
    tier: RiskTier,
    thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> List[str]:
    if tier != RiskTier.CRITICAL:
        return []
    instructions: List[str] = []
    if reading.pressure > thresholds.pressure_critical_psi:
        instructions.append("Zone A Workers: Evacuate North-East immediately. Don Gas Masks. Avoid downwind areas.")
        instructions.append("Zone B Workers: Move to designated safe zone. Monitor air quality.")
    if reading.temperature > thresholds.temperature_critical_c:
        instructions.append("Zone B Workers: Evacuate immediately. Thermal runaway detected in Styrene Tank.")
        instructions.append("Zone C Workers: Secure reactor and evacuate. Do not approach heat sources.")
    if reading.inhibitor_level < thresholds.inhibitor_warning_ppm:
        instructions.append("Zone B Workers: Stop all operations. TBC inhibitor critical. Risk of spontaneous polymerization.")
        instructions.append("All Zone Workers: Move to safe distance. Await emergency inhibitor injection.")
    if not instructions:
        instructions.append("All Workers: Follow emergency evacuation protocol. Proceed to designated assembly points.")
    return instructions


def prevention_score(reading: SensorReading, thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS) -> Dict[str, float]:
    """Sustainability scorecard: per-channel factors and a weighted 0–100 score."""
    th = thresholds
    if reading.temperature > th.temperature_critical_c:
        temperature_factor = 0.0
    elif reading.temperature > th.temperature_warning_c:
        temperature_factor = 0.7
    else:
        temperature_factor = 1.0

    if reading.pressure > th.pressure_critical_psi:
        pressure_factor = 0.0
    elif reading.pressure > th.normal_pressure_psi[1]:
        pressure_factor = 0.8
    else:
        pressure_factor = 1.0

    if reading.inhibitor_level < th.inhibitor_warning_ppm:
        inhibitor_factor = 0.5
    elif reading.inhibitor_level < th.normal_inhibitor_ppm[0]:
        inhibitor_factor = 0.8
    else:
        inhibitor_factor = 1.0

    score = clamp((temperature_factor * 0.4 + pressure_factor * 0.4 + inhibitor_factor * 0.2) * 100.0, 0.0, 100.0)
    return {
        "temperature_factor": temperature_factor,
        "pressure_factor": pressure_factor,
        "inhibitor_factor": inhibitor_factor,
        "score": score,
    }


# ============================================================================
# Intents – everything that mutates the session goes through these
# ============================================================================

class IntentOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    UNKNOWN_TARGET = "unknown_target"
    CLAMPED = "clamped"


@dataclass(frozen=True)
class IntentResult:
    outcome: IntentOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome != IntentOutcome.UNKNOWN_TARGET


@dataclass(frozen=True)
class SampleSensors:
    pass


@dataclass(frozen=True)
class Tick:
    reading: SensorReading


@dataclass(frozen=True)
class IngestReading:
    temperature: float
    pressure: float
    inhibitor_level: float


@dataclass(frozen=True)
class SelectScenario:
    kind: str


@dataclass(frozen=True)
class StartScenario:
    pass


@dataclass(frozen=True)
class StopScenario:
    pass


@dataclass(frozen=True)
class ResetScenario:
    pass


@dataclass(frozen=True)
class AdvanceScenarioClock:
    pass


@dataclass(frozen=True)
class AuthorizeAction:
    action_name: str
    incident_tag: str = "default"


@dataclass(frozen=True)
class ResolveIncident:
    pass


@dataclass(frozen=True)
class MarkWorkerSafe:
    worker_id: int


@dataclass(frozen=True)
class ResetSession:
    pass


Intent = Union[
    SampleSensors,
    Tick,
    IngestReading,
    SelectScenario,
    StartScenario,
    StopScenario,
    ResetScenario,
    AdvanceScenarioClock,
    AuthorizeAction,
    ResolveIncident,
    MarkWorkerSafe,
    ResetSession,
]


# ============================================================================
# Safety session – single-writer aggregate root
# ============================================================================

class SafetySession:
    """
    Owns the canonical mutable state: current reading and tier, scenario run,
    history, ledger, EDP accumulator, worker roster and resolution log.

    Intents are queued on one FIFO mailbox and applied one at a time under a
    single lock, so sensor ticks, scenario clock ticks and human intents
    interleave deterministically instead of racing.
    """

    def __init__(self, config: Optional[EngineConfig] = None, clock: Optional[Clock] = None) -> None:
        self.config = config or load_default_config()
        self.clock: Clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._mailbox: "queue.Queue[Tuple[int, Intent]]" = queue.Queue()
        self._tickets = itertools.count(1)
        self._handlers: Dict[type, Callable[[Any], IntentResult]] = {
            SampleSensors: self._on_sample,
            Tick: self._on_tick,
            IngestReading: self._on_ingest,
            SelectScenario: self._on_select_scenario,
            StartScenario: self._on_start_scenario,
            StopScenario: self._on_stop_scenario,
            ResetScenario: self._on_reset_scenario,
            AdvanceScenarioClock: self._on_advance_clock,
            AuthorizeAction: self._on_authorize,
            ResolveIncident: self._on_resolve,
            MarkWorkerSafe: self._on_mark_worker_safe,
            ResetSession: self._on_reset,
        }
        with self._lock:
            self._initialize()
        logger.info("safety session started (config=%s hash=%s...)", self.config.id, self.config.source_hash[:12])

    def _initialize(self) -> None:
        cfg = self.config
        now = self.clock()
        self._run = ScenarioRun()
        self._scenario_elapsed_s = 0.0
        self._stream = SensorStream(cfg)
        self._history = HistoryBuffer(cfg.history_window_ms)
        self._ledger = ComplianceLedger(cfg.ledger_cap)
        self._impact = ImpactAccumulator(cfg.impact)
        self._workers: Dict[int, Worker] = {w.id: w for w in initial_roster()}

        baseline = self._baseline_reading(now)
        self._stream.rebase(baseline)
        self._apply_reading(baseline, now, initial=True)

    def _baseline_reading(self, now_ms: int) -> SensorReading:
        b = self.config.baseline
        return SensorReading(
            temperature=b.temperature,
            pressure=b.pressure,
            inhibitor_level=b.inhibitor_level,
            timestamp_ms=now_ms,
            temperature_rate_of_change=0.0,
        )

    # --- update channel -----------------------------------------------------

    def submit(self, intent: Intent) -> int:
        ticket = next(self._tickets)
        self._mailbox.put((ticket, intent))
        return ticket

    def drain(self) -> List[Tuple[int, IntentResult]]:
        """Apply every queued intent in FIFO order."""
        applied: List[Tuple[int, IntentResult]] = []
        with self._lock:
            # Only drain() takes items off the mailbox, and only under the lock.
            while not self._mailbox.empty():
                ticket, intent = self._mailbox.get_nowait()
                applied.append((ticket, self._apply(intent)))
        return applied

    def dispatch(self, intent: Intent) -> IntentResult:
        with self._lock:
            ticket = self.submit(intent)
            results = dict(self.drain())
        return results[ticket]

    def _apply(self, intent: Intent) -> IntentResult:
        handler = self._handlers[type(intent)]
        result = handler(intent)
        logger.debug("intent %s -> %s %s", type(intent).__name__, result.outcome.value, result.detail)
        return result

    # --- inbound interface ----------------------------------------------------

    def sample(self) -> IntentResult:
        return self.dispatch(SampleSensors())

    def tick(self, reading: SensorReading) -> IntentResult:
        return self.dispatch(Tick(reading))

    def ingest(self, temperature: float, pressure: float, inhibitor_level: float) -> IntentResult:
        return self.dispatch(IngestReading(temperature, pressure, inhibitor_level))

    def select_scenario(self, kind: Union[ScenarioKind, str]) -> IntentResult:
        return self.dispatch(SelectScenario(kind.value if isinstance(kind, ScenarioKind) else str(kind)))

    def start_scenario(self) -> IntentResult:
        return self.dispatch(StartScenario())

    def stop_scenario(self) -> IntentResult:
        return self.dispatch(StopScenario())

    def reset_scenario(self) -> IntentResult:
        return self.dispatch(ResetScenario())

    def advance_scenario_clock(self) -> IntentResult:
        return self.dispatch(AdvanceScenarioClock())

    def authorize_action(self, action_name: str, incident_tag: str = "default") -> IntentResult:
        return self.dispatch(AuthorizeAction(action_name, incident_tag))

    def resolve_incident(self) -> IntentResult:
        return self.dispatch(ResolveIncident())

    def mark_worker_safe(self, worker_id: int) -> IntentResult:
        return self.dispatch(MarkWorkerSafe(worker_id))

    def reset(self) -> IntentResult:
        return self.dispatch(ResetSession())

    # --- handlers -------------------------------------------------------------

    def _apply_reading(self, reading: SensorReading, now_ms: int, initial: bool = False) -> RiskTier:
        tier, rule, reason = explain(reading, self.config.thresholds)
        if initial or tier != self._tier:
            previous: Optional[RiskTier] = None if initial else self._tier
            self._ledger.record_transition(previous, tier, reading.channels(), now_ms)
            logger.info(
                "tier %s -> %s (rule %d: %s)",
                previous.value if previous is not None else "INIT",
                tier.value,
                rule,
                reason,
            )
        self._history.append(
            HistoryPoint(
                timestamp_ms=reading.timestamp_ms,
                temperature=reading.temperature,
                pressure=reading.pressure,
                inhibitor_level=reading.inhibitor_level,
                tier=tier,
            ),
            now_ms,
        )
        self._reading = reading
        self._tier = tier
        return tier

    def _on_sample(self, intent: SampleSensors) -> IntentResult:
        now = self.clock()
        reading = self._stream.sample(self._run, now)
        tier = self._apply_reading(reading, now)
        return IntentResult(IntentOutcome.APPLIED, tier.value)

    def _on_tick(self, intent: Tick) -> IntentResult:
        now = self.clock()
        reading = intent.reading
        values, clamped = clamp_channels(reading.channels(), self.config.bounds, scenario_mode=self._run.active)
        rate = reading.temperature_rate_of_change
        if not math.isfinite(rate):
            # Unknown rate reads as a runaway.
            rate = math.inf
            clamped = True
        if clamped:
            logger.warning(
                "out-of-range reading %s (rate %s) clamped to %s (rate %s)",
                reading.channels().as_dict(),
                reading.temperature_rate_of_change,
                values.as_dict(),
                rate,
            )
            reading = replace(
                reading,
                temperature=values.temperature,
                pressure=values.pressure,
                inhibitor_level=values.inhibitor_level,
                temperature_rate_of_change=rate,
            )
        self._stream.rebase(reading)
        tier = self._apply_reading(reading, now)
        return IntentResult(IntentOutcome.CLAMPED if clamped else IntentOutcome.APPLIED, tier.value)

    def _on_ingest(self, intent: IngestReading) -> IntentResult:
        now = self.clock()
        raw = ChannelValues(float(intent.temperature), float(intent.pressure), float(intent.inhibitor_level))
        values, clamped = clamp_channels(raw, self.config.bounds, scenario_mode=self._run.active)
        if clamped:
            logger.warning("out-of-range reading %s clamped to %s", raw.as_dict(), values.as_dict())
        reading = self._stream.observe(values, now)
        tier = self._apply_reading(reading, now)
        return IntentResult(IntentOutcome.CLAMPED if clamped else IntentOutcome.APPLIED, tier.value)

    def _on_select_scenario(self, intent: SelectScenario) -> IntentResult:
        kind = scenario_kind_from_name(intent.kind)
        if kind is None:
            logger.warning("select_scenario: unknown scenario %r", intent.kind)
            return IntentResult(IntentOutcome.UNKNOWN_TARGET, f"unknown scenario {intent.kind!r}")
        self._run = ScenarioRun(kind=kind, started_at_ms=None)
        self._scenario_elapsed_s = 0.0
        logger.info("scenario selected: %s", kind.value)
        return IntentResult(IntentOutcome.APPLIED, kind.value)

    def _on_start_scenario(self, intent: StartScenario) -> IntentResult:
        if self._run.kind == ScenarioKind.NONE:
            return IntentResult(IntentOutcome.NOOP, "no scenario selected")
        now = self.clock()
        self._run = ScenarioRun(kind=self._run.kind, started_at_ms=now)
        self._scenario_elapsed_s = 0.0
        logger.info("scenario started: %s at %s", self._run.kind.value, iso_from_ms(now))
        return IntentResult(IntentOutcome.APPLIED, self._run.kind.value)

    def _on_stop_scenario(self, intent: StopScenario) -> IntentResult:
        if not self._run.active:
            return IntentResult(IntentOutcome.NOOP, "no active scenario")
        self._run = ScenarioRun(kind=self._run.kind, started_at_ms=None)
        logger.info("scenario stopped: %s after %.1fs", self._run.kind.value, self._scenario_elapsed_s)
        return IntentResult(IntentOutcome.APPLIED, self._run.kind.value)

    def _on_reset_scenario(self, intent: ResetScenario) -> IntentResult:
        self._run = ScenarioRun(kind=self._run.kind, started_at_ms=None)
        self._scenario_elapsed_s = 0.0
        return IntentResult(IntentOutcome.APPLIED, self._run.kind.value)

    def _on_advance_clock(self, intent: AdvanceScenarioClock) -> IntentResult:
        if not self._run.active:
            return IntentResult(IntentOutcome.NOOP, "no active scenario")
        now = self.clock()
        raw = self._run.raw_elapsed_s(now)
        if raw < 0:
            logger.warning("scenario clock is %.3fs behind its start; clamping to 0", -raw)
        self._scenario_elapsed_s = max(0.0, raw)
        return IntentResult(IntentOutcome.APPLIED, f"{self._scenario_elapsed_s:.1f}s")

    def _on_authorize(self, intent: AuthorizeAction) -> IntentResult:
        name = (intent.action_name or "").strip()
        if not name:
            logger.warning("authorize_action: empty action name ignored")
            return IntentResult(IntentOutcome.UNKNOWN_TARGET, "empty action name")
        now = self.clock()
        self._ledger.record_authorization(name, self._tier, self._reading.channels(), now)
        action = self._impact.apply_authorization(name, intent.incident_tag, now)
        logger.info(
            "authorized %r (%s): +$%.2fM, total $%.2fM",
            name,
            action.prevented_incident_tag,
            action.damage_value_musd,
            self._impact.total_musd,
        )
        return IntentResult(IntentOutcome.APPLIED, f"+{action.damage_value_musd:.2f}M")

    def _on_resolve(self, intent: ResolveIncident) -> IntentResult:
        now = self.clock()
        self._run = ScenarioRun()
        self._scenario_elapsed_s = 0.0
        for wid, worker in self._workers.items():
            if not worker.safe:
                self._workers[wid] = replace(worker, safe=True)
        entry = self._impact.apply_resolution(now)

        baseline = self._baseline_reading(now)
        self._stream.rebase(baseline)
        self._apply_reading(baseline, now)
        logger.info("incident resolved: %s", entry.message)
        return IntentResult(IntentOutcome.APPLIED, f"+{entry.damage_value_musd:.2f}M")

    def _on_mark_worker_safe(self, intent: MarkWorkerSafe) -> IntentResult:
        worker = self._workers.get(intent.worker_id)
        if worker is None:
            logger.warning("mark_worker_safe: unknown worker id %r", intent.worker_id)
            return IntentResult(IntentOutcome.UNKNOWN_TARGET, f"unknown worker {intent.worker_id!r}")
        if worker.safe:
            return IntentResult(IntentOutcome.NOOP, f"{worker.name} already safe")
        self._workers[worker.id] = replace(worker, safe=True)
        logger.info("worker %s (zone %s) marked safe", worker.name, worker.zone)
        return IntentResult(IntentOutcome.APPLIED, worker.name)

    def _on_reset(self, intent: ResetSession) -> IntentResult:
        self._initialize()
        logger.info("safety session reset")
        return IntentResult(IntentOutcome.APPLIED, "reset")

    # --- outbound snapshots -------------------------------------------------

    @property
    def current_reading(self) -> SensorReading:
        with self._lock:
            return self._reading

    @property
    def current_tier(self) -> RiskTier:
        with self._lock:
            return self._tier

    @property
    def scenario_run(self) -> ScenarioRun:
        with self._lock:
            return self._run

    @property
    def scenario_elapsed_s(self) -> float:
        with self._lock:
            return self._scenario_elapsed_s

    @property
    def damage_prevented_total(self) -> float:
        with self._lock:
            return self._impact.total_musd

    @property
    def is_rate_critical(self) -> bool:
        with self._lock:
            return self._reading.temperature_rate_of_change > self.config.thresholds.rate_critical_c_per_min

    def history_snapshot(self) -> Tuple[HistoryPoint, ...]:
        with self._lock:
            return self._history.snapshot(self.config.history_display_limit)

    def history_frame(self) -> pd.DataFrame:
        with self._lock:
            return self._history.to_frame(self.config.history_display_limit)

    def ledger_snapshot(self) -> Tuple[LedgerEntry, ...]:
        with self._lock:
            return self._ledger.snapshot()

    def ledger_frame(self) -> pd.DataFrame:
        with self._lock:
            return self._ledger.to_frame()

    def export_ledger_json(self) -> str:
        with self._lock:
            return self._ledger.to_json()

    def verify_integrity(self) -> ChainVerification:
        with self._lock:
            return self._ledger.verify()

    def authorized_actions(self) -> Tuple[AuthorizedAction, ...]:
        with self._lock:
            return self._impact.authorized_actions()

    def resolution_log(self) -> Tuple[ResolutionLogEntry, ...]:
        with self._lock:
            return self._impact.resolution_log()

    def workers(self) -> Tuple[Worker, ...]:
        with self._lock:
            return tuple(self._workers.values())

    def workers_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(w) for w in self.workers()])

    def workers_in_danger(self) -> List[Worker]:
        with self._lock:
            if self._tier != RiskTier.CRITICAL:
                return []
            return [w for w in self._workers.values() if not w.safe]

    def recommended_actions(self) -> List[RecommendedAction]:
        with self._lock:
            return recommended_actions(self._reading, self.current_tier, self.config.thresholds)

    def field_instructions(self) -> List[str]:
        with self._lock:
            return field_instructions(self._reading, self.current_tier, self.config.thresholds)

    def prevention_score(self) -> Dict[str, float]:
        with self._lock:
            return prevention_score(self._reading, self.config.thresholds)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "config_id": self.config.id,
                "config_hash": self.config.source_hash,
                "reading": asdict(self._reading),
                "tier": self.current_tier.value,
                "rate_critical": self.is_rate_critical,
                "scenario": {
                    "kind": self._run.kind.value,
                    "label": self._run.kind.label,
                    "active": self._run.active,
                    "started_at_ms": self._run.started_at_ms,
                    "elapsed_s": self._scenario_elapsed_s,
                },
                "damage_prevented_musd": self._impact.total_musd,
                "workers": [asdict(w) for w in self._workers.values()],
                "workers_in_danger": len(self.workers_in_danger()),
                "history_size": len(self._history),
                "ledger_size": len(self._ledger),
                "ledger_anchor_hash": self._ledger.anchor_hash,
                "ledger_last_hash": self._ledger.last_hash,
                "resolution_log": [asdict(r) for r in self._impact.resolution_log()],
            }


# ============================================================================
# Runtime – repeating timers feeding the session's update channel
# ============================================================================

class RepeatingTimer:
    """
    Calls `callback` every `interval_ms` on a daemon thread until stopped.
    A callback that raises is logged and the timer keeps running.
    """

    def __init__(self, interval_ms: int, callback: Callable[[], Any], name: str = "ecoguard-timer") -> None:
        self.interval_ms = interval_ms
        self.name = name
        self._callback = callback
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> "RepeatingTimer":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        interval_s = self.interval_ms / 1000.0
        while not self._stopped.wait(interval_s):
            try:
                self._callback()
            except Exception:
                logger.exception("timer %s callback failed", self.name)

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_s)

    def __enter__(self) -> "RepeatingTimer":
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.stop()


class SafetyConsole:
    """
    Wires a SafetySession to its two timers:

    - sensor timer: pushes SampleSensors every tick interval (1000 ms, or
      2000 ms in steady-state-only mode)
    - scenario clock: pushes AdvanceScenarioClock, only while a run is active

    Timers are reconciled after every intent and released on close().
    """

    def __init__(self, session: Optional[SafetySession] = None, timer_factory: Callable[..., RepeatingTimer] = RepeatingTimer) -> None:
        self.session = session or SafetySession()
        self._timer_factory = timer_factory
        self._timer_lock = threading.Lock()
        self._sensor_timer: Optional[RepeatingTimer] = None
        self._scenario_timer: Optional[RepeatingTimer] = None
        self._closed = False

    @property
    def sensor_timer(self) -> Optional[RepeatingTimer]:
        return self._sensor_timer

    @property
    def scenario_timer(self) -> Optional[RepeatingTimer]:
        return self._scenario_timer

    def start(self) -> "SafetyConsole":
        with self._timer_lock:
            if self._closed:
                raise RuntimeError("console is closed")
            if self._sensor_timer is None:
                timing = self.session.config.timing
                self._sensor_timer = self._timer_factory(
                    timing.sensor_interval_ms,
                    lambda: self.dispatch(SampleSensors()),
                    name="ecoguard-sensor",
                ).start()
        self._sync_timers()
        return self

    def close(self) -> None:
        with self._timer_lock:
            self._closed = True
            timers = [self._scenario_timer, self._sensor_timer]
            self._scenario_timer = None
            self._sensor_timer = None
        try:
            if timers[0] is not None:
                timers[0].stop()
        finally:
            if timers[1] is not None:
                timers[1].stop()

    def __enter__(self) -> "SafetyConsole":
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _sync_timers(self) -> None:
        to_stop: Optional[RepeatingTimer] = None
        with self._timer_lock:
            if self._closed:
                return
            wanted = self.session.scenario_run.active
            if wanted and self._scenario_timer is None:
                self._scenario_timer = self._timer_factory(
                    self.session.config.timing.scenario_clock_interval_ms,
                    lambda: self.dispatch(AdvanceScenarioClock()),
                    name="ecoguard-scenario-clock",
                ).start()
            elif not wanted and self._scenario_timer is not None:
                to_stop, self._scenario_timer = self._scenario_timer, None
        if to_stop is not None:
            to_stop.stop()

    def dispatch(self, intent: Intent) -> IntentResult:
        try:
            return self.session.dispatch(intent)
        finally:
            self._sync_timers()

    def select_scenario(self, kind: Union[ScenarioKind, str]) -> IntentResult:
        return self.dispatch(SelectScenario(kind.value if isinstance(kind, ScenarioKind) else str(kind)))

    def start_scenario(self) -> IntentResult:
        return self.dispatch(StartScenario())

    def stop_scenario(self) -> IntentResult:
        return self.dispatch(StopScenario())

    def reset_scenario(self) -> IntentResult:
        return self.dispatch(ResetScenario())

    def authorize_action(self, action_name: str, incident_tag: str = "default") -> IntentResult:
        return self.dispatch(AuthorizeAction(action_name, incident_tag))

    def resolve_incident(self) -> IntentResult:
        return self.dispatch(ResolveIncident())

    def mark_worker_safe(self, worker_id: int) -> IntentResult:
        return self.dispatch(MarkWorkerSafe(worker_id))

    def reset(self) -> IntentResult:
        return self.dispatch(ResetSession())
