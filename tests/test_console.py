"""Tests for the timer wiring around a SafetySession."""

from __future__ import annotations

import threading
import time
from typing import Callable, List

from ecoguard import ManualClock, RepeatingTimer, SafetyConsole, SafetySession, ScenarioKind

from conftest import FakeTimer, make_config


def test_start_creates_sensor_timer_only(session: SafetySession, timer_factory: Callable[..., FakeTimer], fake_timers: List[FakeTimer]) -> None:
    console = SafetyConsole(session, timer_factory=timer_factory).start()

    assert len(fake_timers) == 1
    assert console.sensor_timer is fake_timers[0]
    assert fake_timers[0].interval_ms == 1_000
    assert fake_timers[0].started
    assert console.scenario_timer is None


def test_scenario_clock_runs_only_while_scenario_is_active(
    session: SafetySession,
    clock: ManualClock,
    timer_factory: Callable[..., FakeTimer],
) -> None:
    console = SafetyConsole(session, timer_factory=timer_factory).start()

    console.select_scenario(ScenarioKind.DISASTER_A)
    assert console.scenario_timer is None

    console.start_scenario()
    scenario_timer = console.scenario_timer
    assert scenario_timer is not None
    assert scenario_timer.interval_ms == 1_000

    clock.advance(3_000)
    scenario_timer.fire()
    assert session.scenario_elapsed_s == 3.0

    console.stop_scenario()
    assert console.scenario_timer is None
    assert scenario_timer.stopped


def test_sensor_timer_pushes_samples(session: SafetySession, clock: ManualClock, timer_factory: Callable[..., FakeTimer]) -> None:
    console = SafetyConsole(session, timer_factory=timer_factory).start()
    assert console.sensor_timer is not None

    for _ in range(3):
        clock.advance(1_000)
        console.sensor_timer.fire()

    assert session.current_reading.timestamp_ms == clock()
    assert len(session.history_snapshot()) == 4


def test_resolution_stops_scenario_clock(session: SafetySession, timer_factory: Callable[..., FakeTimer]) -> None:
    console = SafetyConsole(session, timer_factory=timer_factory).start()
    console.select_scenario("inhibitor-depletion")
    console.start_scenario()
    assert console.scenario_timer is not None

    console.resolve_incident()

    assert console.scenario_timer is None
    assert console.sensor_timer is not None


def test_close_stops_every_timer(session: SafetySession, timer_factory: Callable[..., FakeTimer], fake_timers: List[FakeTimer]) -> None:
    with SafetyConsole(session, timer_factory=timer_factory) as console:
        console.select_scenario(ScenarioKind.DISASTER_B)
        console.start_scenario()
        assert len(fake_timers) == 2

    assert all(t.stopped for t in fake_timers)
    assert console.sensor_timer is None
    assert console.scenario_timer is None


def test_steady_state_only_uses_slower_sensor_interval(clock: ManualClock, timer_factory: Callable[..., FakeTimer]) -> None:
    session = SafetySession(config=make_config(timing={"steady_state_only": True}), clock=clock)
    console = SafetyConsole(session, timer_factory=timer_factory).start()

    assert console.sensor_timer is not None
    assert console.sensor_timer.interval_ms == 2_000


def test_repeating_timer_survives_a_failing_callback() -> None:
    calls: List[int] = []
    done = threading.Event()

    def callback() -> None:
        calls.append(1)
        if len(calls) >= 3:
            done.set()
        raise RuntimeError("sensor offline")

    timer = RepeatingTimer(10, callback, name="test-timer").start()
    try:
        assert done.wait(5.0)
        assert timer.running
    finally:
        timer.stop()

    assert not timer.running
    count = len(calls)
    time.sleep(0.05)
    assert len(calls) == count
