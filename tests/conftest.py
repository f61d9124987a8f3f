"""Shared fixtures: a manual clock and sessions built on it."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import pytest

from ecoguard import DEFAULT_CONFIG_JSON, EngineConfig, ManualClock, SafetySession, _deep_merge, build_config_from_dict

START_MS = 1_700_000_000_000


def make_config(**sections: Dict[str, Any]) -> EngineConfig:
    return build_config_from_dict(_deep_merge(json.loads(DEFAULT_CONFIG_JSON), sections))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start_ms=START_MS)


@pytest.fixture
def session(clock: ManualClock) -> SafetySession:
    return SafetySession(clock=clock)


class FakeTimer:
    """Stands in for RepeatingTimer; fires only when the test says so."""

    def __init__(self, interval_ms: int, callback: Callable[[], Any], name: str = "") -> None:
        self.interval_ms = interval_ms
        self.name = name
        self.callback = callback
        self.started = False
        self.stopped = False

    def start(self) -> "FakeTimer":
        self.started = True
        return self

    def stop(self, timeout_s: float = 2.0) -> None:
        self.stopped = True

    def fire(self) -> None:
        if not self.stopped:
            self.callback()


@pytest.fixture
def fake_timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(fake_timers: List[FakeTimer]) -> Callable[..., FakeTimer]:
    def factory(interval_ms: int, callback: Callable[[], Any], name: str = "") -> FakeTimer:
        timer = FakeTimer(interval_ms, callback, name)
        fake_timers.append(timer)
        return timer

    return factory
