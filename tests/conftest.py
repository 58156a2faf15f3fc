from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional

import pytest

from shutdownd.debounce import DebounceEngine
from shutdownd.errors import ActionFailure
from shutdownd.models import PowerEvent
from shutdownd.policy import PolicyExpression, compile_policy


class FakeTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class TimerRecorder:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(delay, callback)
        self.timers.append(t)
        return t

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


class RecordingAction:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = 0
        self.called_at: List[float] = []
        self.called = threading.Event()

    def __call__(self) -> None:
        self.calls += 1
        self.called_at.append(time.monotonic())
        self.called.set()
        if self.error is not None:
            raise self.error


class CountingPolicy:
    def __init__(self, expr: PolicyExpression) -> None:
        self.expr = expr
        self.name = expr.name
        self.calls = 0

    def evaluate(self, event: PowerEvent) -> bool:
        self.calls += 1
        return self.expr.evaluate(event)


def power_event(online: bool, power_type: int = 1, scope: str = "global") -> PowerEvent:
    return PowerEvent(online=online, power_type=power_type, scope=scope)


def payload(online: bool, power_type: int = 1, scope: str = "global") -> bytes:
    up = "true" if online else "false"
    return f'{{"up": {up}, "type": {power_type}, "scope": "{scope}"}}'.encode()


@pytest.fixture
def timers() -> TimerRecorder:
    return TimerRecorder()


@pytest.fixture
def action() -> RecordingAction:
    return RecordingAction()


@pytest.fixture
def fatal_errors() -> List[ActionFailure]:
    return []


@pytest.fixture
def make_engine(timers, action, fatal_errors):
    def _make(
        arm: str = "!online",
        disarm: str = "online",
        delay: float = 180.0,
        **kwargs,
    ) -> DebounceEngine:
        run = kwargs.pop("action", action)
        kwargs.setdefault("timer_factory", timers)
        kwargs.setdefault("on_fatal", fatal_errors.append)
        return DebounceEngine(
            compile_policy(arm, name="arm"),
            compile_policy(disarm, name="disarm"),
            delay,
            run,
            **kwargs,
        )

    return _make
