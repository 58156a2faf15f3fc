from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from .errors import ActionFailure
from .models import PowerEvent
from .policy import PolicyExpression

logger = logging.getLogger("shutdownd.debounce")

EXIT_ACTION_FAILURE = 4


class EngineState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay_sec: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_sec, callback)
    timer.daemon = True
    timer.name = "shutdownd-recovery-timer"
    return timer


@dataclass(eq=False)
class PendingShutdown:
    """One arm cycle. Identity matters: fire and cancel act only on the current one."""

    generation: int
    armed_at: float
    delay_sec: float
    timer: Optional[TimerHandle] = field(default=None, repr=False)
    cancelled: bool = False
    fired: bool = False


def _exit_process(err: ActionFailure) -> None:
    logger.critical("Shutdown action failed, exiting: %s", err)
    os._exit(EXIT_ACTION_FAILURE)


class DebounceEngine:
    """
    Idle / Armed state machine around a single delayed shutdown.

    on_event() is driven by the dispatcher; the timer callback runs on its
    own thread. Both take the same lock for the whole read-decide-mutate
    step, so a disarm and a fire racing each other resolve to exactly one
    of them. After a fire the engine latches FIRED and ignores further
    events.
    """

    def __init__(
        self,
        arm_expr: PolicyExpression,
        disarm_expr: PolicyExpression,
        recovery_period_sec: float,
        action: Callable[[], None],
        *,
        timer_factory: TimerFactory = thread_timer,
        on_fatal: Callable[[ActionFailure], None] = _exit_process,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if recovery_period_sec < 0:
            raise ValueError("recovery period must not be negative")
        self.arm_expr = arm_expr
        self.disarm_expr = disarm_expr
        self.recovery_period_sec = float(recovery_period_sec)
        self._action = action
        self._timer_factory = timer_factory
        self._on_fatal = on_fatal
        self._clock = clock

        self._lock = threading.Lock()
        self._state = EngineState.IDLE
        self._pending: Optional[PendingShutdown] = None
        self._generation = 0
        self._fired = threading.Event()

    # ─────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    @property
    def pending(self) -> Optional[PendingShutdown]:
        with self._lock:
            return self._pending

    def wait_fired(self, timeout: Optional[float] = None) -> bool:
        return self._fired.wait(timeout)

    # ─────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────

    def on_event(self, event: PowerEvent) -> EngineState:
        """
        Apply one validated event. Only the expression for the current state
        is evaluated. EvalFailure propagates with the state untouched.
        """
        with self._lock:
            if self._state is EngineState.FIRED:
                logger.debug("Shutdown already initiated; ignoring event %s", event)
                return self._state

            if self._state is EngineState.IDLE:
                if self.arm_expr.evaluate(event):
                    self._arm_locked()
                else:
                    logger.debug("%s false for %s; staying idle", self.arm_expr.name, event)
                return self._state

            if self.disarm_expr.evaluate(event):
                logger.info("Power recovered; cancelling pending shutdown")
                self._cancel_locked(self._pending)
            else:
                logger.debug("%s false for %s; staying armed", self.disarm_expr.name, event)
            return self._state

    def cancel(self, handle: Optional[PendingShutdown]) -> bool:
        """
        Cancel `handle` if it is still the pending arm cycle.

        Returns False (and changes nothing) for None, a handle that already
        fired, or one superseded by a newer arm.
        """
        with self._lock:
            return self._cancel_locked(handle)

    def close(self) -> None:
        with self._lock:
            if self._pending is not None:
                logger.info("Stopping; discarding pending shutdown gen=%d", self._pending.generation)
                self._cancel_locked(self._pending)

    def _arm_locked(self) -> None:
        self._generation += 1
        handle = PendingShutdown(
            generation=self._generation,
            armed_at=self._clock(),
            delay_sec=self.recovery_period_sec,
        )
        handle.timer = self._timer_factory(self.recovery_period_sec, lambda: self._fire(handle))
        self._pending = handle
        self._state = EngineState.ARMED
        logger.warning("Power down; shutdown in %.1fs (gen=%d)", self.recovery_period_sec, handle.generation)
        handle.timer.start()

    def _cancel_locked(self, handle: Optional[PendingShutdown]) -> bool:
        if handle is None or handle is not self._pending:
            return False
        if handle.timer is not None:
            handle.timer.cancel()
        handle.cancelled = True
        self._pending = None
        self._state = EngineState.IDLE
        return True

    def _fire(self, handle: PendingShutdown) -> None:
        with self._lock:
            if handle is not self._pending:
                logger.debug("Timer gen=%d no longer pending; not firing", handle.generation)
                return
            handle.fired = True
            self._pending = None
            self._state = EngineState.FIRED

        self._fired.set()
        logger.warning(
            "Recovery period elapsed after %.1fs; calling shutdown!",
            self._clock() - handle.armed_at,
        )
        try:
            self._action()
        except ActionFailure as e:
            self._on_fatal(e)
            return
        except Exception as e:
            self._on_fatal(ActionFailure(f"failed to call shutdown: {e}"))
            return
        logger.warning("Shutdown initiated!")
