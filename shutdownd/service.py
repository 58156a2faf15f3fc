from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
from typing import Callable, Optional

from .action import ShutdownCommand
from .bus import RedisPowerBus
from .debounce import EXIT_ACTION_FAILURE, DebounceEngine, TimerFactory, thread_timer
from .dispatcher import SerialDispatcher
from .errors import ActionFailure, FatalError
from .policy import compile_policy
from .settings import Settings

logger = logging.getLogger("shutdownd.service")

EXIT_CLIENT_ERROR = 1


class PowerMonitorService:
    """
    Wires settings -> policies -> debounce engine -> dispatcher -> bus.

    Policies are compiled in the constructor, so a bad expression raises
    CompileFailure before anything connects.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        bus: Optional[RedisPowerBus] = None,
        action: Optional[Callable[[], None]] = None,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.settings = settings
        arm_expr = compile_policy(settings.ARM_EXPR, name="-down-expr")
        disarm_expr = compile_policy(settings.DISARM_EXPR, name="-recovered-expr")

        self.engine = DebounceEngine(
            arm_expr,
            disarm_expr,
            settings.RECOVERY_PERIOD_SEC,
            action or ShutdownCommand(settings.SHUTDOWN_CMD, dry_run=settings.DRY_RUN),
            timer_factory=timer_factory,
            on_fatal=self._on_action_failure,
        )
        self.dispatcher = SerialDispatcher(
            self.engine,
            settings.TOPIC,
            strict=settings.STRICT,
            validate_scope=settings.VALIDATE_SCOPE,
        )
        self.bus = bus or RedisPowerBus(settings.BUS_URL, reconnect_delay_sec=settings.RECONNECT_DELAY_SEC)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None
        self._fatal: Optional[FatalError] = None

    @property
    def client_id(self) -> str:
        return f"{socket.gethostname()}/{self.settings.SERVICE_NAME}"

    # ─────────────────────────────────────────────
    # Fatal paths
    # ─────────────────────────────────────────────

    def _on_action_failure(self, err: ActionFailure) -> None:
        # Runs on the timer thread.
        logger.critical("%s", err)
        loop = self._loop
        if loop is None or loop.is_closed():
            os._exit(EXIT_ACTION_FAILURE)
        loop.call_soon_threadsafe(self.fail, FatalError(err, exit_code=EXIT_ACTION_FAILURE))

    def fail(self, err: FatalError) -> None:
        if self._fatal is None:
            self._fatal = err
        if self._stop is not None:
            self._stop.set()

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handler() -> None:
            logger.warning("SIGTERM/SIGINT received: shutting down")
            self.stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, _handler)
            except (NotImplementedError, RuntimeError):
                # Windows, or not running in the main thread
                pass

    # ─────────────────────────────────────────────
    # Run loop
    # ─────────────────────────────────────────────

    async def run(self, *, install_signal_handlers: bool = True) -> int:
        """Run until a signal or a fatal error. Returns the process exit code."""
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        if install_signal_handlers:
            self._install_signal_handlers()

        logger.info(
            "Starting %s %s: client=%s topic=%s recovery=%.1fs strict=%s",
            self.settings.SERVICE_NAME,
            self.settings.SERVICE_VERSION,
            self.client_id,
            self.settings.TOPIC,
            self.settings.RECOVERY_PERIOD_SEC,
            self.settings.STRICT,
        )

        consumer = asyncio.create_task(self.dispatcher.run(), name="shutdownd-dispatcher")
        pump = asyncio.create_task(
            self.bus.pump(self.settings.TOPIC, self.dispatcher.submit),
            name="shutdownd-bus",
        )
        stopper = asyncio.create_task(self._stop.wait(), name="shutdownd-stop")
        tasks = [consumer, pump, stopper]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is stopper or task.cancelled():
                    continue
                exc = task.exception()
                if isinstance(exc, FatalError):
                    self.fail(exc)
                elif exc is not None:
                    logger.error("%s failed: %s", task.get_name(), exc)
                    self.fail(FatalError(exc, exit_code=EXIT_CLIENT_ERROR))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.engine.close()
            try:
                await self.bus.close()
            except Exception:
                logger.exception("Bus close failed")

        if self._fatal is not None:
            logger.critical("Exiting after fatal error: %s", self._fatal)
            return self._fatal.exit_code
        logger.info("signal caught - exiting")
        return 0
