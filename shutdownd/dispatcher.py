from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .debounce import DebounceEngine, EngineState
from .errors import DROPPABLE_KINDS, EvalFailure, FatalError, ShutdowndError, UnexpectedTopic
from .models import validate

logger = logging.getLogger("shutdownd.dispatcher")

EXIT_STRICT = 1
EXIT_EVAL_FAILURE = 5


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: bytes | str


class SerialDispatcher:
    """
    Single consumer between the bus and the debounce engine.

    Messages are handled one at a time in mailbox order. Droppable errors
    (malformed payload, bad schema, wrong topic) are logged and skipped, or
    raised as FatalError when strict is set. A failed policy evaluation is
    always a FatalError.
    """

    def __init__(
        self,
        engine: DebounceEngine,
        topic: str,
        *,
        strict: bool = False,
        validate_scope: bool = False,
        maxsize: int = 0,
    ) -> None:
        self.engine = engine
        self.topic = topic
        self.strict = strict
        self.validate_scope = validate_scope
        self.mailbox: asyncio.Queue[Optional[InboundMessage]] = asyncio.Queue(maxsize=maxsize)
        self.processed = 0
        self.dropped = 0

    async def submit(self, topic: str, payload: bytes | str) -> None:
        logger.debug("Received message on topic %s; body: %r", topic, payload)
        await self.mailbox.put(InboundMessage(topic=topic, payload=payload))

    async def close(self) -> None:
        """Ask run() to return after the messages already queued."""
        await self.mailbox.put(None)

    async def run(self) -> None:
        while True:
            msg = await self.mailbox.get()
            try:
                if msg is None:
                    return
                self.handle(msg)
            finally:
                self.mailbox.task_done()

    def handle(self, msg: InboundMessage) -> Optional[EngineState]:
        try:
            if msg.topic != self.topic:
                raise UnexpectedTopic(f"received message on unexpected topic: {msg.topic}")
            event = validate(msg.payload, validate_scope=self.validate_scope)
            state = self.engine.on_event(event)
        except EvalFailure as e:
            # A policy that cannot be evaluated leaves the shutdown decision undefined.
            logger.critical("%s (content: %r)", e, msg.payload)
            raise FatalError(e, exit_code=EXIT_EVAL_FAILURE) from e
        except ShutdowndError as e:
            if e.kind not in DROPPABLE_KINDS:
                raise
            self._reject(e, msg)
            return None
        self.processed += 1
        return state

    def _reject(self, err: ShutdowndError, msg: InboundMessage) -> None:
        if self.strict:
            logger.error("Strict mode: %s (content: %r)", err, msg.payload)
            raise FatalError(err, exit_code=EXIT_STRICT) from err
        self.dropped += 1
        logger.warning("Dropping message [%s]: %s (content: %r)", err.kind.value, err, msg.payload)
