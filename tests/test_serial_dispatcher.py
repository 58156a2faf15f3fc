from __future__ import annotations

import asyncio

import pytest

from conftest import payload
from shutdownd.debounce import EngineState
from shutdownd.dispatcher import EXIT_EVAL_FAILURE, InboundMessage, SerialDispatcher
from shutdownd.errors import (
    ErrorKind,
    EvalFailure,
    FatalError,
    InvalidSchema,
    MalformedMessage,
    UnexpectedTopic,
)

TOPIC = "power/alarms"


def test_valid_message_reaches_engine(make_engine, timers):
    dispatcher = SerialDispatcher(make_engine(), TOPIC)
    state = dispatcher.handle(InboundMessage(TOPIC, payload(online=False)))
    assert state is EngineState.ARMED
    assert dispatcher.processed == 1
    assert len(timers.timers) == 1


@pytest.mark.parametrize(
    "topic, raw, kind",
    [
        ("power/other", payload(online=False), ErrorKind.UNEXPECTED_TOPIC),
        (TOPIC, b"{not json", ErrorKind.MALFORMED),
        (TOPIC, payload(online=False, power_type=9), ErrorKind.INVALID_SCHEMA),
    ],
)
def test_bad_messages_are_dropped(make_engine, timers, caplog, topic, raw, kind):
    engine = make_engine()
    dispatcher = SerialDispatcher(engine, TOPIC)
    assert dispatcher.handle(InboundMessage(topic, raw)) is None
    assert dispatcher.dropped == 1
    assert dispatcher.processed == 0
    assert engine.state is EngineState.IDLE
    assert timers.timers == []
    assert kind.value in caplog.text


@pytest.mark.parametrize(
    "topic, raw, cause",
    [
        ("power/other", payload(online=False), UnexpectedTopic),
        (TOPIC, b"{not json", MalformedMessage),
        (TOPIC, payload(online=False, power_type=0), InvalidSchema),
    ],
)
def test_strict_mode_is_fatal(make_engine, topic, raw, cause):
    dispatcher = SerialDispatcher(make_engine(), TOPIC, strict=True)
    with pytest.raises(FatalError) as ctx:
        dispatcher.handle(InboundMessage(topic, raw))
    assert isinstance(ctx.value.cause, cause)
    assert ctx.value.exit_code == 1


@pytest.mark.parametrize("strict", [False, True])
def test_eval_failure_is_always_fatal(make_engine, timers, strict):
    engine = make_engine(arm="!online", disarm="powerType / (powerType - 1) == 0")
    dispatcher = SerialDispatcher(engine, TOPIC, strict=strict)
    assert dispatcher.handle(InboundMessage(TOPIC, payload(online=False))) is EngineState.ARMED

    with pytest.raises(FatalError) as ctx:
        dispatcher.handle(InboundMessage(TOPIC, payload(online=True)))
    assert isinstance(ctx.value.cause, EvalFailure)
    assert ctx.value.exit_code == EXIT_EVAL_FAILURE
    assert dispatcher.dropped == 0
    assert engine.state is EngineState.ARMED
    assert not timers.last.cancelled


def test_scope_validation_option(make_engine):
    dispatcher = SerialDispatcher(make_engine(), TOPIC, validate_scope=True)
    assert dispatcher.handle(InboundMessage(TOPIC, payload(online=False, scope="garage"))) is None
    assert dispatcher.dropped == 1
    assert dispatcher.handle(InboundMessage(TOPIC, payload(online=False, scope="1c"))) is EngineState.ARMED


def test_run_processes_mailbox_in_order(make_engine, timers, action):
    engine = make_engine()
    dispatcher = SerialDispatcher(engine, TOPIC)

    async def scenario():
        consumer = asyncio.create_task(dispatcher.run())
        await dispatcher.submit(TOPIC, payload(online=False))
        await dispatcher.submit(TOPIC, payload(online=True))
        await dispatcher.submit(TOPIC, b"garbage")
        await dispatcher.submit(TOPIC, payload(online=False))
        await dispatcher.close()
        await consumer

    asyncio.run(scenario())

    assert dispatcher.processed == 3
    assert dispatcher.dropped == 1
    assert len(timers.timers) == 2
    assert timers.timers[0].cancelled
    assert not timers.timers[1].cancelled
    assert engine.state is EngineState.ARMED
    assert action.calls == 0


def test_run_stops_on_strict_failure(make_engine):
    dispatcher = SerialDispatcher(make_engine(), TOPIC, strict=True)

    async def scenario():
        await dispatcher.submit("power/other", payload(online=False))
        await dispatcher.run()

    with pytest.raises(FatalError):
        asyncio.run(scenario())
