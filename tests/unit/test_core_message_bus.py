from __future__ import annotations

import asyncio

import pytest

from predarena.contracts.streams import dlq_stream, trigger_stream
from predarena.core.message_bus import RedisStreamBus
from predarena.core.models import EventEnvelope
from predarena.workflow.triggers import build_trigger_event

from tests.fakes import FakeStreamClient, StreamIdle

AGENT = "test/agent-1"
STREAM = trigger_stream(AGENT)
GROUP = "predarena"


def _bus(client: FakeStreamClient, **kw) -> RedisStreamBus:
    kw.setdefault("retry_backoff_seconds", 0)
    return RedisStreamBus("redis://unused", client=client, **kw)


async def _subscribe(bus: RedisStreamBus) -> None:
    # Groups start at "$": register before publishing, as a running listener would.
    await bus.poll(stream=STREAM, group=GROUP, consumer="c1", pending=True)


def _trigger() -> EventEnvelope:
    return build_trigger_event(agent_id=AGENT, trigger_type="manual", details={})


@pytest.mark.asyncio
async def test_handled_event_is_acked_and_redelivery_is_skipped() -> None:
    client = FakeStreamClient()
    bus = _bus(client)
    await _subscribe(bus)
    ev = _trigger()
    await bus.publish(STREAM, ev)
    await bus.publish(STREAM, ev)
    seen: list[str] = []

    async def handler(env: EventEnvelope) -> None:
        seen.append(env.event_id)

    with pytest.raises(StreamIdle):
        await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=handler)

    assert seen == [ev.event_id]
    assert client.pending(STREAM, GROUP) == {}


@pytest.mark.asyncio
async def test_failing_handler_is_retried_then_dead_lettered() -> None:
    client = FakeStreamClient()
    bus = _bus(client, max_attempts=2)
    await _subscribe(bus)
    ev = _trigger()
    await bus.publish(STREAM, ev)
    calls: list[str] = []

    async def handler(env: EventEnvelope) -> None:
        calls.append(env.event_id)
        raise RuntimeError("venue down")

    with pytest.raises(StreamIdle):
        await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=handler)

    assert calls == [ev.event_id, ev.event_id]
    (dead,) = client.streams[dlq_stream(STREAM)]
    assert dead[1]["error"].startswith("handler_failed_after_2")
    assert dead[1]["original_stream"] == STREAM
    assert client.pending(STREAM, GROUP) == {}


@pytest.mark.asyncio
async def test_invalid_contract_goes_straight_to_dead_letters() -> None:
    client = FakeStreamClient()
    bus = _bus(client)
    await _subscribe(bus)
    await client.xadd(STREAM, {"event": '{"schema": "workflow.trigger.v1"'})

    async def handler(env: EventEnvelope) -> None:
        raise AssertionError("invalid events never reach the handler")

    with pytest.raises(StreamIdle):
        await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=handler)

    (dead,) = client.streams[dlq_stream(STREAM)]
    assert dead[1]["error"].startswith("contract_invalid")
    assert client.pending(STREAM, GROUP) == {}


@pytest.mark.asyncio
async def test_restarted_consumer_rereads_its_unacked_entry() -> None:
    client = FakeStreamClient()
    bus = _bus(client)
    await _subscribe(bus)
    ev = _trigger()
    await bus.publish(STREAM, ev)

    async def killed(env: EventEnvelope) -> None:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=killed)
    assert list(client.pending(STREAM, GROUP).values()) == ["c1"]

    seen: list[str] = []

    async def handler(env: EventEnvelope) -> None:
        seen.append(env.event_id)

    await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=handler, stop_after_messages=1)

    assert seen == [ev.event_id]
    assert client.pending(STREAM, GROUP) == {}


@pytest.mark.asyncio
async def test_entry_of_a_dead_consumer_is_claimed() -> None:
    client = FakeStreamClient()
    bus = _bus(client, claim_idle_ms=0)
    await _subscribe(bus)
    ev = _trigger()
    await bus.publish(STREAM, ev)

    async def killed(env: EventEnvelope) -> None:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await bus.run_worker(stream=STREAM, group=GROUP, consumer="c1", handler=killed)

    seen: list[str] = []

    async def handler(env: EventEnvelope) -> None:
        seen.append(env.event_id)

    await bus.run_worker(stream=STREAM, group=GROUP, consumer="c2", handler=handler, stop_after_messages=1)

    assert seen == [ev.event_id]
    assert client.pending(STREAM, GROUP) == {}
