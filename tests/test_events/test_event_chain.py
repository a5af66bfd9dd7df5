"""
Test suite for EventChain execution engine.
Covers chain ordering, BreakEvent handling, handler failures, background
completion after an early break and outcome lookup.
"""
import asyncio
import sys
from pathlib import Path

import pytest

src_path = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(src_path))

from pollrelay.engine.events import (
    EventBus,
    Dependencies,
    VoteRequestEvent,
    VerifyFailedEvent,
    RelayFailedEvent,
    BreakEvent,
)
from pollrelay.engine.executors import EventChain


POLL = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
VOTER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def vote_event() -> VoteRequestEvent:
    return VoteRequestEvent(poll=POLL, signer=VOTER, option=1, signature="0x" + "11" * 65, nonce=0)


async def handle_vote_rejected(event: VoteRequestEvent, deps: Dependencies):
    return VerifyFailedEvent(error={"error_class": "invalid_signature"}, status_code=400)


async def handle_verify_failed(event: VerifyFailedEvent, deps: Dependencies):
    return RelayFailedEvent(error=event.error, status_code=event.status_code)


async def handle_relay_failed_break(event: RelayFailedEvent, deps: Dependencies):
    return BreakEvent(break_reason="request rejected")


@pytest.mark.asyncio
async def test_events_yield_in_chain_order():
    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, handle_vote_rejected)
    event_bus.subscribe(VerifyFailedEvent, handle_verify_failed)

    chain = EventChain(event_bus, Dependencies())
    events = [event async for event in chain.execute(vote_event())]

    assert [type(e) for e in events] == [VerifyFailedEvent, RelayFailedEvent]
    assert events[1].error == {"error_class": "invalid_signature"}
    assert events[1].status_code == 400


@pytest.mark.asyncio
async def test_break_event_ends_chain():
    reached = []

    async def after_break(event: BreakEvent, deps: Dependencies):
        reached.append(event)

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, handle_vote_rejected)
    event_bus.subscribe(VerifyFailedEvent, handle_verify_failed)
    event_bus.subscribe(RelayFailedEvent, handle_relay_failed_break)
    event_bus.subscribe(BreakEvent, after_break)

    events = [e async for e in EventChain(event_bus, Dependencies()).execute(vote_event())]

    assert isinstance(events[-1], BreakEvent)
    assert events[-1].break_reason == "request rejected"
    assert reached == []


@pytest.mark.asyncio
async def test_none_results_are_skipped():
    async def observe_only(event: VoteRequestEvent, deps: Dependencies):
        return None

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, observe_only)

    events = [e async for e in EventChain(event_bus, Dependencies()).execute(vote_event())]
    assert events == []


@pytest.mark.asyncio
async def test_unsupported_handler_result_raises():
    async def bad_handler(event: VoteRequestEvent, deps: Dependencies):
        return {"status": "ok"}

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, bad_handler)

    with pytest.raises(TypeError):
        async for _ in EventChain(event_bus, Dependencies()).execute(vote_event()):
            pass


@pytest.mark.asyncio
async def test_handler_exception_propagates():
    async def failing_handler(event: VoteRequestEvent, deps: Dependencies):
        raise RuntimeError("rpc down")

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, failing_handler)

    with pytest.raises(RuntimeError, match="rpc down"):
        async for _ in EventChain(event_bus, Dependencies()).execute(vote_event()):
            pass


@pytest.mark.asyncio
async def test_background_handlers_finish_after_early_break():
    """Breaking out of the generator does not cancel sibling handlers."""
    finished = asyncio.Event()

    async def fast_reject(event: VoteRequestEvent, deps: Dependencies):
        return VerifyFailedEvent(error={"error_class": "nonce_mismatch"}, status_code=409)

    async def slow_audit(event: VoteRequestEvent, deps: Dependencies):
        await asyncio.sleep(0.05)
        finished.set()
        return None

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, fast_reject)
    event_bus.subscribe(VoteRequestEvent, slow_audit)

    first = None
    async for event in EventChain(event_bus, Dependencies()).execute(vote_event()):
        first = event
        break

    assert isinstance(first, VerifyFailedEvent)
    assert not finished.is_set()
    await asyncio.wait_for(finished.wait(), timeout=1.0)


@pytest.mark.asyncio
async def test_hooks_run_before_subscribers():
    order = []

    async def hook(event: VoteRequestEvent, deps: Dependencies):
        order.append("hook")

    async def handler(event: VoteRequestEvent, deps: Dependencies):
        order.append("handler")
        return None

    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, handler)
    event_bus.hook(VoteRequestEvent, hook)

    async for _ in EventChain(event_bus, Dependencies()).execute(vote_event()):
        pass

    assert order == ["hook", "handler"]


def test_subscribe_requires_coroutine_function():
    def sync_handler(event, deps):
        return None

    event_bus = EventBus()
    with pytest.raises(TypeError):
        event_bus.subscribe(VoteRequestEvent, sync_handler)
    with pytest.raises(TypeError):
        event_bus.hook(VoteRequestEvent, sync_handler)


@pytest.mark.asyncio
async def test_first_of_returns_first_outcome():
    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, handle_vote_rejected)
    event_bus.subscribe(VerifyFailedEvent, handle_verify_failed)

    outcome = await EventChain(event_bus, Dependencies()).first_of(vote_event(), (RelayFailedEvent,))

    assert isinstance(outcome, RelayFailedEvent)
    assert outcome.status_code == 400


@pytest.mark.asyncio
async def test_first_of_without_outcome():
    event_bus = EventBus()
    event_bus.subscribe(VoteRequestEvent, handle_vote_rejected)

    outcome = await EventChain(event_bus, Dependencies()).first_of(vote_event(), (RelayFailedEvent,))
    assert outcome is None
