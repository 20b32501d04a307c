"""
Tests for interfaces/transport.py — subscription and fire-and-forget dispatch.
"""

import asyncio

import pytest

from chatpilot.interfaces.transport import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_UPDATE,
    MESSAGE_NEW,
    AIState,
    ChatMessageRef,
    InboundEvent,
    IndicatorEvent,
)

from fakes import FakeTransport


def _event(text="hi"):
    return InboundEvent(type=MESSAGE_NEW, channel_id="chan-1", text=text)


class TestIndicatorEvent:
    def test_update(self):
        ref = ChatMessageRef(channel_id="c", message_id="m")
        event = IndicatorEvent.update(ref, AIState.THINKING)
        assert event.type == AI_INDICATOR_UPDATE
        assert event.state is AIState.THINKING
        assert event.state.value == "AI_STATE_THINKING"

    def test_clear_has_no_state(self):
        event = IndicatorEvent.clear(ChatMessageRef(channel_id="c", message_id="m"))
        assert event.type == AI_INDICATOR_CLEAR
        assert event.state is None


class TestSubscription:
    def test_on_and_off(self):
        transport = FakeTransport()

        async def handler(event):
            pass

        transport.on(MESSAGE_NEW, handler)
        assert transport.handler_count(MESSAGE_NEW) == 1
        transport.off(MESSAGE_NEW, handler)
        transport.off(MESSAGE_NEW, handler)  # second off is harmless
        assert transport.handler_count(MESSAGE_NEW) == 0

    @pytest.mark.asyncio
    async def test_dispatch_without_handlers(self):
        assert FakeTransport().dispatch(_event()) == []


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait_for_handlers(self):
        transport = FakeTransport()
        gate = asyncio.Event()
        seen = []

        async def slow(event):
            await gate.wait()
            seen.append(event.text)

        transport.on(MESSAGE_NEW, slow)
        tasks = transport.dispatch(_event("one"))
        tasks += transport.dispatch(_event("two"))

        assert len(tasks) == 2
        assert seen == []

        gate.set()
        await transport.join()
        assert sorted(seen) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self):
        transport = FakeTransport()
        seen = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def healthy(event):
            seen.append(event.text)

        transport.on(MESSAGE_NEW, broken)
        transport.on(MESSAGE_NEW, healthy)

        tasks = transport.dispatch(_event())
        await transport.join()

        assert seen == ["hi"]
        assert all(t.exception() is None for t in tasks)
