"""Tests for the connection registry."""

from __future__ import annotations

import asyncio
import json

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from booking_assistant.prompts import GREETING
from booking_assistant.services.registry import (
    CANCELLED_TEXT,
    CONFIRM_TEXT,
    DECLINE_TEXT,
    NOTHING_TO_CANCEL_TEXT,
    parse_client_event,
)
from fakes import (
    READY,
    CountingFactory,
    RecordingConnection,
    ScriptedAdapter,
    ScriptedModel,
    call_turn,
    make_registry,
    text_turn,
)

CHECK_ARGS = {
    "name": "John Doe",
    "email": "john@example.com",
    "date": "2026-06-19",
    "time": "14:00",
    "platform": "calendly",
}
CHECKING = "I'll check if that time slot is available."


async def _connected(model, *adapters, factory=None, **kwargs):
    factory = factory or CountingFactory()
    registry = make_registry(model, *(adapters or (ScriptedAdapter(),)), factory=factory, **kwargs)
    conn = RecordingConnection()
    await registry.on_connect(conn)
    return registry, conn, factory


class TestParseClientEvent:
    def test_plain_text_is_a_message(self):
        event = parse_client_event("I need a haircut")
        assert event.type == "message"
        assert event.payload == {"text": "I need a haircut"}

    def test_structured_message(self):
        event = parse_client_event(json.dumps({"type": "message", "payload": {"text": "hi"}}))
        assert event.payload["text"] == "hi"

    def test_confirm_booking(self):
        event = parse_client_event(json.dumps({"type": "confirm_booking", "payload": {"confirm": True}}))
        assert event.type == "confirm_booking"
        assert event.payload["confirm"] is True

    def test_unknown_type_falls_back_to_text(self):
        raw = json.dumps({"type": "delete_account"})
        assert parse_client_event(raw).payload == {"text": raw}

    def test_message_without_text_falls_back_to_raw(self):
        raw = json.dumps({"type": "message", "payload": {"text": 42}})
        assert parse_client_event(raw).payload == {"text": raw}


class TestConnect:
    @pytest.mark.asyncio
    async def test_greeting_without_model_or_session(self):
        model = ScriptedModel()
        registry, conn, factory = await _connected(model)

        assert conn.texts == [GREETING]
        assert model.seen == []
        assert factory.created == []
        ctx = registry.get(conn.id)
        assert len(ctx.history) == 1
        assert isinstance(ctx.history[0], SystemMessage)
        assert GREETING in ctx.history[0].content
        await registry.close()

    @pytest.mark.asyncio
    async def test_unknown_connection_is_ignored(self):
        model = ScriptedModel()
        registry = make_registry(model, ScriptedAdapter(), factory=CountingFactory())

        await registry.on_message("nobody", "hello")

        assert registry.submit("nobody", "hello") is None
        assert model.seen == []


class TestMessages:
    @pytest.mark.asyncio
    async def test_message_runs_one_turn(self):
        model = ScriptedModel([text_turn("Which platform would you like?")])
        registry, conn, _ = await _connected(model)

        await registry.on_message(conn.id, "I want to book something")

        assert conn.texts[-1] == "Which platform would you like?"
        history = model.seen[0]
        assert isinstance(history[-1], HumanMessage)
        assert history[-1].content == "I want to book something"
        await registry.close()

    @pytest.mark.asyncio
    async def test_blank_message_is_ignored(self):
        model = ScriptedModel()
        registry, conn, _ = await _connected(model)

        await registry.on_message(conn.id, "   ")

        assert model.seen == []
        await registry.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confirm, expected", [(True, CONFIRM_TEXT), (False, DECLINE_TEXT)])
    async def test_confirm_booking_becomes_user_text(self, confirm, expected):
        model = ScriptedModel([text_turn("ok")])
        registry, conn, _ = await _connected(model)

        await registry.on_message(conn.id, json.dumps({"type": "confirm_booking", "payload": {"confirm": confirm}}))

        assert model.seen[0][-1].content == expected
        await registry.close()

    @pytest.mark.asyncio
    async def test_structured_confirmation_books_the_checked_slot(self):
        adapter = ScriptedAdapter()
        model = ScriptedModel([
            call_turn("checkAvailability", CHECK_ARGS),
            text_turn("2:00 PM is free. Confirm?"),
            call_turn("bookAppointment", CHECK_ARGS, call_id="toolu_2"),
            text_turn("You're booked!"),
        ])
        registry, conn, factory = await _connected(model, adapter)

        await registry.on_message(conn.id, "Calendly tomorrow at 2pm please")
        await registry.on_message(conn.id, json.dumps({"type": "confirm_booking", "payload": {"confirm": True}}))

        assert [call[0] for call in adapter.calls] == ["check", "book"]
        assert adapter.calls[0][1] is adapter.calls[1][1]
        assert conn.texts[-1] == "You're booked!"
        assert factory.released_exactly_once()
        assert registry.status()["active_sessions"] == 0
        await registry.close()

    @pytest.mark.asyncio
    async def test_announcements_reset_for_each_message(self):
        model = ScriptedModel([
            call_turn("checkAvailability", CHECK_ARGS),
            text_turn("Free."),
            call_turn("checkAvailability", {**CHECK_ARGS, "time": "15:00"}),
            text_turn("Also free."),
        ])
        registry, conn, _ = await _connected(model)

        await registry.on_message(conn.id, "check 2pm")
        await registry.on_message(conn.id, "and 3pm?")

        assert conn.texts.count(CHECKING) == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_turns_for_one_connection_run_in_order(self):
        model = ScriptedModel([text_turn("one"), text_turn("two"), text_turn("three")], delay=0.01)
        registry, conn, _ = await _connected(model)

        tasks = [registry.submit(conn.id, text) for text in ("first", "second", "third")]
        await asyncio.gather(*tasks)

        assert model.max_active == 1
        assert [seen[-1].content for seen in model.seen] == ["first", "second", "third"]
        assert conn.texts[1:] == ["one", "two", "three"]
        await registry.close()


class TestCancelBooking:
    @pytest.mark.asyncio
    async def test_cancel_without_session(self):
        model = ScriptedModel()
        registry, conn, _ = await _connected(model)

        await registry.on_message(conn.id, json.dumps({"type": "cancel_booking"}))

        assert conn.texts[-1] == NOTHING_TO_CANCEL_TEXT
        assert model.seen == []
        await registry.close()

    @pytest.mark.asyncio
    async def test_cancel_releases_the_session(self):
        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free, confirm?")])
        registry, conn, factory = await _connected(model)
        await registry.on_message(conn.id, "check 2pm")
        assert registry.status()["active_sessions"] == 1

        await registry.on_message(conn.id, json.dumps({"type": "cancel_booking", "payload": {}}))

        assert conn.texts[-1] == CANCELLED_TEXT
        assert factory.released_exactly_once()
        assert registry.status()["active_sessions"] == 0
        await registry.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_releases_session(self):
        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free.")])
        registry, conn, factory = await _connected(model)
        await registry.on_message(conn.id, "check")

        await registry.on_disconnect(conn.id)
        await registry.on_disconnect(conn.id)

        assert registry.get(conn.id) is None
        assert factory.released_exactly_once()
        assert registry.status() == {"connections": 0, "active_sessions": 0}

    @pytest.mark.asyncio
    async def test_disconnect_mid_call_waits_for_the_call(self):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def check(resource, details):
            started.set()
            await gate.wait()
            return READY

        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("never sent")])
        registry, conn, factory = await _connected(model, ScriptedAdapter(check=check))

        turn = registry.submit(conn.id, "check")
        await started.wait()
        asyncio.get_running_loop().call_later(0.02, gate.set)

        await registry.on_disconnect(conn.id)

        assert turn.cancelled()
        assert factory.released_exactly_once()
        assert "never sent" not in conn.texts
        assert conn.status_toggles == [True]

    @pytest.mark.asyncio
    async def test_messages_after_disconnect_are_dropped(self):
        model = ScriptedModel()
        registry, conn, _ = await _connected(model)
        await registry.on_disconnect(conn.id)

        await registry.on_message(conn.id, "hello?")

        assert model.seen == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_evicts_stale_sessions_only(self):
        model = ScriptedModel([
            call_turn("checkAvailability", CHECK_ARGS), text_turn("Free."),
            call_turn("checkAvailability", CHECK_ARGS), text_turn("Free."),
        ])
        factory = CountingFactory()
        registry = make_registry(model, ScriptedAdapter(), factory=factory)
        stale, fresh = RecordingConnection("stale"), RecordingConnection("fresh")
        for conn in (stale, fresh):
            await registry.on_connect(conn)
            await registry.on_message(conn.id, "check")

        registry.get("stale").flow.session.last_used -= 1000

        assert await registry.sweep() == 1
        assert registry.get("stale").flow.session is None
        assert registry.get("fresh").flow.session is not None
        assert factory.created[0].close_calls == 1
        assert factory.created[1].close_calls == 0
        await registry.close()
        assert factory.released_exactly_once()

    @pytest.mark.asyncio
    async def test_background_sweep_runs_periodically(self):
        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free.")])
        registry, conn, factory = await _connected(model, sweep_interval=0.01)
        await registry.on_message(conn.id, "check")
        registry.get(conn.id).flow.session.last_used -= 1000

        registry.start()
        await asyncio.sleep(0.05)

        assert factory.created[0].close_calls == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_sweep_skips_session_with_running_call(self):
        gate = asyncio.Event()

        async def check(resource, details):
            await gate.wait()
            return READY

        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free.")])
        registry, conn, factory = await _connected(model, ScriptedAdapter(check=check))
        turn = asyncio.ensure_future(registry.on_message(conn.id, "check"))
        await asyncio.sleep(0.01)
        session = registry.get(conn.id).flow.session
        session.last_used -= 1000

        assert await registry.sweep() == 0
        assert not session.closed

        gate.set()
        await turn
        assert registry.get(conn.id).flow.session is session
        assert factory.created[0].close_calls == 0
        await registry.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_status_counts(self):
        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free.")])
        registry, conn, _ = await _connected(model)
        await registry.on_connect(RecordingConnection("other"))
        await registry.on_message(conn.id, "check")

        assert registry.status() == {"connections": 2, "active_sessions": 1}
        await registry.close()

    @pytest.mark.asyncio
    async def test_close_tears_down_everything(self):
        model = ScriptedModel([call_turn("checkAvailability", CHECK_ARGS), text_turn("Free.")])
        registry, conn, factory = await _connected(model)
        registry.start()
        await registry.on_message(conn.id, "check")

        await registry.close()

        assert registry.status() == {"connections": 0, "active_sessions": 0}
        assert factory.released_exactly_once()
