"""
Tests for ChatSession transcript handling on top of the connection manager.
"""

import asyncio
import logging

import pytest

from ktulhu_client.chat import ChatSession
from ktulhu_client.connection import ConnectionState
from ktulhu_client.errors import NotConnectedError


async def open_session(make_manager, backend, wait_until, **kwargs):
    manager = make_manager()
    session = ChatSession(manager, **kwargs).attach()
    manager.connect()
    await wait_until(lambda: manager.state == ConnectionState.OPEN and bool(backend.ws.sent))
    return manager, session


class TestSend:
    """User input becomes prompt frames and history entries."""

    @pytest.mark.asyncio
    async def test_send_records_user_message(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)

        request_id = session.send("  hello  ")
        await wait_until(lambda: len(backend.ws.sent) == 2)

        assert backend.ws.sent[1]["text"] == "hello"
        assert backend.ws.sent[1]["model"] == "mistral-7b-lora"
        assert session.is_sending
        assert session.request_id == request_id
        assert [(m.role, m.content) for m in session.history] == [("user", "hello")]

    @pytest.mark.asyncio
    async def test_blank_input_is_ignored(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)

        assert session.send("   ") is None
        assert session.history == []
        assert manager.inflight is None

    @pytest.mark.asyncio
    async def test_input_while_streaming_is_ignored(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        first = session.send("one")

        assert session.send("two") is None
        assert manager.inflight.id == first
        assert len(session.history) == 1

    @pytest.mark.asyncio
    async def test_model_can_be_omitted(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until, model=None)

        session.send("hello")
        await wait_until(lambda: len(backend.ws.sent) == 2)

        assert "model" not in backend.ws.sent[1]

    @pytest.mark.asyncio
    async def test_send_while_disconnected_records_nothing(self, make_manager):
        session = ChatSession(make_manager()).attach()

        with pytest.raises(NotConnectedError):
            session.send("hello")

        assert session.history == []
        assert not session.is_sending


class TestStreaming:
    """Tokens, system lines and done frames."""

    @pytest.mark.asyncio
    async def test_tokens_accumulate_into_one_reply(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        request_id = session.send("hi")

        backend.ws.feed({"token": "Hel"})
        backend.ws.feed("lo")
        backend.ws.feed({"done": True})
        await wait_until(lambda: not session.is_sending)

        reply = session.history[-1]
        assert (reply.role, reply.content) == ("assistant", "Hello")
        assert reply.request_id == request_id
        assert manager.inflight is None

    @pytest.mark.asyncio
    async def test_system_line_until_first_token(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        session.send("hi")

        backend.ws.feed({"type": "system", "message": "Loading model"})
        await wait_until(lambda: session.status_text == "Loading model")

        backend.ws.feed({"token": "A"})
        await wait_until(lambda: session.status_text is None)

    @pytest.mark.asyncio
    async def test_next_turn_starts_new_reply(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)

        for prompt, answer in (("one", "first"), ("two", "second")):
            session.send(prompt)
            backend.ws.feed({"token": answer, "done": True})
            await wait_until(lambda: not session.is_sending)

        assert [(m.role, m.content) for m in session.history] == [
            ("user", "one"), ("assistant", "first"),
            ("user", "two"), ("assistant", "second"),
        ]

    @pytest.mark.asyncio
    async def test_done_timeout_resets_to_idle(self, make_manager, backend, wait_until, caplog):
        manager, session = await open_session(make_manager, backend, wait_until, done_timeout=0.02)

        with caplog.at_level(logging.WARNING, logger="ktulhu_client.chat"):
            session.send("hi")
            await wait_until(lambda: not session.is_sending)

        assert session.request_id is None
        assert any("No done frame" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_done_cancels_timeout(self, make_manager, backend, wait_until, caplog):
        manager, session = await open_session(make_manager, backend, wait_until, done_timeout=0.05)
        session.send("hi")
        backend.ws.feed({"done": True})
        await wait_until(lambda: not session.is_sending)

        with caplog.at_level(logging.WARNING, logger="ktulhu_client.chat"):
            await asyncio.sleep(0.1)

        assert not any("No done frame" in r.getMessage() for r in caplog.records)


class TestCancelAndSwitch:

    @pytest.mark.asyncio
    async def test_cancel_sends_cancel_and_resets(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        request_id = session.send("hi")

        assert session.cancel() == request_id
        await wait_until(lambda: len(backend.ws.sent) == 3)

        assert backend.ws.sent[2] == {"type": "cancel", "id": request_id}
        assert not session.is_sending

    @pytest.mark.asyncio
    async def test_late_tokens_still_land_after_cancel(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        session.send("hi")
        session.cancel()

        backend.ws.feed({"token": "late"})
        await wait_until(lambda: session.history[-1].role == "assistant")

        assert session.history[-1].content == "late"

    @pytest.mark.asyncio
    async def test_new_chat_clears_history(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        session.send("hi")
        backend.ws.feed({"token": "yo", "done": True})
        await wait_until(lambda: not session.is_sending)

        chat_id = session.new_chat()

        assert chat_id != "chat-a"
        assert session.chat_id == chat_id
        assert session.history == []

        session.send("fresh")
        await wait_until(lambda: backend.ws.sent[-1].get("text") == "fresh")
        assert backend.ws.sent[-1]["chat_id"] == chat_id

    @pytest.mark.asyncio
    async def test_detach_stops_updates(self, make_manager, backend, wait_until):
        manager, session = await open_session(make_manager, backend, wait_until)
        session.send("hi")
        session.detach()

        backend.ws.feed({"token": "ignored"})
        backend.ws.feed({"done": True})
        await wait_until(lambda: manager.inflight is None)

        assert [m.role for m in session.history] == ["user"]
