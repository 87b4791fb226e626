"""
Tests for inbound classification and outbound frame builders.
"""

import json

import pytest

from ktulhu_client.errors import MalformedMessageError
from ktulhu_client.identity import Identity
from ktulhu_client.messages import (
    JsonMessage,
    RawMessage,
    cancel_frame,
    classify,
    encode,
    prompt_frame,
    register_frame,
)

IDENTITY = Identity(device_hash="dev", session_id="sess", chat_id="chat")


class TestClassify:
    """Raw vs JSON vs malformed frames."""

    def test_plain_text_is_raw(self):
        assert classify("plain text") == RawMessage("plain text")

    def test_json_array_is_raw(self):
        # Only frames that look like objects are parsed.
        assert classify("[1, 2]") == RawMessage("[1, 2]")

    def test_object_is_json(self):
        message = classify('{"token": "Hel"}')
        assert isinstance(message, JsonMessage)
        assert message.token == "Hel"
        assert not message.done

    def test_leading_whitespace_is_tolerated(self):
        message = classify('\n  {"done": true}')
        assert isinstance(message, JsonMessage)
        assert message.done

    def test_bytes_are_decoded(self):
        assert classify(b'{"token": "x"}').token == "x"
        assert classify("héllo".encode()) == RawMessage("héllo")

    def test_broken_json_is_malformed(self):
        with pytest.raises(MalformedMessageError) as exc:
            classify("{not json")
        assert exc.value.frame == "{not json"

    def test_undecodable_bytes_are_malformed(self):
        with pytest.raises(MalformedMessageError):
            classify(b"\xff\xfe{")


class TestJsonMessage:
    """Recognized optional keys."""

    def test_system_message(self):
        message = JsonMessage({"type": "system", "system": "Warming up"})
        assert message.is_system
        assert message.system_text == "Warming up"

    def test_system_text_falls_back_to_message(self):
        message = JsonMessage({"type": "system", "message": "Queued"})
        assert message.system_text == "Queued"

    def test_unknown_keys_pass_through(self):
        message = JsonMessage({"type": "chat_summary", "data": {"chat_id": "c"}})
        assert message.type == "chat_summary"
        assert not message.is_system
        assert message.token is None
        assert message.data["data"] == {"chat_id": "c"}


class TestOutboundFrames:
    """Wire format of register, prompt and cancel."""

    def test_register_frame(self):
        assert register_frame(IDENTITY) == {
            "type": "register",
            "device_hash": "dev",
            "session_id": "sess",
            "chat_id": "chat",
        }

    def test_prompt_frame_with_model(self):
        frame = prompt_frame("req-1", "hello", IDENTITY, model="mistral-7b-lora")
        assert frame == {
            "id": "req-1",
            "text": "hello",
            "device_hash": "dev",
            "session_id": "sess",
            "chat_id": "chat",
            "model": "mistral-7b-lora",
        }

    def test_prompt_frame_skips_none_options(self):
        assert "model" not in prompt_frame("req-1", "hello", IDENTITY, model=None)

    def test_prompt_frame_rejects_reserved_options(self):
        with pytest.raises(ValueError, match="session_id"):
            prompt_frame("req-1", "hello", IDENTITY, session_id="other")

    def test_cancel_frame(self):
        assert json.loads(encode(cancel_frame("req-1"))) == {"type": "cancel", "id": "req-1"}
