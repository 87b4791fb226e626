"""Wire messages exchanged with the inference backend.

Inbound frames are classified once, at the boundary, into a tagged union:
- RawMessage: a bare text frame that does not look like a JSON object. It is
  a token fragment.
- JsonMessage: any JSON object. Only a few optional keys mean something to
  the client (type, token, done, system, message); everything else is passed
  through untouched.

Outbound frames are plain dicts built by the helpers below and serialized with
``encode()``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import MalformedMessageError
from .identity import Identity

SYSTEM_TYPE = "system"
REGISTER_TYPE = "register"
CANCEL_TYPE = "cancel"

# Prompt keys owned by the client; caller options cannot override them.
RESERVED_PROMPT_KEYS = frozenset({"id", "text", "device_hash", "session_id", "chat_id"})


@dataclass(frozen=True)
class RawMessage:
    """Bare non-JSON frame, delivered as a token."""
    text: str


@dataclass(frozen=True)
class JsonMessage:
    """A parsed JSON object frame."""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> Optional[str]:
        return self.data.get("type")

    @property
    def is_system(self) -> bool:
        return self.type == SYSTEM_TYPE

    @property
    def token(self) -> Optional[str]:
        """The token fragment, only if it is a non-empty string."""
        token = self.data.get("token")
        if isinstance(token, str) and token:
            return token
        return None

    @property
    def done(self) -> bool:
        return bool(self.data.get("done"))

    @property
    def system_text(self) -> Optional[str]:
        return self.data.get("system") or self.data.get("message")


InboundMessage = Union[RawMessage, JsonMessage]


def classify(frame: Union[str, bytes]) -> InboundMessage:
    """Classify one inbound frame.

    Raises:
        MalformedMessageError: the frame looks like a JSON object but does not
            parse into one, or is binary data that is not UTF-8.
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessageError(frame, f"not utf-8: {e.reason}") from e

    # Leading whitespace/newlines before a JSON object are tolerated.
    if not frame.lstrip().startswith("{"):
        return RawMessage(frame)

    try:
        data = json.loads(frame)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(frame, e.msg) from e

    if not isinstance(data, dict):
        raise MalformedMessageError(frame, "not a JSON object")
    return JsonMessage(data)


# =============================================================================
# Outbound frames
# =============================================================================

def register_frame(identity: Identity) -> dict[str, Any]:
    """Handshake frame, sent on every successful open."""
    return {
        "type": REGISTER_TYPE,
        "device_hash": identity.device_hash,
        "session_id": identity.session_id,
        "chat_id": identity.chat_id,
    }


def prompt_frame(request_id: str, text: str, identity: Identity, **options: Any) -> dict[str, Any]:
    """Prompt frame. Extra options (e.g. ``model``) are merged in."""
    clashing = RESERVED_PROMPT_KEYS.intersection(options)
    if clashing:
        raise ValueError(f"Prompt options cannot override: {', '.join(sorted(clashing))}")
    frame: dict[str, Any] = {
        "id": request_id,
        "text": text,
        "device_hash": identity.device_hash,
        "session_id": identity.session_id,
        "chat_id": identity.chat_id,
    }
    frame.update({k: v for k, v in options.items() if v is not None})
    return frame


def cancel_frame(request_id: str) -> dict[str, Any]:
    return {"type": CANCEL_TYPE, "id": request_id}


def encode(frame: dict[str, Any]) -> str:
    return json.dumps(frame)
