"""Device, session and chat identity.

The identity is sent to the backend in the ``register`` handshake and stamped
onto every prompt. It is made of:
- device_hash: a short, deterministic token derived from stable host
  characteristics. It classifies a device; it is not a credential, and two
  machines may share one.
- session_id: a fresh random id per provider (one per process).
- chat_id: the active conversation. Switching chats replaces the identity.
"""

import locale
import logging
import os
import platform
import time
import uuid
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE = "unknown"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class Identity:
    """Immutable identity triple sent with register and prompt frames."""
    device_hash: str
    session_id: str
    chat_id: str


def rolling_hash(text: str) -> int:
    """32-bit signed rolling hash (h * 31 + c), wrapped like a C int."""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def to_base36(value: int) -> str:
    """Format a non-negative integer in base 36."""
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def collect_device_characteristics() -> list[str]:
    """Read the host characteristics that feed the device hash.

    Only values that stay put between runs on one machine are used, so the
    hash is stable across launches.
    """
    lang, _ = locale.getlocale()
    return [
        f"{platform.system()} {platform.release()} {platform.machine()}",
        lang or "C",
        platform.node() or "?",
        time.tzname[0],
        str(os.cpu_count() or "cpu?"),
    ]


def generate_device_hash(characteristics: Optional[list[str]] = None) -> str:
    """Fold device characteristics into a short base-36 token."""
    try:
        if characteristics is None:
            characteristics = collect_device_characteristics()
        info = "|".join(characteristics)
    except (OSError, ValueError) as e:
        logger.warning("Device hash generation failed: %s", e)
        return UNKNOWN_DEVICE
    return to_base36(abs(rolling_hash(info)))


def new_id() -> str:
    return str(uuid.uuid4())


class IdentityProvider:
    """Holds the current identity for one process.

    The device hash and session id are computed once. The chat id is the only
    field that changes; each switch produces a new ``Identity``.
    """

    def __init__(
        self,
        device_hash: Optional[str] = None,
        session_id: Optional[str] = None,
        chat_id: Optional[str] = None,
    ):
        self._identity = Identity(
            device_hash=device_hash or generate_device_hash(),
            session_id=session_id or new_id(),
            chat_id=chat_id or new_id(),
        )

    @property
    def current(self) -> Identity:
        return self._identity

    def switch_chat(self, chat_id: Optional[str] = None) -> Identity:
        """Select an existing chat, or start a new one when ``chat_id`` is None."""
        self._identity = replace(self._identity, chat_id=chat_id or new_id())
        logger.debug("Active chat is now %s", self._identity.chat_id)
        return self._identity
