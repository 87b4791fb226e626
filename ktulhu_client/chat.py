"""Chat session: turns the token stream into a transcript.

One ``ChatSession`` is one subscriber of the connection manager. It keeps the
user/assistant messages of the active chat, the latest system status line,
and whether a reply is still streaming. Since the client does not filter by
request id, tokens that arrive late for a cancelled request still land in the
transcript.

If no done frame arrives within ``done_timeout`` seconds after a prompt, the
session resets itself to idle. This is a local safety valve only; nothing is
sent to the backend.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import DEFAULT_MODEL
from .connection import ConnectionManager
from .dispatch import HandlerSet

logger = logging.getLogger(__name__)

DEFAULT_DONE_TIMEOUT = 20.0


@dataclass
class ChatMessage:
    """A message in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: Optional[str] = None
    ts: float = field(default_factory=time.time)


class ChatSession:
    """Transcript and busy state for the active chat."""

    def __init__(
        self,
        manager: ConnectionManager,
        model: Optional[str] = DEFAULT_MODEL,
        done_timeout: Optional[float] = DEFAULT_DONE_TIMEOUT,
    ):
        self.manager = manager
        self.model = model
        self.done_timeout = done_timeout

        self.history: list[ChatMessage] = []
        self.status_text: Optional[str] = None
        self.is_sending = False
        self.request_id: Optional[str] = None

        self._assistant: Optional[ChatMessage] = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._dispose = None

    @property
    def chat_id(self) -> str:
        return self.manager.identity.chat_id

    def attach(self) -> "ChatSession":
        """Subscribe to the connection manager."""
        if self._dispose is None:
            self._dispose = self.manager.add_handlers(HandlerSet(
                on_token=self._on_token,
                on_done=self._on_done,
                on_system=self._on_system,
            ))
        return self

    def detach(self) -> None:
        """Unsubscribe and drop the pending timeout."""
        if self._dispose is not None:
            self._dispose()
            self._dispose = None
        self._cancel_timeout()

    def send(self, text: str) -> Optional[str]:
        """Send a user message.

        Blank input, or input while a reply is still streaming, is ignored.

        Returns:
            The request id, or None if the message was ignored.

        Raises:
            NotConnectedError: the connection is not open. Nothing is recorded.
        """
        clean = text.strip()
        if not clean or self.is_sending:
            return None

        options: dict[str, Any] = {}
        if self.model:
            options["model"] = self.model
        request_id = self.manager.send_prompt(clean, **options)

        self.history.append(ChatMessage(role="user", content=clean, request_id=request_id))
        self.is_sending = True
        self.request_id = request_id
        self._assistant = None
        self._arm_timeout()
        return request_id

    def cancel(self) -> Optional[str]:
        """Cancel the streaming reply and reset locally."""
        try:
            return self.manager.cancel()
        finally:
            self._reset()

    def new_chat(self, chat_id: Optional[str] = None) -> str:
        """Switch to another chat (a new one by default) with an empty transcript."""
        identity = self.manager.switch_chat(chat_id)
        self.history = []
        self._reset()
        return identity.chat_id

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_token(self, token: str) -> None:
        self.status_text = None
        if self._assistant is None:
            self._assistant = ChatMessage(role="assistant", content="", request_id=self.request_id)
            self.history.append(self._assistant)
        self._assistant.content += token

    def _on_system(self, message: dict[str, Any]) -> None:
        self.status_text = message.get("system") or message.get("message")

    def _on_done(self) -> None:
        self._reset()

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        logger.warning(
            "No done frame for %s within %ss; resetting to idle",
            (self.request_id or "?")[:8], self.done_timeout,
        )
        self._reset()

    def _reset(self) -> None:
        self.is_sending = False
        self.status_text = None
        self.request_id = None
        self._assistant = None
        self._cancel_timeout()

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        if self.done_timeout:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(self.done_timeout, self._on_timeout)

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
