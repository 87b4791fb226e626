"""Recent-chat summaries for a sidebar.

Summaries arrive two ways:
- live, as ``{"type": "chat_summary", "data": {...}}`` frames (or the relay
  form ``{"message": {...}, "ts": ...}``) on the inference socket, observed
  through ``on_any``
- as a snapshot from ``GET {api_base}/chat-summary/last``
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

SUMMARY_TYPE = "chat_summary"


@dataclass
class ChatSummary:
    """One entry of the recent-chats list."""
    chat_id: str
    session_id: str = "unknown"
    device_hash: str = "unknown"
    preview: str = ""
    ts: float = 0.0


def _safe_parse(text: str) -> Any:
    """Parse JSON that may have been encoded twice; return the input if it isn't JSON."""
    try:
        first = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
    if isinstance(first, str):
        try:
            return json.loads(first)
        except json.JSONDecodeError:
            return first
    return first


class ChatSummaries:
    """Recent chats, newest first, keyed by chat id."""

    def __init__(
        self,
        current_device: Optional[str] = None,
        clock: Callable[[], float] = lambda: time.time() * 1000,
    ):
        self.current_device = current_device
        self._clock = clock
        self._chats: dict[str, ChatSummary] = {}

    @property
    def chats(self) -> list[ChatSummary]:
        return sorted(self._chats.values(), key=lambda c: c.ts, reverse=True)

    def attach(self, manager) -> Callable[[], None]:
        """Subscribe to a connection manager. Returns the disposer."""
        return manager.add_handlers(self)

    def on_any(self, message: dict[str, Any]) -> None:
        self.handle_message(message)

    def handle_message(self, message: dict[str, Any]) -> Optional[ChatSummary]:
        """Upsert the summary carried by ``message``, if any."""
        if message.get("type") == SUMMARY_TYPE:
            data = message.get("data")
        elif isinstance(message.get("message"), dict) and message["message"].get("chat_id"):
            data = message["message"]
        else:
            return None

        if not isinstance(data, dict) or not data.get("chat_id"):
            return None
        if self.current_device and data.get("device_hash") != self.current_device:
            return None

        summary = ChatSummary(
            chat_id=data["chat_id"],
            session_id=data.get("session_id") or "unknown",
            device_hash=data.get("device_hash") or "unknown",
            preview=data.get("text") or data.get("preview") or "",
            ts=message.get("ts") or self._clock(),
        )
        return self.upsert(summary)

    def upsert(self, summary: ChatSummary) -> ChatSummary:
        existing = self._chats.get(summary.chat_id)
        if existing is not None:
            existing.preview = summary.preview
            existing.ts = summary.ts
            return existing
        self._chats[summary.chat_id] = summary
        return summary

    def remove(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)

    def clear(self) -> None:
        self._chats.clear()

    async def load_snapshot(self, base_url: str, client: Optional[httpx.AsyncClient] = None) -> int:
        """Replace the list with the backend's latest snapshot.

        Returns:
            Number of summaries loaded.

        Raises:
            httpx.HTTPError: the request failed or returned an error status.
        """
        url = f"{base_url.rstrip('/')}/chat-summary/last"
        if client is None:
            async with httpx.AsyncClient(timeout=30.0) as own_client:
                response = await own_client.get(url, headers={"Accept": "application/json"})
        else:
            response = await client.get(url, headers={"Accept": "application/json"})
        response.raise_for_status()

        data = _safe_parse(response.text)
        entries = data.get("chats") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            entries = []

        self._chats = {}
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("chat_id"):
                continue
            self._chats[entry["chat_id"]] = ChatSummary(
                chat_id=entry["chat_id"],
                session_id=entry.get("session_id") or "unknown",
                device_hash=entry.get("device_hash") or "unknown",
                preview=entry.get("text") or entry.get("summary") or entry.get("preview") or "",
                ts=entry.get("ts") or 0.0,
            )

        logger.info("Loaded %d chat summaries from snapshot", len(self._chats))
        return len(self._chats)
