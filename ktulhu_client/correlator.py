"""Prompt/cancel correlation.

The client streams one conversation at a time, so at most one request is in
flight. A new prompt silently supersedes the previous one: tokens that arrive
late for the old id are still dispatched, but the old id can no longer be
cancelled.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from .identity import Identity
from .messages import cancel_frame, prompt_frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InflightRequest:
    """The outstanding prompt awaiting a done frame."""
    id: str


class PromptCorrelator:
    """Stamps ids onto prompts and tracks the single in-flight request."""

    def __init__(self):
        self._inflight: Optional[InflightRequest] = None

    @property
    def inflight(self) -> Optional[InflightRequest]:
        return self._inflight

    def begin(self, text: str, identity: Identity, **options: Any) -> tuple[str, dict[str, Any]]:
        """Build a prompt frame and make it the in-flight request.

        Returns:
            Tuple of (request_id, frame)
        """
        request_id = str(uuid.uuid4())
        frame = prompt_frame(request_id, text, identity, **options)
        if self._inflight is not None:
            logger.debug("Prompt %s supersedes %s", request_id[:8], self._inflight.id[:8])
        self._inflight = InflightRequest(request_id)
        return request_id, frame

    def cancel(self) -> Optional[dict[str, Any]]:
        """Build the cancel frame for the in-flight request and clear it.

        Returns None when nothing is in flight.
        """
        if self._inflight is None:
            return None
        frame = cancel_frame(self._inflight.id)
        self._inflight = None
        return frame

    def complete(self) -> None:
        """A done frame arrived."""
        self._inflight = None
