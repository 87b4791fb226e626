"""Fan-out of inbound messages to any number of handler sets.

Dispatch is per-handler-complete: for one frame, each handler set in
registration order receives all of its callbacks before the next handler set
is visited. Within a handler set the order is:

    on_any -> on_system -> on_token -> on_done

Raw (non-JSON) frames only produce ``on_token``; ``on_any`` does not fire
for them.

The registry may be mutated from inside a callback. Each frame is dispatched
over a snapshot of the registered sets, and every callback is preceded by a
membership check, so a set removed mid-dispatch receives nothing further and
a set added mid-dispatch starts with the next frame.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .messages import InboundMessage, RawMessage

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]
DoneCallback = Callable[[], None]
MessageCallback = Callable[[dict[str, Any]], None]


@dataclass(eq=False)
class HandlerSet:
    """Optional callbacks for one subscriber.

    Any object with these attribute names can be registered; this dataclass is
    a convenience. Membership is by identity, so two sets with the same
    callbacks are distinct registrations.
    """
    on_token: Optional[TokenCallback] = None
    on_done: Optional[DoneCallback] = None
    on_system: Optional[MessageCallback] = None
    on_any: Optional[MessageCallback] = None


def _noop() -> None:
    pass


class DispatchRegistry:
    """Insertion-ordered set of handler sets."""

    def __init__(self):
        self._handlers: list[Any] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, handlers: Any) -> bool:
        return any(h is handlers for h in self._handlers)

    def add(self, handlers: Any) -> Callable[[], None]:
        """Register a handler set and return a disposer that unregisters it.

        Registering the same object twice is a no-op, and the disposer returned
        for the duplicate does nothing; only the first disposer unregisters.
        Disposers may be called more than once.
        """
        if handlers in self:
            return _noop
        self._handlers.append(handlers)

        def dispose() -> None:
            self.remove(handlers)

        return dispose

    def remove(self, handlers: Any) -> None:
        self._handlers = [h for h in self._handlers if h is not handlers]

    def clear(self) -> None:
        self._handlers = []

    def dispatch(self, message: InboundMessage) -> None:
        """Deliver one classified message to every registered handler set."""
        for handlers in list(self._handlers):
            if handlers not in self:
                continue
            try:
                self._deliver(handlers, message)
            except Exception:
                # One failing subscriber must not starve the others.
                logger.exception("Handler %r failed while dispatching a frame", handlers)

    def _deliver(self, handlers: Any, message: InboundMessage) -> None:
        if isinstance(message, RawMessage):
            self._call(handlers, "on_token", message.text)
            return

        data = message.data
        self._call(handlers, "on_any", data)
        if message.is_system:
            self._call(handlers, "on_system", data)
        token = message.token
        if token is not None:
            self._call(handlers, "on_token", token)
        if message.done:
            self._call(handlers, "on_done")

    def _call(self, handlers: Any, name: str, *args: Any) -> None:
        if handlers not in self:
            return
        callback = getattr(handlers, name, None)
        if callback is not None:
            callback(*args)
