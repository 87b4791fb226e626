"""Exceptions raised by the streaming session client.

Transport failures are never raised out of the client; they surface as
``ConnectionManager.state`` and ``ConnectionManager.last_error`` instead.
Only caller misuse and frame classification use exceptions.
"""


class ClientError(Exception):
    """Base class for client errors."""


class NotConnectedError(ClientError):
    """Raised when a frame is sent while the connection is not open."""

    def __init__(self, state: str, action: str = "send"):
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action}: connection is {state}")


class MalformedMessageError(ClientError):
    """Raised when an inbound frame looks like JSON but cannot be parsed as an object."""

    def __init__(self, frame, reason: str):
        self.frame = frame
        self.reason = reason
        super().__init__(f"Malformed frame ({reason}): {frame!r:.120}")
