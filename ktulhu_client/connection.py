"""WebSocket connection to the inference backend.

This is the core of the client. It:
1. Owns the single WebSocket and drives the connection state machine
2. Re-sends the ``register`` handshake on every successful open
3. Reconnects with exponential backoff after every close or error
4. Classifies inbound frames and fans them out through the dispatch registry
5. Stamps outbound prompts and cancels the in-flight one on request

State machine (any other transition is ignored):

    idle -> connecting -> open -> error
                 |          |       |
                 +----------+-------+--> closed -> connecting -> ...

    any -> idle    (deliberate teardown only)

Everything runs on one asyncio loop. ``send_prompt`` and ``cancel`` are
synchronous: they put frames on a per-connection outbox drained in order by a
writer task, with ``register`` always first.
"""

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
)
from rich.console import Console

from .backoff import Backoff
from .correlator import InflightRequest, PromptCorrelator
from .dispatch import DispatchRegistry
from .errors import MalformedMessageError, NotConnectedError
from .identity import Identity, IdentityProvider
from .messages import JsonMessage, classify, encode, register_frame

logger = logging.getLogger(__name__)
console = Console()


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


# Allowed edges, excluding teardown (any -> idle).
_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.OPEN, ConnectionState.CLOSED}),
    ConnectionState.OPEN: frozenset({ConnectionState.ERROR, ConnectionState.CLOSED}),
    ConnectionState.ERROR: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING}),
}

_STOP_WRITER = object()
_CANCEL_RETRY_INTERVAL = 0.05  # seconds

ConnectFactory = Callable[..., Awaitable[Any]]
StateCallback = Callable[[ConnectionState, ConnectionState], None]


def describe_transport_error(e: BaseException) -> str:
    """Turn a connection failure into a short human readable string."""
    if isinstance(e, InvalidStatus):
        status = e.response.status_code
        body = b""
        with suppress(AttributeError):
            body = e.response.body or b""
        if body:
            return f"HTTP {status}: {body.decode('utf-8', errors='ignore')[:150]}"
        if status >= 500:
            return f"HTTP {status}: Server error"
        return f"HTTP {status}"
    if isinstance(e, InvalidURI):
        return f"Invalid endpoint URL: {e}"
    if isinstance(e, InvalidHandshake):
        return f"Handshake failed: {e}"
    if isinstance(e, ConnectionRefusedError):
        return "Connection refused - backend unreachable"
    if isinstance(e, asyncio.TimeoutError):
        return "Connection attempt timed out"
    if isinstance(e, OSError):
        return f"Network error: {e}"
    return f"{type(e).__name__}: {e}"


async def _cancel_and_wait(task: asyncio.Task) -> None:
    """Cancel a task and wait until it has finished.

    The cancel is re-sent until it sticks: before Python 3.12,
    ``asyncio.wait_for`` drops a cancel that races with its inner await
    completing, and the task carries on.
    """
    while not task.done():
        task.cancel()
        await asyncio.wait({task}, timeout=_CANCEL_RETRY_INTERVAL)
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Task %s ended with %r", task.get_name(), task.exception())


class ConnectionManager:
    """
    Manages the WebSocket connection to the inference backend.

    The manager owns the socket, the reconnect timer, the dispatch registry and
    the in-flight request. Consumers only subscribe (``add_handlers``), send
    (``send_prompt``) and cancel (``cancel``); reconnection is invisible to
    them apart from ``state`` and ``last_error``.
    """

    def __init__(
        self,
        endpoint: str,
        identity: Optional[IdentityProvider] = None,
        registry: Optional[DispatchRegistry] = None,
        backoff: Optional[Backoff] = None,
        connect_factory: Optional[ConnectFactory] = None,
        send_timeout: float = 5.0,
        ping_interval: Optional[float] = 30.0,
        ping_timeout: Optional[float] = 10.0,
        max_retries: int = -1,  # -1 = infinite retries, 0 = no retries (single try)
        log_callback: Callable[[str, str], None] | None = None,
    ):
        self.endpoint = endpoint
        self.identity_provider = identity or IdentityProvider()
        self.backoff = backoff or Backoff()
        self.send_timeout = send_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.max_retries = max_retries
        self.log_callback = log_callback
        self._registry = registry if registry is not None else DispatchRegistry()
        self._connect_factory = connect_factory or websockets.connect
        self._correlator = PromptCorrelator()

        self._state = ConnectionState.IDLE
        self._last_error: Optional[str] = None
        self._ws: Any = None
        self._run_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._outbox: asyncio.Queue[Any] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._retry_count = 0
        self._opened = asyncio.Event()

        # Callback for status indicators
        # Signature: (old: ConnectionState, new: ConnectionState) -> None
        self.on_state_change: StateCallback | None = None

    # =========================================================================
    # Public surface
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def inflight(self) -> Optional[InflightRequest]:
        return self._correlator.inflight

    @property
    def identity(self) -> Identity:
        return self.identity_provider.current

    @property
    def registry(self) -> DispatchRegistry:
        return self._registry

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self) -> None:
        """Start connecting. No-op while connecting, open, or waiting on a close after an error."""
        if self._state not in (ConnectionState.IDLE, ConnectionState.CLOSED):
            logger.debug("connect() ignored in state %s", self._state.value)
            return

        self._cancel_reconnect()
        self._transition(ConnectionState.CONNECTING)
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    def send_prompt(self, text: str, **options: Any) -> str:
        """Send a prompt and make it the in-flight request.

        Extra keyword options (e.g. ``model``) are merged into the frame.

        Returns:
            The request id stamped on the frame.

        Raises:
            NotConnectedError: the connection is not open; nothing is written.
        """
        if self._state is not ConnectionState.OPEN or self._outbox is None:
            raise NotConnectedError(self._state.value, "send prompt")

        request_id, frame = self._correlator.begin(text, self.identity, **options)
        self._outbox.put_nowait(frame)
        logger.debug("Prompt %s queued (chat %s)", request_id[:8], frame["chat_id"][:8])
        return request_id

    def cancel(self) -> Optional[str]:
        """Cancel the in-flight request, if any.

        The in-flight request is cleared locally right away. Tokens the backend
        already produced for it may still arrive and are dispatched as usual.

        Returns:
            The cancelled request id, or None if nothing was in flight.

        Raises:
            NotConnectedError: something was in flight but the connection is
                not open. The request is still cleared locally.
        """
        inflight = self._correlator.inflight
        if inflight is None:
            return None

        frame = self._correlator.cancel()
        if self._state is not ConnectionState.OPEN or self._outbox is None:
            raise NotConnectedError(self._state.value, "cancel")

        self._outbox.put_nowait(frame)
        self._log(f"Cancel requested: {inflight.id[:8]}...", "warn")
        return inflight.id

    def add_handlers(self, handlers: Any) -> Callable[[], None]:
        """Subscribe a handler set to every inbound frame. Returns a disposer."""
        return self._registry.add(handlers)

    def switch_chat(self, chat_id: Optional[str] = None) -> Identity:
        """Change the active chat. The next prompt carries the new chat id."""
        return self.identity_provider.switch_chat(chat_id)

    async def wait_until_open(self, timeout: Optional[float] = None) -> bool:
        """Wait for the connection to be open. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self):
        """Tear down: cancel the reconnect timer, stop tasks, close the socket."""
        self._cancel_reconnect()
        self._transition(ConnectionState.IDLE)

        task = self._run_task
        self._run_task = None
        if task and task is not asyncio.current_task():
            await _cancel_and_wait(task)

        await self._stop_writer()

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Socket close failed: %s", e)
            self._log("Disconnected from backend", "warn")

    async def __aenter__(self) -> "ConnectionManager":
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Transport events
    # =========================================================================

    async def _run(self):
        """One connection attempt: open, read until closed, then hand over to reconnect."""
        self._log(f"Connecting to {self.endpoint}...", "warn")

        try:
            ws = await self._connect_factory(
                self.endpoint,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Connection attempt failed: %s (%s)", e, type(e).__name__)
            self._last_error = describe_transport_error(e)
            self._log(self._last_error, "error")
            self._handle_close()
            return

        if self._state is not ConnectionState.CONNECTING:
            # Torn down while the handshake was in flight.
            await ws.close()
            return

        self._handle_open(ws)

        try:
            async for frame in ws:
                self._handle_frame(frame)
        except ConnectionClosedError as e:
            self._handle_error(f"Connection lost: {e}")

        await self._stop_writer()
        self._handle_close()

    def _handle_open(self, ws):
        self._ws = ws
        self._last_error = None
        self._retry_count = 0
        self.backoff.reset()

        # The handshake goes first on the fresh outbox, ahead of anything a
        # state listener sends once it sees OPEN.
        self._outbox = asyncio.Queue()
        self._outbox.put_nowait(register_frame(self.identity))
        self._writer_task = asyncio.get_running_loop().create_task(self._write_loop(ws, self._outbox))

        self._transition(ConnectionState.OPEN)
        self._log("Connected to backend!", "success")

    def _handle_frame(self, frame):
        try:
            message = classify(frame)
        except MalformedMessageError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return

        # Cleared before dispatch so an on_done handler can send the next prompt.
        if isinstance(message, JsonMessage) and message.done:
            self._correlator.complete()

        self._registry.dispatch(message)

    def _handle_error(self, reason: str):
        self._last_error = reason
        self._log(reason, "error")
        self._transition(ConnectionState.ERROR)

    def _handle_close(self):
        self._ws = None
        if ConnectionState.CLOSED not in _TRANSITIONS[self._state]:
            return

        # Timer first, so a state listener calling connect() cancels it.
        self._retry_count += 1
        if self.max_retries >= 0 and self._retry_count > self.max_retries:
            self._log(f"Connection failed: {self._last_error or 'closed by backend'}", "error")
        else:
            delay = self.backoff.next_delay()
            reason = f" ({self._last_error})" if self._last_error else ""
            self._log(f"Reconnecting in {delay:g}s...{reason}", "warn")
            self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect)

        self._transition(ConnectionState.CLOSED)

    def _reconnect(self):
        self._reconnect_handle = None
        if self._state is ConnectionState.CLOSED:
            self.connect()

    def _cancel_reconnect(self):
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _transition(self, new: ConnectionState) -> bool:
        old = self._state
        if old is new:
            return False
        if new is not ConnectionState.IDLE and new not in _TRANSITIONS[old]:
            logger.debug("Ignoring transition %s -> %s", old.value, new.value)
            return False

        self._state = new
        if new is ConnectionState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()

        if self.on_state_change:
            try:
                self.on_state_change(old, new)
            except Exception:
                logger.exception("State listener failed")
        return True

    # =========================================================================
    # Outbound frames
    # =========================================================================

    async def _write_loop(self, ws, outbox: asyncio.Queue):
        """Write queued frames in order until the socket goes away."""
        while True:
            frame = await outbox.get()
            if frame is _STOP_WRITER:
                return
            try:
                # A blocked socket must not stall the outbox forever.
                await asyncio.wait_for(ws.send(encode(frame)), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                self._handle_error(f"WebSocket send timed out after {self.send_timeout}s")
            except ConnectionClosed:
                # The reader sees the close and drives the state machine.
                return
            except Exception as e:
                logger.exception("Send error")
                self._handle_error(f"Send error: {e}")
            else:
                continue

            # Send failed: drop the socket so the reader observes the close.
            with suppress(ConnectionClosed, OSError):
                await ws.close()
            return

    async def _stop_writer(self):
        task = self._writer_task
        outbox = self._outbox
        self._outbox = None

        if outbox is not None:
            if not outbox.empty():
                logger.debug("Dropping %d unsent frame(s)", outbox.qsize())
            # Lets the writer exit on its own if its cancel gets lost.
            outbox.put_nowait(_STOP_WRITER)
        if task is not None:
            await _cancel_and_wait(task)
            if self._writer_task is task:
                self._writer_task = None

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}]{message}[/{color}]")
