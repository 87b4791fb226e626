"""Shared doubles for connection tests.

MockWebSocket stands in for a websockets client connection: frames fed with
``feed()`` come out of ``async for``, ``drop()`` ends the stream cleanly and
``abort()`` ends it with ConnectionClosedError. MockBackend is the connect
factory handed to ConnectionManager.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ktulhu_client.backoff import Backoff
from ktulhu_client.connection import ConnectionManager
from ktulhu_client.identity import IdentityProvider

_CLOSE = object()
_ABORT = object()


class MockWebSocket:
    """In-memory WebSocket connection."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self.block_time = 0.0  # >0 simulates a blocked send
        self.swallow_cancel = False  # blocked send returns normally when cancelled
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        if self.block_time > 0:
            try:
                await asyncio.sleep(self.block_time)
            except asyncio.CancelledError:
                if self.swallow_cancel:
                    return
                raise
        self.sent.append(json.loads(message))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSE)

    def feed(self, frame):
        """Deliver an inbound frame (dict frames are JSON encoded)."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    def drop(self):
        """Backend closes the connection cleanly."""
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def abort(self):
        """Connection is lost without a close handshake."""
        self.closed = True
        self._incoming.put_nowait(_ABORT)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if item is _ABORT:
            raise ConnectionClosedError(None, None)
        return item


class MockBackend:
    """Connect factory that hands out MockWebSockets."""

    def __init__(self):
        self.sockets: list[MockWebSocket] = []
        self.attempts = 0
        self.failures = 0  # number of upcoming attempts to refuse
        self.kwargs: dict = {}

    async def connect(self, uri: str, **kwargs):
        self.attempts += 1
        self.uri = uri
        self.kwargs = kwargs
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("refused")
        ws = MockWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def ws(self) -> MockWebSocket:
        return self.sockets[-1]


class RecordingBackoff(Backoff):
    """Backoff that remembers every delay it handed out."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays: list[float] = []

    def next_delay(self) -> float:
        delay = super().next_delay()
        self.delays.append(delay)
        return delay


async def _wait_until(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def backend():
    return MockBackend()


@pytest.fixture
def identity():
    return IdentityProvider(device_hash="dev123", session_id="session-1", chat_id="chat-a")


@pytest.fixture
def log_lines():
    return []


@pytest_asyncio.fixture
async def make_manager(backend, identity, log_lines):
    """Build managers wired to the mock backend. Closed at teardown."""
    managers = []

    def make(**kwargs) -> ConnectionManager:
        kwargs.setdefault("identity", identity)
        kwargs.setdefault("backoff", RecordingBackoff(initial=0.01, maximum=0.04))
        kwargs.setdefault("connect_factory", backend.connect)
        kwargs.setdefault("log_callback", lambda message, level: log_lines.append((level, message)))
        manager = ConnectionManager("wss://test.invalid/ws", **kwargs)
        managers.append(manager)
        return manager

    yield make

    for manager in managers:
        await manager.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()
