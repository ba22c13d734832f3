"""In-memory stand-ins shared by the test modules."""

import asyncio
import json
from types import SimpleNamespace

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

_CLOSED = object()
_DROPPED = object()


class FakeSocket:
    """Quacks like a websockets connection: send/close/async iteration."""

    def __init__(self, ip="10.0.0.1", forwarded_for=None):
        self.remote_address = (ip, 40000)
        headers = {"X-Forwarded-For": forwarded_for} if forwarded_for else {}
        self.request = SimpleNamespace(headers=headers)
        self.sent = []
        self.closed = None
        self.fail_sends = False
        self._inbox = asyncio.Queue()

    async def send(self, text):
        if self.fail_sends or self.closed is not None:
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)

    async def close(self, code=1000, reason=""):
        if self.closed is None:
            self.closed = (code, reason)
            self._inbox.put_nowait(_CLOSED)

    def feed(self, message):
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def finish(self):
        """The remote side closes normally once queued messages are read."""
        self._inbox.put_nowait(_CLOSED)

    def drop(self):
        """Simulate an abrupt disconnect."""
        self._inbox.put_nowait(_DROPPED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _DROPPED:
            raise ConnectionClosedError(None, None)
        return item

    def messages(self, msg_type=None):
        decoded = [json.loads(text) for text in self.sent]
        if msg_type is None:
            return decoded
        return [msg for msg in decoded if msg["type"] == msg_type]


class Clock:
    """Manually advanced millisecond clock."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
