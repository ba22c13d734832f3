import enum
import logging
from typing import AsyncIterator, Optional, Union

import websockets

"""
transport.py — one WebSocket connection, as both the hub and agents see it.

Connection wraps a `websockets` connection (server or client side) and
exposes the small surface the rest of the package needs:
- send(text)    write one text frame
- messages()    inbound frames until the connection ends (never raises)
- close()       explicit close with an optional code/reason
- origin        the remote address observed for this connection

ConnectionContext is the hub's subclass: it also parks the per-connection
protocol state (state, peer_id). Agents use the plain Connection.
"""

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    """Hub-side protocol state of a single connection."""
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CLOSED = "closed"


def observed_origin(websocket) -> str:
    """
    Origin address of a connection: the first X-Forwarded-For entry when the
    handshake carried one, else the socket peer IP.
    """
    request = getattr(websocket, "request", None)
    if request is not None:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    remote = getattr(websocket, "remote_address", None)
    if remote:
        return str(remote[0])
    return "unknown"


class Connection:
    """Thin wrapper over a websockets connection."""

    def __init__(self, websocket) -> None:
        self.websocket = websocket
        self.origin = observed_origin(websocket)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(origin={self.origin!r})"

    async def send(self, text: str) -> None:
        await self.websocket.send(text)

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        """
        Yield inbound frames in arrival order.

        Ends quietly on a normal close; an abrupt close or protocol error is
        logged and also just ends the iteration.
        """
        try:
            async for data in self.websocket:
                yield data
        except websockets.exceptions.ConnectionClosedError as exc:
            logger.warning("Connection %s closed with error: %s", self.origin, exc)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code, reason)


class ConnectionContext(Connection):
    """Hub-side connection: keeps the learned peer_id and protocol state together."""

    def __init__(self, websocket) -> None:
        super().__init__(websocket)
        self.peer_id: Optional[str] = None
        self.state = ConnectionState.UNREGISTERED

    def __repr__(self) -> str:
        return f"ConnectionContext(origin={self.origin!r}, peer_id={self.peer_id!r}, state={self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state is not ConnectionState.CLOSED

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        self.peer_id = None
