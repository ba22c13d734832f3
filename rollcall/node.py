import asyncio
import enum
import json
import logging
import time
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

import websockets
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.datastructures import Headers
from websockets.http11 import Response

from . import messages as m
from .directory import PeerDirectory, PeerRecord
from .framing import MAX_MESSAGE_SIZE, decode_message, encode_message
from .monitor import DEFAULT_STALE_TIMEOUT_MS, DEFAULT_SWEEP_INTERVAL_MS, LivenessMonitor
from .transport import Connection, ConnectionContext, ConnectionState

"""
node.py — hub + peer agent roles for rollcall.

HubServer
- Accepts WebSocket connections, runs the register/heartbeat protocol per
  connection and keeps the roster in a PeerDirectory.
- Broadcasts the full roster to every open connection whenever it changes
  (registration, disconnect, eviction).
- Answers plain HTTP on the same port: GET /api/clients and the dashboard page.

PeerAgent
- Connects to a hub, registers, heartbeats on a timer and reconnects after
  a fixed delay whenever the connection drops, until shut down.

Everything runs on one asyncio loop; the directory is only touched from
coroutines on that loop.
"""

logger = logging.getLogger(__name__)

DASHBOARD_PATH = Path(__file__).resolve().parent / "public" / "index.html"

SUPERSEDED_CLOSE_CODE = 4001  # prior holder of a re-registered id
DEFAULT_HEARTBEAT_INTERVAL_MS = 5_000
DEFAULT_RECONNECT_DELAY_MS = 5_000
DEFAULT_STATUS_INTERVAL_MS = 30_000


def http_response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    """Plain HTTP response returned from process_request (no WebSocket upgrade)."""
    headers = Headers([
        ("Content-Type", content_type),
        ("Content-Length", str(len(body))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, body)


class HubServer:
    """
    Roster hub:
      - One ConnectionContext per open connection (registered or not).
      - PeerDirectory for registered peers, LivenessMonitor for eviction.
      - Roster broadcast to all open connections, roster query over HTTP.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        stale_timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
        clock: Callable[[], int] = m.now_ms,
    ) -> None:
        self.host = host
        self.port = port
        self.directory = PeerDirectory(clock=clock)
        self.monitor = LivenessMonitor(
            self.directory,
            on_evict=self._on_evict,
            sweep_interval_ms=sweep_interval_ms,
            stale_timeout_ms=stale_timeout_ms,
        )
        self.conn_to_ctx: Dict[Any, ConnectionContext] = {}
        self._server = None
        self._background: Set[asyncio.Task] = set()
        self._dashboard: Optional[bytes] = None

    @property
    def clock(self) -> Callable[[], int]:
        return self.directory.clock

    # -------------------------
    # Lifecycle
    # -------------------------

    async def listen(self):
        """
        Bind the listening socket and start the liveness monitor.

        Raises:
            OSError: if the address cannot be bound.
        """
        self._server = await serve(
            self.handle_conn,
            self.host,
            self.port,
            process_request=self.process_request,
            max_size=MAX_MESSAGE_SIZE,
        )
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info("Hub listening on %s", addrs)
        self.monitor.start()
        return self._server

    async def stop(self) -> None:
        await self.monitor.stop()
        if self._server is not None:
            server, self._server = self._server, None
            server.close()
            await server.wait_closed()
            logger.info("Hub stopped")

    # -------------------------
    # Connection lifecycle
    # -------------------------

    def open_context(self, websocket) -> ConnectionContext:
        """Track a freshly accepted connection (UNREGISTERED)."""
        ctx = ConnectionContext(websocket)
        self.conn_to_ctx[websocket] = ctx
        logger.info("New connection from: %s", ctx.origin)
        return ctx

    async def close_context(self, ctx: ConnectionContext) -> Optional[PeerRecord]:
        """
        CLOSED transition: forget the connection, drop its record if it had
        one and broadcast the roster in that case.
        """
        self.conn_to_ctx.pop(ctx.websocket, None)
        ctx.mark_closed()
        record = self.directory.remove_by_connection(ctx)
        if record is not None:
            logger.info("Client disconnected: %s (%s)", record.name, record.id)
            await self.broadcast_roster()
        return record

    async def handle_conn(self, websocket) -> None:
        """Per-connection loop: read messages in order and dispatch them."""
        ctx = self.open_context(websocket)
        try:
            async for data in ctx.messages():
                await self.process_message(ctx, data)
        finally:
            await self.close_context(ctx)

    # -------------------------
    # Protocol
    # -------------------------

    async def process_message(self, ctx: ConnectionContext, data: Union[str, bytes]) -> None:
        """Dispatch one inbound message according to the connection's state."""
        try:
            msg = decode_message(data)
        except ValueError as exc:
            logger.warning("Error parsing message from %s: %s", ctx.origin, exc)
            return

        msg_type = msg["type"]

        if msg_type == m.REGISTER:
            await self._handle_register(ctx, msg)
            return

        if ctx.state is not ConnectionState.REGISTERED:
            logger.debug("Ignoring %r from unregistered connection %s", msg_type, ctx.origin)
            return

        if msg_type == m.HEARTBEAT:
            await self._handle_heartbeat(ctx, msg)
            return

        logger.debug("Ignoring unknown message type %r from %s", msg_type, ctx.origin)

    async def _handle_register(self, ctx: ConnectionContext, msg: Dict[str, Any]) -> None:
        raw_id = msg.get("id")
        peer_id = raw_id if isinstance(raw_id, str) and raw_id else m.new_peer_id()
        name = msg.get("name")
        location = msg.get("location")

        prior = self.directory.get(peer_id)
        displaced = None
        if prior is not None and prior.connection is not ctx:
            displaced = prior.connection

        record = self.directory.upsert(
            peer_id,
            name if isinstance(name, str) else None,
            location if isinstance(location, str) else None,
            ctx.origin,
            ctx,
        )
        ctx.peer_id = record.id
        ctx.state = ConnectionState.REGISTERED

        if displaced is not None:
            self._supersede(displaced, record.id, ctx.origin)

        await self._reply(ctx, m.registered(record.id, len(self.directory)))
        logger.info("Client registered: %s (%s) from %s", record.name, record.id, ctx.origin)
        await self.broadcast_roster()

    def _supersede(self, displaced: ConnectionContext, peer_id: str, new_origin: str) -> None:
        """Unbind and close the connection that previously held peer_id."""
        logger.warning(
            "Peer id %s re-registered from %s; closing previous connection %s",
            peer_id, new_origin, displaced.origin,
        )
        displaced.peer_id = None
        if displaced.is_open:
            displaced.state = ConnectionState.UNREGISTERED
            task = asyncio.get_running_loop().create_task(
                displaced.close(SUPERSEDED_CLOSE_CODE, "peer id re-registered")
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _handle_heartbeat(self, ctx: ConnectionContext, msg: Dict[str, Any]) -> None:
        # Acknowledged whether or not the id is still tracked.
        if not self.directory.touch(msg.get("id")):
            logger.debug("Heartbeat for unknown id %r from %s", msg.get("id"), ctx.origin)
        await self._reply(ctx, m.heartbeat_ack(self.clock()))

    async def _reply(self, ctx: ConnectionContext, obj: Dict[str, Any]) -> None:
        try:
            await ctx.send(encode_message(obj))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Reply to %s dropped; connection closed", ctx.origin)

    # -------------------------
    # Roster
    # -------------------------

    def roster_summary(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [record.summary(now) for record in self.directory.snapshot()]

    def roster_query(self) -> List[Dict[str, Any]]:
        """Fresh roster for pollers; unlike broadcasts it includes lastSeen."""
        now = self.clock()
        return [record.to_dict(now) for record in self.directory.snapshot()]

    async def broadcast_roster(self) -> int:
        """
        Send one `update` to every open connection, dashboards and
        unregistered connections included.

        Returns:
            Number of connections the update was handed to.
        """
        text = encode_message(m.update(self.roster_summary()))
        targets = [ctx for ctx in list(self.conn_to_ctx.values()) if ctx.is_open]
        await asyncio.gather(*(self._deliver(ctx, text) for ctx in targets))
        return len(targets)

    async def _deliver(self, ctx: ConnectionContext, text: str) -> None:
        """Best-effort write; one failing connection never affects the others."""
        try:
            await ctx.send(text)
        except Exception as exc:
            logger.debug("Broadcast to %s failed: %s", ctx.origin, exc)

    async def _on_evict(self, record: PeerRecord) -> None:
        await self.broadcast_roster()

    # -------------------------
    # Plain HTTP (roster query + dashboard)
    # -------------------------

    def dashboard_page(self) -> bytes:
        """Dashboard HTML, read from disk on first use only."""
        if self._dashboard is None:
            self._dashboard = DASHBOARD_PATH.read_bytes()
        return self._dashboard

    async def process_request(self, connection, request) -> Optional[Response]:
        """Serve plain HTTP requests; let WebSocket upgrades through."""
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        path = request.path.split("?", 1)[0]
        if path == "/api/clients":
            body = json.dumps(self.roster_query()).encode("utf-8")
            return http_response(HTTPStatus.OK, body, "application/json")
        if path in ("/", "/index.html"):
            return http_response(HTTPStatus.OK, self.dashboard_page(), "text/html; charset=utf-8")
        return http_response(HTTPStatus.NOT_FOUND, b"Not Found\n", "text/plain; charset=utf-8")


class AgentState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REGISTERED = "registered"


class PeerAgent:
    """
    Long-running peer:
      - Connects, registers with name/location/host details, heartbeats.
      - Reconnects after a fixed delay on any close or failed connect,
        with no retry limit.
      - shutdown() cancels every timer and closes the connection.
    """

    def __init__(
        self,
        server_url: str,
        name: str = m.ANONYMOUS,
        location: str = "",
        heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS,
        reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS,
        status_interval_ms: int = DEFAULT_STATUS_INTERVAL_MS,
        connector=connect,
    ) -> None:
        self.server_url = server_url
        self.name = name
        self.location = location
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.reconnect_delay_ms = reconnect_delay_ms
        self.status_interval_ms = status_interval_ms
        self._connector = connector

        self.state = AgentState.DISCONNECTED
        self.peer_id: Optional[str] = None
        self.ctx: Optional[Connection] = None

        self._session_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._stopping = False
        self._stopped = asyncio.Event()
        self._started_at = time.monotonic()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def connected(self) -> bool:
        """True once the transport is open; CONNECTING does not count."""
        return self.state in (AgentState.CONNECTED, AgentState.REGISTERED)

    async def run(self) -> None:
        """Connect and keep the agent alive until shutdown() completes."""
        self._started_at = time.monotonic()
        self._status_task = asyncio.get_running_loop().create_task(self._status_loop())
        self.connect()
        await self._stopped.wait()

    def connect(self) -> None:
        """Start one connection attempt (DISCONNECTED → CONNECTING)."""
        self._reconnect_handle = None
        if self._stopping:
            return
        self._session_task = asyncio.get_running_loop().create_task(self._session())

    async def _session(self) -> None:
        self.state = AgentState.CONNECTING
        logger.info("Connecting to %s ...", self.server_url)
        try:
            websocket = await self._connector(self.server_url, max_size=None)  # roster updates have no size cap
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            logger.warning("Connection to %s failed: %s", self.server_url, exc)
            self._on_disconnect()
            return

        if self._stopping:
            await websocket.close()
            return

        ctx = Connection(websocket)
        self.ctx = ctx
        self.state = AgentState.CONNECTED
        logger.info("Connected to server!")
        try:
            register = m.register(self.name, self.location, extra=m.environment_descriptor())
            await ctx.send(encode_message(register))
            self._start_heartbeat()
            async for data in ctx.messages():
                self.process_message(data)
        except websockets.exceptions.ConnectionClosed as exc:
            logger.warning("Connection lost: %s", exc)
        finally:
            self.ctx = None
            logger.info("Disconnected from server")
            self._on_disconnect()

    def _on_disconnect(self) -> None:
        self._stop_heartbeat()
        self.state = AgentState.DISCONNECTED
        self.peer_id = None
        if not self._stopping:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Arm exactly one reconnect timer."""
        if self._reconnect_handle is not None:
            return
        delay = self.reconnect_delay_ms / 1000.0
        logger.info("Reconnecting in %.1f seconds...", delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self.connect)

    # -------------------------
    # Heartbeats
    # -------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        logger.debug("Heartbeat started (every %.1fs)", self.heartbeat_interval_ms / 1000.0)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_ms / 1000.0)
            await self.send_heartbeat()

    async def send_heartbeat(self) -> bool:
        """Send one heartbeat if connected; returns whether it was written."""
        ctx = self.ctx
        if ctx is None or not self.connected:
            return False
        try:
            await ctx.send(encode_message(m.heartbeat(self.peer_id)))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Heartbeat dropped; connection closed")
            return False
        return True

    # -------------------------
    # Inbound
    # -------------------------

    def process_message(self, data: Union[str, bytes]) -> None:
        try:
            msg = decode_message(data)
        except ValueError as exc:
            logger.warning("Error parsing message: %s", exc)
            return

        msg_type = msg["type"]
        if msg_type == m.REGISTERED:
            self.peer_id = msg.get("id")
            self.state = AgentState.REGISTERED
            logger.info("Registered successfully! ID: %s", self.peer_id)
            logger.info("Total clients connected: %s", msg.get("totalClients"))
        elif msg_type == m.HEARTBEAT_ACK:
            logger.debug("Heartbeat acknowledged")
        elif msg_type == m.UPDATE:
            logger.info("Network update: %s clients online", msg.get("total"))
        else:
            logger.debug("Ignoring unknown message type %r", msg_type)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval_ms / 1000.0)
            uptime = int(time.monotonic() - self._started_at)
            status = "Connected" if self.connected else "Disconnected"
            logger.info("Uptime: %ds | Status: %s", uptime, status)

    # -------------------------
    # Shutdown
    # -------------------------

    async def shutdown(self, grace_s: float = 1.0) -> None:
        """Stop timers, cancel any pending reconnect, close and release run()."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Shutting down gracefully...")

        self._stop_heartbeat()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None

        ctx = self.ctx
        if ctx is not None:
            await ctx.close()

        await asyncio.sleep(grace_s)
        if self._session_task is not None and not self._session_task.done():
            self._session_task.cancel()
        logger.info("Goodbye!")
        self._stopped.set()
