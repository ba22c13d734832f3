import platform
import socket
import time
import uuid
from typing import Any, Dict, List, Optional

"""
messages.py — the rollcall message vocabulary.

What this module does:
- Names the five message types that travel between peers and the hub.
- Builds each message as a plain dict ready for framing.encode_message().
- Owns the millisecond clock and the peer id generator so every component
  agrees on units.

Hub-bound:  register, heartbeat
Peer-bound: registered, heartbeat_ack, update
"""


# -----------------------
# Public message type tags
# -----------------------
REGISTER = "register"
REGISTERED = "registered"
HEARTBEAT = "heartbeat"
HEARTBEAT_ACK = "heartbeat_ack"
UPDATE = "update"

ANONYMOUS = "Anonymous"


def now_ms() -> int:
    """Current Unix time in milliseconds (used for every timestamp)."""
    return int(time.time() * 1000)


def new_peer_id() -> str:
    """Random 12-hex-char id handed to peers that register without one."""
    return uuid.uuid4().hex[:12]


def environment_descriptor() -> Dict[str, str]:
    """Hostname, platform and architecture of the local machine."""
    return {
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
    }


# -----------------------
# Hub-bound messages
# -----------------------

def register(name: str, location: str, peer_id: Optional[str] = None,
             extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Registration request sent by an agent right after connecting.

    `extra` carries descriptive fields (see environment_descriptor()); the hub
    does not interpret them.
    """
    msg: Dict[str, Any] = {"type": REGISTER, "name": name, "location": location}
    if peer_id:
        msg["id"] = peer_id
    if extra:
        msg.update(extra)
    return msg


def heartbeat(peer_id: Optional[str]) -> Dict[str, Any]:
    # id stays null until the hub has acknowledged the registration.
    return {"type": HEARTBEAT, "id": peer_id, "timestamp": now_ms()}


# -----------------------
# Peer-bound messages
# -----------------------

def registered(peer_id: str, total_clients: int) -> Dict[str, Any]:
    return {"type": REGISTERED, "id": peer_id, "totalClients": total_clients}


def heartbeat_ack(timestamp: Optional[int] = None) -> Dict[str, Any]:
    return {"type": HEARTBEAT_ACK, "timestamp": timestamp if timestamp is not None else now_ms()}


def update(clients: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Roster broadcast; `clients` is the summary list, `total` its length."""
    return {"type": UPDATE, "clients": clients, "total": len(clients)}
