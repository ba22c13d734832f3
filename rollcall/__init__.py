"""
rollcall — presence and heartbeat hub over WebSockets.

Roles:
- Hub (server mode): tracks registered peers, evicts the silent ones and
  broadcasts the roster to every connection; serves GET /api/clients.
- Peer agent (client mode): registers with a hub, heartbeats and reconnects.

Run either role with `python -m rollcall` (see run_node.py).
"""
__all__ = ["config", "directory", "framing", "messages", "monitor", "node", "run_node", "transport"]
