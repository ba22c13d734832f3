from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import messages as m

"""
directory.py — the hub's in-memory roster.

PeerDirectory maps peer id → PeerRecord and is the only thing allowed to
create, change or drop records. Every call is synchronous and runs on the
hub's event loop, so no locking is needed.
"""


@dataclass
class PeerRecord:
    """One registered peer. Timestamps are epoch milliseconds."""

    id: str
    name: str
    location: str
    connected_at: int
    last_seen: int
    connection: Any = field(default=None, repr=False, compare=False)

    def uptime(self, now: int) -> int:
        return now - self.connected_at

    def summary(self, now: int) -> Dict[str, Any]:
        """Shape used in `update` broadcasts."""
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "connectedAt": self.connected_at,
            "uptime": self.uptime(now),
        }

    def to_dict(self, now: int) -> Dict[str, Any]:
        """Shape served by the HTTP roster query (adds lastSeen)."""
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "connectedAt": self.connected_at,
            "lastSeen": self.last_seen,
            "uptime": self.uptime(now),
        }


class PeerDirectory:
    """In-memory roster: peer_id → PeerRecord (insertion ordered)."""

    def __init__(self, clock: Callable[[], int] = m.now_ms) -> None:
        self._records: Dict[str, PeerRecord] = {}
        self.clock = clock

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, peer_id: object) -> bool:
        return self.get(peer_id) is not None

    def get(self, peer_id: Optional[str]) -> Optional[PeerRecord]:
        # Heartbeats may carry null or non-string ids.
        if not isinstance(peer_id, str) or not peer_id:
            return None
        return self._records.get(peer_id)

    def upsert(self, peer_id: str, name: Optional[str], location: Optional[str],
               origin_address: str, connection: Any) -> PeerRecord:
        """
        Create or overwrite the record for peer_id and bind it to connection.

        An overwrite starts a fresh session (connected_at resets). Any other
        record still bound to the same connection is dropped so a connection
        never owns two records.
        """
        for rid, rec in list(self._records.items()):
            if rec.connection is connection and rid != peer_id:
                del self._records[rid]

        now = self.clock()
        record = PeerRecord(
            id=peer_id,
            name=name or m.ANONYMOUS,
            location=location or origin_address,
            connected_at=now,
            last_seen=now,
            connection=connection,
        )
        # Re-insert so an overwritten id moves to the end like a new one.
        self._records.pop(peer_id, None)
        self._records[peer_id] = record
        return record

    def touch(self, peer_id: Optional[str]) -> bool:
        """Refresh last_seen; False (and nothing else) if the id is unknown."""
        record = self.get(peer_id)
        if record is None:
            return False
        record.last_seen = max(record.last_seen, self.clock())
        return True

    def remove_by_connection(self, connection: Any) -> Optional[PeerRecord]:
        for rid, rec in self._records.items():
            if rec.connection is connection:
                return self._records.pop(rid)
        return None

    def remove_expired(self, now: int, timeout_ms: int) -> List[PeerRecord]:
        """Drop and return every record idle for strictly more than timeout_ms."""
        expired = [rec for rec in self._records.values() if now - rec.last_seen > timeout_ms]
        for rec in expired:
            del self._records[rec.id]
        return expired

    def snapshot(self) -> List[PeerRecord]:
        # Shallow copy so callers can iterate while the roster changes.
        return list(self._records.values())
