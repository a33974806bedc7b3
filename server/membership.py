from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from shared.protocol import iso_timestamp, room_full_message

logger = logging.getLogger(__name__)


class CapacityExceeded(Exception):
    """Raised when a join is attempted while the room is full."""

    def __init__(self, capacity: int) -> None:
        super().__init__(room_full_message(capacity))
        self.capacity = capacity


@dataclass(slots=True)
class Peer:
    id: str
    display_name: str
    origin_address: Optional[str] = None
    joined_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "ip": self.origin_address,
            "joinedAt": iso_timestamp(self.joined_at),
        }


class MembershipRegistry:
    """In-memory set of admitted peers, kept in join order.

    The registry performs no I/O and no locking; the session manager owns it
    and serialises every call.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._peers: Dict[str, Peer] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def admit(self, display_name: str, origin_address: Optional[str] = None) -> Peer:
        if self.is_full():
            raise CapacityExceeded(self._capacity)
        peer_id = uuid.uuid4().hex
        while peer_id in self._peers:  # pragma: no cover - uuid4 collision
            peer_id = uuid.uuid4().hex
        peer = Peer(id=peer_id, display_name=display_name, origin_address=origin_address)
        self._peers[peer_id] = peer
        if len(self._peers) > self._capacity:
            logger.critical(
                "Membership invariant violated: %d peers for capacity %d",
                len(self._peers),
                self._capacity,
            )
        return peer

    def remove(self, peer_id: str) -> Optional[Peer]:
        return self._peers.pop(peer_id, None)

    def get(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    def list_peers(self) -> list[Peer]:
        # dicts preserve insertion order, which keeps UI slots stable
        return list(self._peers.values())

    def clear(self) -> list[Peer]:
        evicted = list(self._peers.values())
        self._peers.clear()
        return evicted

    def size(self) -> int:
        return len(self._peers)

    def is_empty(self) -> bool:
        return not self._peers

    def is_full(self) -> bool:
        return len(self._peers) >= self._capacity

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    def __len__(self) -> int:
        return len(self._peers)
