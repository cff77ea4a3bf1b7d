"""Room membership registry."""
from __future__ import annotations

import logging
from typing import Dict

from .errors import ProtocolError

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Track which peer ids belong to which room.

    Rooms exist only while they have members: ``join`` creates a room on first use and
    ``leave`` deletes it when the last member goes.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, None]] = {}
        self._membership: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def join(self, room_id: str, peer_id: str) -> list[str]:
        """Add a peer to the room and return the members present before it joined."""

        current = self._membership.get(peer_id)
        if current is not None:
            raise ProtocolError(f"Peer already joined room {current}")

        members = self._rooms.get(room_id)
        if members is None:
            members = self._rooms[room_id] = {}
            logger.info("Created room %s", room_id)

        existing = list(members)
        members[peer_id] = None
        self._membership[peer_id] = room_id
        return existing

    def leave(self, room_id: str, peer_id: str) -> list[str]:
        """Remove a peer, deleting the room when empty. Returns the remaining members."""

        members = self._rooms.get(room_id)
        if members is None:
            return []
        members.pop(peer_id, None)
        if self._membership.get(peer_id) == room_id:
            self._membership.pop(peer_id, None)
        if not members:
            self._rooms.pop(room_id, None)
            logger.info("Deleted empty room %s", room_id)
            return []
        return list(members)

    def members_of(self, room_id: str) -> list[str]:
        return list(self._rooms.get(room_id, {}))

    def room_of(self, peer_id: str) -> str | None:
        return self._membership.get(peer_id)
