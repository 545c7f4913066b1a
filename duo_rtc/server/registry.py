"""Registry of live signaling connections and their room membership."""

import itertools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from duo_rtc.protocol import Role

SendCallable = Callable[[str], Awaitable[None]]


@dataclass
class Participant:
    """One signaling connection.

    Attributes:
        connection_id: Token assigned at connect time.
        send: Coroutine function delivering an encoded frame to this connection.
        room_id: Room the connection is bound to, if any.
        role: Role inside ``room_id``.
        join_seq: Monotonic join counter used to order room members.
    """

    connection_id: str
    send: Optional[SendCallable] = field(default=None, repr=False)
    room_id: Optional[str] = None
    role: Optional[Role] = None
    join_seq: int = 0


class ConnectionRegistry:
    """Tracks live signaling connections and which room each belongs to.

    Operations on an unknown connection are no-ops that log a logical error;
    they never raise.
    """

    def __init__(self):
        self._participants: Dict[str, Participant] = {}
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._seq = itertools.count(1)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._participants

    def __len__(self) -> int:
        return len(self._participants)

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def register(self, connection_id: str, send: Optional[SendCallable] = None) -> Participant:
        """Create an entry with no room for a new connection."""
        if connection_id in self._participants:
            logger.warning(f"Connection {connection_id} is already registered")
            return self._participants[connection_id]
        participant = Participant(connection_id=connection_id, send=send)
        self._participants[connection_id] = participant
        logger.debug(f"Registered connection {connection_id} (total: {len(self)})")
        return participant

    def unregister(self, connection_id: str) -> Optional[str]:
        """Remove a connection entirely, unbinding it first.

        Returns:
            The room identity that was vacated, or None.
        """
        if connection_id not in self._participants:
            logger.warning(f"Cannot unregister unknown connection {connection_id}")
            return None
        room_id = self.unbind(connection_id)
        del self._participants[connection_id]
        logger.debug(f"Unregistered connection {connection_id} (remaining: {len(self)})")
        return room_id

    def get(self, connection_id: str) -> Optional[Participant]:
        return self._participants.get(connection_id)

    def bind(self, connection_id: str, room_id: str, role: Optional[Role] = None) -> bool:
        """Record that a connection is a member of a room.

        Returns:
            True if the binding was recorded, False for an unknown connection.
        """
        participant = self._participants.get(connection_id)
        if participant is None:
            logger.error(f"Cannot bind unknown connection {connection_id} to {room_id}")
            return False
        if participant.room_id is not None and participant.room_id != room_id:
            logger.warning(
                f"Connection {connection_id} rebound from {participant.room_id} to {room_id}"
            )
            self.unbind(connection_id)
        participant.room_id = room_id
        participant.role = role
        participant.join_seq = next(self._seq)
        self._rooms.setdefault(room_id, {})[connection_id] = participant
        return True

    def unbind(self, connection_id: str) -> Optional[str]:
        """Remove a connection's room membership.

        Returns:
            The room identity that was vacated, or None if there was none.
        """
        participant = self._participants.get(connection_id)
        if participant is None:
            logger.error(f"Cannot unbind unknown connection {connection_id}")
            return None
        room_id = participant.room_id
        if room_id is None:
            return None
        members = self._rooms.get(room_id, {})
        members.pop(connection_id, None)
        if not members:
            self._rooms.pop(room_id, None)
        participant.room_id = None
        participant.role = None
        return room_id

    def room_of(self, connection_id: str) -> Optional[str]:
        participant = self._participants.get(connection_id)
        return participant.room_id if participant else None

    def members(self, room_id: str) -> List[Participant]:
        """Participants bound to a room, in join order."""
        return sorted(self._rooms.get(room_id, {}).values(), key=lambda p: p.join_seq)

    def occupancy(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))
