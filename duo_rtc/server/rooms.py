"""Room admission control.

Admission is a check-count-then-admit sequence, so every room-mutating
operation runs under that room's lock. Joins to the same room are strictly
ordered; joins to different rooms never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Optional

from loguru import logger

from duo_rtc.protocol import Role, normalize_room_id
from duo_rtc.server.registry import ConnectionRegistry

MAX_PARTICIPANTS = 2


class JoinOutcome(str, Enum):
    CREATED = "created"
    JOINED = "joined"
    REJECTED = "rejected"


@dataclass(frozen=True)
class JoinResult:
    """Result of a join attempt.

    Attributes:
        outcome: Created, Joined or Rejected.
        room_id: The normalized room identity.
        role: Role assigned to the joiner (None when rejected).
    """

    outcome: JoinOutcome
    room_id: str
    role: Optional[Role] = None

    @property
    def admitted(self) -> bool:
        return self.outcome is not JoinOutcome.REJECTED


class RoomCoordinator:
    """Enforces the two-participant cap and assigns join outcomes."""

    def __init__(self, registry: ConnectionRegistry, case_sensitive: bool = True):
        self.registry = registry
        self.case_sensitive = case_sensitive
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def normalize(self, room_id) -> str:
        return normalize_room_id(room_id, case_sensitive=self.case_sensitive)

    @asynccontextmanager
    async def _room_lock(self, room_id: str) -> AsyncIterator[None]:
        """Hold the exclusive lock for one room.

        Locks are created on first use and dropped once nobody holds or waits
        for them, so idle rooms leave nothing behind.
        """
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if self._lock_users[room_id] == 0:
                del self._lock_users[room_id]
                del self._locks[room_id]

    async def join(self, room_id, connection_id: str) -> JoinResult:
        """Admit a connection to a room, or reject it when the room is full.

        Args:
            room_id: Raw room identity; normalized before any lookup.
            connection_id: The joining connection.

        Returns:
            JoinResult with Created (first occupant, initiator), Joined
            (second occupant, responder) or Rejected.

        Raises:
            InvalidRoomError: If the room identity is blank.
        """
        room_id = self.normalize(room_id)

        current = self.registry.room_of(connection_id)
        if current is not None and current != room_id:
            logger.info(f"Connection {connection_id} leaving {current} to join {room_id}")
            await self.leave(connection_id)

        async with self._room_lock(room_id):
            participant = self.registry.get(connection_id)
            if participant is None:
                logger.error(f"Join from unknown connection {connection_id}")
                return JoinResult(JoinOutcome.REJECTED, room_id)

            if participant.room_id == room_id:
                outcome = (
                    JoinOutcome.CREATED
                    if participant.role is Role.INITIATOR
                    else JoinOutcome.JOINED
                )
                logger.info(f"Connection {connection_id} is already in room {room_id}")
                return JoinResult(outcome, room_id, participant.role)

            count = self.registry.occupancy(room_id)
            logger.info(f"Room {room_id} has {count} clients")

            if count == 0:
                self.registry.bind(connection_id, room_id, Role.INITIATOR)
                logger.info(f"Created room {room_id} for {connection_id}")
                return JoinResult(JoinOutcome.CREATED, room_id, Role.INITIATOR)

            if count < MAX_PARTICIPANTS:
                self.registry.bind(connection_id, room_id, Role.RESPONDER)
                logger.info(f"Connection {connection_id} joined room {room_id}")
                return JoinResult(JoinOutcome.JOINED, room_id, Role.RESPONDER)

            logger.info(f"Can't join room {room_id}, it is full")
            return JoinResult(JoinOutcome.REJECTED, room_id)

    async def leave(self, connection_id: str) -> Optional[str]:
        """Remove a connection from its room, freeing one slot.

        Returns:
            The vacated room identity, or None if the connection was roomless.
        """
        room_id = self.registry.room_of(connection_id)
        if room_id is None:
            return None
        async with self._room_lock(room_id):
            # Membership may have changed while waiting for the lock
            if self.registry.room_of(connection_id) != room_id:
                return None
            self.registry.unbind(connection_id)
            remaining = self.registry.occupancy(room_id)
            logger.info(
                f"Connection {connection_id} left room {room_id} ({remaining} remaining)"
            )
            return room_id

    def occupancy(self, room_id) -> int:
        return self.registry.occupancy(self.normalize(room_id))
