"""Forwarding of signaling payloads between the occupants of a room."""

import asyncio

from loguru import logger

from duo_rtc.exceptions import InvalidRoomError
from duo_rtc.protocol import RELAYED_KINDS, SignalingMessage, normalize_room_id
from duo_rtc.server.registry import ConnectionRegistry


class MessageRelay:
    """Delivers a sender's message to the other connection(s) in its room.

    Delivery is best-effort and at-most-once: no acknowledgment, no retry,
    no queueing. Routing uses only the sender's current room binding; the
    payload is never inspected or rewritten.
    """

    def __init__(self, registry: ConnectionRegistry, case_sensitive: bool = True):
        self.registry = registry
        self.case_sensitive = case_sensitive

    async def relay(self, sender_id: str, message: SignalingMessage) -> int:
        """Forward a message to the sender's room peers.

        Args:
            sender_id: Connection that sent the message.
            message: The decoded message, forwarded unchanged.

        Returns:
            Number of connections the message was delivered to.
        """
        if message.kind not in RELAYED_KINDS:
            logger.warning(f"Dropping non-relayable {message.kind.value} from {sender_id}")
            return 0

        bound_room = self.registry.room_of(sender_id)
        if bound_room is None:
            logger.warning(
                f"Dropping {message.kind.value} from unbound connection {sender_id}"
            )
            return 0

        try:
            room_id = normalize_room_id(message.room_id, self.case_sensitive)
        except InvalidRoomError:
            logger.warning(f"Dropping {message.kind.value} without room from {sender_id}")
            return 0

        if room_id != bound_room:
            logger.warning(
                f"Dropping {message.kind.value} from {sender_id}: "
                f"addressed to {room_id} but bound to {bound_room}"
            )
            return 0

        recipients = [
            p
            for p in self.registry.members(bound_room)
            if p.connection_id != sender_id and p.send is not None
        ]
        if not recipients:
            logger.debug(f"No peer in room {bound_room} for {message.kind.value}, dropped")
            return 0

        frame = message.encode()
        results = await asyncio.gather(
            *(p.send(frame) for p in recipients), return_exceptions=True
        )

        delivered = 0
        for participant, result in zip(recipients, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to relay {message.kind.value} to "
                    f"{participant.connection_id}: {result}"
                )
            else:
                delivered += 1
        logger.debug(
            f"Relayed {message.kind.value} from {sender_id} to {delivered} peer(s) "
            f"in room {bound_room}"
        )
        return delivered
