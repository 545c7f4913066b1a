"""Teardown of a connection on explicit leave or transport loss."""

from typing import Optional

from loguru import logger

from duo_rtc.server.registry import ConnectionRegistry
from duo_rtc.server.rooms import RoomCoordinator


class SessionLifecycle:
    """Frees room capacity when a connection ends.

    ``on_disconnect`` is called exactly once per connection. It unbinds the
    connection from its room under the room lock, then unregisters it. The
    remaining peer is not notified; it observes the loss through its own
    connection state. The departing participant's negotiation session lives in
    its ``SignalingClient``, which ends it when its signaling connection closes.
    """

    def __init__(self, registry: ConnectionRegistry, coordinator: RoomCoordinator):
        self.registry = registry
        self.coordinator = coordinator

    async def on_disconnect(self, connection_id: str) -> Optional[str]:
        """Unwind room membership for a connection.

        Returns:
            The room identity that was vacated, or None.
        """
        if connection_id not in self.registry:
            logger.warning(f"Disconnect for unknown connection {connection_id} ignored")
            return None

        try:
            vacated = await self.coordinator.leave(connection_id)
        finally:
            self.registry.unregister(connection_id)

        if vacated is not None:
            remaining = self.registry.occupancy(vacated)
            logger.info(
                f"Client disconnected: {connection_id} "
                f"(room {vacated} now has {remaining} client(s))"
            )
        else:
            logger.info(f"Client disconnected: {connection_id}")
        return vacated
