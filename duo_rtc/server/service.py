"""WebSocket signaling service for duo-rtc.

The service is an explicitly constructed object holding the connection
registry, room coordinator, relay and lifecycle. Each websocket connection is
served independently; errors are logged and isolated to the connection that
caused them.

Usage:
    service = SignalingService()
    async with service.running("0.0.0.0", 8080):
        await asyncio.Future()
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import websockets
import websockets.exceptions
from loguru import logger

from duo_rtc.exceptions import InvalidRoomError, MalformedMessageError
from duo_rtc.protocol import CLIENT_KINDS, MessageKind, SignalingMessage
from duo_rtc.server.lifecycle import SessionLifecycle
from duo_rtc.server.registry import ConnectionRegistry
from duo_rtc.server.relay import MessageRelay
from duo_rtc.server.rooms import JoinOutcome, RoomCoordinator


class SignalingService:
    """Room rendezvous and message relay over websockets."""

    # Handler method per message kind a client may send.
    HANDLERS: Dict[MessageKind, str] = {
        MessageKind.JOIN_ROOM: "_handle_join",
        MessageKind.START_CALL: "_handle_relay",
        MessageKind.OFFER: "_handle_relay",
        MessageKind.ANSWER: "_handle_relay",
        MessageKind.ICE_CANDIDATE: "_handle_relay",
    }

    def __init__(self, case_sensitive: bool = True):
        """Initialize the service state.

        Args:
            case_sensitive: If False, room identities are case-folded.
        """
        self.registry = ConnectionRegistry()
        self.coordinator = RoomCoordinator(self.registry, case_sensitive=case_sensitive)
        self.relay = MessageRelay(self.registry, case_sensitive=case_sensitive)
        self.lifecycle = SessionLifecycle(self.registry, self.coordinator)
        self._server = None

    # ----- connection handling -----

    async def handler(self, websocket) -> None:
        """Serve one websocket connection until it closes."""
        connection_id = uuid.uuid4().hex
        self.registry.register(connection_id, websocket.send)
        logger.info(f"Client connected: {connection_id}")

        try:
            async for frame in websocket:
                await self.dispatch(connection_id, frame)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {connection_id}")
        finally:
            await self.lifecycle.on_disconnect(connection_id)

    async def dispatch(self, connection_id: str, frame) -> None:
        """Decode and handle one inbound frame.

        Malformed frames and handler failures are logged and dropped; they
        never end the connection or affect other rooms.
        """
        try:
            message = SignalingMessage.decode(frame)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed frame from {connection_id}: {e}")
            return

        method = self.HANDLERS.get(message.kind)
        if method is None:
            logger.warning(
                f"Dropping server-only message {message.kind.value} from {connection_id}"
            )
            return

        try:
            await getattr(self, method)(connection_id, message)
        except websockets.exceptions.ConnectionClosed:
            raise
        except Exception as e:
            logger.error(
                f"Error handling {message.kind.value} from {connection_id}: {e}"
            )

    async def _handle_join(self, connection_id: str, message: SignalingMessage) -> None:
        try:
            result = await self.coordinator.join(message.room_id, connection_id)
        except InvalidRoomError as e:
            logger.warning(f"Dropping join-room from {connection_id}: {e}")
            return

        if result.outcome is JoinOutcome.CREATED:
            reply = SignalingMessage.room_created(result.room_id, connection_id)
        elif result.outcome is JoinOutcome.JOINED:
            reply = SignalingMessage.room_joined(result.room_id, connection_id)
        else:
            reply = SignalingMessage.full_room(result.room_id)

        await self._send(connection_id, reply)

    async def _handle_relay(self, connection_id: str, message: SignalingMessage) -> None:
        await self.relay.relay(connection_id, message)

    async def _send(self, connection_id: str, message: SignalingMessage) -> None:
        participant = self.registry.get(connection_id)
        if participant is None or participant.send is None:
            logger.warning(f"Cannot send {message.kind.value} to {connection_id}")
            return
        await participant.send(message.encode())
        logger.debug(f"Sent {message.kind.value} to {connection_id}")

    # ----- server lifecycle -----

    @property
    def port(self) -> Optional[int]:
        """Port the server is bound to, once started."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self, host: str, port: int) -> None:
        """Start accepting websocket connections."""
        if self._server is not None:
            raise RuntimeError("Signaling service is already running")
        self._server = await websockets.serve(self.handler, host, port)
        logger.info(f"Signaling server running on ws://{host}:{self.port}")

    async def stop(self) -> None:
        """Stop accepting connections and close the open ones."""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        logger.info("Signaling server stopped")

    @asynccontextmanager
    async def running(self, host: str, port: int) -> AsyncIterator["SignalingService"]:
        await self.start(host, port)
        try:
            yield self
        finally:
            await self.stop()

    async def serve_forever(self, host: str, port: int) -> None:
        async with self.running(host, port):
            await asyncio.Future()  # Run forever

    def stats(self) -> Dict[str, int]:
        return {"connections": len(self.registry), "rooms": self.registry.room_count}


_missing = CLIENT_KINDS - set(SignalingService.HANDLERS)
if _missing:
    raise RuntimeError(
        f"SignalingService has no handler for: {sorted(k.value for k in _missing)}"
    )
