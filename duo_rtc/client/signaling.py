"""Signaling client: joins a room and feeds relayed messages to a session."""

import asyncio
from typing import Callable, Dict, Optional

import websockets
import websockets.exceptions
from loguru import logger

from duo_rtc.client.media import RemoteMediaSink
from duo_rtc.client.negotiation import NegotiationState, NegotiationStateMachine
from duo_rtc.client.peer import PeerConnection
from duo_rtc.exceptions import (
    DuoRTCError,
    MalformedMessageError,
    RoomFullError,
    SignalingConnectionError,
)
from duo_rtc.protocol import (
    RELAYED_KINDS,
    SERVER_KINDS,
    MessageKind,
    Role,
    SignalingMessage,
)


class SignalingClient:
    """Runs one call: join a room, negotiate, and stay up until the call ends.

    Attributes:
        room_id: Room to join (server-normalized once joined).
        session: The negotiation session, created when the room is joined.
        failure: Room-level failure (full room, lost signaling connection).
        status: Latest user-facing status line.
    """

    # Handler method per message kind the server may send.
    HANDLERS: Dict[MessageKind, str] = {
        MessageKind.ROOM_CREATED: "_on_room_created",
        MessageKind.ROOM_JOINED: "_on_room_joined",
        MessageKind.FULL_ROOM: "_on_full_room",
        MessageKind.START_CALL: "_on_start_call",
        MessageKind.OFFER: "_on_offer",
        MessageKind.ANSWER: "_on_answer",
        MessageKind.ICE_CANDIDATE: "_on_ice_candidate",
    }

    def __init__(
        self,
        url: str,
        room_id: str,
        media_source,
        peer_factory: Callable[[], PeerConnection],
        negotiation_timeout: Optional[float] = None,
        sink: Optional[RemoteMediaSink] = None,
    ):
        self.url = url
        self.room_id = room_id
        self.media_source = media_source
        self.peer_factory = peer_factory
        self.negotiation_timeout = negotiation_timeout
        self.sink = sink

        self.session: Optional[NegotiationStateMachine] = None
        self.failure: Optional[DuoRTCError] = None
        self.status = "Initializing..."
        self._websocket = None
        self._stopped = asyncio.Event()

    @property
    def error(self) -> Optional[DuoRTCError]:
        """The failure to report to the user, if any."""
        if self.failure is not None:
            return self.failure
        if self.session is not None:
            return self.session.failure
        return None

    def _set_status(self, status: str) -> None:
        self.status = status
        logger.info(f"Status: {status}")

    def _set_failure(self, error: DuoRTCError) -> None:
        if self.failure is None:
            self.failure = error
        logger.error(str(error))
        self._stopped.set()

    # ----- connection -----

    async def run(self) -> Optional[DuoRTCError]:
        """Connect, join the room and run until the call is over.

        Returns:
            The failure cause, or None if the call ended normally.
        """
        try:
            async with websockets.connect(self.url) as websocket:
                self._websocket = websocket
                self._set_status("Connected to signaling server")
                await self.send(SignalingMessage.join(self.room_id))

                receiver = asyncio.ensure_future(self._receive(websocket))
                stopped = asyncio.ensure_future(self._stopped.wait())
                try:
                    await asyncio.wait(
                        {receiver, stopped}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    stopped.cancel()
                    if not receiver.done():
                        receiver.cancel()
                        await asyncio.wait({receiver})

                if receiver.done() and not receiver.cancelled():
                    error = receiver.exception()
                    if error is not None or not self._stopped.is_set():
                        self._set_failure(
                            SignalingConnectionError(
                                f"Connection to signaling server lost: {error or 'closed'}"
                            )
                        )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._set_failure(
                SignalingConnectionError(f"Failed to connect to signaling server: {e}")
            )
        finally:
            self._websocket = None
            await self.close()

        return self.error

    async def close(self) -> None:
        """End the session and release local resources."""
        if self.session is not None:
            if isinstance(self.failure, SignalingConnectionError):
                reason = "signaling connection lost"
            else:
                reason = "local"
            await self.session.end(reason=reason)
            self._set_status(self.session.status)
        if self.sink is not None:
            await self.sink.stop()
        self._stopped.set()

    async def _receive(self, websocket) -> None:
        async for frame in websocket:
            await self.dispatch(frame)

    async def send(self, message: SignalingMessage) -> None:
        if self._websocket is None:
            raise SignalingConnectionError("Not connected to signaling server")
        await self._websocket.send(message.encode())
        logger.debug(f"Sent {message.kind.value}")

    # ----- dispatch -----

    async def dispatch(self, frame) -> None:
        """Decode and handle one frame from the server."""
        try:
            message = SignalingMessage.decode(frame)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed frame from server: {e}")
            return

        method = self.HANDLERS.get(message.kind)
        if method is None:
            logger.warning(f"Dropping unexpected {message.kind.value} from server")
            return

        if message.kind in RELAYED_KINDS:
            if self.session is None:
                logger.warning(f"Dropping {message.kind.value}: not in a room yet")
                return
            if message.room_id is not None and message.room_id.strip() != self.room_id:
                logger.warning(
                    f"Dropping {message.kind.value} for room {message.room_id}"
                )
                return

        await getattr(self, method)(message)

    def _create_session(self, message: SignalingMessage, role: Role) -> NegotiationStateMachine:
        self.room_id = message.room_id or self.room_id
        session = NegotiationStateMachine(
            room_id=self.room_id,
            connection_id=message.connection_id,
            role=role,
            send=self.send,
            media_source=self.media_source,
            peer_factory=self.peer_factory,
            negotiation_timeout=self.negotiation_timeout,
        )
        session.add_listener(self._on_session_state)
        if self.sink is not None:
            session.add_track_listener(self.sink.add_track)
        self.session = session
        return session

    def _on_session_state(self, old: NegotiationState, new: NegotiationState) -> None:
        self._set_status(self.session.status)
        if new.is_terminal:
            self._stopped.set()

    async def _on_room_created(self, message: SignalingMessage) -> None:
        if self.session is not None:
            logger.warning("Ignoring room_created: already in a room")
            return
        session = self._create_session(message, Role.INITIATOR)
        self._set_status("Waiting for someone to join...")
        await session.prepare()

    async def _on_room_joined(self, message: SignalingMessage) -> None:
        if self.session is not None:
            logger.warning("Ignoring room_joined: already in a room")
            return
        session = self._create_session(message, Role.RESPONDER)
        self._set_status("Connected to room, starting call...")
        await session.prepare()
        if not session.state.is_terminal:
            await self.send(SignalingMessage.start_call(self.room_id))

    async def _on_full_room(self, message: SignalingMessage) -> None:
        self._set_status("Room full")
        self._set_failure(RoomFullError(message.room_id or self.room_id))

    async def _on_start_call(self, message: SignalingMessage) -> None:
        self._set_status("Call starting...")
        await self.session.start_call()

    async def _on_offer(self, message: SignalingMessage) -> None:
        self._set_status("Incoming call...")
        await self.session.handle_offer(message.sdp, message.sender_id)
        await self._start_sink()

    async def _on_answer(self, message: SignalingMessage) -> None:
        await self.session.handle_answer(message.sdp)
        await self._start_sink()

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        await self.session.add_remote_candidate(message.candidate)

    async def _start_sink(self) -> None:
        if self.sink is not None and not self.session.state.is_terminal:
            await self.sink.start()


_missing = SERVER_KINDS - set(SignalingClient.HANDLERS)
if _missing:
    raise RuntimeError(
        f"SignalingClient has no handler for: {sorted(k.value for k in _missing)}"
    )
