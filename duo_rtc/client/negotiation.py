"""Per-participant negotiation state machine.

One ``NegotiationStateMachine`` is one call session. It consumes relayed
signaling messages and local actions, drives the peer-connection capability
through the offer/answer/ICE exchange, and owns the session's resources.

States::

    Idle -> AwaitingMedia -> Offering  -> Connected
                          \\-> Answering -/
    (any non-terminal) -> Failed
    (any non-terminal) -> Ended

Inbound events are applied one at a time, in arrival order. ``end()`` and
``fail()`` do not queue: they cancel whichever step is in flight and release
the media and peer connection immediately.
"""

import asyncio
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from duo_rtc.client.media import LocalMedia
from duo_rtc.client.peer import PeerConnection
from duo_rtc.exceptions import (
    DuoRTCError,
    NegotiationError,
    NegotiationTimeoutError,
    SignalingConnectionError,
)
from duo_rtc.protocol import Role, SignalingMessage

SendMessage = Callable[[SignalingMessage], Awaitable[None]]
StateListener = Callable[["NegotiationState", "NegotiationState"], None]
TrackListener = Callable[[Any], None]


class NegotiationState(str, Enum):
    IDLE = "idle"
    AWAITING_MEDIA = "awaiting_media"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    FAILED = "failed"
    ENDED = "ended"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationState.FAILED, NegotiationState.ENDED)


_S = NegotiationState

# Allowed transitions. Offering -> Answering is only taken when glare is
# resolved in the peer's favour.
TRANSITIONS: Dict[NegotiationState, frozenset] = {
    _S.IDLE: frozenset({_S.AWAITING_MEDIA, _S.FAILED, _S.ENDED}),
    _S.AWAITING_MEDIA: frozenset({_S.OFFERING, _S.ANSWERING, _S.FAILED, _S.ENDED}),
    _S.OFFERING: frozenset({_S.ANSWERING, _S.CONNECTED, _S.FAILED, _S.ENDED}),
    _S.ANSWERING: frozenset({_S.CONNECTED, _S.FAILED, _S.ENDED}),
    _S.CONNECTED: frozenset({_S.FAILED, _S.ENDED}),
    _S.FAILED: frozenset(),
    _S.ENDED: frozenset(),
}

STATUS_MESSAGES = {
    _S.IDLE: "Waiting to start call",
    _S.AWAITING_MEDIA: "Accessing camera and microphone...",
    _S.OFFERING: "Calling...",
    _S.ANSWERING: "Connecting...",
    _S.CONNECTED: "Call connected",
    _S.FAILED: "Call failed",
    _S.ENDED: "Call ended",
}

# Peer connection states that cannot recover on their own
FATAL_CONNECTION_STATES = {"failed", "closed"}


class NegotiationStateMachine:
    """Drives one side of a two-party call from join to connected.

    Attributes:
        room_id: Room the session belongs to.
        connection_id: This side's signaling connection token.
        role: Initiator or responder, from the join outcome.
        state: Current NegotiationState.
        failure: Categorized cause once the state is Failed.
        local_media: Captured local media, owned by this session.
        remote_tracks: Remote tracks observed so far (not owned).
        peer: The peer connection, owned by this session.
        history: Every state entered, in order.
    """

    def __init__(
        self,
        room_id: str,
        connection_id: Optional[str],
        role: Role,
        send: SendMessage,
        media_source,
        peer_factory: Callable[[], PeerConnection],
        negotiation_timeout: Optional[float] = None,
    ):
        """Initialize an idle session.

        Args:
            room_id: Room the session belongs to.
            connection_id: Token assigned by the signaling server.
            role: Role assigned by join order.
            send: Coroutine function delivering a message through the relay.
            media_source: Object with ``async acquire() -> LocalMedia``.
            peer_factory: Callable returning a fresh PeerConnection.
            negotiation_timeout: Seconds allowed between starting the
                offer/answer exchange and Connected. None disables the bound.
        """
        self.room_id = room_id
        self.connection_id = connection_id
        self.role = role
        self._send = send
        self._media_source = media_source
        self._peer_factory = peer_factory
        self.negotiation_timeout = negotiation_timeout

        self.state = NegotiationState.IDLE
        self.history: List[NegotiationState] = [NegotiationState.IDLE]
        self.failure: Optional[DuoRTCError] = None
        self.end_reason: Optional[str] = None

        self.local_media: Optional[LocalMedia] = None
        self.remote_tracks: List[Any] = []
        self.peer: Optional[PeerConnection] = None

        self._resources = AsyncExitStack()
        self._lock = asyncio.Lock()
        self._step: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.Task] = None
        self._local_description_sent = False
        self._pending_remote_candidates: List[Dict[str, Any]] = []
        self._pending_local_candidates: List[Dict[str, Any]] = []
        self._listeners: List[StateListener] = []
        self._track_listeners: List[TrackListener] = []
        self._settled = asyncio.Event()
        self._terminated = asyncio.Event()

    # ----- observation -----

    @property
    def status(self) -> str:
        """User-facing status line."""
        if self.failure is not None:
            return f"{STATUS_MESSAGES[self.state]}: {self.failure}"
        return STATUS_MESSAGES[self.state]

    @property
    def pending_remote_candidates(self) -> int:
        return len(self._pending_remote_candidates)

    def add_listener(self, listener: StateListener) -> None:
        """Call ``listener(old, new)`` on every state transition."""
        self._listeners.append(listener)

    def add_track_listener(self, listener: TrackListener) -> None:
        """Call ``listener(track)`` for every remote track."""
        self._track_listeners.append(listener)

    async def wait_settled(self) -> NegotiationState:
        """Wait until the session is Connected, Failed or Ended."""
        await self._settled.wait()
        return self.state

    async def wait_terminal(self) -> NegotiationState:
        """Wait until the session is Failed or Ended."""
        await self._terminated.wait()
        return self.state

    # ----- inbound events and local actions -----

    async def prepare(self) -> None:
        """Capture local media ahead of the offer/answer exchange."""
        await self._run("prepare", self._prepare)

    async def start_call(self) -> None:
        """Produce and send an offer (this side initiates)."""
        await self._run("start_call", self._start_call)

    async def handle_offer(self, sdp: Dict[str, Any], sender_id: Optional[str] = None) -> None:
        """Apply a remote offer and answer it."""
        await self._run("offer", self._handle_offer, sdp, sender_id)

    async def handle_answer(self, sdp: Dict[str, Any]) -> None:
        """Apply the remote answer to our offer."""
        await self._run("answer", self._handle_answer, sdp)

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply a trickled remote candidate, buffering it if needed."""
        await self._run("ice_candidate", self._add_remote_candidate, candidate)

    async def end(self, reason: str = "local") -> None:
        """End the call and release all owned resources.

        Idempotent. A session that already failed keeps its Failed state; its
        resources are still released.
        """
        if not self.state.is_terminal:
            self.end_reason = reason
            self._transition(NegotiationState.ENDED)
        await self._teardown()

    async def fail(self, error: DuoRTCError) -> None:
        """Move to Failed with a categorized cause and release resources."""
        if self.state.is_terminal:
            logger.debug(f"Ignoring failure in {self.state.value} state: {error}")
            return
        self.failure = error
        logger.error(f"[{self.room_id}] Negotiation failed: {error}")
        self._transition(NegotiationState.FAILED)
        await self._teardown()

    # ----- serialization -----

    async def _run(self, name: str, handler, *args) -> None:
        """Apply one event under the session lock.

        The handler runs in its own task so that ``end()``/``fail()`` can
        cancel it at any suspension point.
        """
        async with self._lock:
            if self.state.is_terminal:
                logger.debug(f"Ignoring {name} in {self.state.value} state")
                return

            step = asyncio.ensure_future(handler(*args))
            self._step = step
            try:
                await asyncio.wait({step})
            except asyncio.CancelledError:
                step.cancel()
                raise
            finally:
                self._step = None

            if step.cancelled():
                logger.debug(f"{name} was cancelled by teardown")
                return
            error = step.exception()
            if error is None:
                return
            if self.state.is_terminal:
                logger.debug(f"{name} stopped after teardown: {error}")
                return
            if not isinstance(error, DuoRTCError):
                logger.opt(exception=error).error(f"Unexpected error handling {name}")
                error = NegotiationError(f"Failed to handle {name}: {error}")
            await self.fail(error)

    def _transition(self, new: NegotiationState) -> None:
        old = self.state
        if new is old:
            return
        if new not in TRANSITIONS[old]:
            raise NegotiationError(
                f"Invalid negotiation transition {old.value} -> {new.value}"
            )
        self.state = new
        self.history.append(new)
        logger.info(f"[{self.room_id}] Negotiation {old.value} -> {new.value}")

        if new in (NegotiationState.OFFERING, NegotiationState.ANSWERING):
            self._start_timer()
        if new is NegotiationState.CONNECTED or new.is_terminal:
            self._cancel_timer()
            self._settled.set()
        if new.is_terminal:
            self._terminated.set()

        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    # ----- steps -----

    async def _prepare(self) -> None:
        if self.state is NegotiationState.IDLE:
            self._transition(NegotiationState.AWAITING_MEDIA)
        if self.state is NegotiationState.AWAITING_MEDIA:
            await self._ensure_media()

    async def _start_call(self) -> None:
        if self.state not in (NegotiationState.IDLE, NegotiationState.AWAITING_MEDIA):
            logger.info(f"Ignoring start_call while {self.state.value}")
            return
        await self._prepare()
        peer = await self._ensure_peer()
        self._transition(NegotiationState.OFFERING)

        offer = await peer.create_offer()
        await peer.set_local_description(offer)
        await self._signal(
            SignalingMessage.offer(
                self.room_id,
                peer.local_description or offer,
                sender_id=self.connection_id,
            )
        )
        await self._local_description_done()

    async def _handle_offer(self, sdp: Dict[str, Any], sender_id: Optional[str]) -> None:
        if self.state is NegotiationState.OFFERING:
            if not self._yields_to(sender_id):
                logger.info(
                    f"Glare in room {self.room_id}: keeping local offer, "
                    f"peer {sender_id} will answer"
                )
                return
            logger.info(
                f"Glare in room {self.room_id}: discarding local offer "
                f"in favour of {sender_id}"
            )
            await self.peer.rollback()
            self._local_description_sent = False
            self._pending_local_candidates.clear()
        elif self.state in (NegotiationState.IDLE, NegotiationState.AWAITING_MEDIA):
            await self._prepare()
        else:
            logger.warning(f"Ignoring offer while {self.state.value}")
            return

        peer = await self._ensure_peer()
        self._transition(NegotiationState.ANSWERING)

        await peer.set_remote_description(sdp)
        await self._flush_remote_candidates()

        answer = await peer.create_answer()
        await peer.set_local_description(answer)
        await self._signal(
            SignalingMessage.answer(self.room_id, peer.local_description or answer)
        )
        await self._local_description_done()

    async def _handle_answer(self, sdp: Dict[str, Any]) -> None:
        if self.state is NegotiationState.CONNECTED or (
            self.state is NegotiationState.OFFERING and self.peer.has_remote_description
        ):
            logger.warning("Ignoring duplicate answer")
            return
        if self.state is not NegotiationState.OFFERING:
            raise NegotiationError(f"Received an answer while {self.state.value}")

        await self.peer.set_remote_description(sdp)
        await self._flush_remote_candidates()

    async def _add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.peer is None or not self.peer.has_remote_description:
            self._pending_remote_candidates.append(candidate)
            logger.debug(
                f"Buffered ICE candidate ({len(self._pending_remote_candidates)} pending)"
            )
            return
        await self.peer.add_ice_candidate(candidate)
        logger.debug("Added ICE candidate")

    async def _flush_remote_candidates(self) -> None:
        pending, self._pending_remote_candidates = self._pending_remote_candidates, []
        for candidate in pending:
            await self.peer.add_ice_candidate(candidate)
        if pending:
            logger.debug(f"Applied {len(pending)} buffered ICE candidate(s)")

    # ----- resources -----

    async def _ensure_media(self) -> LocalMedia:
        if self.local_media is None:
            media = await self._media_source.acquire()
            self._resources.callback(media.stop)
            self.local_media = media
        return self.local_media

    async def _ensure_peer(self) -> PeerConnection:
        if self.peer is None:
            media = await self._ensure_media()
            peer = self._peer_factory()
            self._resources.push_async_callback(peer.close)
            self.peer = peer
            peer.on_track = self._on_track
            peer.on_local_candidate = self._on_local_candidate
            peer.on_connection_state = self._on_connection_state
            await peer.add_local_media(media)
        return self.peer

    async def _teardown(self) -> None:
        self._cancel_timer()
        step = self._step
        if step is not None and step is not asyncio.current_task() and not step.done():
            step.cancel()

        # Drop ownership before awaiting any close
        resources, self._resources = self._resources, AsyncExitStack()
        self.local_media = None
        self.peer = None
        self.remote_tracks = []
        self._pending_remote_candidates = []
        self._pending_local_candidates = []

        # Closing runs to completion even if the caller is cancelled meanwhile;
        # the cancellation is re-raised once everything is released.
        closing = asyncio.ensure_future(self._release(resources))
        cancelled = False
        while not closing.done():
            try:
                await asyncio.shield(closing)
            except asyncio.CancelledError:
                cancelled = True
        if cancelled:
            raise asyncio.CancelledError()

    @staticmethod
    async def _release(resources: AsyncExitStack) -> None:
        try:
            await resources.aclose()
        except Exception as e:
            logger.error(f"Error releasing session resources: {e}")

    # ----- peer callbacks -----

    def _on_track(self, track) -> None:
        if self.state.is_terminal:
            return
        self.remote_tracks.append(track)
        for listener in list(self._track_listeners):
            try:
                listener(track)
            except Exception as e:
                logger.error(f"Track listener failed: {e}")
        if self.state in (NegotiationState.OFFERING, NegotiationState.ANSWERING):
            self._transition(NegotiationState.CONNECTED)

    async def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.state.is_terminal:
            return
        if not self._local_description_sent:
            self._pending_local_candidates.append(candidate)
            return
        await self._emit_candidate(candidate)

    async def _on_connection_state(self, state: str) -> None:
        if state in FATAL_CONNECTION_STATES and not self.state.is_terminal:
            await self.fail(NegotiationError(f"Peer connection {state}"))

    # ----- outbound -----

    async def _local_description_done(self) -> None:
        self._local_description_sent = True
        pending, self._pending_local_candidates = self._pending_local_candidates, []
        for candidate in pending:
            await self._signal(SignalingMessage.ice_candidate(self.room_id, candidate))

    async def _emit_candidate(self, candidate: Dict[str, Any]) -> None:
        try:
            await self._signal(SignalingMessage.ice_candidate(self.room_id, candidate))
        except DuoRTCError as e:
            await self.fail(e)

    async def _signal(self, message: SignalingMessage) -> None:
        if self.state.is_terminal:
            raise NegotiationError(
                f"Not sending {message.kind.value}: session is {self.state.value}"
            )
        try:
            await self._send(message)
        except DuoRTCError:
            raise
        except Exception as e:
            raise SignalingConnectionError(
                f"Failed to deliver {message.kind.value}: {e}"
            ) from e

    # ----- policy -----

    def _yields_to(self, remote_id: Optional[str]) -> bool:
        """Whether this side becomes the answerer when both sides offered.

        The lexicographically lower connection id answers. Without a remote
        id, the responder answers.
        """
        if remote_id and self.connection_id and remote_id != self.connection_id:
            return self.connection_id < remote_id
        return self.role is Role.RESPONDER

    def _start_timer(self) -> None:
        if self.negotiation_timeout is None or self._timer is not None:
            return
        self._timer = asyncio.ensure_future(self._expire(self.negotiation_timeout))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self._timer = None
        if self.state in (NegotiationState.OFFERING, NegotiationState.ANSWERING):
            await self.fail(NegotiationTimeoutError(timeout))
