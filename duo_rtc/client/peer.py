"""Peer-connection capability driven by the negotiation state machine.

``PeerConnection`` is the fixed interface the state machine talks to.
``AiortcPeerConnection`` implements it on top of ``aiortc.RTCPeerConnection``.
Descriptions and candidates cross this boundary as plain dictionaries in the
browser wire shape:

- description: ``{"type": "offer" | "answer", "sdp": "v=0..."}``
- candidate: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from loguru import logger

from duo_rtc.exceptions import NegotiationError

TrackHandler = Callable[[Any], Optional[Awaitable[None]]]
CandidateHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]
StateHandler = Callable[[str], Optional[Awaitable[None]]]


async def _call(handler, *args) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class PeerConnection(ABC):
    """Capability interface for one peer connection.

    Attributes:
        on_track: Called with each remote track as it is first observed.
        on_local_candidate: Called with each locally discovered candidate.
        on_connection_state: Called with the new connection state string
            ("new", "connecting", "connected", "disconnected", "failed", "closed").
    """

    def __init__(self):
        self.on_track: Optional[TrackHandler] = None
        self.on_local_candidate: Optional[CandidateHandler] = None
        self.on_connection_state: Optional[StateHandler] = None

    async def emit_track(self, track) -> None:
        await _call(self.on_track, track)

    async def emit_local_candidate(self, candidate: Dict[str, Any]) -> None:
        await _call(self.on_local_candidate, candidate)

    async def emit_connection_state(self, state: str) -> None:
        await _call(self.on_connection_state, state)

    @abstractmethod
    async def add_local_media(self, media) -> None:
        """Attach the session's local tracks."""

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def create_answer(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def set_local_description(self, description: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[Dict[str, Any]]:
        """The applied local description, as it should be sent to the peer."""

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Discard the pending local offer so a remote offer can be applied."""

    @abstractmethod
    async def close(self) -> None:
        ...


class AiortcPeerConnection(PeerConnection):
    """PeerConnection backed by aiortc.

    aiortc gathers all candidates while the local description is applied and
    embeds them in the SDP, so it never reports trickled local candidates;
    ``local_description`` therefore returns the gathered SDP. Remote
    candidates are still applied as they arrive.
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.ice_servers = ice_servers or []
        self._tracks: List[Any] = []
        self.pc = self._create_pc()

    def _create_pc(self) -> RTCPeerConnection:
        """Create RTCPeerConnection with the configured ICE servers."""
        if self.ice_servers:
            ice_server_objects = [RTCIceServer(**server) for server in self.ice_servers]
            logger.info(
                f"Creating RTCPeerConnection with {len(ice_server_objects)} ICE server(s)"
            )
            pc = RTCPeerConnection(
                configuration=RTCConfiguration(iceServers=ice_server_objects)
            )
        else:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
            pc = RTCPeerConnection()

        @pc.on("track")
        async def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            await self.emit_track(track)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Connection state changed to: {pc.connectionState}")
            await self.emit_connection_state(pc.connectionState)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            logger.debug(f"ICE connection state is now {pc.iceConnectionState}")

        return pc

    async def add_local_media(self, media) -> None:
        for track in media.tracks:
            self.pc.addTrack(track)
            self._tracks.append(track)

    async def create_offer(self) -> Dict[str, Any]:
        offer = await self.pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Dict[str, Any]:
        answer = await self.pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Dict[str, Any]) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    @property
    def local_description(self) -> Optional[Dict[str, Any]]:
        desc = self.pc.localDescription
        if desc is None:
            return None
        return {"type": desc.type, "sdp": desc.sdp}

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            logger.debug("Received empty ICE candidate (end of candidates)")
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        try:
            ice_candidate = candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as e:
            raise NegotiationError(f"Malformed ICE candidate: {e}") from e
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def rollback(self) -> None:
        """Replace the connection, keeping the local tracks attached.

        aiortc cannot roll back a local offer in place, so the pending offer
        is discarded together with the connection that created it.
        """
        old = self.pc
        self.pc = self._create_pc()
        for track in self._tracks:
            self.pc.addTrack(track)
        old.remove_all_listeners()
        await old.close()
        logger.info("Discarded local offer")

    async def close(self) -> None:
        await self.pc.close()
