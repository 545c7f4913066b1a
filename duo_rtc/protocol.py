"""Signaling protocol definitions for duo-rtc.

This module defines the message kinds exchanged between clients and the
signaling server over the websocket, and the helpers to encode, decode and
validate them.

Message Protocol Overview
-------------------------

Every websocket text frame is a JSON object with a ``type`` field naming the
event. All messages except ``join-room`` responses are scoped to a room.

Message Types
-------------

**join-room**
    Sent by: Client
    Purpose: Join (or implicitly create) a room
    Format: {"type": "join-room", "roomId": "room1"}

**room_created** / **room_joined**
    Sent by: Server
    Purpose: The sender is the first (initiator) / second (responder) occupant
    Format: {"type": "room_created", "roomId": "room1", "connectionId": "..."}

**full_room**
    Sent by: Server
    Purpose: The room already holds two participants
    Format: {"type": "full_room", "roomId": "room1"}

**start_call**
    Sent by: Responder, relayed to the initiator
    Purpose: Ask the initiator to produce an offer
    Format: {"type": "start_call", "roomId": "room1"}

**webrtc_offer** / **webrtc_answer**
    Sent by: Either peer, relayed
    Format: {"type": "webrtc_offer", "roomId": "room1",
             "sdp": {"type": "offer", "sdp": "v=0..."}, "senderId": "..."}

**webrtc_ice_candidate**
    Sent by: Either peer, relayed
    Format: {"type": "webrtc_ice_candidate", "roomId": "room1",
             "candidate": {"candidate": "candidate:...", "sdpMid": "0",
                           "sdpMLineIndex": 0}}

Message Flow
------------

1. A → Server: join-room(room1)          Server → A: room_created
2. B → Server: join-room(room1)          Server → B: room_joined
3. B → Server: start_call                Server → A: start_call
4. A → Server: webrtc_offer              Server → B: webrtc_offer
5. B → Server: webrtc_answer             Server → A: webrtc_answer
6. A ⇄ B: webrtc_ice_candidate (trickled, any time after local description)

The relay never inspects ``sdp`` or ``candidate`` contents and never routes on
``senderId``; routing is decided by the sender's current room binding only.
"""

import json
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from duo_rtc.exceptions import InvalidRoomError, MalformedMessageError


class MessageKind(str, Enum):
    """Closed set of signaling events, valued by their wire name."""

    JOIN_ROOM = "join-room"
    ROOM_CREATED = "room_created"
    ROOM_JOINED = "room_joined"
    FULL_ROOM = "full_room"
    START_CALL = "start_call"
    OFFER = "webrtc_offer"
    ANSWER = "webrtc_answer"
    ICE_CANDIDATE = "webrtc_ice_candidate"


class Role(str, Enum):
    """Participant role inside a room, assigned by join order."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


# Kinds a client may send to the server.
CLIENT_KINDS = frozenset(
    {
        MessageKind.JOIN_ROOM,
        MessageKind.START_CALL,
        MessageKind.OFFER,
        MessageKind.ANSWER,
        MessageKind.ICE_CANDIDATE,
    }
)

# Kinds a client may receive from the server.
SERVER_KINDS = frozenset(
    {
        MessageKind.ROOM_CREATED,
        MessageKind.ROOM_JOINED,
        MessageKind.FULL_ROOM,
        MessageKind.START_CALL,
        MessageKind.OFFER,
        MessageKind.ANSWER,
        MessageKind.ICE_CANDIDATE,
    }
)

# Kinds forwarded verbatim to the other occupant of the room.
RELAYED_KINDS = frozenset(
    {
        MessageKind.START_CALL,
        MessageKind.OFFER,
        MessageKind.ANSWER,
        MessageKind.ICE_CANDIDATE,
    }
)

ROOM_LINK_PARAM = "room"
DEFAULT_LINK_BASE = "duo://join"


def normalize_room_id(raw: Any, case_sensitive: bool = True) -> str:
    """Normalize a room identity before any lookup.

    Args:
        raw: Room identity as received (any value; converted with ``str``).
        case_sensitive: If False, the identity is case-folded as well.

    Returns:
        The trimmed (and optionally case-folded) room identity.

    Raises:
        InvalidRoomError: If the identity is missing or blank.

    Examples:
        >>> normalize_room_id("  room1 ")
        'room1'
        >>> normalize_room_id("Room1", case_sensitive=False)
        'room1'
    """
    if raw is None:
        raise InvalidRoomError("Missing room identity")
    room_id = str(raw).strip()
    if not room_id:
        raise InvalidRoomError("Room identity is empty")
    if not case_sensitive:
        room_id = room_id.casefold()
    return room_id


def generate_room_id(length: int = 12) -> str:
    """Generate a random lowercase alphanumeric room identity."""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def make_room_link(room_id: str, base: str = DEFAULT_LINK_BASE) -> str:
    """Build a shareable deep link for a room.

    Examples:
        >>> make_room_link("room1")
        'duo://join?room=room1'
        >>> make_room_link("room 1", "https://call.example.org/")
        'https://call.example.org/?room=room+1'
    """
    return f"{base}?{urlencode({ROOM_LINK_PARAM: room_id})}"


def room_from_link(value: str) -> str:
    """Resolve a room identity from a deep link or a bare room identity.

    A value carrying a ``room`` query parameter is treated as a deep link;
    anything else is taken as the room identity itself.

    Raises:
        InvalidRoomError: If a link carries an empty ``room`` parameter.
    """
    parsed = urlparse(value)
    if parsed.query:
        values = parse_qs(parsed.query, keep_blank_values=True).get(ROOM_LINK_PARAM)
        if values is not None:
            return normalize_room_id(values[0])
    return normalize_room_id(value)


@dataclass(frozen=True)
class SignalingMessage:
    """One signaling event. Immutable once built.

    Attributes:
        kind: The event kind.
        room_id: Room the event is scoped to.
        sdp: Session description ``{"type": ..., "sdp": ...}`` for offers/answers.
        candidate: ICE candidate ``{"candidate", "sdpMid", "sdpMLineIndex"}``.
        connection_id: Connection token assigned by the server (join replies).
        sender_id: Sender's connection token (offers, informational only).
    """

    kind: MessageKind
    room_id: Optional[str] = None
    sdp: Optional[Dict[str, Any]] = field(default=None, compare=False)
    candidate: Optional[Dict[str, Any]] = field(default=None, compare=False)
    connection_id: Optional[str] = None
    sender_id: Optional[str] = None

    # ----- constructors -----

    @classmethod
    def join(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageKind.JOIN_ROOM, room_id)

    @classmethod
    def room_created(cls, room_id: str, connection_id: str) -> "SignalingMessage":
        return cls(MessageKind.ROOM_CREATED, room_id, connection_id=connection_id)

    @classmethod
    def room_joined(cls, room_id: str, connection_id: str) -> "SignalingMessage":
        return cls(MessageKind.ROOM_JOINED, room_id, connection_id=connection_id)

    @classmethod
    def full_room(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageKind.FULL_ROOM, room_id)

    @classmethod
    def start_call(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageKind.START_CALL, room_id)

    @classmethod
    def offer(
        cls, room_id: str, sdp: Dict[str, Any], sender_id: Optional[str] = None
    ) -> "SignalingMessage":
        return cls(MessageKind.OFFER, room_id, sdp=sdp, sender_id=sender_id)

    @classmethod
    def answer(cls, room_id: str, sdp: Dict[str, Any]) -> "SignalingMessage":
        return cls(MessageKind.ANSWER, room_id, sdp=sdp)

    @classmethod
    def ice_candidate(
        cls, room_id: str, candidate: Dict[str, Any]
    ) -> "SignalingMessage":
        return cls(MessageKind.ICE_CANDIDATE, room_id, candidate=candidate)

    # ----- codec -----

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind.value}
        if self.room_id is not None:
            data["roomId"] = self.room_id
        if self.sdp is not None:
            data["sdp"] = self.sdp
        if self.candidate is not None:
            data["candidate"] = self.candidate
        if self.connection_id is not None:
            data["connectionId"] = self.connection_id
        if self.sender_id is not None:
            data["senderId"] = self.sender_id
        return data

    def encode(self) -> str:
        """Serialize to a JSON websocket frame."""
        return json.dumps(self.to_dict())

    @classmethod
    def decode(cls, raw: str | bytes) -> "SignalingMessage":
        """Parse and validate a JSON websocket frame.

        Raises:
            MalformedMessageError: On invalid JSON, unknown type or missing fields.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedMessageError(f"Invalid JSON frame: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessageError("Frame is not a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalingMessage":
        try:
            kind = MessageKind(data.get("type"))
        except ValueError:
            raise MalformedMessageError(f"Unknown message type: {data.get('type')!r}")

        room_id = data.get("roomId")
        if room_id is not None and not isinstance(room_id, (str, int)):
            raise MalformedMessageError(f"Invalid roomId in {kind.value}")
        if room_id is not None:
            room_id = str(room_id)

        sdp = data.get("sdp")
        candidate = data.get("candidate")

        if kind in (MessageKind.OFFER, MessageKind.ANSWER):
            _validate_sdp(kind, sdp)
        if kind is MessageKind.ICE_CANDIDATE:
            _validate_candidate(candidate)

        return cls(
            kind=kind,
            room_id=room_id,
            sdp=sdp if kind in (MessageKind.OFFER, MessageKind.ANSWER) else None,
            candidate=candidate if kind is MessageKind.ICE_CANDIDATE else None,
            connection_id=_optional_str(data.get("connectionId")),
            sender_id=_optional_str(data.get("senderId")),
        )


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _validate_sdp(kind: MessageKind, sdp: Any) -> None:
    expected = "offer" if kind is MessageKind.OFFER else "answer"
    if not isinstance(sdp, dict):
        raise MalformedMessageError(f"{kind.value} is missing its session description")
    if not isinstance(sdp.get("sdp"), str) or not sdp["sdp"]:
        raise MalformedMessageError(f"{kind.value} carries an empty session description")
    if sdp.get("type") != expected:
        raise MalformedMessageError(
            f"{kind.value} carries a description of type {sdp.get('type')!r}"
        )


def _validate_candidate(candidate: Any) -> None:
    if not isinstance(candidate, dict):
        raise MalformedMessageError("webrtc_ice_candidate is missing its candidate")
    if not isinstance(candidate.get("candidate"), str):
        raise MalformedMessageError("webrtc_ice_candidate has no candidate line")
