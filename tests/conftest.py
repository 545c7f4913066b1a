"""Shared fakes for the negotiation and signaling client tests.

The state machine only talks to its collaborators through the PeerConnection
interface, a media source with ``acquire()`` and a ``send`` coroutine, so the
fakes below record what was asked of them and let tests fire peer events by
hand.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from duo_rtc.client.negotiation import NegotiationStateMachine
from duo_rtc.client.peer import PeerConnection
from duo_rtc.protocol import Role


class FakeTrack:
    def __init__(self, kind: str = "video"):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMedia:
    """Stands in for LocalMedia."""

    def __init__(self):
        self.tracks = [FakeTrack("video"), FakeTrack("audio")]
        self.stop_calls = 0

    @property
    def stopped(self) -> bool:
        return self.stop_calls > 0

    def stop(self):
        self.stop_calls += 1


class FakeMediaSource:
    """Media source that succeeds, fails, or blocks until released."""

    def __init__(self, error: Optional[Exception] = None, block: bool = False):
        self.error = error
        self.acquired: List[FakeMedia] = []
        self.calls = 0
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def acquire(self) -> FakeMedia:
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        media = FakeMedia()
        self.acquired.append(media)
        return media


class FakePeer(PeerConnection):
    """PeerConnection that records every call made on it."""

    def __init__(self, name: str = "peer"):
        super().__init__()
        self.name = name
        self.calls: List[str] = []
        self.media = None
        self.local: Optional[Dict[str, Any]] = None
        self.remote: Optional[Dict[str, Any]] = None
        self.applied_candidates: List[Dict[str, Any]] = []
        self.rollbacks = 0
        self.closed = False
        self.candidate_error: Optional[Exception] = None

    async def add_local_media(self, media) -> None:
        self.calls.append("add_local_media")
        self.media = media

    async def create_offer(self) -> Dict[str, Any]:
        self.calls.append("create_offer")
        return {"type": "offer", "sdp": f"v=0 offer from {self.name}"}

    async def create_answer(self) -> Dict[str, Any]:
        self.calls.append("create_answer")
        assert self.remote is not None, "answer created before remote offer"
        return {"type": "answer", "sdp": f"v=0 answer from {self.name}"}

    async def set_local_description(self, description: Dict[str, Any]) -> None:
        self.calls.append(f"set_local:{description['type']}")
        self.local = description

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        self.calls.append(f"set_remote:{description['type']}")
        self.remote = description

    @property
    def local_description(self) -> Optional[Dict[str, Any]]:
        return self.local

    @property
    def has_remote_description(self) -> bool:
        return self.remote is not None

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.candidate_error is not None:
            raise self.candidate_error
        self.calls.append("add_ice_candidate")
        self.applied_candidates.append(candidate)

    async def rollback(self) -> None:
        self.calls.append("rollback")
        self.rollbacks += 1
        self.local = None

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True


class SlowClosePeer(FakePeer):
    """FakePeer whose close() suspends before it finishes."""

    close_delay = 0.1

    async def close(self) -> None:
        self.calls.append("close-start")
        await asyncio.sleep(self.close_delay)
        await super().close()


class Outbox:
    """Recording ``send`` coroutine."""

    def __init__(self):
        self.messages = []
        self.error: Optional[Exception] = None

    async def send(self, message) -> None:
        if self.error is not None:
            raise self.error
        self.messages.append(message)

    def kinds(self) -> List[str]:
        return [m.kind.value for m in self.messages]


def candidate(n: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{n} 1 UDP 2130706431 192.168.1.{n} 5000{n} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


class Harness:
    """A NegotiationStateMachine wired to fakes."""

    def __init__(
        self,
        role: Role = Role.INITIATOR,
        connection_id: Optional[str] = "aaaa",
        media_source: Optional[FakeMediaSource] = None,
        negotiation_timeout: Optional[float] = None,
        room_id: str = "room1",
        peer_class: type = FakePeer,
    ):
        self.outbox = Outbox()
        self.peer_class = peer_class
        self.media_source = media_source or FakeMediaSource()
        self.peers: List[FakePeer] = []
        self.machine = NegotiationStateMachine(
            room_id=room_id,
            connection_id=connection_id,
            role=role,
            send=self.outbox.send,
            media_source=self.media_source,
            peer_factory=self._make_peer,
            negotiation_timeout=negotiation_timeout,
        )

    def _make_peer(self) -> FakePeer:
        peer = self.peer_class(name=f"peer{len(self.peers)}")
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> FakePeer:
        return self.peers[-1]


@pytest.fixture
def make_harness():
    """Factory for Harness instances."""
    return Harness


@pytest.fixture
def fake_track():
    return FakeTrack


@pytest.fixture
def make_candidate():
    return candidate


@pytest.fixture
def fake_peer_class():
    return FakePeer


@pytest.fixture
def fake_media_source():
    return FakeMediaSource


@pytest.fixture
def slow_close_peer_class():
    return SlowClosePeer
