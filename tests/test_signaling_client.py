"""Tests for SignalingClient message handling."""

import json
from unittest import mock

import pytest

from duo_rtc.client.negotiation import NegotiationState
from duo_rtc.client.signaling import SignalingClient
from duo_rtc.exceptions import (
    MediaAccessError,
    RoomFullError,
    SignalingConnectionError,
)
from duo_rtc.protocol import Role, SERVER_KINDS, SignalingMessage

OFFER = {"type": "offer", "sdp": "v=0 remote offer"}
ANSWER = {"type": "answer", "sdp": "v=0 remote answer"}


@pytest.fixture
def make_client(fake_peer_class, fake_media_source):
    """Build a SignalingClient whose websocket is a mock."""

    def _make(media_source=None, room_id="room1"):
        client = SignalingClient(
            url="ws://localhost:8080",
            room_id=room_id,
            media_source=media_source or fake_media_source(),
            peer_factory=fake_peer_class,
        )
        client._websocket = mock.MagicMock()
        client._websocket.send = mock.AsyncMock()
        return client

    return _make


def sent_types(client):
    return [json.loads(c.args[0])["type"] for c in client._websocket.send.call_args_list]


class TestHandlers:
    def test_every_server_kind_has_a_handler(self):
        assert SERVER_KINDS <= set(SignalingClient.HANDLERS)
        for method in SignalingClient.HANDLERS.values():
            assert callable(getattr(SignalingClient, method))

    @pytest.mark.asyncio
    async def test_room_created_prepares_initiator(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_created("room1", "aaaa").encode())

        assert client.session.role is Role.INITIATOR
        assert client.session.connection_id == "aaaa"
        assert client.session.state is NegotiationState.AWAITING_MEDIA
        assert sent_types(client) == []

    @pytest.mark.asyncio
    async def test_room_joined_requests_call(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_joined("room1", "bbbb").encode())

        assert client.session.role is Role.RESPONDER
        assert sent_types(client) == ["start_call"]
        frame = json.loads(client._websocket.send.call_args.args[0])
        assert frame["roomId"] == "room1"

    @pytest.mark.asyncio
    async def test_start_call_sends_offer(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_created("room1", "aaaa").encode())
        await client.dispatch(SignalingMessage.start_call("room1").encode())

        assert client.session.state is NegotiationState.OFFERING
        frame = json.loads(client._websocket.send.call_args.args[0])
        assert frame["type"] == "webrtc_offer"
        assert frame["senderId"] == "aaaa"
        assert frame["sdp"]["type"] == "offer"

    @pytest.mark.asyncio
    async def test_offer_is_answered(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_joined("room1", "bbbb").encode())
        await client.dispatch(SignalingMessage.offer("room1", OFFER, "aaaa").encode())

        assert client.session.state is NegotiationState.ANSWERING
        assert sent_types(client) == ["start_call", "webrtc_answer"]

    @pytest.mark.asyncio
    async def test_answer_and_candidate_reach_session(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_created("room1", "aaaa").encode())
        await client.dispatch(SignalingMessage.start_call("room1").encode())
        await client.dispatch(SignalingMessage.answer("room1", ANSWER).encode())
        candidate = {"candidate": "candidate:1 1 UDP 1 1.2.3.4 5 typ host"}
        await client.dispatch(SignalingMessage.ice_candidate("room1", candidate).encode())

        peer = client.session.peer
        assert peer.remote == ANSWER
        assert len(peer.applied_candidates) == 1

    @pytest.mark.asyncio
    async def test_full_room_is_reported(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.full_room("room1").encode())

        assert isinstance(client.error, RoomFullError)
        assert client.error.room_id == "room1"
        assert client.session is None
        assert client._stopped.is_set()

    @pytest.mark.asyncio
    async def test_media_failure_skips_start_call(self, make_client, fake_media_source):
        source = fake_media_source(
            error=MediaAccessError(MediaAccessError.PERMISSION_DENIED)
        )
        client = make_client(media_source=source)
        await client.dispatch(SignalingMessage.room_joined("room1", "bbbb").encode())

        assert sent_types(client) == []
        assert isinstance(client.error, MediaAccessError)
        assert client._stopped.is_set()


class TestDropping:
    @pytest.mark.asyncio
    async def test_relay_before_join_is_dropped(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.offer("room1", OFFER, "aaaa").encode())

        assert client.session is None
        assert sent_types(client) == []

    @pytest.mark.asyncio
    async def test_other_room_is_dropped(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_joined("room1", "bbbb").encode())
        await client.dispatch(SignalingMessage.offer("room2", OFFER, "aaaa").encode())

        assert client.session.state is NegotiationState.AWAITING_MEDIA
        assert sent_types(client) == ["start_call"]

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self, make_client):
        client = make_client()
        await client.dispatch("not json")
        await client.dispatch(json.dumps({"type": "webrtc_offer", "roomId": "room1"}))
        await client.dispatch(SignalingMessage.join("room1").encode())

        assert client.session is None
        assert client.error is None


class TestConnection:
    @pytest.mark.asyncio
    async def test_send_requires_connection(self, fake_peer_class, fake_media_source):
        client = SignalingClient(
            url="ws://localhost:8080",
            room_id="room1",
            media_source=fake_media_source(),
            peer_factory=fake_peer_class,
        )
        with pytest.raises(SignalingConnectionError):
            await client.send(SignalingMessage.join("room1"))

    @pytest.mark.asyncio
    async def test_close_ends_session(self, make_client):
        client = make_client()
        await client.dispatch(SignalingMessage.room_created("room1", "aaaa").encode())
        session = client.session

        await client.close()

        assert session.state is NegotiationState.ENDED
        assert session.end_reason == "local"
        assert client.status == "Call ended"
        assert client.error is None

    @pytest.mark.asyncio
    async def test_unreachable_server(self, fake_peer_class, fake_media_source):
        client = SignalingClient(
            url="ws://127.0.0.1:1",
            room_id="room1",
            media_source=fake_media_source(),
            peer_factory=fake_peer_class,
        )
        error = await client.run()

        assert isinstance(error, SignalingConnectionError)
        assert client.session is None
