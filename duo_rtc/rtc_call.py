"""Entry point for the duo-rtc call CLI."""

import asyncio
from typing import Optional

from loguru import logger

from duo_rtc.client.media import MediaSource, RemoteMediaSink
from duo_rtc.client.peer import AiortcPeerConnection
from duo_rtc.client.signaling import SignalingClient
from duo_rtc.config import get_config
from duo_rtc.exceptions import ConfigurationError, DuoRTCError

WEBSOCKET_SCHEMES = ("ws://", "wss://")


def build_client(
    room_id: str,
    server_url: Optional[str] = None,
    record_to: Optional[str] = None,
) -> SignalingClient:
    """Wire a SignalingClient from the loaded configuration.

    Raises:
        ConfigurationError: If the signaling URL is not a websocket URL.
    """
    config = get_config()
    url = server_url or config.get_websocket_url()
    if not url.startswith(WEBSOCKET_SCHEMES):
        raise ConfigurationError(
            f"Signaling server URL must start with ws:// or wss://, got {url}"
        )
    ice_servers = config.ice_server_dicts()

    return SignalingClient(
        url=url,
        room_id=room_id,
        media_source=MediaSource(config.media),
        peer_factory=lambda: AiortcPeerConnection(ice_servers),
        negotiation_timeout=config.negotiation_timeout,
        sink=RemoteMediaSink(record_to),
    )


def run_call(
    room_id: str,
    server_url: Optional[str] = None,
    record_to: Optional[str] = None,
) -> Optional[DuoRTCError]:
    """Join a room and run the call until it ends.

    Args:
        room_id: Normalized room identity.
        server_url: Signaling websocket URL. CLI option overrides config.
        record_to: Optional file to record the remote media to.

    Returns:
        The failure cause, or None if the call ended normally.
    """
    try:
        client = build_client(room_id, server_url=server_url, record_to=record_to)
    except ConfigurationError as e:
        logger.error(str(e))
        return e
    logger.info(f"Joining room {room_id} via {client.url}")

    try:
        return asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Call interrupted by user. Hanging up...")
        return None
    finally:
        logger.info(f"Status: {client.status}")
