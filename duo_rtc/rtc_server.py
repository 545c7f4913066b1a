"""Entry point for the duo-rtc signaling server CLI."""

import asyncio
from typing import Optional

from loguru import logger

from duo_rtc.config import get_config
from duo_rtc.server.service import SignalingService


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    case_sensitive: Optional[bool] = None,
):
    """Create a SignalingService and serve until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config.
        port: Port to listen on. CLI option overrides config.
        case_sensitive: Room id case sensitivity. CLI option overrides config.
    """
    config = get_config()

    effective_host = host or config.host
    effective_port = port if port is not None else config.port
    effective_case = (
        case_sensitive if case_sensitive is not None else config.case_sensitive_rooms
    )

    service = SignalingService(case_sensitive=effective_case)
    if not effective_case:
        logger.info("Room identities are case-insensitive")

    try:
        asyncio.run(service.serve_forever(effective_host, effective_port))
    except KeyboardInterrupt:
        logger.info("Server stopped")
