"""Signaling server: room admission, message relay and connection lifecycle."""

from duo_rtc.server.service import SignalingService

__all__ = ["SignalingService"]
