"""Peer-to-peer two-party audio/video calls over a room-based signaling server."""

__version__ = "0.1.0"
