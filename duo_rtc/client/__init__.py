"""Call client: websocket signaling and the per-peer negotiation state machine."""
