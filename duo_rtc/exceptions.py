"""Error taxonomy for duo-rtc.

Server-side errors are logged and isolated to the offending connection.
Client-side errors become the failure cause of a negotiation session and are
shown to the user; none of them is retried automatically.
"""


class DuoRTCError(Exception):
    """Base class for all duo-rtc errors."""

    pass


class MediaAccessError(DuoRTCError):
    """Raised when local camera/microphone capture cannot be acquired.

    Attributes:
        category: One of the ``MEDIA_*`` category constants.
    """

    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    CONSTRAINTS_UNSATISFIABLE = "constraints_unsatisfiable"
    UNKNOWN = "unknown"

    MESSAGES = {
        PERMISSION_DENIED: (
            "Camera or microphone permission denied. "
            "Please allow access to the capture devices."
        ),
        DEVICE_NOT_FOUND: (
            "No camera or microphone found. Please connect a device and try again."
        ),
        DEVICE_BUSY: (
            "Your camera or microphone is already in use by another application."
        ),
        CONSTRAINTS_UNSATISFIABLE: (
            "The requested camera or microphone settings are not available "
            "on your device."
        ),
        UNKNOWN: "Failed to access camera and microphone",
    }

    def __init__(self, category: str, detail: str | None = None):
        self.category = category if category in self.MESSAGES else self.UNKNOWN
        self.detail = detail
        super().__init__(self.MESSAGES[self.category])


class SignalingConnectionError(DuoRTCError):
    """Raised when the signaling transport fails or drops."""

    pass


class RoomFullError(DuoRTCError):
    """Raised when a room already holds two participants.

    Attributes:
        room_id: The room that rejected the join.
    """

    def __init__(self, room_id: str):
        super().__init__(f"The room '{room_id}' is full, please try another room")
        self.room_id = room_id


class NegotiationError(DuoRTCError):
    """Raised when offer/answer/candidate handling fails."""

    pass


class NegotiationTimeoutError(NegotiationError):
    """Raised when a session does not connect within the configured bound."""

    def __init__(self, timeout: float):
        super().__init__(f"Peer did not connect within {timeout:g} seconds")
        self.timeout = timeout


class MalformedMessageError(DuoRTCError):
    """Raised when a signaling frame cannot be decoded or validated."""

    pass


class InvalidRoomError(MalformedMessageError):
    """Raised when a room identity is missing or empty after normalization."""

    pass


class ConfigurationError(DuoRTCError):
    """Raised when a configuration value is invalid."""

    pass
