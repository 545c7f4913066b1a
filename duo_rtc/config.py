"""Configuration management for duo-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DUO_RTC_SIGNALING_WS, DUO_RTC_HOST, DUO_RTC_PORT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- duo-rtc.toml in current working directory
- ~/.duo-rtc/config.toml

DUO_RTC_CONFIG names an explicit file that is tried before both.

Environment selection via DUO_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [server]
    host = "0.0.0.0"
    port = 8080

    [rooms]
    case_sensitive = true

    [negotiation]
    timeout_seconds = 30

    [[ice_servers]]
    urls = ["stun:stun.l.google.com:19302"]

    [media]
    video_device = "/dev/video0"
    video_format = "v4l2"

    [environments.development]
    signaling_websocket = "ws://localhost:8080"
"""

import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger


@dataclass
class IceServerConfig:
    """Configuration for a single STUN/TURN server.

    Attributes:
        urls: One or more ``stun:``/``turn:`` URLs.
        username: Optional TURN username.
        credential: Optional TURN credential.
    """

    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if isinstance(self.urls, str):
            self.urls = [self.urls]
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")
        for url in self.urls:
            if not url.startswith(("stun:", "stuns:", "turn:", "turns:")):
                raise ValueError(f"Unsupported ICE server url: {url}")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"urls": list(self.urls)}
        if self.username is not None:
            data["username"] = self.username
        if self.credential is not None:
            data["credential"] = self.credential
        return data


def _default_video_device() -> tuple[Optional[str], Optional[str]]:
    if sys.platform.startswith("linux"):
        return "/dev/video0", "v4l2"
    if sys.platform == "darwin":
        return "default:none", "avfoundation"
    if sys.platform.startswith("win"):
        return "video=Integrated Camera", "dshow"
    return None, None


def _default_audio_device() -> tuple[Optional[str], Optional[str]]:
    if sys.platform.startswith("linux"):
        return "default", "pulse"
    if sys.platform == "darwin":
        return "none:default", "avfoundation"
    if sys.platform.startswith("win"):
        return "audio=Microphone", "dshow"
    return None, None


@dataclass
class MediaConfig:
    """Local capture device settings passed to aiortc's MediaPlayer.

    Attributes:
        video_device: Video device or file (None disables video).
        video_format: FFmpeg input format for the video device.
        audio_device: Audio device or file (None disables audio).
        audio_format: FFmpeg input format for the audio device.
        video_size: Requested capture size, e.g. "640x480".
        framerate: Requested capture frame rate.
    """

    video_device: Optional[str] = None
    video_format: Optional[str] = None
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    video_size: Optional[str] = "640x480"
    framerate: Optional[int] = 30

    def __post_init__(self):
        """Validate media configuration after initialization."""
        if self.video_size is not None:
            parts = str(self.video_size).lower().split("x")
            if len(parts) != 2 or not all(p.isdigit() for p in parts):
                raise ValueError(f"Invalid video_size: {self.video_size}")
        if self.framerate is not None and int(self.framerate) <= 0:
            raise ValueError("framerate must be positive")

    @classmethod
    def platform_default(cls) -> "MediaConfig":
        video_device, video_format = _default_video_device()
        audio_device, audio_format = _default_audio_device()
        return cls(
            video_device=video_device,
            video_format=video_format,
            audio_device=audio_device,
            audio_format=audio_format,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Create MediaConfig from TOML [media] section, over platform defaults."""
        base = cls.platform_default()
        known = {
            "video_device",
            "video_format",
            "audio_device",
            "audio_format",
            "video_size",
            "framerate",
        }
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown [media] setting: {key}")
        return cls(
            video_device=data.get("video_device", base.video_device),
            video_format=data.get("video_format", base.video_format),
            audio_device=data.get("audio_device", base.audio_device),
            audio_format=data.get("audio_format", base.audio_format),
            video_size=data.get("video_size", base.video_size),
            framerate=data.get("framerate", base.framerate),
        )

    def video_options(self) -> Dict[str, str]:
        options = {}
        if self.video_size:
            options["video_size"] = str(self.video_size)
        if self.framerate:
            options["framerate"] = str(self.framerate)
        return options


# Public STUN servers used when no [[ice_servers]] are configured
DEFAULT_ICE_SERVERS = [
    {"urls": ["stun:stun.l.google.com:19302"]},
    {"urls": ["stun:stun1.l.google.com:19302"]},
    {"urls": ["stun:stun2.l.google.com:19302"]},
]

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
DEFAULT_NEGOTIATION_TIMEOUT = 30.0

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

CONFIG_FILE_NAME = "duo-rtc.toml"


def config_search_paths() -> List[Path]:
    """Config file candidates, most specific first.

    DUO_RTC_CONFIG (if set), then ./duo-rtc.toml, then ~/.duo-rtc/config.toml.
    """
    paths = [Path.cwd() / CONFIG_FILE_NAME, Path.home() / ".duo-rtc" / "config.toml"]
    explicit = os.getenv("DUO_RTC_CONFIG")
    if explicit:
        paths.insert(0, Path(explicit).expanduser())
    return paths


class Config:
    """Configuration manager for duo-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.case_sensitive_rooms: bool = True
        self.negotiation_timeout: Optional[float] = DEFAULT_NEGOTIATION_TIMEOUT
        self.ice_servers: List[IceServerConfig] = [
            IceServerConfig(**server) for server in DEFAULT_ICE_SERVERS
        ]
        self.media: MediaConfig = MediaConfig.platform_default()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Environment named by DUO_RTC_ENV; unknown names fall back to production."""
        env = os.getenv("DUO_RTC_ENV", "production").lower()
        if env in VALID_ENVIRONMENTS:
            return env
        logger.warning(
            f"Unknown DUO_RTC_ENV '{env}' (expected one of "
            f"{', '.join(sorted(VALID_ENVIRONMENTS))}), using production"
        )
        return "production"

    def _find_config_file(self) -> Optional[Path]:
        """Return the first existing file from ``config_search_paths()``."""
        explicit = os.getenv("DUO_RTC_CONFIG")
        for path in config_search_paths():
            if path.is_file():
                logger.info(f"Loading config from {path}")
                return path
            if explicit and path == Path(explicit).expanduser():
                logger.warning(f"DUO_RTC_CONFIG points at missing file {path}")
        logger.debug("No duo-rtc config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            self._config_data = {}
            return

        self.apply(self._config_data)

    def apply(self, data: dict) -> None:
        """Apply an already-parsed configuration mapping.

        Invalid entries are skipped with a warning and leave the previous
        value in place.
        """
        server = data.get("server", {})
        if "host" in server:
            self.host = str(server["host"])
        if "port" in server:
            self.port = self._parse_port(server["port"], self.port)

        rooms = data.get("rooms", {})
        if "case_sensitive" in rooms:
            self.case_sensitive_rooms = bool(rooms["case_sensitive"])

        negotiation = data.get("negotiation", {})
        if "timeout_seconds" in negotiation:
            self.negotiation_timeout = self._parse_timeout(
                negotiation["timeout_seconds"]
            )

        if "ice_servers" in data:
            servers = []
            for entry in data["ice_servers"]:
                if "urls" not in entry:
                    logger.warning(f"Skipping ICE server entry without urls: {entry}")
                    continue
                try:
                    servers.append(
                        IceServerConfig(
                            urls=entry["urls"],
                            username=entry.get("username"),
                            credential=entry.get("credential"),
                        )
                    )
                except ValueError as e:
                    logger.warning(f"Skipping invalid ICE server entry: {e}")
            self.ice_servers = servers

        if "media" in data:
            try:
                self.media = MediaConfig.from_dict(data["media"])
            except ValueError as e:
                logger.warning(f"Invalid [media] section: {e}. Using defaults.")

        environments = data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

    def _parse_port(self, value, fallback: int) -> int:
        try:
            port = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid port '{value}', keeping {fallback}")
            return fallback
        if not 0 <= port <= 65535:
            logger.warning(f"Port out of range '{value}', keeping {fallback}")
            return fallback
        return port

    def _parse_timeout(self, value) -> Optional[float]:
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid negotiation timeout '{value}', "
                f"keeping {self.negotiation_timeout}"
            )
            return self.negotiation_timeout
        # 0 (or negative) disables the bound
        return timeout if timeout > 0 else None

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("DUO_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("DUO_RTC_HOST")
        if host_override:
            self.host = host_override
            logger.info(f"Overriding host from env: {self.host}")

        port_override = os.getenv("DUO_RTC_PORT")
        if port_override:
            self.port = self._parse_port(port_override, self.port)
            logger.info(f"Overriding port from env: {self.port}")

    def ice_server_dicts(self) -> List[Dict[str, Any]]:
        """ICE servers as keyword dictionaries for ``RTCIceServer(**server)``."""
        return [server.to_dict() for server in self.ice_servers]

    def get_websocket_url(self, port: int = DEFAULT_PORT) -> str:
        """Get the WebSocket signaling server URL.

        Args:
            port: Port number to use if not specified in URL.

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port}"
        return url


# Shared by the server and call commands
_config: Optional[Config] = None


def reload_config() -> Config:
    """Re-read the config file and environment into a new shared Config."""
    global _config
    _config = Config()
    _config.load()
    return _config


def get_config() -> Config:
    """Shared Config, loaded on first use."""
    if _config is None:
        return reload_config()
    return _config
