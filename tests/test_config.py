"""Tests for configuration loading."""

import pytest

from duo_rtc import config as config_module
from duo_rtc.config import (
    DEFAULT_ICE_SERVERS,
    Config,
    IceServerConfig,
    MediaConfig,
    get_config,
    reload_config,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run in an empty directory with no home config and no env overrides."""
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in (
        "DUO_RTC_ENV",
        "DUO_RTC_CONFIG",
        "DUO_RTC_SIGNALING_WS",
        "DUO_RTC_HOST",
        "DUO_RTC_PORT",
    ):
        monkeypatch.delenv(var, raising=False)
    return work


def write_config(directory, text):
    path = directory / "duo-rtc.toml"
    path.write_text(text)
    return path


class TestDefaults:
    def test_defaults(self, isolated):
        cfg = Config()
        cfg.load()

        assert cfg.signaling_websocket == "ws://localhost:8080"
        assert cfg.port == 8080
        assert cfg.case_sensitive_rooms is True
        assert cfg.negotiation_timeout == 30.0
        assert cfg.ice_server_dicts() == DEFAULT_ICE_SERVERS
        assert cfg.environment == "production"

    def test_invalid_environment_falls_back(self, isolated, monkeypatch):
        monkeypatch.setenv("DUO_RTC_ENV", "qa")
        cfg = Config()
        cfg.load()
        assert cfg.environment == "production"


class TestConfigFile:
    def test_sections_are_applied(self, isolated):
        write_config(
            isolated,
            """
[server]
host = "0.0.0.0"
port = 9000

[rooms]
case_sensitive = false

[negotiation]
timeout_seconds = 12.5

[[ice_servers]]
urls = "turn:turn.example.org:3478"
username = "user"
credential = "secret"

[media]
video_device = "clip.mp4"
video_format = "mp4"
audio_device = ""
""",
        )
        cfg = Config()
        cfg.load()

        assert cfg.host == "0.0.0.0"
        assert cfg.port == 9000
        assert cfg.case_sensitive_rooms is False
        assert cfg.negotiation_timeout == 12.5
        assert cfg.ice_server_dicts() == [
            {
                "urls": ["turn:turn.example.org:3478"],
                "username": "user",
                "credential": "secret",
            }
        ]
        assert cfg.media.video_device == "clip.mp4"
        assert cfg.media.video_format == "mp4"
        assert cfg.media.audio_device == ""

    def test_home_config_is_used(self, isolated, tmp_path):
        home_dir = tmp_path / "home" / ".duo-rtc"
        home_dir.mkdir(parents=True)
        (home_dir / "config.toml").write_text("[server]\nport = 7000\n")

        cfg = Config()
        cfg.load()
        assert cfg.port == 7000

    def test_explicit_config_file_wins(self, isolated, tmp_path, monkeypatch):
        write_config(isolated, "[server]\nport = 9000\n")
        explicit = tmp_path / "call.toml"
        explicit.write_text("[server]\nport = 6000\n")
        monkeypatch.setenv("DUO_RTC_CONFIG", str(explicit))

        cfg = Config()
        cfg.load()
        assert cfg.port == 6000

    def test_missing_explicit_file_falls_through(self, isolated, tmp_path, monkeypatch):
        write_config(isolated, "[server]\nport = 9000\n")
        monkeypatch.setenv("DUO_RTC_CONFIG", str(tmp_path / "missing.toml"))

        cfg = Config()
        cfg.load()
        assert cfg.port == 9000

    def test_zero_timeout_disables_bound(self, isolated):
        write_config(isolated, "[negotiation]\ntimeout_seconds = 0\n")
        cfg = Config()
        cfg.load()
        assert cfg.negotiation_timeout is None

    def test_invalid_entries_are_skipped(self, isolated):
        write_config(
            isolated,
            """
[server]
port = "not a port"

[[ice_servers]]
urls = ["http://not-ice.example.org"]

[[ice_servers]]
username = "no urls"

[[ice_servers]]
urls = ["stun:stun.example.org"]

[media]
video_size = "large"
""",
        )
        cfg = Config()
        cfg.load()

        assert cfg.port == 8080
        assert cfg.ice_server_dicts() == [{"urls": ["stun:stun.example.org"]}]
        assert cfg.media.video_size == "640x480"

    def test_broken_toml_uses_defaults(self, isolated):
        write_config(isolated, "[server\nport = 1")
        cfg = Config()
        cfg.load()
        assert cfg.port == 8080

    def test_environment_section(self, isolated, monkeypatch):
        write_config(
            isolated,
            """
[environments.development]
signaling_websocket = "ws://dev.example.org"

[environments.production]
signaling_websocket = "wss://prod.example.org"
""",
        )
        monkeypatch.setenv("DUO_RTC_ENV", "development")
        cfg = Config()
        cfg.load()
        assert cfg.signaling_websocket == "ws://dev.example.org"
        assert cfg.get_websocket_url() == "ws://dev.example.org:8080"


class TestEnvOverrides:
    def test_env_beats_file(self, isolated, monkeypatch):
        write_config(isolated, "[server]\nhost = \"file-host\"\nport = 9000\n")
        monkeypatch.setenv("DUO_RTC_HOST", "env-host")
        monkeypatch.setenv("DUO_RTC_PORT", "9100")
        monkeypatch.setenv("DUO_RTC_SIGNALING_WS", "wss://signal.example.org:443")

        cfg = Config()
        cfg.load()

        assert cfg.host == "env-host"
        assert cfg.port == 9100
        assert cfg.get_websocket_url() == "wss://signal.example.org:443"


class TestDataclasses:
    def test_ice_server_accepts_single_url(self):
        server = IceServerConfig(urls="stun:stun.example.org")
        assert server.to_dict() == {"urls": ["stun:stun.example.org"]}

    def test_ice_server_rejects_other_schemes(self):
        with pytest.raises(ValueError):
            IceServerConfig(urls=["https://example.org"])

    def test_media_validation(self):
        with pytest.raises(ValueError):
            MediaConfig(video_size="640by480")
        with pytest.raises(ValueError):
            MediaConfig(framerate=0)

    def test_media_video_options(self):
        assert MediaConfig(video_size="1280x720", framerate=15).video_options() == {
            "video_size": "1280x720",
            "framerate": "15",
        }
        assert MediaConfig(video_size=None, framerate=None).video_options() == {}


def test_get_config_is_cached(isolated, monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)

    first = get_config()
    assert get_config() is first

    reloaded = reload_config()
    assert reloaded is not first
    assert get_config() is reloaded
