"""Smoke tests for the duo-rtc package.

These tests verify that the installed package is structurally sound: all
subpackages importable, the exhaustive message handler tables built, and the
CLI entry point reachable. They are intentionally lightweight and fast.

The primary failure mode these tests guard against is a packaging bug where
a subpackage is missing from the published wheel.
"""

from click.testing import CliRunner

from duo_rtc.cli import cli


# ── Subpackage imports ────────────────────────────────────────────────────────


class TestSubpackageImports:
    """Each duo_rtc subpackage must be importable without error."""

    def test_import_server(self):
        """duo_rtc.server must expose SignalingService."""
        from duo_rtc.server import SignalingService  # noqa: F401

    def test_import_client(self):
        """The client modules must import, building their handler tables."""
        from duo_rtc.client.negotiation import NegotiationStateMachine  # noqa: F401
        from duo_rtc.client.signaling import SignalingClient  # noqa: F401

    def test_import_entry_points(self):
        """rtc_server and rtc_call must be importable for the CLI commands."""
        from duo_rtc.rtc_call import run_call  # noqa: F401
        from duo_rtc.rtc_server import run_server  # noqa: F401

    def test_version(self):
        import duo_rtc

        assert duo_rtc.__version__


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    """The CLI entry point must be reachable and respond to --help."""

    def test_server_help(self):
        """duo-rtc server --help must exit 0."""
        runner = CliRunner()
        result = runner.invoke(cli, ["server", "--help"])
        assert result.exit_code == 0
        assert "--port" in result.output

    def test_call_help(self):
        """duo-rtc call --help must exit 0."""
        runner = CliRunner()
        result = runner.invoke(cli, ["call", "--help"])
        assert result.exit_code == 0
        assert "--record" in result.output
