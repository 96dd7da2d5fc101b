"""Unit tests for the background voice and cookie watchdogs."""

from pathlib import Path
from types import SimpleNamespace

import pytest

from core.connection import ConnectionStatus, DisconnectReason, VoiceConnection
from core.errors import ErrorKind
from core.fetcher import Fetcher
from systems.watchdog import check_connections, cookies_watchdog, probe_cookies
from helpers import FakeTransport, read_calls


def registry_of(*connections: VoiceConnection) -> SimpleNamespace:
    subs = [SimpleNamespace(guild_id=c.guild_id, connection=c) for c in connections]
    return SimpleNamespace(values=lambda: list(subs))


class TestCheckConnections:
    """Test detection of voice clients that died silently."""

    @pytest.mark.asyncio
    async def test_dead_client_reported(self) -> None:
        """Test a READY connection without a live client is reported once."""
        transport = FakeTransport()
        connection = VoiceConnection(1, transport)
        await connection.connect()
        transport.voice_client.connected = False

        assert check_connections(registry_of(connection)) == 1
        assert connection.status is ConnectionStatus.DISCONNECTED
        assert connection.state.reason is DisconnectReason.NETWORK

        # Already DISCONNECTED, the subscription owns it now
        assert check_connections(registry_of(connection)) == 0

    @pytest.mark.asyncio
    async def test_healthy_and_establishing_ignored(self) -> None:
        """Test live clients and connections still signalling are left alone."""
        healthy = VoiceConnection(1, FakeTransport())
        await healthy.connect()
        pending = VoiceConnection(2, FakeTransport())

        assert check_connections(registry_of(healthy, pending)) == 0
        assert healthy.status is ConnectionStatus.READY
        assert pending.status is ConnectionStatus.SIGNALLING


class TestProbeCookies:
    """Test the cookie keepalive probe."""

    @pytest.mark.asyncio
    async def test_no_cookie_file_skips_probe(self, tmp_path: Path, fake_ytdlp) -> None:
        """Test nothing runs without a cookie jar."""
        script = fake_ytdlp("sys.exit(0)\n")
        fetcher = Fetcher(ytdlp_path=str(script), cookies_file=tmp_path / "missing.txt")

        assert await probe_cookies(fetcher, "https://www.youtube.com/watch?v=probe") is None
        assert read_calls(fake_ytdlp.log) == []

    @pytest.mark.asyncio
    async def test_probe_passes(self, tmp_path: Path, fake_ytdlp) -> None:
        """Test a clean exit reports NONE and sends the cookie jar."""
        cookies = tmp_path / "cookies.txt"
        cookies.write_text("# Netscape HTTP Cookie File\n")
        script = fake_ytdlp("sys.exit(0)\n")
        fetcher = Fetcher(ytdlp_path=str(script), cookies_file=cookies)

        assert await probe_cookies(fetcher, "https://www.youtube.com/watch?v=probe") is ErrorKind.NONE
        call = read_calls(fake_ytdlp.log)[0]
        assert "--skip-download" in call
        assert f"--cookies {cookies}" in call
        assert call.endswith("https://www.youtube.com/watch?v=probe")

    @pytest.mark.asyncio
    async def test_bot_check_reports_auth_required(self, tmp_path: Path, fake_ytdlp) -> None:
        """Test a bot-check wall is classified as stale cookies."""
        cookies = tmp_path / "cookies.txt"
        cookies.write_text("# Netscape HTTP Cookie File\n")
        script = fake_ytdlp(
            """
            sys.stderr.write("ERROR: Sign in to confirm you're not a bot\\n")
            sys.exit(1)
            """
        )
        fetcher = Fetcher(ytdlp_path=str(script), cookies_file=cookies)

        result = await probe_cookies(fetcher, "https://www.youtube.com/watch?v=probe")

        assert result is ErrorKind.AUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_disabled_watchdog_returns_immediately(self) -> None:
        """Test interval 0 exits before waiting for the bot."""
        bot = SimpleNamespace()  # wait_until_ready would raise AttributeError

        await cookies_watchdog(bot, Fetcher(), 0, "https://www.youtube.com/watch?v=probe")
