"""Fakes and async helpers shared by the test modules.

Nothing here touches the network, Discord or a real yt-dlp: voice clients,
transports and the acquisition tool are all replaced by small fakes.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Callable

from core.errors import FetchExhausted


async def settle(rounds: int = 25) -> None:
    """Let spawned tasks and call_soon callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true; fails the test after timeout seconds.

    Needed wherever the code under test hops through asyncio.to_thread, which
    a fixed number of loop iterations can't outwait.
    """
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


# =============================================================================
# Voice fakes
# =============================================================================

class FakeSink:
    """Stands in for discord.VoiceClient: play/stop/pause/resume + after-callback."""

    def __init__(self) -> None:
        self.connected = True
        self.source = None
        self.after = None
        self.played = []
        self.paused = False
        self.stop_calls = 0

    def is_connected(self) -> bool:
        return self.connected

    def play(self, source, after=None) -> None:
        self.source = source
        self.after = after
        self.played.append(source)

    def finish(self, error: Exception | None = None) -> None:
        """Simulate the audio source ending (naturally or with error)."""
        after, self.after = self.after, None
        if after is not None:
            after(error)

    def stop(self) -> None:
        self.stop_calls += 1
        self.finish()

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    async def disconnect(self, force: bool = False) -> None:
        self.connected = False


class FakeTransport:
    """DiscordVoiceTransport replacement with scriptable failures."""

    def __init__(self) -> None:
        self.channel = SimpleNamespace(name="music", mention="#music")
        self.voice_client: FakeSink | None = None
        self.fail_connect = False
        self.fail_reconnect = False
        self.connect_gate: asyncio.Event | None = None
        self.connects = 0
        self.reconnects = 0
        self.disconnects = 0

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.fail_connect:
            raise asyncio.TimeoutError()
        self.voice_client = FakeSink()

    async def reconnect(self) -> None:
        self.reconnects += 1
        self.voice_client = None
        if self.fail_reconnect:
            raise OSError("network unreachable")
        self.voice_client = FakeSink()

    def is_connected(self) -> bool:
        return self.voice_client is not None and self.voice_client.is_connected()

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.voice_client = None


# =============================================================================
# Pipeline fakes
# =============================================================================

class FakeStream:
    """Live stream stand-in; records close()."""

    def __init__(self, container: str = "webm") -> None:
        self.container = container
        self.closed = False

    def read(self, n: int = -1) -> bytes:
        return b""

    def close(self) -> None:
        self.closed = True


class FakeFetcher:
    """Fetcher stand-in for Track/Subscription tests.

    outcomes maps url -> exception to raise, or "hang" to never return.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, object] = {}
        self.streamed: list[str] = []
        self.streams: list[FakeStream] = []
        self.cancelled: list[str] = []

    async def stream(self, url: str) -> FakeStream:
        self.streamed.append(url)
        outcome = self.outcomes.get(url)
        if outcome == "hang":
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(url)
                raise
        if isinstance(outcome, BaseException):
            raise outcome
        live = FakeStream()
        self.streams.append(live)
        return live


class FakeCache:
    """CacheManager stand-in: cached maps url -> Path."""

    def __init__(self) -> None:
        self.fetcher = FakeFetcher()
        self.cached: dict[str, Path] = {}
        self.populating: set[str] = set()
        self.ensure_calls: list[str] = []

    async def get_cached_path(self, url: str) -> Path | None:
        return self.cached.get(url)

    def is_populating(self, url: str) -> bool:
        return url in self.populating

    async def ensure_cached(self, url: str, title: str) -> Path:
        self.ensure_calls.append(url)
        if url in self.cached:
            return self.cached[url]
        raise FetchExhausted(url, [], "not in fake cache")


def fake_source(stream):
    """AudioPlayer source factory that skips FFmpeg."""
    return ("source", stream)


def read_calls(log: Path) -> list[str]:
    if not log.exists():
        return []
    return log.read_text().splitlines()
