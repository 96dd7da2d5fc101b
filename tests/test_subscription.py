"""Unit tests for the per-guild playback pipeline.

Real Track/AudioPlayer/VoiceConnection objects run against fake voice
clients, a fake transport and a fake fetcher. Recovery delays go through an
injected sleep so backoff can be asserted without waiting.
"""

import asyncio

import pytest

from core.connection import KICK_CLOSE_CODE, ConnectionStatus, DisconnectReason, VoiceConnection
from core.errors import ConnectionFailure, FetchExhausted, StreamTimeout
from core.player import AudioPlayer, PlayerStatus
from core.subscription import (
    HOLD_STOPPED,
    MusicSubscription,
    SubscriptionRegistry,
    SubscriptionSettings,
)
from core.track import Track
from helpers import FakeCache, FakeTransport, fake_source, settle


class Recorder:
    """Collects hook calls for every track it builds."""

    def __init__(self, cache: FakeCache) -> None:
        self.cache = cache
        self.events: list[tuple[str, str]] = []
        self.errors: list[tuple[str, BaseException]] = []

    def track(self, name: str) -> Track:
        return Track(
            f"https://example.com/{name}",
            name,
            self.cache,
            on_start=lambda t: self.events.append(("start", t.title)),
            on_finish=lambda t: self.events.append(("finish", t.title)),
            on_error=self._on_error,
        )

    def _on_error(self, track: Track, error: BaseException) -> None:
        self.events.append(("error", track.title))
        self.errors.append((track.title, error))


class Harness:
    def __init__(self, settings: SubscriptionSettings, cache: FakeCache) -> None:
        self.sleeps: list[float] = []
        self.sleep_gate: asyncio.Event | None = None
        self.transport = FakeTransport()
        self.connection = VoiceConnection(1, self.transport)
        self.player = AudioPlayer(1, source_factory=fake_source)
        self.registry = SubscriptionRegistry()
        self.subscription = MusicSubscription(
            1, self.connection, self.player, settings, sleep=self._sleep
        )
        self.registry.add(self.subscription)
        self.recorder = Recorder(cache)

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if self.sleep_gate is not None:
            await self.sleep_gate.wait()
        await asyncio.sleep(0)

    @property
    def sink(self):
        return self.transport.voice_client

    async def start(self) -> "Harness":
        await self.connection.connect()
        await settle()
        return self

    def enqueue(self, *names: str) -> list[Track]:
        tracks = [self.recorder.track(name) for name in names]
        for track in tracks:
            self.subscription.enqueue(track)
        return tracks

    async def finish_current(self, error: Exception | None = None) -> None:
        self.sink.finish(error)
        await settle()


@pytest.fixture
def make_harness(fake_cache: FakeCache):
    async def make(**overrides) -> Harness:
        defaults = {"idle_timeout": 0, "preload_next": False}
        defaults.update(overrides)
        harness = await Harness(SubscriptionSettings(**defaults), fake_cache).start()
        return harness

    return make


def current_title(harness: Harness) -> str | None:
    track = harness.subscription.current
    return track.title if track else None


class TestQueueAdvancement:
    """Test FIFO playback and failure skipping."""

    @pytest.mark.asyncio
    async def test_plays_in_fifo_order(self, make_harness) -> None:
        """Test tracks play one after another in enqueue order."""
        h = await make_harness()
        h.enqueue("a", "b", "c")
        await settle()

        order = []
        for _ in range(3):
            order.append(current_title(h))
            await h.finish_current()

        assert order == ["a", "b", "c"]
        assert h.recorder.events == [
            ("start", "a"), ("finish", "a"),
            ("start", "b"), ("finish", "b"),
            ("start", "c"), ("finish", "c"),
        ]
        assert h.player.status is PlayerStatus.IDLE

    @pytest.mark.asyncio
    async def test_enqueue_returns_position(self, make_harness) -> None:
        """Test positions count pending tracks (the playing one excluded)."""
        h = await make_harness()
        tracks = [h.recorder.track(n) for n in ("a", "b", "c")]

        assert h.subscription.enqueue(tracks[0]) == 1
        await settle()
        assert h.subscription.enqueue(tracks[1]) == 1
        assert h.subscription.enqueue(tracks[2]) == 2

    @pytest.mark.asyncio
    async def test_failed_track_is_skipped(self, make_harness, fake_cache: FakeCache) -> None:
        """Test a track that can't be fetched errors and the next one plays."""
        h = await make_harness()
        fake_cache.fetcher.outcomes["https://example.com/bad"] = FetchExhausted("bad", [], "gone")

        h.enqueue("bad", "good")
        await settle()

        assert current_title(h) == "good"
        assert h.recorder.events == [("error", "bad"), ("start", "good")]
        assert isinstance(h.recorder.errors[0][1], FetchExhausted)

    @pytest.mark.asyncio
    async def test_slow_track_times_out(self, make_harness, fake_cache: FakeCache) -> None:
        """Test a track exceeding the resource timeout is skipped with StreamTimeout."""
        h = await make_harness(resource_timeout=0.05)
        fake_cache.fetcher.outcomes["https://example.com/slow"] = "hang"

        h.enqueue("slow", "fast")
        await asyncio.sleep(0.2)
        await settle()

        assert current_title(h) == "fast"
        assert isinstance(h.recorder.errors[0][1], StreamTimeout)

    @pytest.mark.asyncio
    async def test_player_error_fires_each_hook_once(self, make_harness) -> None:
        """Test a mid-playback error fires error then finish, once each, and advances."""
        h = await make_harness()
        (a, _) = h.enqueue("a", "b")
        await settle()

        await h.finish_current(RuntimeError("ffmpeg exited"))

        assert h.recorder.events == [("start", "a"), ("error", "a"), ("finish", "a"), ("start", "b")]
        assert a.failed(RuntimeError("again")) is False
        assert a.finished() is False

    @pytest.mark.asyncio
    async def test_skip_advances(self, make_harness) -> None:
        """Test skip stops the current track and the next one starts."""
        h = await make_harness()
        h.enqueue("a", "b")
        await settle()

        assert h.subscription.skip() is True
        await settle()

        assert current_title(h) == "b"

    @pytest.mark.asyncio
    async def test_preload_next_track(self, make_harness, fake_cache: FakeCache) -> None:
        """Test the head of the queue is cached while the current track plays."""
        h = await make_harness(preload_next=True)
        h.enqueue("a", "b")
        await settle()

        assert "https://example.com/b" in fake_cache.ensure_calls


class TestStop:
    """Test stop and destroy."""

    @pytest.mark.asyncio
    async def test_stop_clears_queue_and_holds(self, make_harness) -> None:
        """Test stop empties the queue, idles the player and blocks advancement."""
        h = await make_harness()
        h.enqueue("a", "b", "c")
        await settle()

        h.subscription.stop()
        await settle()

        assert h.player.status is PlayerStatus.IDLE
        assert len(h.subscription.queue) == 0
        assert h.subscription.hold_reason == HOLD_STOPPED
        assert ("finish", "a") in h.recorder.events
        assert ("start", "b") not in h.recorder.events

    @pytest.mark.asyncio
    async def test_destroy_unregisters(self, make_harness) -> None:
        """Test destroy leaves voice and removes the subscription from the registry."""
        h = await make_harness()
        h.enqueue("a")
        await settle()

        await h.subscription.destroy()
        await settle()

        assert h.subscription.destroyed
        assert 1 not in h.registry
        assert h.transport.disconnects == 1
        assert h.player.status is PlayerStatus.IDLE

    @pytest.mark.asyncio
    async def test_destroy_cancels_pending_acquisition(self, make_harness, fake_cache: FakeCache) -> None:
        """Test destroy aborts a stream still starting and reports nothing for it."""
        h = await make_harness(resource_timeout=0.3)
        fake_cache.fetcher.outcomes["https://example.com/a"] = "hang"
        h.enqueue("a")
        await settle()
        assert fake_cache.fetcher.streamed == ["https://example.com/a"]

        await h.subscription.destroy()
        await settle()

        assert fake_cache.fetcher.cancelled == ["https://example.com/a"]
        assert not h.subscription._tasks

        await asyncio.sleep(0.5)
        assert h.recorder.events == []


class TestTimers:
    """Test idle and alone disconnect timers."""

    @pytest.mark.asyncio
    async def test_idle_timer_leaves_when_queue_drains(self, make_harness) -> None:
        """Test connecting with nothing queued arms the idle timer, which destroys."""
        h = await make_harness(idle_timeout=120)
        await settle()

        assert 120 in h.sleeps
        assert h.subscription.destroyed

    @pytest.mark.asyncio
    async def test_enqueue_cancels_idle_timer(self, make_harness) -> None:
        """Test new work cancels a pending idle countdown."""
        gate = asyncio.Event()
        h = Harness(SubscriptionSettings(idle_timeout=120, preload_next=False), FakeCache())
        h.sleep_gate = gate
        await h.start()
        assert h.subscription._idle_task is not None

        h.enqueue("a")
        await settle()
        gate.set()
        await settle()

        assert not h.subscription.destroyed
        assert current_title(h) == "a"
        await h.subscription.destroy()

    @pytest.mark.asyncio
    async def test_alone_timer_disabled_by_default(self, make_harness) -> None:
        """Test nobody listening does nothing when alone_timeout is 0."""
        h = await make_harness()
        h.subscription.update_listeners(0)
        assert h.subscription._alone_task is None

    @pytest.mark.asyncio
    async def test_alone_timer_leaves_and_listener_cancels(self, make_harness) -> None:
        """Test alone countdown destroys, but a returning listener cancels it."""
        gate = asyncio.Event()
        h = Harness(SubscriptionSettings(idle_timeout=0, alone_timeout=30), FakeCache())
        h.sleep_gate = gate
        await h.start()

        h.subscription.update_listeners(0)
        await settle()
        h.subscription.update_listeners(2)
        gate.set()
        await settle()
        assert not h.subscription.destroyed

        h.subscription.update_listeners(0)
        await settle()
        assert h.subscription.destroyed
        assert h.sleeps == [30, 30]


class TestRecovery:
    """Test rejoin backoff, kick grace and ready guard."""

    @pytest.mark.asyncio
    async def test_backoff_then_give_up(self, make_harness) -> None:
        """Test rejoin delays grow linearly and the connection is destroyed at the limit."""
        h = await make_harness(rejoin_base_delay=5, max_rejoin_attempts=3)
        h.transport.fail_reconnect = True

        h.connection.report_disconnect(DisconnectReason.NETWORK)
        await settle(60)

        assert h.sleeps == [5, 10, 15]
        assert h.transport.reconnects == 3
        assert h.subscription.destroyed
        assert 1 not in h.registry

    @pytest.mark.asyncio
    async def test_rejoin_restarts_interrupted_track(self, make_harness) -> None:
        """Test the cut-off track replays after a successful rejoin, hooks not repeated."""
        h = await make_harness()
        h.enqueue("a", "b")
        await settle()
        old_sink = h.sink

        h.connection.report_disconnect(DisconnectReason.NETWORK)
        await settle(60)

        assert h.connection.status is ConnectionStatus.READY
        assert h.sink is not old_sink
        assert current_title(h) == "a"
        assert [t.title for t in h.subscription.queue] == ["b"]
        assert h.recorder.events == [("start", "a")]
        assert h.connection.rejoin_attempts == 0

    @pytest.mark.asyncio
    async def test_kick_without_move_destroys(self, make_harness) -> None:
        """Test being removed (close code 4014) leaves after the grace period."""
        h = await make_harness(kick_grace=0.05)

        h.connection.report_disconnect(DisconnectReason.WEBSOCKET_CLOSE, KICK_CLOSE_CODE)
        await asyncio.sleep(0.2)
        await settle()

        assert h.subscription.destroyed
        assert h.transport.reconnects == 0

    @pytest.mark.asyncio
    async def test_kick_followed_by_move_recovers(self, make_harness) -> None:
        """Test a move inside the grace window keeps the subscription alive."""
        h = await make_harness(kick_grace=1)
        h.enqueue("a")
        await settle()

        h.connection.report_disconnect(DisconnectReason.WEBSOCKET_CLOSE, KICK_CLOSE_CODE)
        await settle()
        h.connection.report_moved()
        await settle()

        assert h.connection.status is ConnectionStatus.READY
        assert not h.subscription.destroyed
        assert current_title(h) == "a"

    @pytest.mark.asyncio
    async def test_ready_guard_destroys_stuck_connection(self, fake_cache: FakeCache) -> None:
        """Test a connect that never completes is torn down after ready_timeout."""
        h = Harness(SubscriptionSettings(idle_timeout=0, ready_timeout=0.05), fake_cache)
        h.transport.connect_gate = asyncio.Event()

        connecting = asyncio.create_task(h.connection.connect())
        await asyncio.sleep(0.2)
        assert h.subscription.destroyed

        h.transport.connect_gate.set()
        with pytest.raises(ConnectionFailure):
            await connecting
        assert 1 not in h.registry
