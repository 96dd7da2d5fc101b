"""Unit tests for the AudioPlayer state machine."""

import pytest

from core.errors import ConnectionFailure
from core.player import AudioPlayer, AudioResource, PlayerStatus
from core.track import PlaybackStream, Track
from helpers import FakeCache, FakeSink, FakeStream, fake_source, settle


def make_resource(cache: FakeCache, title: str = "Song") -> AudioResource:
    track = Track(f"https://example.com/{title}", title, cache)
    return AudioResource(track, PlaybackStream(FakeStream(), "live", "webm"))


@pytest.fixture
def player_with_sink():
    player = AudioPlayer(1, source_factory=fake_source)
    sink = FakeSink()
    player.attach(sink)
    transitions = []
    errors = []
    player.on_state_change(lambda old, new: transitions.append((old.status, new.status)))
    player.on_error(lambda error, resource: errors.append((error, resource.track.title)))
    return player, sink, transitions, errors


class TestPlay:
    """Test starting playback."""

    @pytest.mark.asyncio
    async def test_play_goes_buffering_then_playing(self, player_with_sink, fake_cache) -> None:
        """Test a successful play passes through BUFFERING to PLAYING."""
        player, sink, transitions, errors = player_with_sink
        resource = make_resource(fake_cache)

        assert player.play(resource) is True

        assert transitions == [
            (PlayerStatus.IDLE, PlayerStatus.BUFFERING),
            (PlayerStatus.BUFFERING, PlayerStatus.PLAYING),
        ]
        assert sink.source == ("source", resource.stream)
        assert player.current is resource
        assert errors == []

    @pytest.mark.asyncio
    async def test_play_without_voice_reports_connection_failure(self, fake_cache) -> None:
        """Test playing with no sink emits an error and returns to IDLE."""
        player = AudioPlayer(1, source_factory=fake_source)
        errors = []
        player.on_error(lambda error, resource: errors.append(error))
        resource = make_resource(fake_cache)

        assert player.play(resource) is False

        assert player.status is PlayerStatus.IDLE
        assert isinstance(errors[0], ConnectionFailure)
        assert resource.stream._reader.closed

    @pytest.mark.asyncio
    async def test_source_factory_failure_goes_idle(self, fake_cache) -> None:
        """Test an exception building the audio source is reported, not raised."""
        def broken_factory(stream):
            raise OSError("ffmpeg missing")

        player = AudioPlayer(1, source_factory=broken_factory)
        player.attach(FakeSink())
        errors = []
        player.on_error(lambda error, resource: errors.append(error))

        assert player.play(make_resource(fake_cache)) is False
        assert player.status is PlayerStatus.IDLE
        assert isinstance(errors[0], OSError)


class TestSourceEnd:
    """Test after-callback handling."""

    @pytest.mark.asyncio
    async def test_natural_end_goes_idle(self, player_with_sink, fake_cache) -> None:
        """Test the source finishing moves the player to IDLE."""
        player, sink, transitions, errors = player_with_sink
        resource = make_resource(fake_cache)
        player.play(resource)

        sink.finish()
        await settle()

        assert player.status is PlayerStatus.IDLE
        assert transitions[-1] == (PlayerStatus.PLAYING, PlayerStatus.IDLE)
        assert resource.stream._reader.closed

    @pytest.mark.asyncio
    async def test_end_with_error_emits_before_idle(self, player_with_sink, fake_cache) -> None:
        """Test a playback error is reported, then the player idles."""
        player, sink, transitions, errors = player_with_sink
        player.play(make_resource(fake_cache))

        sink.finish(RuntimeError("decoder died"))
        await settle()

        assert [str(e) for e, _ in errors] == ["decoder died"]
        assert player.status is PlayerStatus.IDLE

    @pytest.mark.asyncio
    async def test_superseded_callback_is_ignored(self, player_with_sink, fake_cache) -> None:
        """Test a late callback from a replaced source doesn't stop the new one."""
        player, sink, transitions, errors = player_with_sink
        first = make_resource(fake_cache, "first")
        second = make_resource(fake_cache, "second")
        player.play(first)
        stale_after = sink.after

        player.play(second)
        stale_after(None)
        await settle()

        assert player.status is PlayerStatus.PLAYING
        assert player.current is second


class TestControls:
    """Test pause/resume/stop/interrupt."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, player_with_sink, fake_cache) -> None:
        """Test pause/resume toggle between PLAYING and PAUSED."""
        player, sink, transitions, errors = player_with_sink
        player.play(make_resource(fake_cache))

        assert player.pause() is True
        assert player.status is PlayerStatus.PAUSED and sink.paused
        assert player.pause() is False
        assert player.resume() is True
        assert player.status is PlayerStatus.PLAYING and not sink.paused
        assert player.resume() is False

    @pytest.mark.asyncio
    async def test_stop_lets_callback_finish(self, player_with_sink, fake_cache) -> None:
        """Test a normal stop reaches IDLE through the after-callback."""
        player, sink, transitions, errors = player_with_sink
        player.play(make_resource(fake_cache))

        assert player.stop() is True
        await settle()

        assert player.status is PlayerStatus.IDLE
        assert sink.stop_calls == 1
        assert player.stop() is False

    @pytest.mark.asyncio
    async def test_forced_stop_is_immediate(self, player_with_sink, fake_cache) -> None:
        """Test force=True idles synchronously and notifies once."""
        player, sink, transitions, errors = player_with_sink
        player.play(make_resource(fake_cache))

        player.stop(force=True)
        assert player.status is PlayerStatus.IDLE
        await settle()

        assert transitions.count((PlayerStatus.PLAYING, PlayerStatus.IDLE)) == 1

    @pytest.mark.asyncio
    async def test_interrupt_is_silent(self, player_with_sink, fake_cache) -> None:
        """Test interrupt returns the track without notifying listeners."""
        player, sink, transitions, errors = player_with_sink
        resource = make_resource(fake_cache)
        player.play(resource)
        seen = len(transitions)

        assert player.interrupt() is resource.track
        await settle()

        assert player.status is PlayerStatus.IDLE
        assert len(transitions) == seen
