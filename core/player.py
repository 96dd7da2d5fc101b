# Copyright (C) 2026 grodz
#
# This file is part of Hosh.
#
# Hosh is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Audio Player - Per-Guild Playback State

Wraps a discord.py VoiceClient ("sink") and turns its play/after-callback API
into explicit state transitions:

    IDLE -> BUFFERING -> PLAYING -> IDLE
                         PLAYING <-> PAUSED

Listeners receive (old, new) PlayerState pairs; error listeners receive
(error, resource). The after-callback runs on discord.py's audio thread, so
it only ever schedules work back onto the event loop.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from time import monotonic as _now
from typing import Any, Callable

import discord
from loguru import logger

from core.errors import ConnectionFailure
from core.track import PlaybackStream, Track
from utils.context_managers import suppress_callbacks

_SESSION_IDS = count(1)


class PlayerStatus(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class AudioResource:
    """A Track paired with the stream currently feeding the player."""
    track: Track
    stream: PlaybackStream


@dataclass(frozen=True)
class PlayerState:
    status: PlayerStatus
    resource: AudioResource | None = None


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes an after-callback to one play() call.

    A newer play(), a forced stop or an interrupt cancels the session so the
    late callback from the old source exits without touching player state.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    title: str = ""
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


def ffmpeg_source(stream: PlaybackStream) -> discord.AudioSource:
    """Default source factory: FFmpeg reads the stream from its stdin."""
    return discord.FFmpegOpusAudio(stream, pipe=True, options="-vn")


StateListener = Callable[[PlayerState, PlayerState], Any]
ErrorListener = Callable[[BaseException, AudioResource], Any]


class AudioPlayer:
    """State machine around one voice client.

    Attributes:
        guild_id: Owning guild
        state: Current PlayerState
    """

    def __init__(
        self,
        guild_id: int,
        source_factory: Callable[[PlaybackStream], Any] = ffmpeg_source,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.guild_id = guild_id
        self.state = PlayerState(PlayerStatus.IDLE)
        self._source_factory = source_factory
        self._loop = loop
        self._sink = None
        self._listeners: list[StateListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._playback_session: PlaybackSession | None = None
        self._suppress_callback = False

    @property
    def status(self) -> PlayerStatus:
        return self.state.status

    @property
    def current(self) -> AudioResource | None:
        return self.state.resource

    # =========================================================================
    # Wiring
    # =========================================================================

    def attach(self, sink) -> None:
        """Route audio to a voice client (replaces any previous one)."""
        self._sink = sink

    def detach(self) -> None:
        self._sink = None

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def _set_state(self, new: PlayerState) -> None:
        old, self.state = self.state, new
        if self._suppress_callback or old == new:
            return
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.opt(exception=True).error("player state listener failed")

    def _emit_error(self, error: BaseException, resource: AudioResource) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error, resource)
            except Exception:
                logger.opt(exception=True).error("player error listener failed")

    def cancel_active_session(self) -> None:
        """Invalidate the current session so its after-callback is ignored."""
        if self._playback_session is not None:
            self._playback_session.cancel()
        self._playback_session = None

    # =========================================================================
    # Playback
    # =========================================================================

    def play(self, resource: AudioResource) -> bool:
        """Start playing resource. Failures are reported via on_error, then IDLE.

        Returns:
            True if audio started
        """
        self._loop = self._loop or asyncio.get_running_loop()
        previous = self.state.resource
        if previous is not None and previous is not resource:
            self._halt(previous)

        self._set_state(PlayerState(PlayerStatus.BUFFERING, resource))

        if self._sink is None or not self._sink.is_connected():
            resource.stream.close()
            self._emit_error(ConnectionFailure("voice client is not connected"), resource)
            self._set_state(PlayerState(PlayerStatus.IDLE))
            return False

        session = PlaybackSession(title=resource.track.title)
        self._playback_session = session

        def after_play(error: Exception | None) -> None:
            # Runs on the audio thread: hop back to the loop before touching state
            self._loop.call_soon_threadsafe(self._on_source_end, session, resource, error)

        try:
            source = self._source_factory(resource.stream)
            self._sink.play(source, after=after_play)
        except (discord.ClientException, OSError, TypeError) as e:
            logger.warning(f"could not start '{resource.track.title}': {e}")
            self.cancel_active_session()
            resource.stream.close()
            self._emit_error(e, resource)
            self._set_state(PlayerState(PlayerStatus.IDLE))
            return False

        self._set_state(PlayerState(PlayerStatus.PLAYING, resource))
        logger.debug(f"playing '{resource.track.title}' from {resource.stream.origin}")
        return True

    def _on_source_end(self, session: PlaybackSession, resource: AudioResource, error: Exception | None) -> None:
        resource.stream.close()
        if session.cancelled or self._playback_session is not session:
            logger.debug(f"ignoring end of superseded session {session.id}")
            return

        self._playback_session = None
        if error is not None:
            logger.warning(f"playback error on '{resource.track.title}': {error}")
            self._emit_error(error, resource)
        self._set_state(PlayerState(PlayerStatus.IDLE))

    def _halt(self, resource: AudioResource) -> None:
        """Stop the sink without any transition (session cancelled first)."""
        with suppress_callbacks(self):
            if self._sink is not None:
                try:
                    self._sink.stop()
                except discord.ClientException as e:
                    logger.debug(f"sink stop failed: {e}")
        resource.stream.close()

    def pause(self) -> bool:
        if self.status is not PlayerStatus.PLAYING or self._sink is None:
            return False
        self._sink.pause()
        self._set_state(PlayerState(PlayerStatus.PAUSED, self.state.resource))
        return True

    def resume(self) -> bool:
        if self.status is not PlayerStatus.PAUSED or self._sink is None:
            return False
        self._sink.resume()
        self._set_state(PlayerState(PlayerStatus.PLAYING, self.state.resource))
        return True

    def stop(self, force: bool = False) -> bool:
        """Stop the current resource.

        A normal stop lets the after-callback move the player to IDLE (which
        advances the queue). force=True goes to IDLE immediately and drops the
        late callback.

        Returns:
            True if something was playing or paused
        """
        resource = self.state.resource
        if self.status is PlayerStatus.IDLE or resource is None:
            return False

        if force:
            self._halt(resource)
            self._set_state(PlayerState(PlayerStatus.IDLE))
            return True

        if self._sink is None:
            self._halt(resource)
            self._set_state(PlayerState(PlayerStatus.IDLE))
            return True

        self._sink.stop()
        return True

    def interrupt(self) -> Track | None:
        """Silently drop the current resource (voice connection lost).

        Listeners are not notified, so the track neither finishes nor advances
        the queue.

        Returns:
            The interrupted Track, if any
        """
        resource = self.state.resource
        if resource is None:
            return None
        self._halt(resource)
        with suppress_callbacks(self):
            self._set_state(PlayerState(PlayerStatus.IDLE))
        return resource.track
