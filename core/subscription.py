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
Music Subscription - Per-Guild Playback Pipeline

One subscription per active voice connection. It owns:
- the AudioPlayer and the FIFO queue of Tracks
- queue advancement (serialized by queue_lock)
- the connection recovery policy (ready guard, kick grace, backoff rejoin)
- the idle-disconnect and alone-disconnect timers

Everything reacts to two event sources: player state changes and connection
state changes. Handlers only run on the event loop.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator

from loguru import logger

from core.connection import (
    KICK_CLOSE_CODE,
    ConnectionState,
    ConnectionStatus,
    VoiceConnection,
)
from core.errors import ConnectionFailure, StreamTimeout
from core.player import AudioPlayer, AudioResource, PlayerState, PlayerStatus
from core.track import Track

HOLD_RECONNECTING = "reconnecting"
HOLD_STOPPED = "stopped"


@dataclass
class SubscriptionSettings:
    """Timing knobs, all in seconds. 0 disables a timer."""
    resource_timeout: float = 30.0
    idle_timeout: float = 120.0
    alone_timeout: float = 0.0
    ready_timeout: float = 20.0
    kick_grace: float = 5.0
    rejoin_base_delay: float = 5.0
    max_rejoin_attempts: int = 5
    preload_next: bool = True


class MusicSubscription:
    """Queue + player + connection + timers for one guild.

    Attributes:
        guild_id: Owning guild
        connection: VoiceConnection driven by this subscription
        player: AudioPlayer fed by the queue
        queue: Pending Tracks, head plays next
        queue_lock: Held for the duration of one advancement
        hold_reason: When set, advancement is paused (reconnecting / stopped)
    """

    def __init__(
        self,
        guild_id: int,
        connection: VoiceConnection,
        player: AudioPlayer,
        settings: SubscriptionSettings | None = None,
        registry: "SubscriptionRegistry | None" = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.guild_id = guild_id
        self.connection = connection
        self.player = player
        self.settings = settings or SubscriptionSettings()
        self.registry = registry
        self._sleep = sleep

        self.queue: deque[Track] = deque()
        self.queue_lock = asyncio.Lock()
        self.hold_reason: str | None = None

        self._idle_task: asyncio.Task | None = None
        self._alone_task: asyncio.Task | None = None
        self._ready_guard: asyncio.Task | None = None
        self._interrupted: Track | None = None
        self._tasks: set[asyncio.Task] = set()

        player.on_state_change(self._on_player_state)
        player.on_error(self._on_player_error)
        connection.on_state_change(self._on_connection_state)
        if connection.status is ConnectionStatus.READY:
            player.attach(connection.transport.voice_client)

    @property
    def destroyed(self) -> bool:
        return self.connection.status is ConnectionStatus.DESTROYED

    @property
    def current(self) -> Track | None:
        resource = self.player.current
        return resource.track if resource else None

    def __iter__(self) -> Iterator[Track]:
        return iter(self.queue)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Queue
    # =========================================================================

    def enqueue(self, track: Track) -> int:
        """Append track and kick off advancement.

        Returns:
            1-based queue position (1 = plays next)
        """
        self.queue.append(track)
        self._cancel_idle_timer()
        if self.settings.preload_next and (len(self.queue) > 1 or self.player.status is PlayerStatus.PLAYING):
            track.preload()
        self._spawn(self.process_queue())
        return len(self.queue)

    async def process_queue(self) -> None:
        """Dequeue and start the next track, skipping tracks that fail to load."""
        while True:
            if self.queue_lock.locked() or self.hold_reason is not None:
                return
            if self.connection.status is not ConnectionStatus.READY:
                return
            if self.player.status is not PlayerStatus.IDLE:
                return
            if not self.queue:
                self._start_idle_timer()
                return

            async with self.queue_lock:
                track = self.queue.popleft()
                try:
                    stream = await asyncio.wait_for(
                        track.create_playback_stream(), self.settings.resource_timeout
                    )
                except asyncio.TimeoutError:
                    if self.destroyed:
                        return
                    error = StreamTimeout(track.url, self.settings.resource_timeout)
                    logger.warning(f"skipping '{track.title}': {error}")
                    track.failed(error)
                    continue
                except Exception as e:
                    if self.destroyed:
                        return
                    logger.warning(f"skipping '{track.title}': {e}")
                    track.failed(e)
                    continue

                if self.hold_reason is not None:
                    # Lost voice (or stopped) while the stream was starting
                    stream.close()
                    if self.hold_reason == HOLD_RECONNECTING:
                        self.queue.appendleft(track)
                    return

                self.player.play(AudioResource(track, stream))
                return

    def skip(self) -> bool:
        """Stop the current track; the player going IDLE advances the queue."""
        return self.player.stop()

    def pause(self) -> bool:
        return self.player.pause()

    def resume(self) -> bool:
        return self.player.resume()

    def stop(self) -> None:
        """Clear the queue, cancel timers and force the player to stop."""
        self.hold_reason = HOLD_STOPPED
        self.queue.clear()
        self._interrupted = None
        self._cancel_idle_timer()
        self._cancel_alone_timer()
        self.player.stop(force=True)

    async def destroy(self) -> None:
        """Leave voice. Teardown happens in the DESTROYED transition."""
        await self.connection.destroy()

    # =========================================================================
    # Player events
    # =========================================================================

    def _on_player_state(self, old: PlayerState, new: PlayerState) -> None:
        if new.status is PlayerStatus.IDLE and old.status is not PlayerStatus.IDLE:
            if old.resource is not None:
                old.resource.track.finished()
            self._spawn(self.process_queue())
        elif new.status is PlayerStatus.PLAYING and old.status is not PlayerStatus.PLAYING:
            if new.resource is not None:
                new.resource.track.started()
            self._cancel_idle_timer()
            if self.settings.preload_next and self.queue:
                self.queue[0].preload()

    def _on_player_error(self, error: BaseException, resource: AudioResource) -> None:
        logger.warning(f"player error on '{resource.track.title}': {error}")
        resource.track.failed(error)

    # =========================================================================
    # Connection events
    # =========================================================================

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        status = new.status
        if status is ConnectionStatus.DISCONNECTED:
            self._cancel_ready_guard()
            self._interrupt_playback()
            self._spawn(self._handle_disconnect(new))
        elif status in (ConnectionStatus.SIGNALLING, ConnectionStatus.CONNECTING):
            if self._ready_guard is None:
                self._ready_guard = self._spawn(self._guard_ready())
        elif status is ConnectionStatus.READY:
            self.player.attach(self.connection.transport.voice_client)
            if self.hold_reason == HOLD_RECONNECTING:
                self.hold_reason = None
            if self._interrupted is not None:
                logger.info(f"restarting '{self._interrupted.title}' after reconnect")
                self.queue.appendleft(self._interrupted)
                self._interrupted = None
            self._spawn(self.process_queue())
        elif status is ConnectionStatus.DESTROYED:
            self._teardown()

    def _interrupt_playback(self) -> None:
        if self.hold_reason is None:
            self.hold_reason = HOLD_RECONNECTING
        track = self.player.interrupt()
        if track is not None:
            self._interrupted = track
        self.player.detach()

    async def _handle_disconnect(self, state: ConnectionState) -> None:
        connection = self.connection
        if state.close_code == KICK_CLOSE_CODE:
            # Moved or kicked: a move comes back on its own within the grace window
            try:
                await connection.wait_for(
                    ConnectionStatus.SIGNALLING,
                    ConnectionStatus.CONNECTING,
                    ConnectionStatus.READY,
                    timeout=self.settings.kick_grace,
                )
            except asyncio.TimeoutError:
                logger.info("removed from voice channel, leaving")
                await connection.destroy()
            except ConnectionFailure:
                pass
            return

        attempts = connection.rejoin_attempts
        if attempts >= self.settings.max_rejoin_attempts:
            logger.warning(f"voice lost after {attempts} rejoin attempts, giving up")
            await connection.destroy()
            return

        delay = (attempts + 1) * self.settings.rejoin_base_delay
        logger.info(f"voice connection lost, rejoin {attempts + 1}/{self.settings.max_rejoin_attempts} in {delay:g}s")
        await self._sleep(delay)
        if connection.status is not ConnectionStatus.DISCONNECTED:
            return
        await connection.rejoin()

    async def _guard_ready(self) -> None:
        try:
            await self.connection.wait_for(ConnectionStatus.READY, timeout=self.settings.ready_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"voice not ready after {self.settings.ready_timeout:g}s, leaving")
            await self.connection.destroy()
        except ConnectionFailure:
            pass
        finally:
            if self._ready_guard is asyncio.current_task():
                self._ready_guard = None

    def _cancel_ready_guard(self) -> None:
        task, self._ready_guard = self._ready_guard, None
        _cancel(task)

    def _teardown(self) -> None:
        logger.debug(f"subscription for guild {self.guild_id} destroyed")
        self.stop()
        self.player.detach()
        self._cancel_ready_guard()
        # Aborts an advancement still acquiring a stream; its yt-dlp gets killed
        for task in list(self._tasks):
            _cancel(task)
        if self.registry is not None:
            self.registry.remove(self.guild_id, self)

    # =========================================================================
    # Timers
    # =========================================================================

    def _start_idle_timer(self) -> None:
        """(Re)arm the idle-disconnect countdown. Cancel existing first."""
        self._cancel_idle_timer()
        if self.settings.idle_timeout <= 0 or self.destroyed:
            return
        self._idle_task = asyncio.create_task(self._idle_countdown())
        logger.debug(f"starting {self.settings.idle_timeout:g}s idle timer")

    def _cancel_idle_timer(self) -> None:
        task, self._idle_task = self._idle_task, None
        _cancel(task)

    async def _idle_countdown(self) -> None:
        try:
            await self._sleep(self.settings.idle_timeout)
        except asyncio.CancelledError:
            return  # Expected when playback resumes
        if self._idle_task is asyncio.current_task():
            self._idle_task = None
        logger.info("idle, leaving voice")
        await self.connection.destroy()

    def update_listeners(self, count: int) -> None:
        """Arm the alone timer when nobody is listening, cancel it otherwise."""
        if count > 0:
            self._cancel_alone_timer()
            return
        if self.settings.alone_timeout <= 0 or self._alone_task is not None or self.destroyed:
            return
        self._alone_task = asyncio.create_task(self._alone_countdown())
        logger.debug(f"channel empty, leaving in {self.settings.alone_timeout:g}s")

    def _cancel_alone_timer(self) -> None:
        task, self._alone_task = self._alone_task, None
        _cancel(task)

    async def _alone_countdown(self) -> None:
        try:
            await self._sleep(self.settings.alone_timeout)
        except asyncio.CancelledError:
            return
        if self._alone_task is asyncio.current_task():
            self._alone_task = None
        logger.info("channel empty, leaving voice")
        await self.connection.destroy()


def _cancel(task: asyncio.Task | None) -> None:
    """Cancel a timer task unless it is the caller itself."""
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()


class SubscriptionRegistry:
    """Active subscriptions keyed by guild. Owned by the bot."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, MusicSubscription] = {}

    def get(self, guild_id: int) -> MusicSubscription | None:
        return self._subscriptions.get(guild_id)

    def add(self, subscription: MusicSubscription) -> None:
        subscription.registry = self
        self._subscriptions[subscription.guild_id] = subscription

    def remove(self, guild_id: int, subscription: MusicSubscription | None = None) -> None:
        """Drop guild_id; if subscription is given, only when it is still the registered one."""
        if subscription is not None and self._subscriptions.get(guild_id) is not subscription:
            return
        self._subscriptions.pop(guild_id, None)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._subscriptions

    def values(self) -> list[MusicSubscription]:
        return list(self._subscriptions.values())

    async def destroy_all(self) -> None:
        for subscription in self.values():
            await subscription.destroy()
