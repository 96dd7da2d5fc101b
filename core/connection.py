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
Voice Connection State

    SIGNALLING -> CONNECTING -> READY
    READY -> DISCONNECTED -> (rejoin) SIGNALLING ...
    any -> DESTROYED (terminal)

VoiceConnection only tracks state and performs transport calls; all recovery
policy (backoff, kick grace, ready guard) lives in the subscription that
listens to it.

discord.py is created with reconnect=False so it never retries on its own;
every rejoin goes through rejoin() and is counted.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import discord
from loguru import logger

from core.errors import ConnectionFailure
from utils.discord_helpers import safe_disconnect

# Discord voice close code for "disconnected": kicked or channel deleted.
# A channel move also surfaces as this code before the new session comes up.
KICK_CLOSE_CODE = 4014


class ConnectionStatus(Enum):
    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class DisconnectReason(Enum):
    WEBSOCKET_CLOSE = "websocket_close"
    NETWORK = "network"
    MANUAL = "manual"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    reason: DisconnectReason | None = None
    close_code: int | None = None


class DiscordVoiceTransport:
    """discord.py side of a voice connection.

    Attributes:
        channel: Voice channel to (re)join
        voice_client: Live discord.VoiceClient, None while disconnected
    """

    def __init__(self, channel: discord.VoiceChannel, timeout: float = 20.0) -> None:
        self.channel = channel
        self.timeout = timeout
        self.voice_client: discord.VoiceClient | None = None

    async def connect(self) -> None:
        self.voice_client = await self.channel.connect(
            timeout=self.timeout, reconnect=False, self_deaf=True
        )

    async def reconnect(self) -> None:
        # Drop the stale client first; discord.py refuses to connect twice
        stale = self.voice_client or self.channel.guild.voice_client
        self.voice_client = None
        await safe_disconnect(stale, force=True)
        await self.connect()

    def is_connected(self) -> bool:
        return self.voice_client is not None and self.voice_client.is_connected()

    async def disconnect(self) -> None:
        vc, self.voice_client = self.voice_client, None
        await safe_disconnect(vc, force=True)


StateListener = Callable[[ConnectionState, ConnectionState], Any]

# Errors a transport connect can raise that count as "could not reach Ready"
TRANSPORT_ERRORS = (asyncio.TimeoutError, discord.ClientException, discord.HTTPException, OSError)


class VoiceConnection:
    """Connection state machine for one guild.

    Attributes:
        guild_id: Owning guild
        transport: DiscordVoiceTransport (or any object with the same methods)
        state: Current ConnectionState
        rejoin_attempts: Rejoins since the last READY
    """

    def __init__(self, guild_id: int, transport: Any) -> None:
        self.guild_id = guild_id
        self.transport = transport
        self.state = ConnectionState(ConnectionStatus.SIGNALLING)
        self.rejoin_attempts = 0
        self._listeners: list[StateListener] = []
        self._changed = asyncio.Event()

    @property
    def status(self) -> ConnectionStatus:
        return self.state.status

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new: ConnectionState) -> None:
        old = self.state
        if old.status is ConnectionStatus.DESTROYED:
            return
        self.state = new
        if new.status is ConnectionStatus.READY:
            self.rejoin_attempts = 0

        # Wake every waiter, then hand out a fresh event for the next change
        self._changed.set()
        self._changed = asyncio.Event()

        logger.debug(f"voice {old.status.value} -> {new.status.value}")
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.opt(exception=True).error("connection state listener failed")

    async def wait_for(self, *statuses: ConnectionStatus, timeout: float) -> ConnectionState:
        """Wait until the connection enters one of statuses.

        Raises:
            asyncio.TimeoutError: Not reached within timeout
            ConnectionFailure: Connection was destroyed while waiting
        """
        async def _wait() -> ConnectionState:
            while True:
                if self.state.status in statuses:
                    return self.state
                if self.state.status is ConnectionStatus.DESTROYED:
                    raise ConnectionFailure("voice connection destroyed")
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout)

    # =========================================================================
    # Transport operations
    # =========================================================================

    async def _establish(self, method: Callable[[], Any]) -> bool:
        self._set_state(ConnectionState(ConnectionStatus.SIGNALLING))
        self._set_state(ConnectionState(ConnectionStatus.CONNECTING))
        try:
            await method()
        except TRANSPORT_ERRORS as e:
            logger.warning(f"voice connect failed: {e!r}")
            self._set_state(ConnectionState(ConnectionStatus.DISCONNECTED, DisconnectReason.NETWORK))
            return False
        if self.state.status is ConnectionStatus.DESTROYED:
            # Destroyed while the handshake was running
            await self.transport.disconnect()
            return False
        self._set_state(ConnectionState(ConnectionStatus.READY))
        return True

    async def connect(self) -> None:
        """First connect. Failure is terminal.

        Raises:
            ConnectionFailure: Transport never reached Ready
        """
        if not await self._establish(self.transport.connect):
            await self.destroy()
            raise ConnectionFailure("could not join the voice channel")

    async def rejoin(self) -> bool:
        """One counted reconnect attempt. Returns True on READY."""
        if self.state.status is ConnectionStatus.DESTROYED:
            return False
        self.rejoin_attempts += 1
        logger.info(f"rejoining voice (attempt {self.rejoin_attempts})")
        return await self._establish(self.transport.reconnect)

    # =========================================================================
    # Reports from the gateway / watchdog
    # =========================================================================

    def report_disconnect(self, reason: DisconnectReason, close_code: int | None = None) -> None:
        """The transport was lost. Ignored while establishing or destroyed."""
        if self.state.status is not ConnectionStatus.READY:
            return
        self._set_state(ConnectionState(ConnectionStatus.DISCONNECTED, reason, close_code))

    def report_moved(self) -> None:
        """Bot was moved to another channel and discord.py followed it."""
        if self.state.status is ConnectionStatus.DESTROYED:
            return
        self._set_state(ConnectionState(ConnectionStatus.CONNECTING))
        if self.transport.is_connected():
            self._set_state(ConnectionState(ConnectionStatus.READY))

    async def destroy(self) -> None:
        """Leave voice for good. Idempotent."""
        if self.state.status is ConnectionStatus.DESTROYED:
            return
        self._set_state(ConnectionState(ConnectionStatus.DESTROYED))
        await self.transport.disconnect()
