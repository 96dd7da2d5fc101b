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


"""Music playback commands for Hosh."""

import asyncio

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.connection import (
    KICK_CLOSE_CODE,
    ConnectionStatus,
    DisconnectReason,
    DiscordVoiceTransport,
    VoiceConnection,
)
from core.errors import ConnectionFailure, PlaybackError, error_message_key
from core.player import AudioPlayer
from core.subscription import MusicSubscription, SubscriptionSettings
from core.track import Track
from utils.discord_helpers import can_connect_to_channel, count_listeners, safe_send
from utils.response import (
    QUEUE_TITLE_MAX,
    ResponseMixin,
    display_title,
    format_size,
)

CACHE_LIST_SIZE = 5


def subscription_settings(config_manager) -> SubscriptionSettings:
    """Build per-guild timing knobs from settings.yaml."""
    setting = config_manager.setting
    return SubscriptionSettings(
        resource_timeout=setting("playback", "resource_timeout"),
        idle_timeout=setting("playback", "idle_timeout"),
        alone_timeout=setting("playback", "alone_timeout"),
        ready_timeout=setting("voice", "ready_timeout"),
        kick_grace=setting("voice", "kick_grace"),
        rejoin_base_delay=setting("voice", "rejoin_base_delay"),
        max_rejoin_attempts=setting("voice", "max_rejoin_attempts"),
        preload_next=setting("playback", "preload_next"),
    )


class Music(ResponseMixin, commands.Cog):
    """Queue-based playback backed by the shared track cache."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        # Serializes first-join per guild so two /play calls build one subscription
        self._join_locks: dict[int, asyncio.Lock] = {}

    @property
    def registry(self):
        return self.bot.registry

    def _get_join_lock(self, guild_id: int) -> asyncio.Lock:
        if guild_id not in self._join_locks:
            self._join_locks[guild_id] = asyncio.Lock()
        return self._join_locks[guild_id]

    async def cog_unload(self) -> None:
        """Cleanup when cog is unloaded."""
        await self.registry.destroy_all()
        self._join_locks.clear()

    def get_subscription(self, interaction: discord.Interaction) -> MusicSubscription | None:
        subscription = self.registry.get(interaction.guild_id)
        if subscription is None or subscription.destroyed:
            return None
        return subscription

    # =========================================================================
    # Voice / subscription setup
    # =========================================================================

    async def ensure_subscription(self, interaction: discord.Interaction) -> MusicSubscription | None:
        """Return the guild's subscription, joining the user's channel if needed.

        Responds to the interaction and returns None when the user can't be served.
        """
        voice = interaction.user.voice
        if not voice or not voice.channel:
            await self.respond(interaction, "not_in_vc")
            return None
        user_channel = voice.channel

        async with self._get_join_lock(interaction.guild_id):
            subscription = self.get_subscription(interaction)
            if subscription is not None:
                bot_channel = subscription.connection.transport.channel
                if bot_channel != user_channel:
                    await self.respond(interaction, "wrong_vc", channel=bot_channel.mention)
                    return None
                return subscription

            if not can_connect_to_channel(user_channel):
                await self.respond(interaction, "need_vc_permissions")
                return None

            settings = subscription_settings(self.bot.config_manager)
            transport = DiscordVoiceTransport(user_channel, timeout=settings.ready_timeout)
            connection = VoiceConnection(interaction.guild_id, transport)
            player = AudioPlayer(interaction.guild_id)
            subscription = MusicSubscription(interaction.guild_id, connection, player, settings)
            self.registry.add(subscription)

            try:
                await connection.connect()
            except ConnectionFailure:
                await self.respond(interaction, "connection_failed")
                return None

            subscription.update_listeners(count_listeners(user_channel))
            logger.info(f"summoned by {interaction.user.display_name} to #{user_channel.name}")
            return subscription

    def _track_hooks(self, channel: discord.abc.Messageable | None) -> dict:
        """Lifecycle hooks that post to the channel the track was requested in."""
        config = self.bot.config_manager

        async def on_start(track: Track) -> None:
            logger.info(f"now playing: {track.title}")
            if config.is_enabled("now_playing"):
                await safe_send(channel, self.msg("now_playing", title=display_title(track.title)))

        def on_finish(track: Track) -> None:
            logger.debug(f"finished: {track.title}")

        async def on_error(track: Track, error: BaseException) -> None:
            if config.is_enabled("track_failed"):
                reason = self.msg(error_message_key(error))
                await safe_send(channel, self.msg("track_failed", title=display_title(track.title), reason=reason))

        return {"on_start": on_start, "on_finish": on_finish, "on_error": on_error}

    # =========================================================================
    # Commands
    # =========================================================================

    @app_commands.command(name="play", description="play a song from a link or search")
    @app_commands.guild_only()
    @app_commands.describe(query="video link or search text")
    async def play(self, interaction: discord.Interaction, query: str) -> None:
        """Join, resolve the query and queue the track."""
        # Joining and searching can both take longer than the 3s response window
        await interaction.response.defer(ephemeral=True, thinking=True)

        subscription = await self.ensure_subscription(interaction)
        if subscription is None:
            return

        try:
            await subscription.connection.wait_for(
                ConnectionStatus.READY, timeout=subscription.settings.ready_timeout
            )
        except (asyncio.TimeoutError, ConnectionFailure):
            logger.warning(f"voice not ready for /play in guild {interaction.guild_id}")
            await self.respond(interaction, "connection_failed")
            return

        try:
            track = await Track.from_query(
                query,
                self.bot.resolver,
                self.bot.cache_manager,
                **self._track_hooks(interaction.channel),
            )
        except PlaybackError as e:
            logger.info(f"could not resolve '{query}': {e}")
            await self.respond(interaction, error_message_key(e))
            return

        if subscription.destroyed:
            await self.respond(interaction, "connection_failed")
            return

        position = subscription.enqueue(track)
        logger.info(f"{interaction.user.display_name} queued '{track.title}'")
        await self.respond(interaction, "queued", title=display_title(track.title), position=position)

    @app_commands.command(name="skip", description="skip to the next track")
    @app_commands.guild_only()
    async def skip(self, interaction: discord.Interaction) -> None:
        subscription = self.get_subscription(interaction)
        if not subscription or subscription.current is None:
            await self.respond(interaction, "nothing_playing")
            return
        if not await self._check_same_vc(interaction, subscription.connection.transport.channel):
            return

        subscription.skip()
        logger.info(f"{interaction.user.display_name} skipped the track")
        await self.respond(interaction, "skipped")

    @app_commands.command(name="pause", description="pause playback")
    @app_commands.guild_only()
    async def pause(self, interaction: discord.Interaction) -> None:
        subscription = self.get_subscription(interaction)
        if not subscription or subscription.current is None:
            await self.respond(interaction, "nothing_playing")
            return
        if not await self._check_same_vc(interaction, subscription.connection.transport.channel):
            return

        if subscription.pause():
            logger.info(f"paused by {interaction.user.display_name}")
            await self.respond(interaction, "paused")
        else:
            await self.respond(interaction, "nothing_playing")

    @app_commands.command(name="resume", description="resume playback")
    @app_commands.guild_only()
    async def resume(self, interaction: discord.Interaction) -> None:
        subscription = self.get_subscription(interaction)
        if not subscription or subscription.current is None:
            await self.respond(interaction, "nothing_playing")
            return
        if not await self._check_same_vc(interaction, subscription.connection.transport.channel):
            return

        if subscription.resume():
            logger.info(f"resumed by {interaction.user.display_name}")
            await self.respond(interaction, "resumed")
        else:
            await self.respond(interaction, "not_paused")

    @app_commands.command(name="stop", description="clear the queue and leave voice")
    @app_commands.guild_only()
    async def stop(self, interaction: discord.Interaction) -> None:
        subscription = self.get_subscription(interaction)
        if not subscription:
            await self.respond(interaction, "nothing_playing")
            return
        if not await self._check_same_vc(interaction, subscription.connection.transport.channel):
            return

        subscription.stop()
        await subscription.destroy()
        logger.info(f"stopped by {interaction.user.display_name}")
        await self.respond(interaction, "stopped")

    @app_commands.command(name="queue", description="show what's playing and what's next")
    @app_commands.guild_only()
    async def queue(self, interaction: discord.Interaction) -> None:
        subscription = self.get_subscription(interaction)
        if not subscription or (subscription.current is None and not subscription.queue):
            await self.respond(interaction, "queue_empty")
            return

        size = self.bot.config_manager.setting("ui", "queue_display_size")
        lines = []
        if current := subscription.current:
            lines.append(self.msg("queue_current", title=display_title(current.title, QUEUE_TITLE_MAX)))
        pending = list(subscription.queue)
        for index, track in enumerate(pending[:size], start=1):
            lines.append(f"`{index}.` {display_title(track.title, QUEUE_TITLE_MAX)}")
        if len(pending) > size:
            lines.append(self.msg("queue_more", count=len(pending) - size))

        await self.respond_text(interaction, "\n".join(lines))

    @app_commands.command(name="cache", description="show track cache usage")
    @app_commands.guild_only()
    async def cache(self, interaction: discord.Interaction) -> None:
        stats = self.bot.cache_manager.stats()
        if stats.track_count == 0:
            await self.respond(interaction, "cache_empty")
            return

        lines = [self.msg(
            "cache_stats",
            count=stats.track_count,
            size=format_size(stats.total_bytes),
            max_size=format_size(stats.max_bytes),
            percent=f"{stats.usage_percent:.1f}",
        )]
        for entry in stats.entries[:CACHE_LIST_SIZE]:
            lines.append(f"- {display_title(entry.title, QUEUE_TITLE_MAX)} ({format_size(entry.size_bytes)})")

        await self.respond_text(interaction, "\n".join(lines))

    # =========================================================================
    # Voice state
    # =========================================================================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Feed bot moves/kicks to the connection and listener counts to the alone timer."""
        subscription = self.registry.get(member.guild.id)
        if subscription is None or subscription.destroyed:
            return
        connection = subscription.connection
        transport = connection.transport

        # Bot's own channel changes (moved or disconnected by someone)
        if member.id == self.bot.user.id:
            if before.channel and not after.channel:
                if connection.status is ConnectionStatus.READY:
                    logger.info("removed from voice channel")
                    connection.report_disconnect(DisconnectReason.WEBSOCKET_CLOSE, KICK_CLOSE_CODE)
            elif after.channel and before.channel != after.channel:
                logger.info(f"moved to #{after.channel.name}")
                transport.channel = after.channel
                connection.report_moved()
                subscription.update_listeners(count_listeners(after.channel))
            return

        if member.bot:
            return

        bot_channel = transport.channel
        if before.channel == bot_channel or after.channel == bot_channel:
            subscription.update_listeners(count_listeners(bot_channel))


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
