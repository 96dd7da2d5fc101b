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
Discord API Helper Functions

Safe wrappers around Discord operations the playback pipeline depends on.
All functions accept None and swallow Discord API errors (logged at debug),
since none of these failures should take down a subscription.

- safe_disconnect(): Leave voice without raising
- safe_send(): Post a message with mentions suppressed
- can_connect_to_channel(): Permission pre-check before joining
- count_listeners(): Humans actually listening in a voice channel
"""

import discord
from loguru import logger


async def safe_disconnect(voice_client: discord.VoiceProtocol | None, force: bool = True) -> bool:
    """
    Safely disconnect from a voice channel.

    Args:
        voice_client: Voice client to disconnect (None is safe)
        force: Force disconnect even if playing

    Returns:
        True if disconnected (or nothing to do), False on error
    """
    if not voice_client:
        return True  # No-op success for idempotency
    try:
        await voice_client.disconnect(force=force)
        return True
    except (discord.ClientException, discord.HTTPException) as e:
        logger.debug(f"disconnect failed (non-critical): {e}")
        return False
    except OSError as e:
        # Transport already torn down during shutdown
        logger.debug(f"disconnect failed with transport error (non-critical): {e}")
        return False


async def safe_send(channel: discord.abc.Messageable | None, content: str) -> discord.Message | None:
    """
    Send a message with all mentions disabled.

    Track titles are user-controlled text, so @everyone in a title must
    never ping anyone.

    Returns:
        The sent message, or None if the channel is gone or forbidden
    """
    if channel is None:
        return None
    try:
        return await channel.send(content, allowed_mentions=discord.AllowedMentions.none())
    except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
        logger.debug(f"could not send message: {e}")
        return None


def can_connect_to_channel(channel: discord.VoiceChannel | None) -> bool:
    """Check the bot has connect+speak in channel. False if guild.me is unknown."""
    if not channel:
        return False
    if not channel.guild.me:
        return False  # Rare startup race - guild not fully ready
    perms = channel.permissions_for(channel.guild.me)
    return bool(perms and perms.connect and perms.speak)


def count_listeners(channel: discord.VoiceChannel | None) -> int:
    """Humans in channel who can hear (bots and deafened members excluded)."""
    if channel is None:
        return 0
    return sum(
        1 for m in channel.members
        if not m.bot and m.voice and not m.voice.self_deaf and not m.voice.deaf
    )
