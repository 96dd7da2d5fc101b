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

"""Interaction replies for the music cog.

Every command answer is ephemeral and short-lived; text comes from
messages.yaml so operators can reword or mute any reply.
"""

import asyncio

import discord

# Pending followup deletions, kept referenced until they run
_pending_deletes: set[asyncio.Task] = set()

QUEUE_TITLE_MAX = 60       # /queue lines, 25 entries stay well under 2000
MESSAGE_TITLE_MAX = 200    # Titles inside plain channel messages


def escape_markdown(text: str) -> str:
    """Neutralise *, _, ~, ` and | in titles pulled from the video site."""
    return discord.utils.escape_markdown(text)


def truncate_for_display(text: str, limit: int) -> str:
    """Cut text to limit characters, the last three being an ellipsis."""
    return text if len(text) <= limit else f"{text[:limit - 3]}..."


def display_title(title: str, max_length: int = MESSAGE_TITLE_MAX) -> str:
    # Escaping lengthens text, so cut first
    return escape_markdown(truncate_for_display(title, max_length))


def format_size(num_bytes: int) -> str:
    """Human-readable byte count (1.5 GB, 320.0 MB)."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class ResponseMixin:
    """Reply helpers for cogs whose bot carries a ConfigManager.

    respond() looks the key up in messages.yaml; a disabled key still
    acknowledges the interaction so Discord doesn't show "application did
    not respond". Replies vanish after ui.brief_auto_delete seconds.
    """

    def msg(self, key: str, **kwargs) -> str:
        return self.bot.config_manager.msg(key, **kwargs)

    async def _expire_followup(self, interaction: discord.Interaction, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await interaction.delete_original_response()
        except asyncio.CancelledError:
            pass  # Bot closing
        except discord.HTTPException:
            pass  # Already gone

    async def respond(self, interaction: discord.Interaction, key: str, **kwargs) -> None:
        """Reply with message key, or acknowledge silently when it is disabled."""
        config = self.bot.config_manager
        if config.is_enabled(key):
            await self.respond_text(interaction, self.msg(key, **kwargs))
            return

        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=True)
        try:
            await interaction.delete_original_response()
        except discord.NotFound:
            pass

    async def respond_text(self, interaction: discord.Interaction, text: str) -> None:
        """Send preformatted ephemeral text with the usual expiry."""
        expiry = self.bot.config_manager.setting("ui", "brief_auto_delete")
        delete_after = expiry if expiry > 0 else None

        if interaction.response.is_done():
            # Deferred (e.g. /play): followups take no delete_after
            await interaction.followup.send(text, ephemeral=True)
            if delete_after:
                task = asyncio.create_task(self._expire_followup(interaction, delete_after))
                _pending_deletes.add(task)
                task.add_done_callback(_pending_deletes.discard)
            return

        await interaction.response.send_message(text, ephemeral=True, delete_after=delete_after)

    async def _check_same_vc(self, interaction: discord.Interaction, channel: discord.VoiceChannel) -> bool:
        """True when the user shares channel with the bot; replies otherwise."""
        voice = interaction.user.voice
        if not voice or not voice.channel:
            await self.respond(interaction, "not_in_vc")
            return False
        if voice.channel != channel:
            await self.respond(interaction, "wrong_vc", channel=channel.mention)
            return False
        return True
