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
Hosh Music Bot
========================================================
VERSION: 1.0.0
========================================================

A Discord music bot that plays from YouTube through a local track cache.
Streams first, caches in the background, serves repeats from disk.
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.cache_manager import GIGABYTE, CacheManager
from core.cache_store import CacheStore
from core.fetcher import Fetcher
from core.resolver import SearchResolver
from core.subscription import SubscriptionRegistry
from systems.watchdog import connection_watchdog, cookies_watchdog
from utils.config import ConfigManager, validate_configuration

VERSION = "1.0.0"

# Extensions are registered statically
EXTENSIONS = ("cogs.music",)

# =============================================================================
# LOGGING SETUP
# =============================================================================

LOG_LEVEL_MAP = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}

# 4-character level names for clean, aligned logs
LEVEL_NAMES = {
    "TRACE": "TRCE",
    "DEBUG": "DBUG",
    "INFO": "INFO",
    "SUCCESS": "GOOD",
    "WARNING": "WARN",
    "ERROR": "FAIL",
    "CRITICAL": "CRIT",
}

LOG_FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}] [{extra[short_level]}] {name}: {message}"


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (discord.py) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _short_level(record) -> None:
    record["extra"]["short_level"] = LEVEL_NAMES.get(record["level"].name, record["level"].name[:4])


def configure_logging(level: str) -> None:
    """Single stderr sink, discord.py logs intercepted.

    Library logs stay at WARNING unless level is "debug".
    """
    loguru_level = LOG_LEVEL_MAP.get(level, "INFO")
    logger.remove()
    logger.configure(patcher=_short_level)
    logger.add(sys.stderr, level=loguru_level, format=LOG_FORMAT, backtrace=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    library_level = logging.DEBUG if level == "debug" else logging.WARNING
    logging.getLogger("discord").setLevel(library_level)


# =============================================================================
# BOT
# =============================================================================

class HoshBot(commands.Bot):
    """Bot with the shared cache, fetcher and subscription registry attached.

    Attributes:
        config_manager: Loaded ConfigManager
        fetcher: yt-dlp adapter shared by cache, resolver and watchdogs
        cache_manager: Global track cache
        resolver: Query -> URL/title
        registry: Active subscriptions by guild
    """

    def __init__(self, config_manager: ConfigManager) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )
        self.config_manager = config_manager
        self.registry = SubscriptionRegistry()

        setting = config_manager.setting
        cookies_file = setting("fetch", "cookies_file")
        self.fetcher = Fetcher(
            ytdlp_path=setting("fetch", "ytdlp_path"),
            cookies_file=Path(cookies_file) if cookies_file else None,
            stream_startup_timeout=setting("fetch", "stream_startup_timeout"),
            download_startup_timeout=setting("fetch", "download_startup_timeout"),
            download_timeout=setting("fetch", "download_timeout"),
        )
        store = CacheStore(
            Path(setting("cache", "directory")),
            tracks_dir=setting("cache", "tracks_dir"),
            index_file=setting("cache", "index_file"),
        )
        self.cache_manager = CacheManager(
            store, self.fetcher, int(setting("cache", "max_size_gb") * GIGABYTE)
        )
        self.resolver = SearchResolver(self.fetcher, timeout=setting("fetch", "search_timeout"))

        self._watchdog_tasks: list[asyncio.Task] = []

    async def setup_hook(self) -> None:
        await self.cache_manager.initialize()

        for extension in EXTENSIONS:
            await self.load_extension(extension)
        logger.debug(f"loaded {len(EXTENSIONS)} extension(s)")

        await self._sync_commands()

        setting = self.config_manager.setting
        self._watchdog_tasks = [
            asyncio.create_task(connection_watchdog(
                self, self.registry, setting("voice", "health_check_interval")
            )),
            asyncio.create_task(cookies_watchdog(
                self, self.fetcher,
                setting("cookies", "keepalive_interval"),
                setting("cookies", "probe_url"),
            )),
        ]

    async def _sync_commands(self) -> None:
        """Sync to GUILD_ID when set (instant), otherwise globally (up to an hour)."""
        guild_id = os.getenv("GUILD_ID")
        try:
            if guild_id:
                guild = discord.Object(id=int(guild_id))
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
            else:
                synced = await self.tree.sync()
            logger.info(f"synced {len(synced)} command(s)")
        except ValueError:
            logger.error(f"GUILD_ID '{guild_id}' is not a number, commands not synced")
        except discord.HTTPException as e:
            logger.error(f"command sync failed: {e}")

    async def on_ready(self) -> None:
        logger.info(f"Hosh v{VERSION} - Copyright (C) 2026 grodz")
        logger.info("This program comes with ABSOLUTELY NO WARRANTY; licensed under GPL-3.0")
        logger.info(f"logged in as {self.user}")

    async def close(self) -> None:
        """Stop watchdogs, leave voice, cancel cache work, then disconnect."""
        logger.info("shutting down")
        for task in self._watchdog_tasks:
            task.cancel()
        if self._watchdog_tasks:
            await asyncio.gather(*self._watchdog_tasks, return_exceptions=True)
            self._watchdog_tasks.clear()

        if len(self.registry):
            logger.info(f"leaving {len(self.registry)} voice channel(s)")
            await self.registry.destroy_all()
        await self.cache_manager.shutdown()

        await super().close()


# =============================================================================
# MAIN
# =============================================================================

async def main() -> None:
    load_dotenv()

    config_manager = ConfigManager(Path(os.getenv("CONFIG_DIR", "config")))
    await config_manager.load()
    configure_logging(config_manager.setting("logging", "level"))
    validate_configuration(config_manager)

    bot = HoshBot(config_manager)

    # SIGTERM = systemd stop / docker stop
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, lambda: asyncio.create_task(bot.close()))
    except NotImplementedError:
        pass  # Windows: Ctrl+C still works

    logger.info("starting bot")
    async with bot:
        await bot.start(os.environ["DISCORD_TOKEN"].strip())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("bot stopped by user (Ctrl+C)")
