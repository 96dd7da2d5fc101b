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
Watchdog Systems

Background monitoring tasks started by the bot after login:
1. Connection Watchdog - Catches voice clients that died without a gateway
   event and hands them to the subscription's rejoin logic
2. Cookie Watchdog - Periodically runs yt-dlp against a known video so the
   cookie jar stays warm and expired credentials show up in the logs early
"""

import asyncio

from loguru import logger

from core.connection import ConnectionStatus, DisconnectReason
from core.errors import ErrorKind
from core.fetcher import Fetcher, run_tool
from core.subscription import SubscriptionRegistry

PROBE_TIMEOUT = 60.0


def check_connections(registry: SubscriptionRegistry) -> int:
    """Report every READY connection whose transport is gone.

    Returns:
        Number of connections reported as disconnected
    """
    reported = 0
    for subscription in registry.values():
        connection = subscription.connection
        if connection.status is not ConnectionStatus.READY:
            continue
        if connection.transport.is_connected():
            continue
        logger.warning(f"voice client for guild {subscription.guild_id} went away silently")
        connection.report_disconnect(DisconnectReason.NETWORK)
        reported += 1
    return reported


async def probe_cookies(fetcher: Fetcher, probe_url: str, timeout: float = PROBE_TIMEOUT) -> ErrorKind | None:
    """Run one metadata-only request with the cookie jar.

    Returns:
        None when there is no cookie file, otherwise the error kind
        (ErrorKind.NONE on success)
    """
    cookie_args = fetcher.cookie_args()
    if not cookie_args:
        return None

    result = await run_tool(
        fetcher.ytdlp_path,
        ["--skip-download", "--no-warnings", "--no-playlist", *cookie_args, probe_url],
        timeout,
    )
    if result.error_kind is ErrorKind.NONE:
        logger.debug("cookie check passed")
    elif result.error_kind is ErrorKind.AUTH_REQUIRED:
        logger.error(f"cookies rejected, export a fresh {fetcher.cookies_file.name}")
    else:
        logger.warning(f"cookie check inconclusive: {result.error_kind.value}")
    return result.error_kind


async def connection_watchdog(bot, registry: SubscriptionRegistry, interval: float):
    """Poll voice health every interval seconds until the bot closes."""
    await bot.wait_until_ready()
    logger.debug("connection watchdog started")

    while not bot.is_closed():
        try:
            await asyncio.sleep(interval)
            check_connections(registry)
        except asyncio.CancelledError:
            logger.debug("connection watchdog cancelled, shutting down")
            break
        except Exception:
            logger.opt(exception=True).error("connection watchdog error")


async def cookies_watchdog(bot, fetcher: Fetcher, interval: float, probe_url: str):
    """Keep the cookie jar alive. Does nothing when interval is 0."""
    if interval <= 0:
        return
    await bot.wait_until_ready()
    logger.debug("cookie watchdog started")

    while not bot.is_closed():
        try:
            await probe_cookies(fetcher, probe_url)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.debug("cookie watchdog cancelled, shutting down")
            break
        except Exception:
            logger.opt(exception=True).error("cookie watchdog error")
            await asyncio.sleep(interval)
