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
Track - One Playable Request

A Track is a URL + title plus three lifecycle hooks (start, finish, error),
and owns the single policy for turning itself into audio bytes:

    cache hit     -> open the cached file
    cache broken  -> fall through to live streaming
    cache miss    -> live stream now, populate the cache in the background

Call sites never branch on cache state themselves.
"""

import asyncio
import inspect
import os
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from core.cache_manager import CacheManager
from core.resolver import SearchResolver

# Holds references to async hook tasks until they finish
_hook_tasks: set[asyncio.Task] = set()


class OneShot:
    """Lifecycle hook that dispatches at most once.

    Accepts a plain function or a coroutine function. Exceptions raised by the
    callback are logged and never reach the caller (the playback pipeline).
    """

    def __init__(self, name: str, callback: Callable[..., Any] | None = None) -> None:
        self.name = name
        self._callback = callback
        self.fired = False

    def fire(self, *args: Any) -> bool:
        """Run the callback unless already fired. Returns True if this call fired it."""
        if self.fired:
            return False
        self.fired = True
        if self._callback is None:
            return True

        try:
            result = self._callback(*args)
        except Exception:
            logger.opt(exception=True).warning(f"{self.name} hook failed")
            return True

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _hook_tasks.add(task)
            task.add_done_callback(self._reap)
        return True

    def _reap(self, task: asyncio.Task) -> None:
        _hook_tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.opt(exception=exc).warning(f"{self.name} hook failed")


class PlaybackStream:
    """Readable audio bytes handed to the player.

    Attributes:
        origin: "cache" or "live"
        container: Sniffed container name for live streams, None for cache files
    """

    def __init__(self, reader: Any, origin: str, container: str | None = None) -> None:
        self._reader = reader
        self.origin = origin
        self.container = container

    def read(self, n: int = -1) -> bytes:
        return self._reader.read(n)

    def close(self) -> None:
        try:
            self._reader.close()
        except (OSError, ValueError) as e:
            logger.debug(f"stream close failed: {e}")


def _open_cached(path: Path):
    """Open a cached file for reading, rejecting empty files."""
    f = open(path, "rb")
    try:
        if os.fstat(f.fileno()).st_size == 0:
            raise OSError(f"{path.name} is empty")
    except OSError:
        f.close()
        raise
    return f


class Track:
    """A queued song.

    Attributes:
        url: Source URL
        title: Display title
        on_start / on_finish / on_error: One-shot lifecycle hooks
    """

    def __init__(
        self,
        url: str,
        title: str,
        cache: CacheManager,
        on_start: Callable[["Track"], Any] | None = None,
        on_finish: Callable[["Track"], Any] | None = None,
        on_error: Callable[["Track", BaseException], Any] | None = None,
    ) -> None:
        self.url = url
        self.title = title
        self.cache = cache
        self.on_start = OneShot("on_start", on_start)
        self.on_finish = OneShot("on_finish", on_finish)
        self.on_error = OneShot("on_error", on_error)
        self._preload_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"Track({self.title!r}, {self.url!r})"

    @classmethod
    async def from_query(
        cls,
        query: str,
        resolver: SearchResolver,
        cache: CacheManager,
        **hooks: Any,
    ) -> "Track":
        """Build a Track from a URL or search text.

        Raises:
            ResolutionFailure: Nothing matched the query
        """
        resolution = await resolver.resolve(query)
        return cls(resolution.url, resolution.title, cache, **hooks)

    # Hook shorthands used by the subscription
    def started(self) -> bool:
        return self.on_start.fire(self)

    def finished(self) -> bool:
        return self.on_finish.fire(self)

    def failed(self, error: BaseException) -> bool:
        return self.on_error.fire(self, error)

    async def create_playback_stream(self) -> PlaybackStream:
        """Open this track's audio, preferring the cache.

        Raises:
            FetchExhausted: Not cached and every live stream option failed
        """
        path = await self.cache.get_cached_path(self.url)
        if path is not None:
            try:
                reader = await asyncio.to_thread(_open_cached, path)
            except OSError as e:
                logger.warning(f"cached file for '{self.title}' unreadable ({e}), streaming instead")
            else:
                logger.debug(f"cache hit: {self.title}")
                return PlaybackStream(reader, "cache")

        live = await self.cache.fetcher.stream(self.url)
        # Started after the stream is up so both processes don't race for startup bandwidth
        self.preload()
        return PlaybackStream(live, "live", live.container)

    def preload(self) -> bool:
        """Start caching this track in the background.

        Returns:
            False if a population for this track (or URL) is already running
        """
        if self._preload_task is not None and not self._preload_task.done():
            return False
        if self.cache.is_populating(self.url):
            return False
        self._preload_task = asyncio.create_task(self._preload())
        return True

    async def _preload(self) -> None:
        try:
            await self.cache.ensure_cached(self.url, self.title)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"background caching failed for '{self.title}': {e}")
