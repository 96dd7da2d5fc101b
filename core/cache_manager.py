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

"""Get-or-populate cache on top of CacheStore + Fetcher.

At most one population runs per key: concurrent ensure_cached() calls for the
same URL share the first caller's task. Eviction is least-recently-accessed
first and runs in the background after every successful population.
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from core.cache_store import CacheEntry, CacheStore
from core.errors import StorageFailure
from core.fetcher import Fetcher

GIGABYTE = 1024 ** 3


@dataclass
class CacheStats:
    """Snapshot for the /cache command."""
    track_count: int
    total_bytes: int
    max_bytes: int
    entries: list[CacheEntry] = field(default_factory=list)  # newest access first

    @property
    def usage_percent(self) -> float:
        if self.max_bytes <= 0:
            return 0.0
        return self.total_bytes / self.max_bytes * 100


class CacheManager:
    """Size-bounded media cache shared by every guild.

    Attributes:
        store: Index + file store
        fetcher: yt-dlp adapter used for population
        max_size_bytes: Global size budget
    """

    def __init__(self, store: CacheStore, fetcher: Fetcher, max_size_bytes: int) -> None:
        self.store = store
        self.fetcher = fetcher
        self.max_size_bytes = max_size_bytes
        self._inflight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._cleanup_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the cache layout and sweep files the index doesn't know about."""
        await self.store.initialize()
        await self.store.prune_orphans()
        stats = self.stats()
        logger.info(
            f"cache ready: {stats.track_count} tracks, "
            f"{stats.total_bytes / GIGABYTE:.2f}/{self.max_size_bytes / GIGABYTE:.0f} GB"
        )
        if stats.total_bytes > self.max_size_bytes:
            self._spawn(self.cleanup())

    # =========================================================================
    # Lookup / population
    # =========================================================================

    async def get_cached_path(self, url: str) -> Path | None:
        """Return the cached file for url and refresh its access time, or None."""
        key = self.store.hash(url)
        entry = await self.store.lookup(key)
        if entry is None:
            return None
        await self.store.touch(key)
        return entry.file_path

    def is_populating(self, url: str) -> bool:
        task = self._inflight.get(self.store.hash(url))
        return task is not None and not task.done()

    async def ensure_cached(self, url: str, title: str) -> Path:
        """Return a cached file for url, downloading it first if needed.

        Raises:
            FetchExhausted: Download failed with every format option
        """
        path = await self.get_cached_path(url)
        if path is not None:
            return path

        key = self.store.hash(url)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._populate(key, url, title))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"joining in-flight download for '{title}'")

        # Shielded: one waiter being cancelled must not abort the shared download
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark exception retrieved when every waiter went away
        if not task.cancelled():
            task.exception()

    async def _populate(self, key: str, url: str, title: str) -> Path:
        destination = self.store.media_path(key)
        logger.info(f"caching '{title}'")
        size = await self.fetcher.download(url, destination)

        now = time.time()
        entry = CacheEntry(
            key=key,
            source_url=url,
            title=title,
            file_path=destination,
            size_bytes=size,
            created_at=now,
            last_accessed_at=now,
        )
        try:
            await self.store.put(entry)
        except StorageFailure as e:
            # File is fine; it shows up as a miss again after restart
            logger.warning(f"downloaded '{title}' but index write failed: {e}")
        else:
            logger.info(f"cached '{title}' ({size / 1024 / 1024:.2f} MB)")

        self._spawn(self.cleanup())
        return destination

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # Eviction
    # =========================================================================

    async def cleanup(self) -> list[CacheEntry]:
        """Evict least-recently-accessed entries until within budget.

        Returns:
            Entries actually removed (empty when already within budget)
        """
        async with self._cleanup_lock:
            if self.store.total_size() <= self.max_size_bytes:
                return []

            removed = []
            for entry in sorted(self.store.entries(), key=lambda e: e.last_accessed_at):
                if self.store.total_size() <= self.max_size_bytes:
                    break
                if await self.store.remove(entry.key):
                    removed.append(entry)
                    logger.debug(f"evicted '{entry.title}' ({entry.size_bytes / 1024 / 1024:.2f} MB)")

            if removed:
                freed = sum(e.size_bytes for e in removed)
                logger.info(f"cache cleanup removed {len(removed)} tracks ({freed / 1024 / 1024:.1f} MB)")
            if self.store.total_size() > self.max_size_bytes:
                logger.warning("cache still over budget after cleanup")
            return removed

    # =========================================================================
    # Stats / shutdown
    # =========================================================================

    def stats(self) -> CacheStats:
        entries = sorted(self.store.entries(), key=lambda e: e.last_accessed_at, reverse=True)
        return CacheStats(
            track_count=len(entries),
            total_bytes=sum(e.size_bytes for e in entries),
            max_bytes=self.max_size_bytes,
            entries=entries,
        )

    async def shutdown(self) -> None:
        """Cancel in-flight downloads and background work."""
        tasks = [t for t in (*self._inflight.values(), *self._background) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"cancelled {len(tasks)} cache task(s)")
