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

"""Content-addressed media store with a JSON metadata index.

Layout on disk:
    music-cache/
    ├── metadata.json      -> {"version": 1, "tracks": {key: entry}}
    └── tracks/
        └── <key>          -> decoded media file, named by key

SAFETY PATTERN (same as state.json):
    1. The in-memory index is the source of truth once loaded
    2. Disk is read only on first access
    3. Every mutation serializes the whole in-memory index and replaces the
       file atomically (tempfile + fsync + os.replace)

A corrupt or unreadable index is backed up to metadata.json.bak and the
store starts empty rather than crashing.
"""

import asyncio
import hashlib
import json
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlsplit, urlunsplit

from loguru import logger

from core.errors import StorageFailure

INDEX_VERSION = 1

_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}


def canonical_url(url: str) -> str:
    """Normalize a source URL so variants of the same video share one key.

    YouTube watch/short/youtu.be links collapse to the plain watch URL with
    only the video id. Anything else just loses surrounding whitespace and
    its fragment.
    """
    url = url.strip()
    parts = urlsplit(url)
    host = parts.netloc.lower()

    video_id = None
    if host in _YOUTUBE_HOSTS:
        if parts.path == "/watch":
            video_id = parse_qs(parts.query).get("v", [None])[0]
        elif parts.path.startswith("/shorts/"):
            video_id = parts.path.split("/")[2] or None
    elif host == "youtu.be":
        video_id = parts.path.lstrip("/").split("/")[0] or None

    if video_id:
        return f"https://www.youtube.com/watch?v={video_id}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def hash_url(url: str) -> str:
    """Deterministic cache key for a source URL (sha256 of the canonical URL)."""
    return hashlib.sha256(canonical_url(url).encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """Metadata for one cached media file."""
    key: str
    source_url: str
    title: str
    file_path: Path
    size_bytes: int
    created_at: float
    last_accessed_at: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["file_path"] = str(self.file_path)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            key=str(data["key"]),
            source_url=str(data["source_url"]),
            title=str(data.get("title", "")),
            file_path=Path(data["file_path"]),
            size_bytes=int(data["size_bytes"]),
            created_at=float(data["created_at"]),
            last_accessed_at=float(data.get("last_accessed_at", data["created_at"])),
        )


class CacheStore:
    """On-disk media store plus the url-key -> CacheEntry index.

    Knows nothing about playback or fetching. All index mutations are
    serialized by one lock and persisted before the call returns.

    Attributes:
        cache_dir: Root cache directory
        tracks_dir: Directory holding media files named by key
        index_path: JSON index file
    """

    def __init__(self, cache_dir: Path, tracks_dir: str = "tracks", index_file: str = "metadata.json") -> None:
        self.cache_dir = cache_dir
        self.tracks_dir = cache_dir / tracks_dir
        self.index_path = cache_dir / index_file
        self._entries: dict[str, CacheEntry] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    # =========================================================================
    # Keys and paths
    # =========================================================================

    @staticmethod
    def hash(url: str) -> str:
        return hash_url(url)

    def media_path(self, key: str) -> Path:
        """Final location of the media file for a key."""
        return self.tracks_dir / key

    # =========================================================================
    # Index load / persist
    # =========================================================================

    async def initialize(self) -> None:
        """Create the directory layout and load the index (empty if missing)."""
        await asyncio.to_thread(self.tracks_dir.mkdir, parents=True, exist_ok=True)
        async with self._lock:
            await self._ensure_loaded()
            if not self.index_path.exists():
                await self._persist()

    async def _ensure_loaded(self) -> None:
        """Load index from disk on first access. Caller holds the lock."""
        if self._loaded:
            return
        self._entries = await asyncio.to_thread(self._read_index)
        self._loaded = True

    def _read_index(self) -> dict[str, CacheEntry]:
        if not self.index_path.exists():
            return {}

        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            raw_tracks = data.get("tracks", {}) if isinstance(data, dict) else None
            if not isinstance(raw_tracks, dict):
                raise ValueError("index has no 'tracks' mapping")
        except (OSError, UnicodeDecodeError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            self._backup_corrupt_index(e)
            return {}

        entries = {}
        for key, raw in raw_tracks.items():
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"dropping malformed cache entry {key[:12]}: {e}")
                continue
            entries[entry.key] = entry

        logger.debug(f"loaded cache index with {len(entries)} entries")
        return entries

    def _backup_corrupt_index(self, error: Exception) -> None:
        backup = self.index_path.with_suffix(self.index_path.suffix + ".bak")
        try:
            self.index_path.replace(backup)
            logger.warning(f"cache index unreadable ({error}), backed up to {backup.name}")
        except OSError:
            logger.warning(f"cache index unreadable ({error}), starting empty")

    async def _persist(self) -> None:
        """Write the whole in-memory index atomically. Caller holds the lock.

        Raises:
            StorageFailure: If the index could not be written
        """
        data = {
            "version": INDEX_VERSION,
            "tracks": {key: entry.to_dict() for key, entry in self._entries.items()},
        }
        try:
            await asyncio.to_thread(self._write_atomic, data)
        except OSError as e:
            raise StorageFailure(f"failed to write {self.index_path.name}: {e}") from e

    def _write_atomic(self, data: dict) -> None:
        """Synchronous temp-file-then-rename JSON write."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
        try:
            # fdopen can fail after mkstemp - close fd manually to prevent leak
            try:
                f = os.fdopen(temp_fd, "w", encoding="utf-8")
            except Exception:
                os.close(temp_fd)
                raise
            with f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            Path(temp_path).replace(self.index_path)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise

    # =========================================================================
    # Operations
    # =========================================================================

    async def lookup(self, key: str) -> CacheEntry | None:
        """Return the entry for key, purging it if its file is gone or empty."""
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(key)
            if entry is None:
                return None

            if await asyncio.to_thread(_is_nonempty_file, entry.file_path):
                return entry

            logger.warning(f"cached file missing for '{entry.title}', purging entry")
            del self._entries[key]
            try:
                await self._persist()
            except StorageFailure as e:
                logger.warning(str(e))
            return None

    async def put(self, entry: CacheEntry) -> None:
        """Upsert entry and persist the index.

        Raises:
            StorageFailure: If the index could not be written (the entry stays
                in memory for this process)
        """
        async with self._lock:
            await self._ensure_loaded()
            self._entries[entry.key] = entry
            await self._persist()

    async def touch(self, key: str, when: float | None = None) -> None:
        """Update last_accessed_at for key. Write failures are logged only."""
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.last_accessed_at = time.time() if when is None else when
            try:
                await self._persist()
            except StorageFailure as e:
                logger.warning(str(e))

    async def remove(self, key: str) -> bool:
        """Delete the media file and the index entry.

        Returns:
            True if removed, False if the file could not be deleted (entry kept)
        """
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(key)
            if entry is None:
                return False

            try:
                await asyncio.to_thread(entry.file_path.unlink, missing_ok=True)
            except OSError as e:
                logger.warning(f"failed to delete cached file for '{entry.title}': {e}")
                return False

            del self._entries[key]
            try:
                await self._persist()
            except StorageFailure as e:
                logger.warning(str(e))
            return True

    def total_size(self) -> int:
        """Sum of size_bytes over all loaded entries."""
        return sum(entry.size_bytes for entry in self._entries.values())

    def entries(self) -> list[CacheEntry]:
        """Snapshot of all loaded entries."""
        return list(self._entries.values())

    async def prune_orphans(self) -> int:
        """Delete files in tracks_dir that no index entry references.

        Catches leftovers from interrupted downloads and from index writes
        that failed after a successful download.

        Returns:
            Number of files removed
        """
        async with self._lock:
            await self._ensure_loaded()
            referenced = {entry.file_path.name for entry in self._entries.values()}
        return await asyncio.to_thread(self._prune_sync, referenced)

    def _prune_sync(self, referenced: set[str]) -> int:
        if not self.tracks_dir.exists():
            return 0
        removed = 0
        for path in self.tracks_dir.iterdir():
            if not path.is_file() or path.name in referenced:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.debug(f"could not remove orphan {path.name}: {e}")
        if removed:
            logger.info(f"removed {removed} orphaned cache file(s)")
        return removed


def _is_nonempty_file(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False
