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

"""Turn a /play argument into a (url, title) pair using yt-dlp metadata mode."""

import json
from dataclasses import dataclass

from loguru import logger

from core.errors import ErrorKind, ResolutionFailure
from core.fetcher import Fetcher, run_tool


@dataclass(frozen=True)
class Resolution:
    url: str
    title: str


def is_url(text: str) -> bool:
    return text.strip().lower().startswith(("http://", "https://"))


def _entry_url(entry: dict) -> str | None:
    url = entry.get("webpage_url") or entry.get("url")
    if url and is_url(url):
        return url
    if entry.get("id"):
        return f"https://www.youtube.com/watch?v={entry['id']}"
    return None


class SearchResolver:
    """yt-dlp backed search.

    Primary strategy extracts the top ytsearch hit in full; the secondary one
    lists a few flat results and takes the first usable entry. Flat listing
    still works when full extraction of the top hit trips over formats.
    """

    def __init__(self, fetcher: Fetcher, timeout: float = 30.0, fallback_results: int = 3) -> None:
        self.fetcher = fetcher
        self.timeout = timeout
        self.fallback_results = fallback_results

    async def _dump(self, *args: str) -> dict | None:
        result = await run_tool(
            self.fetcher.ytdlp_path,
            ["--dump-single-json", "--no-warnings", *self.fetcher.cookie_args(), *args],
            self.timeout,
        )
        if result.error_kind != ErrorKind.NONE:
            logger.debug(f"yt-dlp metadata lookup failed: {result.error_kind.value}")
            return None
        try:
            data = json.loads(result.stdout)
        except ValueError:
            logger.debug("yt-dlp metadata output was not JSON")
            return None
        return data if isinstance(data, dict) else None

    async def resolve(self, query: str) -> Resolution:
        """Resolve a URL or free-text query.

        Direct URLs are used as-is; their title is looked up best-effort.

        Raises:
            ResolutionFailure: Free-text query matched nothing with either strategy
        """
        query = query.strip()
        if not query:
            raise ResolutionFailure(query, "empty query")

        if is_url(query):
            data = await self._dump("--no-playlist", query)
            title = (data or {}).get("title") or query
            return Resolution(query, title)

        data = await self._dump("--no-playlist", f"ytsearch1:{query}")
        for entry in (data or {}).get("entries") or []:
            if entry and (url := _entry_url(entry)):
                return Resolution(url, entry.get("title") or url)

        logger.debug(f"primary search empty for {query!r}, trying flat search")
        data = await self._dump("--flat-playlist", f"ytsearch{self.fallback_results}:{query}")
        for entry in (data or {}).get("entries") or []:
            if entry and (url := _entry_url(entry)):
                return Resolution(url, entry.get("title") or url)

        raise ResolutionFailure(query)
