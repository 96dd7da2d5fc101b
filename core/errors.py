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

"""Playback pipeline error taxonomy.

Per-track failures (ResolutionFailure, FetchExhausted, StreamTimeout) are
reported through the track's on_error hook and make the queue skip ahead.
StorageFailure is logged and isolated by the cache layer. ConnectionFailure
is terminal for a subscription.
"""

from enum import Enum


class ErrorKind(Enum):
    """Classified outcome of one acquisition tool run."""
    NONE = "none"
    AUTH_REQUIRED = "auth_required"
    FORMAT_UNAVAILABLE = "format_unavailable"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    EMPTY_OUTPUT = "empty_output"
    INVALID_OUTPUT = "invalid_output"
    TOOL_MISSING = "tool_missing"
    UNKNOWN = "unknown"


class PlaybackError(Exception):
    """Base class for all pipeline errors."""


class ResolutionFailure(PlaybackError):
    """Search or URL resolution found nothing."""

    def __init__(self, query: str, detail: str = "") -> None:
        self.query = query
        self.detail = detail
        message = f"no results for {query!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FetchExhausted(PlaybackError):
    """Every configured format/strategy failed for a URL.

    Attributes:
        url: Source URL that could not be fetched
        attempts: Per-attempt results in the order they were tried
    """

    def __init__(self, url: str, attempts: list | None = None, detail: str = "") -> None:
        self.url = url
        self.attempts = list(attempts or [])
        message = f"all {len(self.attempts)} fetch attempts failed for {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class AuthRequired(FetchExhausted):
    """Every attempt hit an authentication/bot-check wall (stale cookies)."""


class StreamTimeout(PlaybackError):
    """An attempt produced no usable output within its startup bound."""

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(f"no output from {url} within {timeout:g}s")


class StorageFailure(PlaybackError):
    """Cache index unreadable/unwritable, or a media file could not be deleted."""


class ConnectionFailure(PlaybackError):
    """Voice connection never became ready, or ran out of rejoin attempts."""


def error_message_key(exc: BaseException) -> str:
    """Map an exception to the messages.yaml key shown to users.

    Order matters: AuthRequired is a FetchExhausted and must be checked first.
    """
    if isinstance(exc, ResolutionFailure):
        return "not_found"
    if isinstance(exc, AuthRequired):
        return "auth_required"
    if isinstance(exc, FetchExhausted):
        return "fetch_failed"
    if isinstance(exc, StreamTimeout):
        return "stream_timeout"
    if isinstance(exc, ConnectionFailure):
        return "connection_failed"
    if isinstance(exc, StorageFailure):
        return "storage_failed"
    return "playback_error"
