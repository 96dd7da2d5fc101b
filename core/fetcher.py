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

"""yt-dlp process adapter.

Turns a source URL into audio bytes, either downloaded to a file (cache
population) or as a live stdout pipe (immediate playback). Both modes walk an
ordered list of format options and only fail once every option has failed.

All stderr text mining lives in classify_error() and its ERROR_SIGNATURES
table; nothing else looks at tool output.
"""

import asyncio
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from core.errors import AuthRequired, ErrorKind, FetchExhausted

# Minimum bytes needed before the container can be sniffed
HEAD_BYTES = 16

# Bounded wait for the process to exit after kill()
KILL_GRACE = 5.0


# =============================================================================
# FORMAT OPTIONS
# =============================================================================

@dataclass(frozen=True)
class FormatOption:
    """One format/quality configuration tried by the fallback loop."""
    label: str
    args: tuple[str, ...]


# Download mode extracts audio so cached files are small and uniform.
DOWNLOAD_FORMATS: tuple[FormatOption, ...] = (
    FormatOption("mp3/q0", ("-x", "--audio-format", "mp3", "--audio-quality", "0")),
    FormatOption("mp3/q5", ("-x", "--audio-format", "mp3", "--audio-quality", "5")),
    FormatOption("best/q0", ("-x", "--audio-format", "best", "--audio-quality", "0")),
    FormatOption("bestaudio/q0", ("-f", "bestaudio", "-x", "--audio-quality", "0")),
)

# Stream mode pipes the original container straight to FFmpeg (no post-processing).
STREAM_FORMATS: tuple[FormatOption, ...] = (
    FormatOption("opus", ("-f", "bestaudio[acodec=opus]",)),
    FormatOption("m4a", ("-f", "bestaudio[ext=m4a]",)),
    FormatOption("bestaudio", ("-f", "bestaudio",)),
    FormatOption("best", ("-f", "best",)),
)


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

# (pattern, kind), first match wins. Auth comes first: a bot-check page can
# also mention unavailable formats.
ERROR_SIGNATURES: tuple[tuple[re.Pattern, ErrorKind], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), kind)
    for pattern, kind in (
        (r"sign in to confirm you.?re not a bot", ErrorKind.AUTH_REQUIRED),
        (r"use --cookies", ErrorKind.AUTH_REQUIRED),
        (r"sign in to confirm your age", ErrorKind.AUTH_REQUIRED),
        (r"age[- ]restricted", ErrorKind.AUTH_REQUIRED),
        (r"login required|requires authentication", ErrorKind.AUTH_REQUIRED),
        (r"requested format is not available", ErrorKind.FORMAT_UNAVAILABLE),
        (r"format not available", ErrorKind.FORMAT_UNAVAILABLE),
        (r"no video formats found", ErrorKind.FORMAT_UNAVAILABLE),
        (r"video unavailable", ErrorKind.UNAVAILABLE),
        (r"private video", ErrorKind.UNAVAILABLE),
        (r"has been removed", ErrorKind.UNAVAILABLE),
        (r"not available in your country", ErrorKind.UNAVAILABLE),
        (r"http error 429|too many requests", ErrorKind.RATE_LIMITED),
    )
)


def classify_error(text: str) -> ErrorKind:
    """Map tool diagnostic text to an ErrorKind.

    Returns UNKNOWN when nothing in the table matches.
    """
    for pattern, kind in ERROR_SIGNATURES:
        if pattern.search(text):
            return kind
    return ErrorKind.UNKNOWN


def sniff_container(head: bytes) -> str | None:
    """Identify the media container from its first bytes, or None."""
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "webm"
    if head.startswith(b"OggS"):
        return "ogg"
    if len(head) >= 8 and head[4:8] == b"ftyp":
        return "mp4"
    if head.startswith(b"ID3") or (len(head) >= 2 and head[0] == 0xFF and head[1] & 0xE0 == 0xE0):
        return "mp3"
    if head.startswith(b"fLaC"):
        return "flac"
    if head.startswith(b"RIFF") and head[8:12] == b"WAVE":
        return "wav"
    return None


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class AttemptResult:
    """Typed outcome of one tool run.

    Attributes:
        option: Format option label tried
        exit_code: Process exit code (None if killed before exit)
        error_kind: Classified failure, NONE on success
        stderr_tail: Last part of stderr, for logs
    """
    option: str
    exit_code: int | None
    error_kind: ErrorKind
    stderr_tail: str = ""


@dataclass
class ToolResult:
    """Completed one-shot tool run (search, probe)."""
    exit_code: int | None
    stdout: str
    stderr: str
    error_kind: ErrorKind


def _tail(text: str, limit: int = 300) -> str:
    text = text.strip()
    return text[-limit:]


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a child process and reap it. Safe on already-exited processes."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(process.wait(), KILL_GRACE)
    except asyncio.TimeoutError:
        logger.warning(f"yt-dlp pid {process.pid} did not exit after kill")


async def run_tool(executable: str, args: list[str], timeout: float) -> ToolResult:
    """Run the acquisition tool to completion and collect its output.

    Used for metadata work (search, title lookup, credential probe) where no
    media is transferred.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            executable, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return ToolResult(None, "", f"{executable} not found", ErrorKind.TOOL_MISSING)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        return ToolResult(None, "", "", ErrorKind.TIMEOUT)
    except asyncio.CancelledError:
        await _kill(process)
        raise

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if process.returncode == 0:
        kind = ErrorKind.NONE
    else:
        kind = classify_error(err)
    return ToolResult(process.returncode, out, err, kind)


# =============================================================================
# LIVE STREAM HANDLE
# =============================================================================

class LiveStream:
    """Readable byte stream backed by a running yt-dlp process.

    read() is synchronous because FFmpeg's stdin writer thread calls it.
    Each call is bridged onto the event loop that owns the process pipes.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        head: bytes,
        container: str,
        loop: asyncio.AbstractEventLoop,
        stderr_task: asyncio.Task,
        read_timeout: float,
    ) -> None:
        self.process = process
        self.container = container
        self._head = head
        self._loop = loop
        self._stderr_task = stderr_task
        self._read_timeout = read_timeout
        self._closed = False

    def read(self, n: int = -1) -> bytes:
        """Return up to n bytes; b"" at end of stream or after close()."""
        if self._closed:
            return b""
        if self._head:
            if n < 0 or n >= len(self._head):
                data, self._head = self._head, b""
            else:
                data, self._head = self._head[:n], self._head[n:]
            return data

        future = asyncio.run_coroutine_threadsafe(self.process.stdout.read(n), self._loop)
        try:
            return future.result(self._read_timeout)
        except TimeoutError:
            # concurrent.futures.TimeoutError is the builtin since 3.11
            future.cancel()
            logger.warning(f"yt-dlp stalled for {self._read_timeout:g}s, ending stream")
            return b""
        except (RuntimeError, ValueError, OSError) as e:
            logger.debug(f"live stream read ended: {e}")
            return b""

    def close(self) -> None:
        """Request termination of the tool process. Idempotent, any thread."""
        if self._closed:
            return
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(self._terminate)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def _terminate(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        self._stderr_task.cancel()


# =============================================================================
# FETCHER
# =============================================================================

class Fetcher:
    """Fallback-driven yt-dlp runner.

    Attributes:
        ytdlp_path: yt-dlp executable (name on PATH or absolute path)
        cookies_file: Netscape cookie jar attached to every attempt when present
        stream_startup_timeout: Seconds for a stream attempt to produce its first bytes
        download_startup_timeout: Seconds for a download attempt to show any activity
        download_timeout: Hard cap on one download attempt
    """

    def __init__(
        self,
        ytdlp_path: str = "yt-dlp",
        cookies_file: Path | None = None,
        stream_startup_timeout: float = 15.0,
        download_startup_timeout: float = 300.0,
        download_timeout: float = 1800.0,
        stream_read_timeout: float = 30.0,
        download_formats: tuple[FormatOption, ...] = DOWNLOAD_FORMATS,
        stream_formats: tuple[FormatOption, ...] = STREAM_FORMATS,
    ) -> None:
        self.ytdlp_path = ytdlp_path
        self.cookies_file = cookies_file
        self.stream_startup_timeout = stream_startup_timeout
        self.download_startup_timeout = download_startup_timeout
        self.download_timeout = download_timeout
        self.stream_read_timeout = stream_read_timeout
        self.download_formats = download_formats
        self.stream_formats = stream_formats

    def cookie_args(self) -> list[str]:
        """--cookies arguments if the cookie file exists, else nothing."""
        if self.cookies_file and self.cookies_file.is_file():
            return ["--cookies", str(self.cookies_file)]
        return []

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.ytdlp_path, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    @staticmethod
    def _raise_exhausted(url: str, attempts: list[AttemptResult]) -> None:
        if attempts and all(a.error_kind == ErrorKind.AUTH_REQUIRED for a in attempts):
            raise AuthRequired(url, attempts, "cookies missing or stale")
        detail = attempts[-1].error_kind.value if attempts else ""
        raise FetchExhausted(url, attempts, detail)

    # =========================================================================
    # Download mode
    # =========================================================================

    async def download(self, url: str, destination: Path) -> int:
        """Download audio for url into destination.

        Returns:
            Size of the final file in bytes

        Raises:
            AuthRequired: Every attempt hit the bot check
            FetchExhausted: Every format option failed
        """
        attempts: list[AttemptResult] = []
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)

        for n, option in enumerate(self.download_formats):
            stem = f"{destination.name}.tmp-{n}"
            try:
                result, produced = await self._download_attempt(url, destination.parent, stem, option)
                if result.error_kind == ErrorKind.NONE and produced is not None:
                    await asyncio.to_thread(os.replace, produced, destination)
                    size = (await asyncio.to_thread(destination.stat)).st_size
                    logger.debug(f"downloaded {url} with {option.label} ({size / 1024 / 1024:.2f} MB)")
                    return size
            finally:
                await asyncio.to_thread(_remove_temp_files, destination.parent, stem)

            attempts.append(result)
            logger.debug(f"download attempt {option.label} failed: {result.error_kind.value}")
            if result.error_kind == ErrorKind.TOOL_MISSING:
                break

        self._raise_exhausted(url, attempts)

    async def _download_attempt(
        self, url: str, directory: Path, stem: str, option: FormatOption
    ) -> tuple[AttemptResult, Path | None]:
        template = directory / f"{stem}.%(ext)s"
        args = [
            *option.args,
            "--no-playlist",
            "--no-warnings",
            "--newline",
            "-o", str(template),
            *self.cookie_args(),
            url,
        ]

        try:
            process = await self._spawn(args)
        except FileNotFoundError:
            logger.error(f"yt-dlp not found at '{self.ytdlp_path}'")
            return AttemptResult(option.label, None, ErrorKind.TOOL_MISSING), None

        started = asyncio.Event()
        auth_hit = asyncio.Event()
        stderr_lines: list[str] = []

        async def watch(stream: asyncio.StreamReader, keep: list[str] | None) -> None:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                started.set()
                if keep is not None:
                    keep.append(line)
                    if classify_error(line) == ErrorKind.AUTH_REQUIRED:
                        auth_hit.set()
                        return

        watchers = [
            asyncio.create_task(watch(process.stdout, None)),
            asyncio.create_task(watch(process.stderr, stderr_lines)),
        ]
        deadline = time.monotonic() + self.download_timeout
        kind = None

        try:
            try:
                await asyncio.wait_for(
                    _first_of(started.wait(), process.wait()),
                    self.download_startup_timeout,
                )
            except asyncio.TimeoutError:
                kind = ErrorKind.TIMEOUT
                logger.warning(f"download {option.label} showed no activity in {self.download_startup_timeout:g}s")

            if kind is None:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    await asyncio.wait_for(_first_of(auth_hit.wait(), process.wait()), remaining)
                except asyncio.TimeoutError:
                    kind = ErrorKind.TIMEOUT
                    logger.warning(f"download {option.label} exceeded {self.download_timeout:g}s")

            if kind is None and auth_hit.is_set():
                kind = ErrorKind.AUTH_REQUIRED
        finally:
            if kind is not None or process.returncode is None:
                await _kill(process)
            else:
                # Exited on its own: let the readers reach EOF so stderr is complete
                await asyncio.wait(watchers, timeout=KILL_GRACE)
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        stderr_text = "\n".join(stderr_lines)
        exit_code = process.returncode

        if kind is None:
            if exit_code == 0:
                produced = await asyncio.to_thread(_find_output, directory, stem)
                if produced is not None:
                    return AttemptResult(option.label, 0, ErrorKind.NONE), produced
                kind = ErrorKind.EMPTY_OUTPUT
            else:
                kind = classify_error(stderr_text)

        return AttemptResult(option.label, exit_code, kind, _tail(stderr_text)), None

    # =========================================================================
    # Stream mode
    # =========================================================================

    async def stream(self, url: str) -> LiveStream:
        """Start a live stream for url, returning once output is verified.

        Raises:
            AuthRequired: Every attempt hit the bot check
            FetchExhausted: Every format option failed
        """
        attempts: list[AttemptResult] = []
        for option in self.stream_formats:
            result, live = await self._stream_attempt(url, option)
            if live is not None:
                logger.debug(f"streaming {url} as {live.container} via {option.label}")
                return live
            attempts.append(result)
            logger.debug(f"stream attempt {option.label} failed: {result.error_kind.value}")
            if result.error_kind == ErrorKind.TOOL_MISSING:
                break

        self._raise_exhausted(url, attempts)

    async def _stream_attempt(self, url: str, option: FormatOption) -> tuple[AttemptResult, LiveStream | None]:
        args = [
            *option.args,
            "--no-playlist",
            "--no-progress",
            "-o", "-",
            *self.cookie_args(),
            url,
        ]

        try:
            process = await self._spawn(args)
        except FileNotFoundError:
            logger.error(f"yt-dlp not found at '{self.ytdlp_path}'")
            return AttemptResult(option.label, None, ErrorKind.TOOL_MISSING), None

        stderr_lines: list[str] = []
        auth_hit = asyncio.Event()

        async def drain_stderr() -> None:
            # Keeps the pipe from filling up for the whole life of the stream
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                stderr_lines.append(line)
                del stderr_lines[:-50]
                if not auth_hit.is_set() and classify_error(line) == ErrorKind.AUTH_REQUIRED:
                    auth_hit.set()
                    if process.returncode is None:
                        try:
                            process.kill()
                        except ProcessLookupError:
                            pass

        stderr_task = asyncio.create_task(drain_stderr())
        success = False
        try:
            try:
                head = await asyncio.wait_for(_read_head(process.stdout, HEAD_BYTES), self.stream_startup_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"stream {option.label} produced nothing in {self.stream_startup_timeout:g}s")
                return AttemptResult(option.label, None, ErrorKind.TIMEOUT, _tail("\n".join(stderr_lines))), None

            if not head:
                # EOF before any byte: let stderr finish so the reason is visible
                try:
                    await asyncio.wait_for(process.wait(), KILL_GRACE)
                    await asyncio.wait_for(stderr_task, KILL_GRACE)
                except asyncio.TimeoutError:
                    pass
                stderr_text = "\n".join(stderr_lines)
                kind = ErrorKind.AUTH_REQUIRED if auth_hit.is_set() else classify_error(stderr_text)
                if kind == ErrorKind.UNKNOWN and process.returncode == 0:
                    kind = ErrorKind.EMPTY_OUTPUT
                return AttemptResult(option.label, process.returncode, kind, _tail(stderr_text)), None

            container = sniff_container(head)
            if container is None:
                return AttemptResult(
                    option.label, process.returncode, ErrorKind.INVALID_OUTPUT, _tail("\n".join(stderr_lines))
                ), None

            success = True
            live = LiveStream(
                process, head, container, asyncio.get_running_loop(), stderr_task, self.stream_read_timeout
            )
            return AttemptResult(option.label, None, ErrorKind.NONE), live
        finally:
            if not success:
                await _kill(process)
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)


# =============================================================================
# HELPERS
# =============================================================================

async def _first_of(*aws) -> None:
    """Wait until the first awaitable finishes, cancelling the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def _read_head(stream: asyncio.StreamReader, size: int) -> bytes:
    """Read at least size bytes unless EOF comes first."""
    head = b""
    while len(head) < size:
        chunk = await stream.read(max(size - len(head), 4096))
        if not chunk:
            break
        head += chunk
    return head


def _find_output(directory: Path, stem: str) -> Path | None:
    """Locate the finished file yt-dlp wrote for stem (non-empty, not partial)."""
    best = None
    best_size = 0
    for path in directory.glob(f"{stem}.*"):
        if path.suffix in (".part", ".ytdl") or not path.is_file():
            continue
        size = path.stat().st_size
        if size > best_size:
            best, best_size = path, size
    return best


def _remove_temp_files(directory: Path, stem: str) -> None:
    for path in directory.glob(f"{stem}.*"):
        try:
            path.unlink()
        except OSError as e:
            logger.debug(f"could not remove temp file {path.name}: {e}")
