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

"""Configuration management for Hosh."""

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Cache Settings (cache.*):
#   directory              - Cache root, relative to the working directory
#   max_size_gb            - Global size budget; least recently played tracks
#                            are evicted past it
#   tracks_dir             - Subdirectory holding media files (named by key)
#   index_file             - JSON metadata index inside the cache root
#
# Fetch Settings (fetch.*):
#   ytdlp_path             - yt-dlp executable (name on PATH or full path)
#   cookies_file           - Netscape cookie jar passed to yt-dlp when present
#   stream_startup_timeout - Seconds a live stream gets to produce audio
#   download_startup_timeout - Seconds a download gets to show any activity
#   download_timeout       - Hard cap for one download attempt
#   search_timeout         - Seconds for one search/title lookup
#
# Playback Settings (playback.*):
#   resource_timeout       - Upper bound for preparing a track before skipping it
#   idle_timeout           - Seconds idle with an empty queue before leaving (0 = never)
#   alone_timeout          - Seconds with no listeners before leaving (0 = never)
#   preload_next           - Cache the next queued track while the current one plays
#
# Voice Settings (voice.*):
#   ready_timeout          - Seconds to reach Ready before the connection is dropped
#   kick_grace             - Seconds to wait for a move after being removed
#   rejoin_base_delay      - Rejoin attempt n waits (n + 1) * this
#   max_rejoin_attempts    - Rejoins before giving up
#   health_check_interval  - Seconds between voice health checks
#
# Cookie Settings (cookies.*):
#   keepalive_interval     - Seconds between cookie probes (0 = disabled)
#   probe_url              - Video used for the probe
#
# UI Settings (ui.*):
#   brief_auto_delete      - Seconds before auto-deleting simple responses (0 = never)
#   queue_display_size     - Tracks shown by /queue
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "cache": {
        "directory": "music-cache",
        "max_size_gb": 50,
        "tracks_dir": "tracks",
        "index_file": "metadata.json",
    },
    "fetch": {
        "ytdlp_path": "yt-dlp",
        "cookies_file": "cookies.txt",
        "stream_startup_timeout": 15,
        "download_startup_timeout": 300,
        "download_timeout": 1800,
        "search_timeout": 30,
    },
    "playback": {
        "resource_timeout": 30,
        "idle_timeout": 120,
        "alone_timeout": 0,
        "preload_next": True,
    },
    "voice": {
        "ready_timeout": 20,
        "kick_grace": 5,
        "rejoin_base_delay": 5,
        "max_rejoin_attempts": 5,
        "health_check_interval": 15,
    },
    "cookies": {
        "keepalive_interval": 1800,
        "probe_url": "https://www.youtube.com/watch?v=jNQXAC9IVRw",
    },
    # UI behavior
    "ui": {
        "brief_auto_delete": 10,  # seconds, 0 to disable
        "queue_display_size": 10,
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

# (section, key) -> (minimum, maximum or None, type)
NUMERIC_LIMITS: dict[tuple[str, str], tuple[float, float | None, type]] = {
    ("cache", "max_size_gb"): (0.1, None, float),
    ("fetch", "stream_startup_timeout"): (1, 300, float),
    ("fetch", "download_startup_timeout"): (5, 3600, float),
    ("fetch", "download_timeout"): (30, None, float),
    ("fetch", "search_timeout"): (1, 300, float),
    ("playback", "resource_timeout"): (1, 600, float),
    ("playback", "idle_timeout"): (0, None, float),
    ("playback", "alone_timeout"): (0, None, float),
    ("voice", "ready_timeout"): (1, 300, float),
    ("voice", "kick_grace"): (0, 60, float),
    ("voice", "rejoin_base_delay"): (0, 300, float),
    ("voice", "max_rejoin_attempts"): (0, 100, int),
    ("voice", "health_check_interval"): (1, 3600, float),
    ("cookies", "keepalive_interval"): (0, None, float),
    ("ui", "brief_auto_delete"): (0, None, int),
    ("ui", "queue_display_size"): (1, 25, int),
}

LOG_LEVELS = ("minimal", "verbose", "debug")

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Bot responses with per-message enable/disable control.
# Each message has two fields:
#   text    - The message template (supports {variables} for formatting)
#   enabled - Whether to show this message (True) or acknowledge silently (False)
#
# The error keys (not_found ... playback_error) are chosen by
# core.errors.error_message_key(), one per failure kind.
# =============================================================================

DEFAULT_MESSAGES = {
    # Voice
    "not_in_vc": {"text": "join a voice channel first", "enabled": True},
    "wrong_vc": {"text": "i'm playing in {channel}", "enabled": True},
    "need_vc_permissions": {"text": "i can't join or speak in that channel", "enabled": True},

    # Playback
    "nothing_playing": {"text": "nothing is playing", "enabled": True},
    "queued": {"text": "queued **{title}** (#{position})", "enabled": True},
    "now_playing": {"text": "now playing: **{title}**", "enabled": True},
    "skipped": {"text": "skipped", "enabled": True},
    "paused": {"text": "paused", "enabled": True},
    "resumed": {"text": "resumed", "enabled": True},
    "not_paused": {"text": "playback isn't paused", "enabled": True},
    "stopped": {"text": "stopped and left the channel", "enabled": True},

    # Queue
    "queue_empty": {"text": "the queue is empty", "enabled": True},
    "queue_current": {"text": "**now:** {title}", "enabled": True},
    "queue_more": {"text": "...and {count} more", "enabled": True},

    # Cache
    "cache_empty": {"text": "the cache is empty", "enabled": True},
    "cache_stats": {"text": "**{count}** cached tracks, {size} of {max_size} ({percent}%)", "enabled": True},

    # Errors
    "track_failed": {"text": "couldn't play **{title}**: {reason}", "enabled": True},
    "not_found": {"text": "no results for that", "enabled": True},
    "auth_required": {"text": "youtube wants a sign-in, the cookies need refreshing", "enabled": True},
    "fetch_failed": {"text": "couldn't fetch that track", "enabled": True},
    "stream_timeout": {"text": "the track took too long to start", "enabled": True},
    "connection_failed": {"text": "couldn't connect to voice", "enabled": True},
    "storage_failed": {"text": "cache storage problem, check the logs", "enabled": True},
    "playback_error": {"text": "something broke, try again", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Overlay user values onto a copy of defaults, section by section.

    Keys missing from defaults are dropped with a warning, so a typo in
    settings.yaml is visible instead of silently doing nothing.
    """
    merged = {key: (dict(value) if isinstance(value, dict) else value) for key, value in defaults.items()}
    for key, value in user.items():
        if key not in defaults:
            logger.warning(f"unknown config key: {key}")
        elif isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(value, merged[key])
        else:
            merged[key] = value
    return merged


def load_yaml(path: Path, defaults: dict) -> dict:
    """Read path merged over defaults. Missing or broken files give plain defaults."""
    if not path.exists():
        return deep_merge({}, defaults)

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return deep_merge({}, defaults)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.warning(f"{path.name} is not a mapping, using defaults")
        return deep_merge({}, defaults)
    return deep_merge(data, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write data to path through a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        try:
            handle = os.fdopen(fd, "w", encoding="utf-8")
        except Exception:
            os.close(fd)
            raise
        with handle:
            handle.write(header)
            yaml.safe_dump(data, handle, default_flow_style=False, sort_keys=False)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


# ENV_VAR -> ("section.key", converter). Range checks happen afterwards.
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "CACHE_DIR": ("cache.directory", str),
    "CACHE_MAX_SIZE_GB": ("cache.max_size_gb", float),
    "YTDLP_PATH": ("fetch.ytdlp_path", str),
    "COOKIES_FILE": ("fetch.cookies_file", str),
    "STREAM_STARTUP_TIMEOUT": ("fetch.stream_startup_timeout", float),
    "DOWNLOAD_TIMEOUT": ("fetch.download_timeout", float),
    "RESOURCE_TIMEOUT": ("playback.resource_timeout", float),
    "IDLE_TIMEOUT": ("playback.idle_timeout", float),
    "ALONE_TIMEOUT": ("playback.alone_timeout", float),
    "PRELOAD_NEXT": ("playback.preload_next", _as_bool),
    "READY_TIMEOUT": ("voice.ready_timeout", float),
    "REJOIN_BASE_DELAY": ("voice.rejoin_base_delay", float),
    "MAX_REJOIN_ATTEMPTS": ("voice.max_rejoin_attempts", int),
    "COOKIE_KEEPALIVE_INTERVAL": ("cookies.keepalive_interval", float),
    "BRIEF_AUTO_DELETE": ("ui.brief_auto_delete", int),
    "QUEUE_DISPLAY_SIZE": ("ui.queue_display_size", int),
    "LOG_LEVEL": ("logging.level", str),
}


class ConfigManager:
    """settings.yaml + messages.yaml, layered over the built-in defaults.

    Precedence, lowest first: DEFAULT_SETTINGS, the YAML files, then the
    variables in ENV_OVERRIDES. Values are validated once after all layers
    are applied; nothing re-reads the files while the bot runs.

    Attributes:
        config_path: Directory holding both YAML files
        settings: Validated settings, one dict per section
        messages: Response templates, {text, enabled} per key
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = deep_merge({}, DEFAULT_SETTINGS)
        self.messages: dict = deep_merge({}, DEFAULT_MESSAGES)

    async def _load_file(self, name: str, defaults: dict, header: str) -> dict:
        path = self.config_path / name
        data = await asyncio.to_thread(load_yaml, path, defaults)
        if not path.exists():
            await asyncio.to_thread(save_yaml, path, defaults, header)
            logger.debug(f"wrote default {name}")
        return data

    async def load(self) -> None:
        """Read both files (writing defaults for missing ones), then env, then validate."""
        self.settings = await self._load_file(
            "settings.yaml", DEFAULT_SETTINGS,
            "# Hosh settings - environment variables override these\n\n",
        )
        self.messages = await self._load_file(
            "messages.yaml", DEFAULT_MESSAGES,
            "# Hosh replies - edit text, or set enabled: false to stay quiet\n\n",
        )
        self._apply_env_overrides()
        self._validate_settings()
        logger.debug(f"config loaded from {self.config_path}")

    def _validate_settings(self) -> None:
        """Repair settings in place, warning about every correction.

        Non-mapping sections and null values fall back to defaults, numbers
        are coerced and clamped to NUMERIC_LIMITS, logging.level must be one
        of LOG_LEVELS and preload_next must be a bool.
        """
        for section, defaults in DEFAULT_SETTINGS.items():
            values = self.settings.get(section)
            if not isinstance(values, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = dict(defaults)
                continue
            for key, default in defaults.items():
                if values.get(key) is None:
                    values[key] = default

        for (section, key), (low, high, cast) in NUMERIC_LIMITS.items():
            values = self.settings[section]
            raw = values[key]
            try:
                number = cast(raw)
            except (ValueError, TypeError):
                logger.warning(f"{section}.{key}={raw!r} invalid, using default")
                values[key] = DEFAULT_SETTINGS[section][key]
                continue
            bounded = cast(max(low, number) if high is None else min(high, max(low, number)))
            if bounded != number:
                bounds = f"{low:g}+" if high is None else f"{low:g}-{high:g}"
                logger.warning(f"{section}.{key}={number} out of range ({bounds}), using {bounded}")
            values[key] = bounded

        level = str(self.settings["logging"]["level"]).lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={level!r} invalid, using verbose")
            level = "verbose"
        self.settings["logging"]["level"] = level

        playback = self.settings["playback"]
        if not isinstance(playback["preload_next"], bool):
            logger.warning("playback.preload_next must be true or false, using default")
            playback["preload_next"] = DEFAULT_SETTINGS["playback"]["preload_next"]

    def _apply_env_overrides(self) -> None:
        """Copy set ENV_OVERRIDES variables into settings. Bad values are skipped."""
        for env_key, (dotted, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_key)
            if not raw:
                continue
            section, key = dotted.split(".")
            target = self.settings.setdefault(section, {})
            if not isinstance(target, dict):
                logger.warning(f"cannot apply {env_key}: {section} section is not a mapping")
                continue
            try:
                target[key] = convert(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"ignoring {env_key}={raw!r}: {e}")
                continue
            logger.debug(f"{env_key} overrides {dotted}")

    def get(self, key: str, default=None) -> Any:
        """Whole settings section (or any top-level key)."""
        return self.settings.get(key, default)

    def setting(self, section: str, key: str) -> Any:
        """section.key, falling back to the built-in default."""
        values = self.settings.get(section)
        if isinstance(values, dict) and key in values:
            return values[key]
        return DEFAULT_SETTINGS[section][key]

    def _message(self, key: str) -> dict:
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key))
        if isinstance(entry, dict):
            return entry
        return {"text": key if entry is None else str(entry), "enabled": True}

    def msg(self, key: str, **kwargs) -> str:
        """Reply text for key with kwargs filled in.

        Unknown keys come back as the key itself; a template that doesn't
        format (missing or bad placeholder) comes back unformatted.
        """
        template = str(self._message(key).get("text", key))
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError, ValueError):
            return template

    def is_enabled(self, key: str) -> bool:
        """False when the operator muted this reply in messages.yaml."""
        return bool(self._message(key).get("enabled", True))


def validate_configuration(config_manager: ConfigManager) -> None:
    """Pre-flight checks before the bot connects, exit on failure.

    Checks performed:
    - DISCORD_TOKEN is set and has three dot-separated sections
    - yt-dlp and ffmpeg can be found
    - The cache directory exists (creates if missing)

    Warns (non-fatal) if GUILD_ID or the cookie file is missing.

    On failure: Logs all errors and calls sys.exit(1).
    """
    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the environment")
    else:
        parts = token.strip().split(".")
        if len(parts) != 3 or any(not part for part in parts):
            errors.append(
                "DISCORD_TOKEN format appears invalid.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    if not os.getenv("GUILD_ID"):
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")

    ytdlp = config_manager.setting("fetch", "ytdlp_path")
    if not shutil.which(ytdlp):
        errors.append(f"yt-dlp not found at '{ytdlp}' - install it or set YTDLP_PATH")

    if not shutil.which("ffmpeg"):
        errors.append("ffmpeg not found on PATH")

    cookies = Path(config_manager.setting("fetch", "cookies_file"))
    if not cookies.is_file():
        logger.warning(f"{cookies} not found - age-restricted and bot-checked videos will fail")

    cache_dir = Path(config_manager.setting("cache", "directory"))
    if not cache_dir.exists():
        try:
            cache_dir.mkdir(parents=True)
            logger.warning(f"created missing cache directory: {cache_dir}")
        except OSError as e:
            errors.append(f"cannot create cache directory {cache_dir}: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
