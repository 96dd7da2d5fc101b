"""Pytest fixtures for Hosh tests. Plain fakes live in helpers.py."""

import stat
import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest

from helpers import FakeCache


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


# =============================================================================
# Fake yt-dlp executable
# =============================================================================

@pytest.fixture
def fake_ytdlp(tmp_path: Path) -> Callable[[str], Path]:
    """Factory writing an executable Python script that impersonates yt-dlp.

    The body sees `args` (argv without the program) and `LOG` (a file every
    invocation appends its arguments to, one line per call).
    """
    log = tmp_path / "ytdlp-calls.log"

    def make(body: str, name: str = "yt-dlp") -> Path:
        script = tmp_path / name
        script.write_text(
            f"#!{sys.executable}\n"
            "import json, os, sys, time\n"
            "args = sys.argv[1:]\n"
            f"LOG = {str(log)!r}\n"
            "with open(LOG, 'a') as f:\n"
            "    f.write(' '.join(args) + '\\n')\n"
            + textwrap.dedent(body)
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    make.log = log
    return make
