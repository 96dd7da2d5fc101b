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

"""Context managers for temporary player flags."""

from contextlib import contextmanager
from typing import Any


@contextmanager
def suppress_callbacks(player: Any):
    """Stop or interrupt audio without the player reacting to it.

        with suppress_callbacks(player):
            sink.stop()

    The active session is invalidated first, so an after-callback already
    queued from the voice thread finds a stale token and returns. Nested use
    restores the outer flag on exit.
    """
    player.cancel_active_session()
    outer = player._suppress_callback
    player._suppress_callback = True
    try:
        yield
    finally:
        player._suppress_callback = outer
