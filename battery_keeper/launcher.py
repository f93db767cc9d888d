# Battery Keeper - Background Process Launcher
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Starts the detached maintenance loop and keeps the machine awake during
# one-shot charge and discharge runs.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Process helpers used by the supervisor."""
from __future__ import annotations

import contextlib
import logging
import os
import subprocess
from pathlib import Path
from typing import Iterator, Sequence

from . import config

log = logging.getLogger(__name__)


class BackgroundLauncher:
    """Spawn `battery <args>` detached from the calling terminal.

    The child gets its own session, so closing the terminal (or an interrupt
    in the parent) does not stop it, and its output is appended to the log
    file.
    """

    def __init__(self, log_file: Path, binary: Path = config.BATTERY_BINARY):
        self.log_file = Path(log_file)
        self.binary = Path(binary)

    def spawn(self, args: Sequence[str]) -> int:
        argv = [str(self.binary), *args]
        log.debug("spawning %s", argv)
        with open(self.log_file, "ab") as out:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        return proc.pid


@contextlib.contextmanager
def keep_awake() -> Iterator[None]:
    """Prevent idle and system sleep while the block runs (macOS caffeinate)."""
    try:
        proc = subprocess.Popen(
            ["caffeinate", "-is", "-w", str(os.getpid())],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        log.debug("caffeinate unavailable: %s", exc)
        proc = None
    try:
        yield
    finally:
        if proc is not None:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
