# Battery Keeper - Logging
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Root logger setup, log trimming and tailing for the `logs` command.
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

from __future__ import annotations

import collections
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import LOG_KEEP_LINES, MAX_LOG_BYTES

LOG_FORMAT = "%(asctime)s [%(process)d]: %(message)s"
DATE_FORMAT = "%m/%d/%y-%H:%M:%S"


def setup_logging(logfile: Optional[Path] = None, verbose: bool = False, to_file: bool = True) -> None:
    """Configure the root logger once per process.

    stdout always gets a handler. Interactive commands also append to
    `logfile`; the detached loop must pass ``to_file=False`` because its
    stdout already is the log file.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if logfile is not None and to_file:
        try:
            handlers.append(logging.FileHandler(logfile, encoding="utf-8"))
        except OSError as exc:
            print(f"Cannot write to {logfile}: {exc}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


def trim_logfile(path: Path, max_bytes: int = MAX_LOG_BYTES, keep_lines: int = LOG_KEEP_LINES) -> bool:
    """Keep only the last `keep_lines` lines once the file exceeds `max_bytes`."""
    path = Path(path)
    try:
        if path.stat().st_size <= max_bytes:
            return False
    except FileNotFoundError:
        return False
    path.write_text("".join(tail(path, keep_lines)), encoding="utf-8")
    return True


def tail(path: Path, lines: int = 100) -> List[str]:
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            return list(collections.deque(fh, maxlen=lines))
    except FileNotFoundError:
        return []
