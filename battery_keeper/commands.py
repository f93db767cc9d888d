# Battery Keeper - External Command Runner
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Thin wrapper around subprocess used by every component that talks to
# smc, pmset, ioreg, launchctl, sudo and visudo.
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

"""Run external commands as argv lists, never through a shell.

`run_command` always returns a `CompletedProcess`. A missing executable or a
timeout is reported as a failed process (returncode 127 / 124) with the error
text in `stderr`, so callers only ever branch on `returncode`.

Components accept a `runner` with the same signature so tests can replace it.
"""
from __future__ import annotations

import logging
import os
import subprocess
from typing import Callable, Optional, Sequence

from .config import SAFE_PATH

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

Runner = Callable[..., subprocess.CompletedProcess]


def run_command(argv: Sequence[str], input: Optional[str] = None, timeout: Optional[float] = DEFAULT_TIMEOUT) -> subprocess.CompletedProcess:
    argv = [str(a) for a in argv]
    env = dict(os.environ)
    if os.geteuid() == 0:
        env["PATH"] = SAFE_PATH
    try:
        return subprocess.run(argv, input=input, capture_output=True, text=True, timeout=timeout, env=env)
    except subprocess.TimeoutExpired as exc:
        log.debug("command timed out after %ss: %s", timeout, argv)
        return subprocess.CompletedProcess(argv, 124, stdout="", stderr=f"timed out: {exc}")
    except OSError as exc:
        log.debug("failed to run %s: %s", argv, exc)
        return subprocess.CompletedProcess(argv, 127, stdout="", stderr=str(exc))
