# Battery Keeper - Launch Agent
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Reboot persistence: the per-user launchd agent that restarts maintenance
# with `maintain_synchronous recover` at login.
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

"""battery_keeper.launchd

The agent runs the root-owned `battery` binary with the fixed arguments
``maintain_synchronous recover``. The loop re-reads whichever target is
persisted (percentage, range or voltage), and exits immediately when there is
none, so the descriptor never changes with the target.

`create()` only rewrites the plist when its parsed contents differ from the
rendered definition.
"""
from __future__ import annotations

import logging
import os
import plistlib
from pathlib import Path
from typing import Any, Dict, Optional

from . import config
from .commands import Runner, run_command

log = logging.getLogger(__name__)


class LaunchAgent:
    def __init__(self, plist_path: Path, log_file: Path, runner: Runner = run_command,
                 binary: Path = config.BATTERY_BINARY, label: str = config.LAUNCH_AGENT_LABEL,
                 uid: Optional[int] = None):
        self.plist_path = Path(plist_path)
        self.log_file = Path(log_file)
        self.runner = runner
        self.binary = Path(binary)
        self.label = label
        self.uid = os.getuid() if uid is None else uid

    @property
    def service_target(self) -> str:
        return f"gui/{self.uid}/{self.label}"

    def definition(self) -> Dict[str, Any]:
        return {
            "Label": self.label,
            "ProgramArguments": [str(self.binary), "maintain_synchronous", "recover"],
            "StandardOutPath": str(self.log_file),
            "StandardErrorPath": str(self.log_file),
            "RunAtLoad": True,
        }

    def render(self) -> bytes:
        return plistlib.dumps(self.definition())

    def installed_definition(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.plist_path, "rb") as fh:
                return plistlib.load(fh)
        except FileNotFoundError:
            return None
        except (plistlib.InvalidFileException, ValueError) as exc:
            log.debug("existing launch agent unreadable: %s", exc)
            return {}

    def create(self) -> bool:
        """Write (if needed) and enable the agent. Returns True if the file was written."""
        self.plist_path.parent.mkdir(parents=True, exist_ok=True)
        current = self.installed_definition()
        written = False
        if current is None:
            log.info("Daemon does not yet exist, creating daemon file at %s", self.plist_path)
            written = True
        elif current != self.definition():
            log.info("Daemon definition changed: replacing with new definition")
            written = True
        else:
            log.debug("Daemon already exists and is up to date")
        if written:
            self.plist_path.write_bytes(self.render())
        self.enable()
        return written

    def enable(self) -> bool:
        res = self.runner(["launchctl", "enable", self.service_target])
        if res.returncode != 0:
            log.warning("launchctl enable %s failed: %s", self.service_target, (res.stderr or "").strip())
            return False
        return True

    def disable(self) -> bool:
        log.info("Disabling daemon at %s", self.service_target)
        res = self.runner(["launchctl", "disable", self.service_target])
        if res.returncode != 0:
            log.warning("launchctl disable %s failed: %s", self.service_target, (res.stderr or "").strip())
            return False
        return True

    def remove(self) -> None:
        try:
            self.plist_path.unlink()
        except FileNotFoundError:
            pass
