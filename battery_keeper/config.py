# Battery Keeper - Installation Layout
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Fixed system paths, update URLs and per-user state locations. Anything that
# ends up in an elevated command is a hardcoded constant in this module.
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

"""Installation layout and per-user paths.

The binaries folder, the `smc` and `battery` executables and the sudoers
file are referenced by absolute, hardcoded paths so a user-controlled PATH
or environment can never redirect an elevated call. Do not make these
configurable.

Per-user state lives under the unprivileged user's home and is described by
`Paths`, which can be built for the current user (`Paths.for_home`) or, when
running as root, for the user that owns the installation (`Paths.for_user`).
"""
from __future__ import annotations

import os
import pwd
from dataclasses import dataclass
from pathlib import Path

from .errors import UnprivilegedUserError

VERSION = "v1.3.3"

# Root-owned installation
BIN_FOLDER = Path("/usr/local/co.palokaj.battery")
BATTERY_BINARY = BIN_FOLDER / "battery"
SMC_BINARY = BIN_FOLDER / "smc"
PATH_CONFIG_FILE = Path("/etc/paths.d/50-battery")
LEGACY_LINKS = (Path("/usr/local/bin/battery"), Path("/usr/local/bin/smc"))

SUDOERS_FOLDER = Path("/private/etc/sudoers.d")
SUDOERS_FILE = SUDOERS_FOLDER / "battery"

ROOT_USER = "root"
ROOT_GROUP = "wheel"
USER_GROUP = "staff"

# Update sources. Keep hardcoded, never read from the environment.
GITHUB_USER = "actuallymentor"
GITHUB_BRANCH = "main"
_RAW = f"https://raw.githubusercontent.com/{GITHUB_USER}/battery/{GITHUB_BRANCH}"
URL_SETUP_SCRIPT = f"{_RAW}/setup.sh"
URL_UPDATE_SCRIPT = f"{_RAW}/update.sh"
URL_BATTERY_SCRIPT = f"{_RAW}/battery.sh"

LAUNCH_AGENT_LABEL = "com.battery.app"

# A root invocation resets PATH to these before running anything
SAFE_PATH = "/usr/bin:/bin:/usr/sbin:/sbin"

# Log trimming
MAX_LOG_BYTES = 5_000_000
LOG_KEEP_LINES = 100


@dataclass(frozen=True)
class Paths:
    """Per-user state files, all under `~/.battery` except the launch agent."""

    home: Path

    @classmethod
    def for_home(cls, home: os.PathLike | str | None = None) -> "Paths":
        return cls(Path(home) if home is not None else Path.home())

    @classmethod
    def for_user(cls, username: str) -> "Paths":
        try:
            entry = pwd.getpwnam(username)
        except KeyError as exc:
            raise UnprivilegedUserError(f"failed to determine unprivileged user: no account named {username!r}") from exc
        return cls(Path(entry.pw_dir))

    @property
    def config_folder(self) -> Path:
        return self.home / ".battery"

    @property
    def pid_file(self) -> Path:
        return self.config_folder / "battery.pid"

    @property
    def calibrate_pid_file(self) -> Path:
        return self.config_folder / "calibrate.pid"

    @property
    def log_file(self) -> Path:
        return self.config_folder / "battery.log"

    @property
    def gui_log_file(self) -> Path:
        return self.config_folder / "gui.log"

    @property
    def percentage_file(self) -> Path:
        return self.config_folder / "maintain.percentage"

    @property
    def voltage_file(self) -> Path:
        return self.config_folder / "maintain.voltage"

    @property
    def launch_agent(self) -> Path:
        return self.home / "Library" / "LaunchAgents" / "battery.plist"
