# Battery Keeper - Privilege Policy
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# The closed table of commands that may run elevated, the sudoers policy
# rendered from it, and the installer that keeps /etc/sudoers.d/battery in
# sync with the table.
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

"""battery_keeper.privilege

The maintenance loop runs as the unprivileged user but has to write SMC keys,
which needs root. Instead of a long-lived root helper, every write goes
through `sudo -n` and a sudoers policy allows exactly the writes listed in
`ElevatedCommand`, plus the silent self-update entry points.

Primary types / functions
- ElevatedCommand: enum whose members are complete argv tuples built from the
  hardcoded paths in `battery_keeper.config`. Nothing outside this table is
  ever executed with elevation, and no caller-supplied string is ever added
  to it.
- render_policy(): sudoers text for the table. Takes no arguments.
- run_elevated(command, runner): execute one table entry.
- PolicyInstaller: idempotent install of the rendered policy. A byte-identical
  installed policy is left alone (only ownership/permissions are
  reasserted); a differing one is validated with `visudo -c` and atomically
  replaced. Validation failure leaves the old policy untouched and raises
  IntegrityError.
"""
from __future__ import annotations

import enum
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import config
from .audit import ensure_owner_mode
from .commands import Runner, run_command
from .errors import IntegrityError, PrivilegeError

log = logging.getLogger(__name__)

_SMC = str(config.SMC_BINARY)
_BATTERY = str(config.BATTERY_BINARY)


class ElevatedCommand(enum.Enum):
    # Charging: CHTE on Tahoe-era firmware, CH0B + CH0C on older machines
    CHARGING_OFF_CHTE = (_SMC, "-k", "CHTE", "-w", "01000000")
    CHARGING_OFF_CH0B = (_SMC, "-k", "CH0B", "-w", "02")
    CHARGING_OFF_CH0C = (_SMC, "-k", "CH0C", "-w", "02")
    CHARGING_ON_CHTE = (_SMC, "-k", "CHTE", "-w", "00000000")
    CHARGING_ON_CH0B = (_SMC, "-k", "CH0B", "-w", "00")
    CHARGING_ON_CH0C = (_SMC, "-k", "CH0C", "-w", "00")
    # Force discharge (adapter disable)
    DISCHARGE_OFF_CH0I = (_SMC, "-k", "CH0I", "-w", "00")
    DISCHARGE_OFF_CHIE = (_SMC, "-k", "CHIE", "-w", "00")
    DISCHARGE_OFF_CH0J = (_SMC, "-k", "CH0J", "-w", "00")
    DISCHARGE_ON_CH0I = (_SMC, "-k", "CH0I", "-w", "01")
    DISCHARGE_ON_CHIE = (_SMC, "-k", "CHIE", "-w", "08")
    DISCHARGE_ON_CH0J = (_SMC, "-k", "CH0J", "-w", "01")
    # MagSafe LED
    LED_CHARGING = (_SMC, "-k", "ACLC", "-w", "04")
    LED_FULL = (_SMC, "-k", "ACLC", "-w", "03")
    LED_OFF = (_SMC, "-k", "ACLC", "-w", "01")
    LED_RESET = (_SMC, "-k", "ACLC", "-w", "00")
    # Silent self-update
    UPDATE_SILENT = (_BATTERY, "update_silent")
    UPDATE_SILENT_IS_ENABLED = (_BATTERY, "update_silent", "is_enabled")

    @property
    def argv(self) -> List[str]:
        return list(self.value)

    @property
    def line(self) -> str:
        return " ".join(self.value)


C = ElevatedCommand

# Cmnd_Alias name -> members, in policy order
COMMAND_ALIASES: Dict[str, Tuple[ElevatedCommand, ...]] = {
    "CHARGING_OFF": (C.CHARGING_OFF_CH0B, C.CHARGING_OFF_CH0C, C.CHARGING_OFF_CHTE),
    "CHARGING_ON": (C.CHARGING_ON_CH0B, C.CHARGING_ON_CH0C, C.CHARGING_ON_CHTE),
    "FORCE_DISCHARGE_OFF": (C.DISCHARGE_OFF_CH0I, C.DISCHARGE_OFF_CHIE, C.DISCHARGE_OFF_CH0J),
    "FORCE_DISCHARGE_ON": (C.DISCHARGE_ON_CH0I, C.DISCHARGE_ON_CHIE, C.DISCHARGE_ON_CH0J),
    "LED_CONTROL": (C.LED_CHARGING, C.LED_FULL, C.LED_OFF, C.LED_RESET),
}

UPDATE_COMMANDS: Tuple[ElevatedCommand, ...] = (C.UPDATE_SILENT, C.UPDATE_SILENT_IS_ENABLED)


def render_policy() -> str:
    """Render the sudoers policy for the fixed command table."""
    lines = [
        "# Sudoers settings for the battery utility",
        f"# intended to be placed in {config.SUDOERS_FILE}",
        "",
        "# Allow passwordless update (all battery executables are owned by root)",
    ]
    lines += [f"ALL ALL = NOPASSWD: {cmd.line}" for cmd in UPDATE_COMMANDS]
    lines += ["", "# Allow passwordless battery-charging related SMC writes"]
    for alias, members in COMMAND_ALIASES.items():
        lines.append(f"Cmnd_Alias    {alias} = " + ", ".join(m.line for m in members))
    for alias in COMMAND_ALIASES:
        lines.append(f"ALL ALL = NOPASSWD: {alias}")
    return "\n".join(lines) + "\n"


def run_elevated(command: ElevatedCommand, runner: Runner = run_command, euid: Optional[int] = None):
    """Run one allowlisted command as root, never prompting for a password."""
    if not isinstance(command, ElevatedCommand):
        raise PrivilegeError(f"refusing to elevate a command outside the allowlist: {command!r}")
    euid = os.geteuid() if euid is None else euid
    argv = command.argv if euid == 0 else ["sudo", "-n", *command.argv]
    return runner(argv)


class PolicyInstaller:
    """Keep the installed sudoers policy identical to `render_policy()`."""

    def __init__(self, runner: Runner = run_command, sudoers_folder: Path = config.SUDOERS_FOLDER,
                 sudoers_file: Path = config.SUDOERS_FILE, owner: str = config.ROOT_USER,
                 group: str = config.ROOT_GROUP):
        self.runner = runner
        self.sudoers_folder = Path(sudoers_folder)
        self.sudoers_file = Path(sudoers_file)
        self.owner = owner
        self.group = group

    def _secure(self) -> None:
        ensure_owner_mode(self.sudoers_folder, self.owner, self.group, 0o755)
        ensure_owner_mode(self.sudoers_file, self.owner, self.group, 0o440)

    def is_current(self, candidate: bytes) -> bool:
        try:
            return self.sudoers_file.read_bytes() == candidate
        except FileNotFoundError:
            return False

    def install(self) -> bool:
        """Install or refresh the policy.

        Returns True when the installed file was rewritten, False when it
        already matched and only ownership/permissions were reasserted.
        """
        candidate = render_policy().encode("utf-8")
        if not self.sudoers_folder.is_dir():
            self.sudoers_folder.mkdir(parents=True, mode=0o755)
        self._secure()

        with tempfile.TemporaryDirectory() as tempfolder:
            tmpfile = Path(tempfolder) / "sudoers.tmp"
            tmpfile.write_bytes(candidate)

            if self.is_current(candidate):
                log.info("The existing sudoers policy is what it should be for version %s", config.VERSION)
                self._secure()
                return False

            res = self.runner(["visudo", "-c", "-f", str(tmpfile)])
            if res.returncode != 0:
                log.error("Error validating sudoers policy, this should never happen: %s",
                          (res.stdout or "") + (res.stderr or ""))
                raise IntegrityError("generated sudoers policy failed validation; installed policy left untouched")

        # sudo ignores files in sudoers.d whose name contains a dot
        staging = self.sudoers_folder / f".{self.sudoers_file.name}.new"
        fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o440)
        try:
            os.write(fd, candidate)
            os.fsync(fd)
        finally:
            os.close(fd)
        ensure_owner_mode(staging, self.owner, self.group, 0o440)
        os.replace(staging, self.sudoers_file)
        self._secure()
        log.info("Sudoers policy updated successfully")
        return True
