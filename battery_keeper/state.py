# Battery Keeper - Persistent State
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# File-backed storage for the maintenance target and the per-role pid locks
# that keep a single maintenance or calibration process alive.
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

"""battery_keeper.state

StateStore keeps everything the daemon persists in plain files under
`~/.battery`:

- maintain.percentage: ``80`` or ``70-80``
- maintain.voltage: ``11.4 0.3`` (volts, hysteresis)
- battery.pid / calibrate.pid: pid of the process holding each role

The two target files are mutually exclusive; `save_target` removes both
before writing one. Locks are not atomic: a lock is the pid in the file, and
it is only honoured while that pid is alive. A new actor terminates the old
holder (best effort, no waiting) and then records itself, so the newest
actor always wins. Last writer wins for every file.
"""
from __future__ import annotations

import enum
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import Paths
from .errors import ValidationError
from .targets import ChargeTarget, Voltage, format_target, parse_target, parse_voltage_record

log = logging.getLogger(__name__)


class Role(enum.Enum):
    MAINTAIN = "maintain"
    CALIBRATE = "calibrate"


@dataclass(frozen=True)
class ProcessLock:
    pid: int
    role: Role


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # pid was reused by another user's process
        return False
    return True


def _read_text(path: Path) -> Optional[str]:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class StateStore:
    def __init__(self, paths: Paths):
        self.paths = paths

    def _lock_file(self, role: Role) -> Path:
        return self.paths.pid_file if role is Role.MAINTAIN else self.paths.calibrate_pid_file

    def ensure_folder(self) -> None:
        self.paths.config_folder.mkdir(parents=True, exist_ok=True)

    # Target

    def load_target(self) -> Optional[ChargeTarget]:
        """Return the persisted target, or None when absent or unreadable."""
        percentage = _read_text(self.paths.percentage_file)
        try:
            if percentage:
                return parse_target(percentage)
            voltage = _read_text(self.paths.voltage_file)
            if voltage:
                return parse_voltage_record(voltage)
        except ValidationError as exc:
            log.warning("ignoring unreadable maintain setting: %s", exc)
        return None

    def load_target_text(self) -> str:
        """Raw tracker contents, percentage file first (for status_csv)."""
        return _read_text(self.paths.percentage_file) or _read_text(self.paths.voltage_file) or ""

    def save_target(self, target: ChargeTarget) -> Path:
        self.ensure_folder()
        self.clear_target()
        path = self.paths.voltage_file if isinstance(target, Voltage) else self.paths.percentage_file
        log.info("Writing new setting %s to %s", format_target(target), path)
        path.write_text(format_target(target) + "\n", encoding="utf-8")
        return path

    def clear_target(self) -> None:
        _unlink(self.paths.percentage_file)
        _unlink(self.paths.voltage_file)

    # Locks

    def load_lock(self, role: Role) -> Optional[ProcessLock]:
        """Return the live lock for `role`; stale or malformed locks read as None."""
        text = _read_text(self._lock_file(role))
        if text is None:
            return None
        try:
            pid = int(text)
        except ValueError:
            log.debug("malformed %s lock: %r", role.value, text)
            return None
        if not pid_alive(pid):
            return None
        return ProcessLock(pid, role)

    def acquire_lock(self, role: Role, pid: int) -> ProcessLock:
        self.ensure_folder()
        self._lock_file(role).write_text(f"{pid}\n", encoding="utf-8")
        return ProcessLock(pid, role)

    def release_lock(self, role: Role, pid: Optional[int] = None) -> None:
        """Remove the lock file; with `pid`, only if that pid still holds it."""
        path = self._lock_file(role)
        if pid is not None and _read_text(path) != str(pid):
            return
        _unlink(path)

    def terminate(self, role: Role, exclude: Optional[int] = None) -> Optional[int]:
        """Signal the live holder of `role` to stop. Does not wait for it.

        Returns the pid that was signalled, or None when there was none.
        """
        lock = self.load_lock(role)
        if lock is None or lock.pid == exclude:
            return None
        log.info("Killing old %s process at %s", role.value, lock.pid)
        try:
            os.kill(lock.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError) as exc:
            log.debug("could not signal %s: %s", lock.pid, exc)
            return None
        return lock.pid
