# Battery Keeper - Battery Telemetry
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Reads charge level, remaining time, adapter state and pack voltage from
# pmset and ioreg.
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

"""Battery telemetry from `pmset -g batt` and `ioreg`.

Reads never need privileges. Anything that cannot be read or parsed comes
back as None so status can report "unknown" instead of failing; only the
loop's `read()` insists on a value.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .commands import Runner, run_command
from .errors import HardwareError
from .machine import Reading

log = logging.getLogger(__name__)

_PERCENT_RE = re.compile(r"(\d+)%;")
_REMAINING_RE = re.compile(r"(\d+:\d{2}) remaining")
_VOLTAGE_RE = re.compile(r'"Voltage"\s*=\s*(\d+)')

PMSET_BATT = ["pmset", "-g", "batt"]
IOREG_BATTERY = ["ioreg", "-l", "-n", "AppleSmartBattery", "-r"]


@dataclass(frozen=True)
class PowerSource:
    percentage: Optional[int]
    remaining: str
    ac_attached: bool


def parse_pmset(output: str) -> PowerSource:
    """Parse the battery line of `pmset -g batt`.

    Example line::

        -InternalBattery-0 (id=123)	80%; AC attached; not charging present: true
    """
    lines = [ln for ln in (output or "").splitlines() if ln.strip()]
    line = lines[-1] if lines else ""
    m = _PERCENT_RE.search(line)
    percentage = int(m.group(1)) if m else None
    r = _REMAINING_RE.search(line)
    remaining = r.group(1) if r else "unknown"
    return PowerSource(percentage=percentage, remaining=remaining, ac_attached="AC attached" in line)


def parse_ioreg_voltage(output: str) -> Optional[float]:
    """Pack voltage in volts from AppleSmartBattery's millivolt "Voltage"."""
    m = _VOLTAGE_RE.search(output or "")
    if not m:
        return None
    return int(m.group(1)) / 1000.0


class Telemetry:
    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def power_source(self) -> PowerSource:
        res = self.runner(PMSET_BATT)
        if res.returncode != 0:
            log.warning("pmset failed: %s", (res.stderr or "").strip())
            return PowerSource(None, "unknown", False)
        return parse_pmset(res.stdout)

    def percentage(self) -> Optional[int]:
        return self.power_source().percentage

    def remaining_time(self) -> str:
        return self.power_source().remaining

    def voltage(self) -> Optional[float]:
        res = self.runner(IOREG_BATTERY)
        if res.returncode != 0:
            log.warning("ioreg failed: %s", (res.stderr or "").strip())
            return None
        return parse_ioreg_voltage(res.stdout)

    def read(self, with_voltage: bool = False) -> Reading:
        """Reading for the maintenance loop.

        Raises HardwareError when the value the loop steers by (percentage,
        or voltage in voltage mode) could not be read.
        """
        source = self.power_source()
        voltage = self.voltage() if with_voltage else None
        if with_voltage and voltage is None:
            raise HardwareError("battery voltage could not be read")
        if not with_voltage and source.percentage is None:
            raise HardwareError("battery percentage could not be read")
        return Reading(percentage=source.percentage, voltage=voltage, ac_attached=source.ac_attached)
