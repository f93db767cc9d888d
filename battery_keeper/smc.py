# Battery Keeper - SMC Register Interface
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides SmcClient for reading and writing System Management Controller
# keys through the bundled `smc` tool, the per-process capability probe, and
# ChargeControl, which maps charge/discharge/LED operations onto whichever
# keys the installed controller supports.
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

"""battery_keeper.smc

High-level responsibilities
- Read SMC keys without privileges (`smc -k KEY -r`) and normalise the
  answer to a compact hex string, or None when the key has no data.
- Write SMC keys only through `privilege.run_elevated`, i.e. only values from
  the fixed `ElevatedCommand` table.
- Probe once which charging and discharge keys the controller answers to and
  keep that in an immutable `CapabilitySet`.

Key selection
- Charging: CHTE (newer firmware) is preferred, then CH0B + CH0C (legacy).
  Both legacy keys are written because CH0B alone has been seen to let the
  machine resume charging during sleep.
- Discharge (adapter disable): CHIE, then CH0J, then CH0I.
- With no supported key the operation logs a warning and does nothing.

Write failures are logged and reported as False; they never raise. A charge
loop that hits a transient failure simply tries again on the next tick.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from . import config
from .commands import Runner, run_command
from .privilege import ElevatedCommand, run_elevated

log = logging.getLogger(__name__)

C = ElevatedCommand

_BYTES_RE = re.compile(r"\(bytes\s*([0-9a-fA-F\s]*)\)")


class LedState(enum.Enum):
    """MagSafe LED states the daemon drives."""

    CHARGING = C.LED_CHARGING  # orange
    FULL = C.LED_FULL  # green
    OFF = C.LED_OFF
    RESET = C.LED_RESET  # hand control back to the system


def parse_read_output(output: str) -> Optional[str]:
    """Turn `smc -k KEY -r` output into a hex string such as "00" or "01000000"."""
    if not output or "no data" in output or "Error" in output:
        return None
    m = _BYTES_RE.search(output)
    if not m:
        return None
    hex_value = "".join(m.group(1).split())
    return hex_value or None


class SmcClient:
    def __init__(self, runner: Runner = run_command, binary: str = str(config.SMC_BINARY), euid: Optional[int] = None):
        self.runner = runner
        self.binary = binary
        self.euid = euid

    def read(self, key: str) -> Optional[str]:
        res = self.runner([self.binary, "-k", key, "-r"])
        if res.returncode != 0:
            log.debug("smc read %s failed: %s", key, (res.stderr or "").strip())
            return None
        return parse_read_output(res.stdout)

    def write(self, command: ElevatedCommand) -> bool:
        res = run_elevated(command, runner=self.runner, euid=self.euid)
        if res.returncode != 0:
            log.warning("⚠️ Failed to write %s to %s", command.value[-1], command.value[2])
            return False
        return True


@dataclass(frozen=True)
class CapabilitySet:
    tahoe: bool = False
    legacy: bool = False
    chie: bool = False
    ch0i: bool = False
    ch0j: bool = False

    @classmethod
    def probe(cls, client: SmcClient) -> "CapabilitySet":
        return cls(
            tahoe=client.read("CHTE") is not None,
            legacy=client.read("CH0B") is not None,
            chie=client.read("CHIE") is not None,
            ch0i=client.read("CH0I") is not None,
            ch0j=client.read("CH0J") is not None,
        )

    def describe(self) -> str:
        return (f"SMC capabilities: tahoe={self.tahoe} legacy={self.legacy} "
                f"CHIE={self.chie} CH0I={self.ch0i} CH0J={self.ch0j}")


class ChargeControl:
    """Charge, discharge and LED operations on top of an SmcClient."""

    def __init__(self, client: SmcClient, capabilities: CapabilitySet):
        self.client = client
        self.capabilities = capabilities

    def _write_all(self, commands: Sequence[ElevatedCommand]) -> bool:
        ok = True
        for command in commands:
            ok = self.client.write(command) and ok
        return ok

    def _charging_commands(self, on: bool) -> Sequence[ElevatedCommand]:
        caps = self.capabilities
        if caps.tahoe:
            return (C.CHARGING_ON_CHTE,) if on else (C.CHARGING_OFF_CHTE,)
        if caps.legacy:
            return (C.CHARGING_ON_CH0B, C.CHARGING_ON_CH0C) if on else (C.CHARGING_OFF_CH0B, C.CHARGING_OFF_CH0C)
        return ()

    def _discharge_command(self, on: bool) -> Optional[ElevatedCommand]:
        caps = self.capabilities
        if caps.chie:
            return C.DISCHARGE_ON_CHIE if on else C.DISCHARGE_OFF_CHIE
        if caps.ch0j:
            return C.DISCHARGE_ON_CH0J if on else C.DISCHARGE_OFF_CH0J
        if caps.ch0i:
            return C.DISCHARGE_ON_CH0I if on else C.DISCHARGE_OFF_CH0I
        return None

    def enable_charging(self) -> bool:
        log.info("🔌🔋 Enabling battery charging")
        commands = self._charging_commands(True)
        if not commands:
            log.warning("⚠️ Unable to determine SMC keys for enabling charging")
            return False
        ok = self._write_all(commands)
        return self.disable_discharging() and ok

    def disable_charging(self) -> bool:
        log.info("🔌🪫 Disabling battery charging")
        commands = self._charging_commands(False)
        if not commands:
            log.warning("⚠️ Unable to determine SMC keys for disabling charging")
            return False
        return self._write_all(commands)

    def enable_discharging(self) -> bool:
        log.info("🔽🪫 Enabling battery discharging")
        command = self._discharge_command(True)
        if command is None:
            log.warning("⚠️ Unable to determine SMC keys for enabling discharging")
            return False
        ok = self.client.write(command)
        self.set_led(LedState.OFF)
        return ok

    def disable_discharging(self) -> bool:
        log.info("🔼🪫 Disabling battery discharging")
        command = self._discharge_command(False)
        if command is None:
            log.warning("⚠️ Unable to determine SMC keys for disabling discharging")
            return False
        return self.client.write(command)

    def set_led(self, state: LedState) -> bool:
        log.info("💡 Setting magsafe LED to %s", state.name.lower())
        return self.client.write(state.value)

    def charging_status(self) -> str:
        """"enabled", "disabled" or "unknown" as reported by the charging key."""
        key = "CHTE" if self.capabilities.tahoe else "CH0B"
        hex_status = self.client.read(key)
        if not hex_status:
            return "unknown"
        if self.capabilities.tahoe:
            return "enabled" if hex_status == "00000000" else "disabled"
        return "enabled" if hex_status == "00" else "disabled"

    def discharging_status(self) -> str:
        caps = self.capabilities
        key = "CHIE" if caps.chie else "CH0J" if caps.ch0j else "CH0I"
        hex_status = self.client.read(key)
        if not hex_status:
            return "unknown"
        if hex_status.strip("0") == "":
            return "not discharging"
        return "discharging"
