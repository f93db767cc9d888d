# Battery Keeper - Maintenance Supervisor
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides the Supervisor class: starts, stops and recovers the background
# maintenance loop, runs the loop itself, and implements the one-shot
# charge/discharge commands and the calibration sequence.
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

"""battery_keeper.supervisor

High-level responsibilities
- `maintain`: validate the target, stop whatever maintenance or calibration
  is running, spawn a detached `maintain_synchronous` process, record its
  pid as the maintain lock, persist the target and register the launch
  agent. `stop` and `recover` are handled here as well.
- `run_loop`: body of `maintain_synchronous`. Claims the maintain lock for
  its own pid, optionally force-discharges to the lower bound, then polls
  every 60 seconds: read telemetry, run the pure transition from
  `battery_keeper.machine`, apply its effects. The loop ends when the
  persisted target is removed or replaced, which is how `stop` always wins
  over an in-flight loop.
- `charge` / `discharge`: suspend maintenance, converge on the level, then
  restore maintenance from the persisted target. When the wait is cancelled
  they raise `Interrupted` and maintenance stays stopped.
- `calibrate`: discharge to 15%, charge to 100%, hold for an hour, discharge
  to 80%, release the lock and restore maintenance.

Design notes
- There is no internal threading. Each role is one sequential process and
  mutual exclusion is done by terminating the other role's lock holder.
- Waiting goes through `self._wait(seconds)`, a threading.Event wait by
  default. It returns True when `request_stop()` was called, which ends the
  current loop; tests inject a fake to drive ticks without sleeping.
- Register write failures are logged by ChargeControl, and telemetry
  failures (`HardwareError`) are logged by the loop. Neither aborts a
  loop; the next tick retries.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Callable, ContextManager, Optional

from .errors import HardwareError, Interrupted, ValidationError
from .launcher import keep_awake
from .machine import (
    CALIBRATION_STEPS,
    MAINTAIN_INTERVAL,
    Bounds,
    CalibrationStep,
    ChargeState,
    apply_effects,
    convergence_interval,
    transition,
    voltage_transition,
)
from .smc import LedState
from .state import Role, StateStore
from .targets import (
    ChargeTarget,
    Voltage,
    describe_target,
    parse_percentage,
    parse_target,
    target_arguments,
)

log = logging.getLogger(__name__)

KEYWORDS = ("stop", "recover")


def _on_off(setting: str) -> bool:
    if setting not in ("on", "off"):
        raise ValidationError(f'{setting} is not "on" or "off".')
    return setting == "on"


class Supervisor:
    def __init__(self, store: StateStore, control, telemetry, launcher, agent,
                 wait: Optional[Callable[[float], bool]] = None, pid: Optional[int] = None,
                 echo: Callable[[str], None] = print,
                 awake: Callable[[], ContextManager] = keep_awake):
        self.store = store
        self.control = control
        self.telemetry = telemetry
        self.launcher = launcher
        self.agent = agent
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self.pid = os.getpid() if pid is None else pid
        self.echo = echo
        self._awake = awake

    def request_stop(self) -> None:
        self._stop_event.set()

    # Maintenance lifecycle

    def maintain(self, setting: str, subsetting: Optional[str] = None, force_discharge: bool = False) -> int:
        target: Optional[ChargeTarget] = None
        if setting not in KEYWORDS:
            # reject bad input before touching any state
            target = parse_target(setting, subsetting)

        self.control.disable_discharging()
        self.store.terminate(Role.MAINTAIN)
        self._stop_calibration()

        if setting == "stop":
            return self.stop()

        if setting == "recover":
            target = self._resolve(setting, subsetting)
            if target is None:
                self.store.release_lock(Role.MAINTAIN)
                return 0

        args = ["maintain_synchronous", *target_arguments(target)]
        if force_discharge:
            args.append("--force-discharge")
        log.info("Starting battery maintenance at %s", describe_target(target))
        pid = self.launcher.spawn(args)
        self.store.acquire_lock(Role.MAINTAIN, pid)

        if setting != "recover":
            self.store.save_target(target)
            log.info("Maintaining battery at %s", describe_target(target))

        # continue maintaining after reboot
        self.agent.create()
        return 0

    def stop(self, report: bool = True) -> int:
        log.info("Killing running maintain daemons & enabling charging as default state")
        self.store.terminate(Role.MAINTAIN)
        self.store.release_lock(Role.MAINTAIN)
        self.store.clear_target()
        self.agent.disable()
        self.control.enable_charging()
        # hand the MagSafe LED back to the system
        self.control.set_led(LedState.RESET)
        if report:
            self.echo(self.status())
        return 0

    def suspend(self) -> None:
        """Stop the maintenance and calibration processes but keep the target."""
        self.store.terminate(Role.MAINTAIN)
        self.store.release_lock(Role.MAINTAIN)
        self._stop_calibration()

    def resume(self) -> int:
        return self.maintain("recover")

    def _stop_calibration(self) -> None:
        if self.store.terminate(Role.CALIBRATE, exclude=self.pid) is not None:
            self.store.release_lock(Role.CALIBRATE)
            log.info("🚨 Calibration process has been stopped")

    # The loop

    def _resolve(self, setting: str, subsetting: Optional[str]) -> Optional[ChargeTarget]:
        if setting == "recover":
            target = self.store.load_target()
            if target is None:
                log.info("No setting to recover, exiting")
            else:
                log.info("Recovering maintenance setting %s", describe_target(target))
            return target
        return parse_target(setting, subsetting)

    def run_loop(self, setting: str, subsetting: Optional[str] = None, force_discharge: bool = False) -> int:
        log.info(self.control.capabilities.describe())
        target = self._resolve(setting, subsetting)
        if target is None:
            return 0

        self.store.terminate(Role.MAINTAIN, exclude=self.pid)
        self.store.acquire_lock(Role.MAINTAIN, self.pid)
        self._stop_calibration()

        bounds = Bounds.of(target)
        voltage_mode = isinstance(target, Voltage)
        step = voltage_transition if voltage_mode else transition

        try:
            if force_discharge and not voltage_mode:
                log.info("Triggering discharge to %s before enabling charging limiter", int(bounds.lower))
                if not self._discharge_to(int(bounds.lower)):
                    return 0
                log.info("Discharge pre battery-maintenance complete, continuing to battery maintenance loop")

            if voltage_mode:
                log.info("Keeping voltage between %sV and %sV", bounds.lower, bounds.upper)
            else:
                log.info("Maintaining battery at %s", describe_target(target))

            state = ChargeState()
            while True:
                try:
                    reading = self.telemetry.read(with_voltage=voltage_mode)
                except HardwareError as exc:
                    log.warning("⚠️ %s, retrying in %s seconds", exc, MAINTAIN_INTERVAL)
                else:
                    state = ChargeState.from_status(self.control.charging_status(), led=state.led)
                    state, effects = step(state, reading, bounds)
                    if effects:
                        if voltage_mode:
                            log.info("Battery at %sV", reading.voltage)
                        else:
                            log.info("Battery at %s%% (target %s)", reading.percentage, describe_target(target))
                        apply_effects(self.control, effects)

                if self._wait(MAINTAIN_INTERVAL):
                    break
                if self.store.load_target() != target:
                    log.info("Maintain setting was removed or replaced, exiting")
                    break
        finally:
            self.store.release_lock(Role.MAINTAIN, pid=self.pid)
        return 0

    # One-shot convergence

    def _charge_to(self, level: int) -> bool:
        pct = self.telemetry.percentage()
        log.info("Charging to %s%% from %s%%", level, pct)
        self.control.enable_charging()
        with self._awake():
            while pct is None or pct < level:
                if self._wait(convergence_interval(pct, level)):
                    return False
                pct = self.telemetry.percentage()
        self.control.disable_charging()
        log.info("Charging completed at %s%%", pct)
        return True

    def _discharge_to(self, level: int) -> bool:
        pct = self.telemetry.percentage()
        log.info("Discharging to %s%% from %s%%", level, pct)
        self.control.enable_discharging()
        try:
            with self._awake():
                while pct is None or pct > level:
                    log.info("Battery at %s%% (target %s%%)", pct, level)
                    if self._wait(convergence_interval(pct, level)):
                        return False
                    pct = self.telemetry.percentage()
        finally:
            # never leave the adapter blocked
            self.control.disable_discharging()
        log.info("Discharging completed at %s%%", pct)
        return True

    def charge(self, level: str) -> int:
        """Charge to `level`, then restore maintenance.

        A cancelled run raises Interrupted and leaves maintenance stopped.
        """
        target = parse_percentage(level)
        self.suspend()
        if not self._charge_to(target):
            raise Interrupted(f"charging to {target}% was interrupted")
        return self.resume()

    def discharge(self, level: str) -> int:
        target = parse_percentage(level)
        self.suspend()
        if not self._discharge_to(target):
            raise Interrupted(f"discharging to {target}% was interrupted")
        return self.resume()

    # Calibration

    def calibrate(self) -> int:
        self.suspend()
        self.store.acquire_lock(Role.CALIBRATE, self.pid)
        self.echo("Starting battery calibration\n")
        try:
            for number, (step, arg, message) in enumerate(CALIBRATION_STEPS, 1):
                self.echo(f"[ {number} ] {message}")
                if step is CalibrationStep.DISCHARGE:
                    ok = self._discharge_to(arg)
                elif step is CalibrationStep.CHARGE:
                    ok = self._charge_to(arg)
                elif step is CalibrationStep.HOLD:
                    self.control.enable_charging()
                    ok = not self._wait(arg)
                else:
                    self.store.release_lock(Role.CALIBRATE, pid=self.pid)
                    self.resume()
                    ok = True
                if not ok:
                    log.warning("Calibration interrupted at step %s", number)
                    raise Interrupted(f"calibration was interrupted at step {number}")
        finally:
            self.store.release_lock(Role.CALIBRATE, pid=self.pid)
        self.echo("\n✅ Done\n")
        return 0

    # Manual overrides

    def charging(self, setting: str) -> int:
        log.info("Setting charging to %s", setting)
        on = _on_off(setting)
        self.stop(report=False)
        if on:
            self.control.enable_charging()
        else:
            self.control.disable_charging()
        return 0

    def adapter(self, setting: str) -> int:
        log.info("Setting adapter to %s", setting)
        on = _on_off(setting)
        self.stop(report=False)
        if on:
            self.control.disable_discharging()
        else:
            self.control.enable_discharging()
        return 0

    # Status

    def status(self) -> str:
        source = self.telemetry.power_source()
        voltage = self.telemetry.voltage()
        pct = source.percentage if source.percentage is not None else "unknown"
        volts = f"{voltage}V" if voltage is not None else "unknown voltage"
        lines = [f"Battery at {pct}% ({source.remaining} remaining), {volts}, "
                 f"smc charging {self.control.charging_status()}"]
        target = self.store.load_target()
        if target is not None and self.store.load_lock(Role.MAINTAIN) is not None:
            lines.append(f"Your battery is currently being maintained at {describe_target(target)}")
        return "\n".join(lines)

    def status_csv(self) -> str:
        source = self.telemetry.power_source()
        pct = source.percentage if source.percentage is not None else "unknown"
        return ",".join([
            str(pct),
            source.remaining,
            self.control.charging_status(),
            self.control.discharging_status(),
            self.store.load_target_text(),
        ])
