# Battery Keeper - Charge State Machine
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Pure transition functions for percentage and voltage maintenance, the
# polling cadences and the fixed calibration sequence.
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

"""battery_keeper.machine

The maintenance loop is "read, transition, apply effects, wait". Everything
that decides *what* to write lives here as pure functions so it can be
tested without hardware:

- transition(state, reading, bounds) -> (state, effects)
    Percentage mode. At or above the upper bound while charging or on AC:
    stop charging (if it is on) and show the "full" LED. Below the lower
    bound while not charging: start charging and show the "charging" LED.
    Anything in between is the dead zone and produces no effect, so sitting
    on the boundary never toggles the relay back and forth.

- voltage_transition(state, reading, bounds) -> (state, effects)
    Same dead-zone logic on the pack voltage, without LED changes.

- apply_effects(control, effects)
    Map effects onto a `ChargeControl`.

`ChargeState.charging` / `.discharging` are True, False or None (unknown,
e.g. the status key could not be read). Unknown never satisfies a
"currently enabled" or "currently disabled" condition.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .smc import LedState

MAINTAIN_INTERVAL = 60
NEAR_TARGET_INTERVAL = 20
NEAR_TARGET_POINTS = 3
CALIBRATION_HOLD_SECONDS = 3600


class Effect(enum.Enum):
    ENABLE_CHARGING = "enable_charging"
    DISABLE_CHARGING = "disable_charging"
    ENABLE_DISCHARGING = "enable_discharging"
    DISABLE_DISCHARGING = "disable_discharging"
    LED_FULL = "led_full"
    LED_CHARGING = "led_charging"
    LED_OFF = "led_off"
    LED_RESET = "led_reset"


@dataclass(frozen=True)
class ChargeState:
    charging: Optional[bool] = None
    discharging: Optional[bool] = None
    led: Optional[Effect] = None

    @classmethod
    def from_status(cls, charging: str, discharging: str = "unknown", led: Optional[Effect] = None) -> "ChargeState":
        """Build from ChargeControl's "enabled"/"disabled"/"unknown" strings."""
        return cls(
            charging={"enabled": True, "disabled": False}.get(charging),
            discharging={"discharging": True, "not discharging": False}.get(discharging),
            led=led,
        )


@dataclass(frozen=True)
class Reading:
    percentage: Optional[int] = None
    voltage: Optional[float] = None
    ac_attached: bool = False


@dataclass(frozen=True)
class Bounds:
    lower: float
    upper: float

    @classmethod
    def of(cls, target) -> "Bounds":
        lower, upper = target.bounds()
        return cls(lower, upper)


def _with_led(state: ChargeState, led: Effect, effects: List[Effect]) -> ChargeState:
    if state.led != led:
        effects.append(led)
        state = replace(state, led=led)
    return state


def transition(state: ChargeState, reading: Reading, bounds: Bounds) -> Tuple[ChargeState, List[Effect]]:
    effects: List[Effect] = []
    pct = reading.percentage
    if pct is None:
        return state, effects

    if pct >= bounds.upper and (state.charging is True or reading.ac_attached):
        if state.charging is True:
            effects.append(Effect.DISABLE_CHARGING)
            state = replace(state, charging=False)
        state = _with_led(state, Effect.LED_FULL, effects)
    elif pct < bounds.lower and state.charging is False:
        effects.append(Effect.ENABLE_CHARGING)
        # enabling charging also switches force discharge off
        state = replace(state, charging=True, discharging=False)
        state = _with_led(state, Effect.LED_CHARGING, effects)
    return state, effects


def voltage_transition(state: ChargeState, reading: Reading, bounds: Bounds) -> Tuple[ChargeState, List[Effect]]:
    effects: List[Effect] = []
    v = reading.voltage
    if v is None:
        return state, effects

    if v < bounds.lower and state.charging is False:
        effects.append(Effect.ENABLE_CHARGING)
        state = replace(state, charging=True, discharging=False)
    elif v >= bounds.upper and state.charging is True:
        effects.append(Effect.DISABLE_CHARGING)
        state = replace(state, charging=False)
    return state, effects


def convergence_interval(percentage: Optional[int], target: int) -> int:
    """Poll faster close to a one-shot charge/discharge target."""
    if percentage is not None and abs(target - percentage) <= NEAR_TARGET_POINTS:
        return NEAR_TARGET_INTERVAL
    return MAINTAIN_INTERVAL


class CalibrationStep(enum.Enum):
    DISCHARGE = "discharge"
    CHARGE = "charge"
    HOLD = "hold"
    RESTORE = "restore"


# (step, argument, progress message)
CALIBRATION_STEPS: Tuple[Tuple[CalibrationStep, Optional[int], str], ...] = (
    (CalibrationStep.DISCHARGE, 15, "Discharging battery to 15%"),
    (CalibrationStep.CHARGE, 100, "Charging to 100%"),
    (CalibrationStep.HOLD, CALIBRATION_HOLD_SECONDS, "Reached 100%, waiting for 1 hour"),
    (CalibrationStep.DISCHARGE, 80, "Discharging battery to 80%"),
    (CalibrationStep.RESTORE, None, "Restarting battery maintenance"),
)


def apply_effects(control, effects: List[Effect]) -> bool:
    """Apply effects through a ChargeControl. Returns False if any write failed."""
    actions = {
        Effect.ENABLE_CHARGING: control.enable_charging,
        Effect.DISABLE_CHARGING: control.disable_charging,
        Effect.ENABLE_DISCHARGING: control.enable_discharging,
        Effect.DISABLE_DISCHARGING: control.disable_discharging,
        Effect.LED_FULL: lambda: control.set_led(LedState.FULL),
        Effect.LED_CHARGING: lambda: control.set_led(LedState.CHARGING),
        Effect.LED_OFF: lambda: control.set_led(LedState.OFF),
        Effect.LED_RESET: lambda: control.set_led(LedState.RESET),
    }
    ok = True
    for effect in effects:
        ok = bool(actions[effect]()) and ok
    return ok
