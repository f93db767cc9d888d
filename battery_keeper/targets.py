# Battery Keeper - Charge Target Parser
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides deterministic helpers for validating and converting the
# percentage, range and voltage arguments accepted by `battery maintain`,
# and for reading and writing them in the tracker-file format.
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

"""Parsing helpers for charge targets.

Key functions
- parse_target(setting, subsetting=None) -> ChargeTarget
    Validate command-line input such as ``80``, ``70-80`` or ``11.4V 0.3V``
    and return one of `Percentage`, `PercentageRange` or `Voltage`.
    Raises ValidationError on anything else.

- parse_percentage(text) -> int
    Validate the level given to `charge` / `discharge`.

- format_target(target) -> str
    Tracker-file form: ``80``, ``70-80`` or ``11.4 0.3``.

- describe_target(target) -> str
    Human form used in logs and `status`: ``80%``, ``70% - 80%``,
    ``11.4V ±0.3V``.

Notes and conventions
- Percentages are digit-only strings; signs, decimals and whitespace inside
  the number are rejected.
- A range needs lower < upper, lower >= 10 and upper <= 100.
- Voltages carry a trailing ``V`` on the command line. The hysteresis is only
  taken from the second argument when it is itself a voltage; otherwise the
  default of 0.1V applies.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import ValidationError

VOLTAGE_MIN = 10.5
VOLTAGE_MAX = 12.6
HYSTERESIS_MIN = 0.1
HYSTERESIS_MAX = 2.0
DEFAULT_HYSTERESIS = 0.1

RANGE_LOWER_MIN = 10
RANGE_UPPER_MAX = 100

_PERCENT_RE = re.compile(r"^[0-9]+$")
_RANGE_RE = re.compile(r"^([0-9]+)-([0-9]+)$")
_VOLTAGE_RE = re.compile(r"^[0-9]+(\.[0-9]+)?V$")


@dataclass(frozen=True)
class Percentage:
    value: int

    def bounds(self) -> Tuple[float, float]:
        return (self.value, self.value)


@dataclass(frozen=True)
class PercentageRange:
    lower: int
    upper: int

    def bounds(self) -> Tuple[float, float]:
        return (self.lower, self.upper)


@dataclass(frozen=True)
class Voltage:
    center: float
    hysteresis: float = DEFAULT_HYSTERESIS

    def bounds(self) -> Tuple[float, float]:
        # round away float noise such as 11.299999999999999
        return (round(self.center - self.hysteresis, 3), round(self.center + self.hysteresis, 3))


ChargeTarget = Union[Percentage, PercentageRange, Voltage]


def valid_percentage(value) -> bool:
    text = str(value).strip() if isinstance(value, int) else value
    if not isinstance(text, str) or not _PERCENT_RE.match(text):
        return False
    return 0 <= int(text) <= 100


def valid_percentage_range(text: str) -> bool:
    m = _RANGE_RE.match(text or "")
    if not m:
        return False
    lower, upper = m.group(1), m.group(2)
    if not valid_percentage(lower) or not valid_percentage(upper):
        return False
    lower_i, upper_i = int(lower), int(upper)
    if lower_i >= upper_i:
        return False
    return lower_i >= RANGE_LOWER_MIN and upper_i <= RANGE_UPPER_MAX


def valid_voltage(text: Optional[str]) -> bool:
    return bool(text) and bool(_VOLTAGE_RE.match(text))


def parse_percentage(text: str) -> int:
    if not valid_percentage(text):
        raise ValidationError(f"{text} is not a valid setting. Please use a number between 0 and 100")
    return int(text)


def _parse_voltage(setting: str, subsetting: Optional[str]) -> Voltage:
    center = float(setting[:-1])
    hysteresis = float(subsetting[:-1]) if valid_voltage(subsetting) else DEFAULT_HYSTERESIS
    if not VOLTAGE_MIN <= center <= VOLTAGE_MAX:
        raise ValidationError(
            f"{setting} is not a valid setting. Please use a value between {VOLTAGE_MIN}V and {VOLTAGE_MAX}V"
        )
    if not HYSTERESIS_MIN <= hysteresis <= HYSTERESIS_MAX:
        raise ValidationError(
            f"{hysteresis}V is not a valid hysteresis. Please use a value between {HYSTERESIS_MIN}V and {HYSTERESIS_MAX}V"
        )
    return Voltage(center, hysteresis)


def parse_target(setting: str, subsetting: Optional[str] = None) -> ChargeTarget:
    """Parse a `maintain` argument pair into a ChargeTarget.

    Raises ValidationError with a user-facing message on invalid input.
    """
    setting = (setting or "").strip()
    if valid_voltage(setting):
        return _parse_voltage(setting, subsetting)
    if valid_percentage_range(setting):
        lower, upper = setting.split("-", 1)
        return PercentageRange(int(lower), int(upper))
    if valid_percentage(setting):
        return Percentage(int(setting))
    raise ValidationError(
        f"{setting} is not a valid setting for battery maintain. Please use a number between 0 and 100, "
        f"a range like 70-80, a voltage like 11.4V, or an action keyword like 'stop' or 'recover'."
    )


def _fmt_volts(v: float) -> str:
    return f"{v:g}"


def format_target(target: ChargeTarget) -> str:
    if isinstance(target, Voltage):
        return f"{_fmt_volts(target.center)} {_fmt_volts(target.hysteresis)}"
    if isinstance(target, PercentageRange):
        return f"{target.lower}-{target.upper}"
    return str(target.value)


def describe_target(target: ChargeTarget) -> str:
    if isinstance(target, Voltage):
        return f"{_fmt_volts(target.center)}V ±{_fmt_volts(target.hysteresis)}V"
    if isinstance(target, PercentageRange):
        return f"{target.lower}% - {target.upper}%"
    return f"{target.value}%"


def target_arguments(target: ChargeTarget) -> Tuple[str, ...]:
    """Command-line arguments that reproduce `target` through parse_target."""
    if isinstance(target, Voltage):
        return (f"{_fmt_volts(target.center)}V", f"{_fmt_volts(target.hysteresis)}V")
    return (format_target(target),)


def parse_voltage_record(text: str) -> Voltage:
    """Read the ``center hysteresis`` form stored in the voltage tracker file."""
    parts = text.split()
    if not parts or len(parts) > 2:
        raise ValidationError(f"malformed voltage record: {text!r}")
    center = parts[0].rstrip("V")
    hysteresis = parts[1].rstrip("V") if len(parts) == 2 else str(DEFAULT_HYSTERESIS)
    try:
        float(center)
        float(hysteresis)
    except ValueError as exc:
        raise ValidationError(f"malformed voltage record: {text!r}") from exc
    return _parse_voltage(f"{center}V", f"{hysteresis}V")
