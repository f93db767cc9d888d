# Battery Keeper - macOS Battery Charge Limiter
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# This package keeps a MacBook battery at a chosen charge level or voltage by
# toggling charging and adapter power through SMC writes, with a privilege
# policy that allows exactly those writes and nothing else.
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

"""Battery Keeper package

Keeps the battery of an Apple laptop at a percentage, a percentage range or a
pack voltage. It exposes:

- `Supervisor`: starts, stops and recovers the background maintenance loop,
  and runs one-shot charge/discharge and calibration.
- `ChargeControl` / `SmcClient`: charging, adapter and LED control on top of
  the `smc` tool, with every write going through the fixed sudoers allowlist.
- `parse_target`: validation of maintain targets such as ``80``, ``70-80``
  and ``11.4V``.

The `battery` command is `battery_keeper.cli:main`.
"""

from .config import VERSION
from .smc import CapabilitySet, ChargeControl, SmcClient
from .supervisor import Supervisor
from .targets import Percentage, PercentageRange, Voltage, parse_target

__all__ = [
    "CapabilitySet",
    "ChargeControl",
    "Percentage",
    "PercentageRange",
    "SmcClient",
    "Supervisor",
    "Voltage",
    "parse_target",
]
__version__ = VERSION
