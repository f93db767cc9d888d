# Battery Keeper - Error Types
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Exception hierarchy shared by the CLI, the maintenance loop and the
# installer. Each error carries the process exit code the CLI reports.
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

"""Error types raised by battery_keeper.

- `ValidationError`: malformed percentage/range/voltage input. Raised before
  any state is touched.
- `PrivilegeError`: command run with the wrong privileges.
- `UnprivilegedUserError`: running as root and the owning user cannot be
  determined (exit code 11).
- `HardwareError`: battery telemetry could not be read. The maintenance loop
  logs these and retries on the next tick.
- `Interrupted`: a charge, discharge or calibration was cancelled before it
  finished (exit code 130, like Ctrl-C).
- `IntegrityError`: tampered installation or an invalid privilege policy.
- `NetworkError`: update server unreachable or download failed.
"""
from __future__ import annotations


class BatteryError(Exception):
    """Base class; `exit_code` is what the CLI exits with."""

    exit_code = 1


class ValidationError(BatteryError, ValueError):
    pass


class PrivilegeError(BatteryError):
    pass


class UnprivilegedUserError(PrivilegeError):
    exit_code = 11


class HardwareError(BatteryError):
    pass


class IntegrityError(BatteryError):
    pass


class NetworkError(BatteryError):
    pass


class Interrupted(BatteryError):
    exit_code = 130
