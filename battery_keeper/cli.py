# Battery Keeper - Command Line Interface
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# The `battery` command: argument parsing, per-invocation housekeeping and
# dispatch to the supervisor, the updater and the privilege installer.
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

"""Command line entry point for `battery`."""
from __future__ import annotations

import argparse
import logging
import os
import shutil
import signal
import sys
from typing import Callable, Optional, Sequence

from . import config
from .audit import InstallationAuditor, assert_unprivileged_user, determine_unprivileged_user
from .commands import Runner, run_command
from .config import Paths
from .errors import BatteryError, PrivilegeError, ValidationError
from .launchd import LaunchAgent
from .launcher import BackgroundLauncher
from .logs import setup_logging, tail, trim_logfile
from .privilege import PolicyInstaller
from .smc import CapabilitySet, ChargeControl, SmcClient
from .state import StateStore
from .supervisor import Supervisor
from .telemetry import Telemetry
from .updater import Updater

log = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130

# these act on the logged-in user's maintenance and launch agent
USER_ONLY_ACTIONS = ("maintain", "charging", "adapter", "create_daemon", "disable_daemon", "remove_daemon")

EPILOG = """\
examples:
  battery maintain 80              maintain at 80%
  battery maintain 70-80           maintain between 70% and 80%
  battery maintain 11.4V 0.3V      keep the battery between 11.1V and 11.7V
  battery maintain stop
  battery charge 90
  battery adapter off

voltage targets: 10.5V-12.6V with a 0.1V-2V hysteresis (default 0.1V)
"""


class BatteryArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit 1 through ValidationError."""

    def error(self, message):
        raise ValidationError(f"{self.prog}: {message}")


def build_parser() -> BatteryArgumentParser:
    parser = BatteryArgumentParser(
        prog="battery",
        description=f"Battery CLI utility {config.VERSION}",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    sub = parser.add_subparsers(dest="action", metavar="COMMAND")

    sub.add_parser("status", help="output battery SMC status, %% and time remaining")
    sub.add_parser("status_csv", help="machine readable status for the menu bar app")

    maintain = sub.add_parser("maintain", help="reboot-persistent maintenance at a percentage, range or voltage, or stop/recover")
    # internal: body of the detached maintenance process
    synchronous = sub.add_parser("maintain_synchronous")
    for p in (maintain, synchronous):
        p.add_argument("setting", help="80, 70-80, 11.4V, stop or recover")
        p.add_argument("subsetting", nargs="?", help="hysteresis for voltage targets, eg 0.3V")
        p.add_argument("--force-discharge", action="store_true",
                       help="discharge to the lower bound first, even when plugged in")

    p = sub.add_parser("charge", help="charge to LEVEL, then restore maintenance")
    p.add_argument("level")
    p = sub.add_parser("discharge", help="block adapter power until LEVEL, then restore maintenance")
    p.add_argument("level")
    sub.add_parser("calibrate", help="discharge to 15%%, charge to 100%%, hold 1 hour, restore maintenance")

    p = sub.add_parser("charging", help="manually set the battery to (not) charge")
    p.add_argument("setting", help="on or off")
    p = sub.add_parser("adapter", help="manually set the adapter to (not) power the machine")
    p.add_argument("setting", help="on or off")

    p = sub.add_parser("update", help="update the battery utility to the latest version")
    p.add_argument("mode", nargs="?", choices=["silent"])
    p = sub.add_parser("update_silent")
    p.add_argument("mode", nargs="?", choices=["is_enabled"])
    p = sub.add_parser("reinstall", help="reinstall the battery utility")
    p.add_argument("mode", nargs="?", choices=["silent"])
    p = sub.add_parser("uninstall", help="enable charging and remove the smc tool and the battery script")
    p.add_argument("mode", nargs="?", choices=["silent"])

    sub.add_parser("visudo", help="install or refresh the sudoers policy (root)")
    sub.add_parser("create_daemon", help="register the login agent that restores maintenance")
    sub.add_parser("disable_daemon", help="disable the login agent")
    sub.add_parser("remove_daemon", help="remove the login agent")
    p = sub.add_parser("logs", help="output logs of the battery CLI and GUI")
    p.add_argument("lines", nargs="?", type=int, default=100)
    sub.add_parser("version", help="print the version")
    sub.add_parser("help", help="show this message")
    return parser


class Application:
    """Wires the components for one invocation. Everything is built lazily
    so `version` and `help` never touch the hardware."""

    def __init__(self, paths: Paths, runner: Runner = run_command, euid: Optional[int] = None,
                 echo: Callable[[str], None] = print):
        self.paths = paths
        self.runner = runner
        self.euid = os.geteuid() if euid is None else euid
        self.echo = echo
        self._supervisor: Optional[Supervisor] = None

    @property
    def store(self) -> StateStore:
        return StateStore(self.paths)

    @property
    def agent(self) -> LaunchAgent:
        return LaunchAgent(self.paths.launch_agent, self.paths.log_file, runner=self.runner)

    @property
    def supervisor(self) -> Supervisor:
        if self._supervisor is None:
            client = SmcClient(runner=self.runner, euid=self.euid)
            control = ChargeControl(client, CapabilitySet.probe(client))
            self._supervisor = Supervisor(
                store=self.store,
                control=control,
                telemetry=Telemetry(runner=self.runner),
                launcher=BackgroundLauncher(self.paths.log_file),
                agent=self.agent,
                echo=self.echo,
            )
        return self._supervisor

    def updater(self) -> Updater:
        return Updater(runner=self.runner, euid=self.euid, echo=self.echo)

    def _sudo(self, *argv: str):
        argv = list(argv) if self.euid == 0 else ["sudo", *argv]
        return self.runner(argv, timeout=None)

    # Commands

    def stoppable(self) -> Supervisor:
        """Supervisor whose waits end on SIGTERM so cleanup runs.

        SIGTERM is how a newer command cancels this one. SIGINT keeps its
        default KeyboardInterrupt, which unwinds the same cleanup and exits 130.
        """
        supervisor = self.supervisor

        def _terminate(signum, frame):
            log.info("Received signal %s, stopping", signum)
            supervisor.request_stop()

        signal.signal(signal.SIGTERM, _terminate)
        return supervisor

    def refuse_root(self, action: str) -> None:
        if self.euid == 0:
            raise PrivilegeError(f"battery {action} should not be executed with root privileges; try running without sudo")

    def visudo(self) -> int:
        if self.euid != 0:
            raise PrivilegeError("battery visudo must be executed with root privileges")
        if PolicyInstaller(runner=self.runner).install():
            self.echo("✅ Sudoers policy updated")
        else:
            self.echo(f"☑️  The existing sudoers policy is what it should be for version {config.VERSION}")
        return 0

    def uninstall(self, silent: bool = False) -> int:
        if not silent:
            self.echo("This will enable charging, and remove the smc tool and battery script")
            input("Press any key to continue")
        supervisor = self.supervisor
        supervisor.stop(report=False)
        self.agent.remove()
        supervisor.control.enable_charging()
        supervisor.control.disable_discharging()

        for link in config.LEGACY_LINKS:
            self._sudo("rm", "-fv", str(link))
        self._sudo("rm", "-fv", str(config.SUDOERS_FILE))
        self._sudo("rm", "-frv", str(config.BIN_FOLDER))
        shutil.rmtree(self.paths.config_folder, ignore_errors=True)
        self._sudo("rm", "-fv", str(config.PATH_CONFIG_FILE))

        # no dangling maintenance processes
        self.runner(["pkill", "-f", r"/usr/local/bin/battery.*|/usr/local/co\.palokaj\.battery/battery.*"])
        return 0

    def logs(self, lines: int) -> int:
        self.echo("👾 Battery CLI logs:\n")
        self.echo("".join(tail(self.paths.log_file, lines)).rstrip())
        self.echo("\n🖥️  Battery GUI logs:\n")
        self.echo("".join(tail(self.paths.gui_log_file, lines)).rstrip())
        self.echo("\n📁 Config folder details:\n")
        try:
            for entry in sorted(self.paths.config_folder.iterdir()):
                st = entry.lstat()
                self.echo(f"{st.st_size:>10}  {entry.name}")
        except FileNotFoundError:
            self.echo(f"{self.paths.config_folder} does not exist")
        self.echo("\n⚙️  Battery data:\n")
        self.echo(self.supervisor.status())
        self.echo(config.VERSION)
        return 0

    def dispatch(self, args, parser: argparse.ArgumentParser) -> int:
        action = args.action
        if action is None or action == "help":
            self.echo(parser.format_help())
            return 0
        if action == "version":
            self.echo(config.VERSION)
            return 0
        if action in USER_ONLY_ACTIONS:
            self.refuse_root(action)
        if action == "status":
            self.echo(self.supervisor.status())
            return 0
        if action == "status_csv":
            self.echo(self.supervisor.status_csv())
            return 0
        if action == "maintain":
            return self.supervisor.maintain(args.setting, args.subsetting, force_discharge=args.force_discharge)
        if action == "maintain_synchronous":
            return self.stoppable().run_loop(args.setting, args.subsetting, force_discharge=args.force_discharge)
        if action == "charge":
            return self.stoppable().charge(args.level)
        if action == "discharge":
            return self.stoppable().discharge(args.level)
        if action == "calibrate":
            return self.stoppable().calibrate()
        if action == "charging":
            return self.supervisor.charging(args.setting)
        if action == "adapter":
            return self.supervisor.adapter(args.setting)
        if action == "update":
            return self.updater().update(silent=args.mode == "silent")
        if action == "update_silent":
            return self.updater().update_silent(is_enabled=args.mode == "is_enabled")
        if action == "reinstall":
            return self.updater().reinstall(silent=args.mode == "silent")
        if action == "uninstall":
            return self.uninstall(silent=args.mode == "silent")
        if action == "visudo":
            return self.visudo()
        if action == "create_daemon":
            self.agent.create()
            return 0
        if action == "disable_daemon":
            self.agent.disable()
            return 0
        if action == "remove_daemon":
            self.agent.remove()
            return 0
        if action == "logs":
            return self.logs(args.lines)
        raise ValidationError(f"unknown command {action}")


def housekeeping(euid: int, runner: Runner = run_command) -> Paths:
    """Resolve the user's paths, prepare the config folder and trim the log.

    As root, also reconcile ownership of the whole installation for the
    unprivileged user; failing to determine that user is fatal (exit 11).
    """
    if euid == 0:
        username = assert_unprivileged_user(determine_unprivileged_user())
        paths = Paths.for_user(username)
    else:
        username = None
        paths = Paths.for_home()
    paths.config_folder.mkdir(parents=True, exist_ok=True)
    paths.log_file.touch(exist_ok=True)
    trim_logfile(paths.log_file)
    if username is not None:
        InstallationAuditor().fixup(username, paths)
    return paths


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        euid = os.geteuid()
        paths = housekeeping(euid)
        # the detached loop's stdout already is the log file
        setup_logging(paths.log_file, verbose=args.verbose, to_file=args.action != "maintain_synchronous")
        return Application(paths, euid=euid).dispatch(args, parser)
    except BatteryError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
