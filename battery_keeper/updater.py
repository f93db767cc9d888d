# Battery Keeper - Self Update
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Version check, installation integrity gate and the update, silent update
# and reinstall flows.
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

"""battery_keeper.updater

Flows
- update (user): the installation must pass the integrity check (root-owned,
  non-symlink binaries folder and binaries, and a passwordless
  `update_silent is_enabled`). If it does not, nothing about the current
  install is trusted: a full reinstall is forced and maintenance is
  restarted afterwards regardless of version. Otherwise the silent update is
  run elevated and maintenance is restarted only if the version changed.
- update_silent (root): download and run the update script when the remote
  script no longer carries our version string and let the new binary refresh
  the sudoers policy (`battery visudo`); without an update, refresh it in
  process. Either way, reconcile ownership.
- reinstall: download and run the setup script.

Downloads use `requests`; the scripts are run with `bash` reading from stdin,
never through a shell string.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional

import requests

from . import config
from .audit import InstallationAuditor, assert_unprivileged_user, determine_unprivileged_user
from .commands import Runner, run_command
from .errors import NetworkError, PrivilegeError
from .privilege import ElevatedCommand, PolicyInstaller, run_elevated

log = logging.getLogger(__name__)

HTTP_TIMEOUT = 15.0


def is_reachable(url: str = config.URL_BATTERY_SCRIPT, session=requests) -> bool:
    try:
        resp = session.head(url, timeout=HTTP_TIMEOUT, allow_redirects=True)
    except requests.RequestException as exc:
        log.debug("HEAD %s failed: %s", url, exc)
        return False
    return resp.status_code < 400


def fetch_script(url: str, session=requests) -> str:
    try:
        resp = session.get(url, timeout=HTTP_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError(f"failed to download {url}: {exc}") from exc
    return resp.text


def is_latest_version_installed(version: str = config.VERSION, session=requests) -> bool:
    """True when the published script carries `version`, or cannot be reached."""
    if not is_reachable(config.URL_BATTERY_SCRIPT, session=session):
        return True
    try:
        remote = fetch_script(config.URL_BATTERY_SCRIPT, session=session)
    except NetworkError as exc:
        log.debug("version check skipped: %s", exc)
        return True
    return version in remote


class Updater:
    def __init__(self, runner: Runner = run_command, auditor: Optional[InstallationAuditor] = None,
                 installer: Optional[PolicyInstaller] = None, session=requests,
                 battery_binary: Path = config.BATTERY_BINARY, euid: Optional[int] = None,
                 confirm: Callable[[str], object] = input, echo: Callable[[str], None] = print):
        self.runner = runner
        self.auditor = auditor or InstallationAuditor()
        self.installer = installer or PolicyInstaller(runner=runner)
        self.session = session
        self.battery_binary = Path(battery_binary)
        self.euid = euid
        self.confirm = confirm
        self.echo = echo

    def _euid(self) -> int:
        return os.geteuid() if self.euid is None else self.euid

    def _run_script(self, url: str, *args: str) -> None:
        script = fetch_script(url, session=self.session)
        res = self.runner(["bash", "-s", "--", *args], input=script, timeout=None)
        if res.stdout:
            self.echo(res.stdout.rstrip())
        if res.returncode != 0:
            raise NetworkError(f"script from {url} failed with exit code {res.returncode}: {(res.stderr or '').strip()}")

    def installed_version(self) -> str:
        res = self.runner([str(self.battery_binary), "version"])
        return res.stdout.strip() if res.returncode == 0 else ""

    def integrity_problems(self):
        problems = self.auditor.check_integrity()
        res = run_elevated(ElevatedCommand.UPDATE_SILENT_IS_ENABLED, runner=self.runner, euid=self._euid())
        if res.returncode != 0:
            problems.append("passwordless update_silent is not enabled")
        return problems

    def update(self, silent: bool = False) -> int:
        if self._euid() == 0:
            raise PrivilegeError("battery update should not be executed with root privileges; try running without sudo")
        if silent:
            # older menu bar apps call this and update themselves
            return 0
        if not is_reachable(config.URL_BATTERY_SCRIPT, session=self.session):
            raise NetworkError("Can't check for updates: no internet connection (or GitHub unreachable).")

        problems = self.integrity_problems()
        if problems:
            for problem in problems:
                log.warning("integrity: %s", problem)
            self.echo("‼️ The battery installation seems to be broken. Forcing reinstall...\n")
            version_before = "0"
            self.reinstall(silent=True)
        else:
            version_before = self.installed_version()
            res = run_elevated(ElevatedCommand.UPDATE_SILENT, runner=self.runner, euid=self._euid())
            if res.stdout:
                self.echo(res.stdout.rstrip())
            if res.returncode != 0:
                log.error("update_silent failed: %s", (res.stderr or "").strip())
                return 1

        if os.access(self.battery_binary, os.X_OK) and self.installed_version() != version_before:
            self.echo("\n🛠️  Restarting 'battery maintain' ...")
            self.runner([str(self.battery_binary), "maintain", "recover"])
        return 0

    def update_silent(self, is_enabled: bool = False) -> int:
        if self._euid() != 0:
            raise PrivilegeError("battery update_silent must be executed with root privileges")
        if is_enabled:
            return 0

        rc = 0
        if not is_latest_version_installed(config.VERSION, session=self.session):
            self._run_script(config.URL_UPDATE_SCRIPT)
            self.echo("✅ battery background script was updated to the latest version.")
            # the freshly installed binary renders its own allowlist
            res = self.runner([str(self.battery_binary), "visudo"])
            if res.stdout:
                self.echo(res.stdout.rstrip())
            if res.returncode != 0:
                log.error("battery visudo failed after the update: %s", (res.stderr or "").strip())
                rc = 1
        else:
            self.echo("☑️  No updates found")
            self.installer.install()

        username = assert_unprivileged_user(determine_unprivileged_user(""))
        self.auditor.fixup(username)
        return rc

    def reinstall(self, silent: bool = False) -> int:
        self.echo(f"This will download and run {config.URL_SETUP_SCRIPT}")
        if not silent:
            self.confirm("Press any key to continue")
        self._run_script(config.URL_SETUP_SCRIPT)
        return 0
