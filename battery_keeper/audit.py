# Battery Keeper - Installation Auditor
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Owner, group and permission reconciliation for every file in the trust
# chain, plus the integrity check that gates incremental updates.
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

"""battery_keeper.audit

Rule of thumb: an unprivileged user must never be able to modify, replace or
inject anything that runs with root privileges. Concretely

- the binaries folder, the `battery` and `smc` binaries, the sudoers folder
  and the sudoers file are owned by root:wheel and not writable by anyone
  else;
- the per-user config folder, pid, log and tracker files and the launch
  agent are owned by the unprivileged user.

`InstallationAuditor.fixup` reconciles all of the above and is run on every
root invocation and after every update. It only calls chown/chmod when the
current facts differ, and silently skips paths that do not exist.
`InstallationAuditor.check_integrity` reports the problems that force a full
reinstall instead of an incremental update.
"""
from __future__ import annotations

import grp
import logging
import os
import pwd
import stat
from pathlib import Path
from typing import Dict, List, Mapping, NamedTuple, Optional

from . import config
from .config import Paths
from .errors import UnprivilegedUserError

log = logging.getLogger(__name__)


class Ownership(NamedTuple):
    path: Path
    owner: str
    group: str
    mode: int


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def ensure_owner(path: os.PathLike | str, owner: str, group: str) -> bool:
    """chown `path` (without following symlinks) when owner/group differ.

    Returns True when a change was made, False when nothing was needed or the
    path does not exist.
    """
    path = Path(path)
    try:
        st = path.lstat()
    except FileNotFoundError:
        return False
    if _owner_name(st.st_uid) == owner and _group_name(st.st_gid) == group:
        return False
    uid = pwd.getpwnam(owner).pw_uid
    gid = grp.getgrnam(group).gr_gid
    log.debug("chown %s:%s %s", owner, group, path)
    os.lchown(path, uid, gid)
    return True


def ensure_owner_mode(path: os.PathLike | str, owner: str, group: str, mode: int) -> bool:
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        return False
    changed = ensure_owner(path, owner, group)
    st = path.lstat()
    if stat.S_ISLNK(st.st_mode):
        # chmod would follow the link; ownership of the link itself is enough
        return changed
    if stat.S_IMODE(st.st_mode) != mode:
        log.debug("chmod %o %s", mode, path)
        os.chmod(path, mode)
        changed = True
    return changed


def determine_unprivileged_user(candidate: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """Best-effort name of the user that owns this installation.

    Tries, in order: the explicit candidate, SUDO_USER, USER, the basename of a
    /Users/<name> HOME and finally the login name. Returns "" on failure.
    """
    env = os.environ if environ is None else environ
    username = candidate or ""
    if username == config.ROOT_USER:
        log.warning("argument user is root, trying to recover")
        username = ""
    sudo_user = env.get("SUDO_USER", "")
    if not username and sudo_user and sudo_user != config.ROOT_USER:
        username = sudo_user
    user = env.get("USER", "")
    if not username and user and user != config.ROOT_USER:
        username = user
    home = env.get("HOME", "")
    if not username and home.startswith("/Users/"):
        username = os.path.basename(home.rstrip("/"))
    if not username:
        log.warning("unable to determine unprivileged user; falling back to login name")
        try:
            username = os.getlogin()
        except OSError:
            username = ""
    return username


def assert_unprivileged_user(username: str) -> str:
    if not username or username == config.ROOT_USER:
        raise UnprivilegedUserError("failed to determine unprivileged user")
    return username


class InstallationAuditor:
    """Reconcile and verify the installation's ownership facts."""

    def __init__(self, root_owner: str = config.ROOT_USER, root_group: str = config.ROOT_GROUP,
                 user_group: str = config.USER_GROUP, bin_folder: Path = config.BIN_FOLDER,
                 battery_binary: Path = config.BATTERY_BINARY, smc_binary: Path = config.SMC_BINARY,
                 sudoers_folder: Path = config.SUDOERS_FOLDER, sudoers_file: Path = config.SUDOERS_FILE):
        self.root_owner = root_owner
        self.root_group = root_group
        self.user_group = user_group
        self.bin_folder = Path(bin_folder)
        self.battery_binary = Path(battery_binary)
        self.smc_binary = Path(smc_binary)
        self.sudoers_folder = Path(sudoers_folder)
        self.sudoers_file = Path(sudoers_file)

    def trust_chain(self, username: str, paths: Optional[Paths] = None) -> List[Ownership]:
        paths = paths or Paths.for_user(username)
        user, group = username, self.user_group
        root, wheel = self.root_owner, self.root_group
        return [
            Ownership(paths.launch_agent.parent, user, group, 0o755),
            Ownership(paths.launch_agent, user, group, 0o644),
            Ownership(paths.config_folder, user, group, 0o755),
            Ownership(paths.pid_file, user, group, 0o644),
            Ownership(paths.log_file, user, group, 0o644),
            Ownership(paths.percentage_file, user, group, 0o644),
            Ownership(paths.voltage_file, user, group, 0o644),
            Ownership(paths.calibrate_pid_file, user, group, 0o644),
            Ownership(self.sudoers_folder, root, wheel, 0o755),
            Ownership(self.sudoers_file, root, wheel, 0o440),
            Ownership(self.bin_folder, root, wheel, 0o755),
            Ownership(self.battery_binary, root, wheel, 0o755),
            Ownership(self.smc_binary, root, wheel, 0o755),
        ]

    def fixup(self, username: str, paths: Optional[Paths] = None) -> List[Path]:
        """Apply the trust chain; returns the paths that had to be changed."""
        changed = []
        for entry in self.trust_chain(username, paths):
            try:
                if ensure_owner_mode(entry.path, entry.owner, entry.group, entry.mode):
                    changed.append(entry.path)
            except (OSError, KeyError) as exc:
                log.warning("could not reconcile %s: %s", entry.path, exc)
        if changed:
            log.info("fixed ownership/permissions of %d path(s)", len(changed))
        return changed

    def check_integrity(self) -> List[str]:
        """Return a list of problems; an empty list means the install is trusted."""
        problems: List[str] = []
        for path in (self.bin_folder, self.battery_binary, self.smc_binary):
            if path.is_symlink():
                problems.append(f"{path} is a symlink")
                continue
            try:
                st = path.lstat()
            except FileNotFoundError:
                problems.append(f"{path} is missing")
                continue
            if _owner_name(st.st_uid) != self.root_owner:
                problems.append(f"{path} is not owned by {self.root_owner}")
            if st.st_mode & (stat.S_IWGRP | stat.S_IWOTH):
                problems.append(f"{path} is writable by group or others")
        return problems

    def describe(self, username: str, paths: Optional[Paths] = None) -> Dict[str, str]:
        """Current owner:group mode of each trust chain entry (for `logs`)."""
        out: Dict[str, str] = {}
        for entry in self.trust_chain(username, paths):
            try:
                st = entry.path.lstat()
            except FileNotFoundError:
                out[str(entry.path)] = "missing"
                continue
            out[str(entry.path)] = f"{_owner_name(st.st_uid)}:{_group_name(st.st_gid)} {stat.S_IMODE(st.st_mode):o}"
        return out
