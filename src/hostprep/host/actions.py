# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/host/actions.py

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from hostprep.errors import (
    ActionFailed,
    CommandFailed,
    ConfigError,
    ServiceFailure,
    VerificationFailed,
)
from hostprep.execution.runner import CommandRunner
from .facts import HostFacts
from .models import ServiceState, UserIdentity

log = logging.getLogger("hostprep")

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def path_matches(
    path: str | Path,
    mode: int,
    owner: Optional[UserIdentity] = None,
    *,
    directory: bool = False,
) -> bool:
    """True when ``path`` exists with exactly ``mode`` (and owner, if given)."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    if directory != stat.S_ISDIR(st.st_mode):
        return False
    if stat.S_IMODE(st.st_mode) != mode:
        return False
    if owner is not None and (st.st_uid, st.st_gid) != (owner.uid, owner.gid):
        return False
    return True


def file_has_line(path: str | Path, line: str, pattern: Optional[str] = None) -> bool:
    """Exact line match, or a multiline regex search when ``pattern`` is given."""
    try:
        text = Path(path).read_text()
    except FileNotFoundError:
        return False
    if pattern is not None:
        return re.search(pattern, text, re.MULTILINE) is not None
    return line in text.splitlines()


def sudoers_rule(user: str) -> str:
    return f"{user} ALL=(ALL) NOPASSWD: ALL\n"


class HostActions:
    """
    Idempotent mutations of the local host.

    Each ``ensure_*`` call leaves the host in the requested state and is a
    no-op ("already satisfied") when it already is. OS commands go through the
    injected CommandRunner; file changes are made in-process.
    """

    def __init__(
        self,
        runner: CommandRunner,
        facts: HostFacts,
        *,
        service_wait_seconds: float = 30.0,
        service_poll_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.facts = facts
        self.service_wait_seconds = service_wait_seconds
        self.service_poll_seconds = service_poll_seconds
        self._sleep = sleep

    # ------------------ users & groups ------------------

    def ensure_user(self, name: str, shell: str = "/bin/bash") -> UserIdentity:
        existing = self.facts.lookup_user(name)
        if existing is not None:
            log.info("User '%s' already exists.", name)
            return existing

        log.info("Creating user '%s'...", name)
        self.runner.run(
            ["adduser", "--disabled-password", "--gecos", "", "--shell", shell, name]
        )
        created = self.facts.lookup_user(name)
        if created is None:
            raise VerificationFailed(f"user '{name}' does not exist after adduser")
        return created

    def ensure_group_membership(self, user: str, group: str) -> bool:
        if user in self.facts.group_members(group):
            log.info("'%s' is already a member of '%s'.", user, group)
            return False
        log.info("Adding '%s' to '%s' group...", user, group)
        self.runner.run(["usermod", "-aG", group, user])
        return True

    # ------------------ sudoers ------------------

    def ensure_sudoers_dropin(self, user: str, path: str | Path) -> Path:
        """
        Install a NOPASSWD rule for ``user`` as a 0440 drop-in.

        The rule is written to a dot-file next to the target (sudo ignores
        names containing a dot), checked with ``visudo -cf`` and only then
        renamed into place. A rejected rule is removed and ``ConfigError``
        raised, so no unvalidated grant is ever left in the directory.
        """
        path = Path(path)
        rule = sudoers_rule(user)
        if path_matches(path, 0o440) and path.read_text() == rule:
            log.info("Sudoers drop-in %s already in place.", path)
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.parent / f".{path.name}.tmp"
        if tmp.exists():
            tmp.unlink()
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o440)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(rule)
            os.chmod(tmp, 0o440)
            self.runner.run(["visudo", "-cf", str(tmp)])
        except CommandFailed as e:
            tmp.unlink(missing_ok=True)
            raise ConfigError(f"sudoers validation failed for {path}: {e.stderr or e}") from e
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        os.replace(tmp, path)
        log.info("Passwordless sudo configured for '%s' (%s).", user, path)
        return path

    # ------------------ packages ------------------

    def ensure_packages(self, names: Iterable[str], *, upgrade: bool = False) -> List[str]:
        """
        Install whichever of ``names`` are missing and return them.

        The package index is refreshed (and the system upgraded, when asked)
        only when something has to be installed.
        """
        missing = self.facts.missing_packages(names)
        if not missing:
            log.info("Packages already installed: %s", ", ".join(sorted(set(names))))
            return []

        log.info("Updating APT package index...")
        self.runner.run(["apt-get", "update", "-y"], env=APT_ENV)
        if upgrade:
            log.info("Upgrading system packages...")
            self.runner.run(["apt-get", "upgrade", "-y"], env=APT_ENV)
        log.info("Installing packages: %s", ", ".join(missing))
        self.runner.run(["apt-get", "install", "-y", *missing], env=APT_ENV)
        return missing

    def ensure_snap(self, name: str, channel: str) -> bool:
        if self.facts.snap_installed(name):
            log.info("Snap '%s' already installed.", name)
            return False
        log.info("Installing snap '%s' (channel %s)...", name, channel)
        self.runner.run(["snap", "install", f"--channel={channel}", name])
        return True

    # ------------------ services ------------------

    def ensure_service_enabled_and_running(self, name: str) -> ServiceState:
        log.info("Enabling and restarting service '%s'...", name)
        self.runner.run(["systemctl", "enable", name])
        self.runner.run(["systemctl", "restart", name])

        polls = max(1, int(self.service_wait_seconds / max(self.service_poll_seconds, 0.001)))
        for attempt in range(polls + 1):
            if self.facts.service_active(name):
                log.info("Service '%s' is active.", name)
                return ServiceState.ACTIVE
            if attempt < polls:
                self._sleep(self.service_poll_seconds)

        log.warning("Service '%s' is not active. Capturing diagnostics...", name)
        raise ServiceFailure(name, self.service_diagnostics(name))

    def service_diagnostics(self, name: str) -> str:
        """``systemctl status`` and the journal tail; collection never fails."""
        chunks = []
        for argv in (
            ["systemctl", "status", name, "--no-pager"],
            ["journalctl", "-u", name, "--no-pager", "-n", "100"],
        ):
            try:
                r = self.runner.run(argv, check=False, mutating=False)
                chunks.append(f"$ {' '.join(argv)}\n{r.stdout}{r.stderr}")
            except ActionFailed as e:
                chunks.append(f"$ {' '.join(argv)}\n{e}")
        return "\n".join(chunks)

    # ------------------ files ------------------

    def _apply_mode_owner(self, path: Path, mode: int, owner: Optional[UserIdentity]) -> bool:
        changed = False
        st = os.stat(path)
        if stat.S_IMODE(st.st_mode) != mode:
            os.chmod(path, mode)
            changed = True
        if owner is not None and (st.st_uid, st.st_gid) != (owner.uid, owner.gid):
            os.chown(path, owner.uid, owner.gid)
            changed = True
        return changed

    def ensure_directory(self, path: str | Path, mode: int, owner: Optional[UserIdentity] = None) -> bool:
        path = Path(path)
        created = False
        if not path.is_dir():
            path.mkdir(parents=True, exist_ok=True)
            created = True
        changed = self._apply_mode_owner(path, mode, owner) or created
        if changed:
            log.info("Directory %s set to %o%s.", path, mode, f" ({owner.name})" if owner else "")
        return changed

    def ensure_file_mode(self, path: str | Path, mode: int, owner: Optional[UserIdentity] = None) -> bool:
        path = Path(path)
        if not path.is_file():
            raise ActionFailed(f"{path} does not exist")
        changed = self._apply_mode_owner(path, mode, owner)
        if changed:
            log.info("File %s set to %o%s.", path, mode, f" ({owner.name})" if owner else "")
        return changed

    def ensure_file(self, path: str | Path, mode: int, owner: Optional[UserIdentity] = None) -> bool:
        """``touch`` + ``chmod`` + ``chown``; existing content is kept."""
        path = Path(path)
        created = False
        if not path.exists():
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
            os.close(fd)
            created = True
        return self.ensure_file_mode(path, mode, owner) or created

    def append_config_line_if_absent(
        self, file: str | Path, line: str, pattern: Optional[str] = None
    ) -> bool:
        """Append ``line`` unless it (or a line matching ``pattern``) is already there."""
        file = Path(file)
        if file_has_line(file, line, pattern):
            log.info("%s already contains '%s'.", file, line)
            return False
        content = file.read_text() if file.exists() else ""
        prefix = "" if not content or content.endswith("\n") else "\n"
        with file.open("a") as f:
            f.write(f"{prefix}{line}\n")
        log.info("Appended '%s' to %s.", line, file)
        return True

    def ensure_config_setting(self, file: str | Path, pattern: str, line: str) -> bool:
        """
        Replace every line matching ``pattern`` (typically a possibly
        commented-out ``key = value``) with ``line``; append ``line`` when
        nothing matches.
        """
        file = Path(file)
        original = file.read_text()
        regex = re.compile(pattern, re.MULTILINE)
        if regex.search(original):
            updated = regex.sub(lambda _: line, original)
        else:
            prefix = "" if not original or original.endswith("\n") else "\n"
            updated = f"{original}{prefix}{line}\n"
        if updated == original:
            log.info("%s already has '%s'.", file, line)
            return False
        self._rewrite(file, updated)
        log.info("Set '%s' in %s.", line, file)
        return True

    def _rewrite(self, file: Path, text: str) -> None:
        """Atomically replace ``file`` keeping its mode and ownership."""
        st = os.stat(file)
        fd, tmp = tempfile.mkstemp(dir=file.parent, prefix=f".{file.name}.")
        try:
            os.fchmod(fd, stat.S_IMODE(st.st_mode))
            with os.fdopen(fd, "w") as f:
                f.write(text)
            if (os.getuid(), os.getgid()) != (st.st_uid, st.st_gid):
                os.chown(tmp, st.st_uid, st.st_gid)
            os.replace(tmp, file)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # ------------------ PostgreSQL ------------------

    def run_sql(self, sql: str, port: int = 5432) -> None:
        """Run SQL as the ``postgres`` OS user; the statement goes over stdin."""
        self.runner.run(
            ["runuser", "-u", "postgres", "--",
             "psql", "-X", "-v", "ON_ERROR_STOP=1", "-p", str(port), "-f", "-"],
            input=sql,
        )
