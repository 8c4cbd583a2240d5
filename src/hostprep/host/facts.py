# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/host/facts.py

from __future__ import annotations

import getpass
import logging
import os
import re
import shutil
import socket
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import paramiko
import yaml

from hostprep.errors import ActionFailed
from hostprep.execution.runner import CommandRunner
from .models import UserIdentity

log = logging.getLogger("hostprep")

SNAP_MODE_FILE = "/var/snap/maas/common/snap_mode"
REGIOND_CONF = "/var/snap/maas/current/regiond.conf"


class HostFacts:
    """
    Read-only discovery of the local host.

    Static facts (OS family, FQDN, PostgreSQL major, invoking user) are read
    once and cached for the run. State probes (user exists, service active,
    package installed) are re-read on every call because pre- and
    postconditions depend on them.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        environ: Optional[Mapping[str, str]] = None,
        os_release: str = "/etc/os-release",
        snap_mode_file: str = SNAP_MODE_FILE,
        regiond_conf: str = REGIOND_CONF,
        postgres_port: int = 5432,
    ):
        self.runner = runner
        self.environ = environ if environ is not None else os.environ
        self.os_release = Path(os_release)
        self.snap_mode_file = Path(snap_mode_file)
        self.regiond_conf = Path(regiond_conf)
        self.postgres_port = postgres_port
        self._cache: Dict[str, object] = {}

    def _cached(self, key: str, fn):
        if key not in self._cache:
            self._cache[key] = fn()
        return self._cache[key]

    def _query(self, argv: List[str], **kwargs) -> Optional[subprocess.CompletedProcess]:
        """Read-only query; None when the tool itself is missing or hangs."""
        try:
            return self.runner.run(argv, check=False, mutating=False, **kwargs)
        except ActionFailed as e:
            log.debug("query %s unavailable: %s", argv[0], e)
            return None

    # ------------------ identity ------------------

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def invoking_user(self) -> str:
        """The non-privileged user behind sudo, or the current user."""
        def _read():
            sudo_user = self.environ.get("SUDO_USER")
            if sudo_user and sudo_user != "root":
                return sudo_user
            return getpass.getuser()
        return self._cached("invoking_user", _read)

    def lookup_user(self, name: str) -> Optional[UserIdentity]:
        r = self._query(["getent", "passwd", name])
        if r is None or r.returncode != 0 or not r.stdout.strip():
            return None
        return UserIdentity.from_passwd(r.stdout.splitlines()[0])

    def group_members(self, group: str) -> List[str]:
        r = self._query(["getent", "group", group])
        if r is None or r.returncode != 0 or not r.stdout.strip():
            return []
        members = r.stdout.strip().split(":")[-1]
        return [m for m in members.split(",") if m]

    # ------------------ tooling & packages ------------------

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None

    def package_installed(self, name: str) -> bool:
        r = self._query(["dpkg-query", "-W", "-f=${Status}", name])
        return r is not None and r.returncode == 0 and "install ok installed" in r.stdout

    def missing_packages(self, names) -> List[str]:
        return [n for n in sorted(set(names)) if not self.package_installed(n)]

    def package_available(self, name: str) -> bool:
        return self.runner.succeeds(["apt-cache", "show", name])

    def snap_installed(self, name: str) -> bool:
        return self.runner.succeeds(["snap", "list", name])

    # ------------------ services ------------------

    def service_active(self, name: str) -> bool:
        return self.runner.succeeds(["systemctl", "is-active", "--quiet", name])

    def service_enabled(self, name: str) -> bool:
        return self.runner.succeeds(["systemctl", "is-enabled", "--quiet", name])

    def ssh_banner(self, host: str = "127.0.0.1", port: int = 22, timeout: float = 10.0) -> Optional[str]:
        """
        Open an SSH transport (no authentication) and return the server's
        version banner, or None when nothing answers with an SSH protocol.
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            log.debug("ssh probe %s:%s failed: %s", host, port, e)
            return None
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=timeout)
            return transport.remote_version
        except (paramiko.SSHException, EOFError, OSError) as e:
            log.debug("ssh handshake with %s:%s failed: %s", host, port, e)
            return None
        finally:
            transport.close()

    # ------------------ host identity ------------------

    def fqdn(self) -> str:
        def _read():
            for argv in (["hostname", "-f"], ["hostname"]):
                r = self._query(argv)
                if r is not None and r.returncode == 0 and r.stdout.strip():
                    return r.stdout.strip()
            return socket.getfqdn()
        return self._cached("fqdn", _read)

    def os_family(self) -> str:
        """ID_LIKE (or ID) from os-release, e.g. 'debian'."""
        def _read():
            if not self.os_release.is_file():
                return "unknown"
            values = {}
            for line in self.os_release.read_text().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    values[k.strip()] = v.strip().strip('"')
            return (values.get("ID_LIKE") or values.get("ID") or "unknown").split()[0]
        return self._cached("os_family", _read)

    # ------------------ PostgreSQL ------------------

    def postgres_major(self) -> Optional[str]:
        # not cached: unknown until the package is installed
        r = self._query(["psql", "-V"])
        if r is None or r.returncode != 0:
            return None
        # psql (PostgreSQL) 16.2 (Ubuntu 16.2-1ubuntu4)
        m = re.search(r"\)\s+(\d+)", r.stdout)
        return m.group(1) if m else None

    def _psql_scalar(self, sql: str) -> str:
        r = self._query(
            ["runuser", "-u", "postgres", "--",
             "psql", "-X", "-p", str(self.postgres_port), "-tAc", sql],
        )
        return r.stdout.strip() if r is not None and r.returncode == 0 else ""

    def pg_role_exists(self, role: str) -> bool:
        return self._psql_scalar(f"SELECT 1 FROM pg_roles WHERE rolname = '{role}'") == "1"

    def pg_database_exists(self, db: str) -> bool:
        return self._psql_scalar(f"SELECT 1 FROM pg_database WHERE datname = '{db}'") == "1"

    # ------------------ MAAS ------------------

    def maas_initialised(self) -> bool:
        try:
            return self.snap_mode_file.read_text().strip() not in ("", "none")
        except OSError:
            return False

    def maas_admin_exists(self, username: str) -> bool:
        # stdout is the user's API key
        r = self._query(["maas", "apikey", "--username", username], log_output=False)
        return r is not None and r.returncode == 0

    def maas_database_password(self) -> Optional[str]:
        """``database_pass`` from an initialised region's regiond.conf."""
        try:
            data = yaml.safe_load(self.regiond_conf.read_text())
        except (OSError, yaml.YAMLError):
            return None
        if not isinstance(data, dict) or not data.get("database_pass"):
            return None
        return str(data["database_pass"])
