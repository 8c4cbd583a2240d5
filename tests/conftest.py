import logging
import os
import re
import subprocess
from pathlib import Path
from urllib.parse import unquote, urlparse

import pytest
import requests
import yaml

from hostprep.config.models import HostPrepConfig
from hostprep.credentials.sink import CredentialSink
from hostprep.errors import CommandFailed
from hostprep.execution.runner import CommandRunner
from hostprep.host.actions import HostActions
from hostprep.host.facts import HostFacts
from hostprep.host.models import UserIdentity
from hostprep.logging.log import LOGGER_NAME
from hostprep.playbooks.base import Toolkit
from hostprep.secrets.provider import SecretProvider

log = logging.getLogger(LOGGER_NAME)


def account_ids():
    """uid/gid for fake non-root accounts; nobody:nogroup when the suite runs as root."""
    if os.getuid() == 0:
        return 65534, 65534
    return os.getuid(), os.getgid()


class FakeHost:
    """
    In-memory Debian-like host. Users, packages, services, snaps and the
    PostgreSQL catalogue live here; files live under ``root`` on disk.
    Non-root accounts map to the test process uid/gid so chown is a no-op,
    or to nobody:nogroup when running as root.
    """

    def __init__(self, root: Path):
        self.root = root
        self.uid, self.gid = account_ids()
        self.users = {"root": UserIdentity("root", 0, 0, "/root")}
        self.groups = {"sudo": []}
        self.packages = set()
        self.available = {"sudo", "openssh-server", "python3", "python3-apt",
                          "ca-certificates", "snapd", "postgresql-16", "postgresql"}
        self.services = {}
        self.broken_services = set()
        self.snaps = set()
        self.roles = set()
        self.databases = set()
        self.maas_admins = set()
        self.postgres_major = None
        self.visudo_rejects = False
        self.failing = set()
        self.hostname = "node1.example.test"
        self.sql = []

        self.pg_conf_root = root / "etc" / "postgresql"
        self.snap_mode_file = root / "var" / "snap_mode"
        self.regiond_conf = root / "var" / "regiond.conf"
        self.sshd_config = root / "etc" / "ssh" / "sshd_config"
        self.sudoers_dir = root / "etc" / "sudoers.d"
        self.os_release = root / "etc" / "os-release"
        self.sshd_config.parent.mkdir(parents=True)
        self.os_release.write_text('ID=ubuntu\nID_LIKE=debian\nVERSION_ID="24.04"\n')
        self.sshd_config.write_text("Port 22\n#PubkeyAuthentication yes\n")
        self.snap_mode_file.parent.mkdir(parents=True)

    # ------------------ setup helpers ------------------

    def add_user(self, name: str) -> UserIdentity:
        home = self.root / "home" / name
        home.mkdir(parents=True, exist_ok=True)
        ident = UserIdentity(name, self.uid, self.gid, str(home))
        self.users[name] = ident
        return ident

    def start(self, service: str) -> None:
        self.services[service] = {"enabled": True, "active": service not in self.broken_services}

    def install(self, *names: str) -> None:
        for name in names:
            self.packages.add(name)
            if name == "openssh-server":
                self.start("ssh")
            if name.startswith("postgresql"):
                self.postgres_major = "16"
                conf = self.pg_conf_root / "16" / "main"
                conf.mkdir(parents=True, exist_ok=True)
                (conf / "postgresql.conf").write_text(
                    "port = 5432\n#listen_addresses = 'localhost'\t# what IP address(es) to listen on;\n"
                )
                (conf / "pg_hba.conf").write_text("local   all   postgres   peer\n")
                self.start("postgresql")

    # ------------------ command dispatch ------------------

    def handle(self, argv, input=None):
        name, args = argv[0], argv[1:]
        handler = getattr(self, "_" + name.replace("-", "_"), None)
        if handler is None:
            return 127, "", f"{name}: command not found"
        return handler(args, input)

    def _getent(self, args, _input):
        db, key = args
        if db == "passwd" and key in self.users:
            u = self.users[key]
            return 0, f"{u.name}:x:{u.uid}:{u.gid}::{u.home}:{u.shell}\n", ""
        if db == "group" and key in self.groups:
            return 0, f"{key}:x:27:{','.join(self.groups[key])}\n", ""
        return 2, "", ""

    def _adduser(self, args, _input):
        self.add_user(args[-1])
        return 0, "", ""

    def _usermod(self, args, _input):
        _, group, user = args
        self.groups.setdefault(group, []).append(user)
        return 0, "", ""

    def _dpkg_query(self, args, _input):
        if args[-1] in self.packages:
            return 0, "install ok installed", ""
        return 1, "", f"dpkg-query: no packages found matching {args[-1]}"

    def _apt_cache(self, args, _input):
        return (0, f"Package: {args[-1]}\n", "") if args[-1] in self.available else (100, "", "")

    def _apt_get(self, args, _input):
        if args[0] == "install":
            wanted = [a for a in args[1:] if not a.startswith("-")]
            unknown = [p for p in wanted if p not in self.available]
            if unknown:
                return 100, "", f"E: Unable to locate package {unknown[0]}"
            self.install(*wanted)
        return 0, "", ""

    def _systemctl(self, args, _input):
        verb, unit = args[0], [a for a in args[1:] if not a.startswith("-")][0]
        state = self.services.setdefault(unit, {"enabled": False, "active": False})
        if verb == "enable":
            state["enabled"] = True
        elif verb == "restart":
            state["active"] = unit not in self.broken_services
        elif verb == "is-active":
            return (0 if state["active"] else 3), "", ""
        elif verb == "is-enabled":
            return (0 if state["enabled"] else 1), "", ""
        elif verb == "status":
            return 3, f"{unit}.service - failed\n", ""
        return 0, "", ""

    def _journalctl(self, args, _input):
        return 0, "Oct 18 10:00:00 node1 unit[1]: fatal: bad config\n", ""

    def _visudo(self, args, _input):
        if self.visudo_rejects:
            return 1, "", f"{args[-1]}: syntax error near line 1"
        return 0, f"{args[-1]}: parsed OK\n", ""

    def _snap(self, args, _input):
        if args[0] == "list":
            return (0, f"{args[-1]} 3.6\n", "") if args[-1] in self.snaps else (1, "", "")
        if args[0] == "install":
            self.snaps.add(args[-1])
        return 0, "", ""

    def _psql(self, args, _input):
        if self.postgres_major is None:
            return 127, "", "psql: command not found"
        return 0, f"psql (PostgreSQL) {self.postgres_major}.2 (Ubuntu 16.2-1ubuntu4)\n", ""

    def _hostname(self, args, _input):
        return 0, self.hostname + "\n", ""

    def _runuser(self, args, input):
        # runuser -u postgres -- psql ...
        if self.postgres_major is None:
            return 1, "", "runuser: failed to execute psql: No such file or directory"
        if not self.services.get("postgresql", {}).get("active"):
            return 2, "", "psql: error: connection to server failed"
        if "-tAc" in args:
            query = args[args.index("-tAc") + 1]
            m = re.search(r"rolname = '(\w+)'", query)
            if m:
                return 0, ("1\n" if m.group(1) in self.roles else ""), ""
            m = re.search(r"datname = '(\w+)'", query)
            if m:
                return 0, ("1\n" if m.group(1) in self.databases else ""), ""
            return 0, "", ""
        self.sql.append(input)
        m = re.match(r"(CREATE|ALTER) ROLE (\w+)", input)
        if m:
            self.roles.add(m.group(2))
        m = re.match(r"CREATE DATABASE (\w+)", input)
        if m:
            self.databases.add(m.group(1))
        return 0, "", ""

    def _maas(self, args, _input):
        if "maas" not in self.snaps:
            return 127, "", "maas: command not found"
        if args[0] in self.failing:
            return 1, "", f"maas {args[0]}: internal error"
        if args[0] == "init":
            uri = urlparse(args[args.index("--database-uri") + 1])
            self.snap_mode_file.write_text("region+rack\n")
            self.regiond_conf.write_text(yaml.safe_dump({
                "database_name": uri.path.lstrip("/"),
                "database_user": uri.username,
                "database_pass": unquote(uri.password),
                "maas_url": args[args.index("--maas-url") + 1],
            }))
        elif args[0] == "createadmin":
            self.maas_admins.add(args[args.index("--username") + 1])
        elif args[0] == "apikey":
            user = args[args.index("--username") + 1]
            if user not in self.maas_admins:
                return 1, "", "user does not exist"
            return 0, "abc:def:ghi\n", ""
        return 0, "", ""


class FakeRunner(CommandRunner):
    """CommandRunner that dispatches argv to a FakeHost instead of the OS."""

    def __init__(self, host: FakeHost, dry_run: bool = False):
        super().__init__(dry_run=dry_run, label="fake")
        self.host = host
        self.calls = []
        self.mutations = []

    def run(self, cmd, *, check=True, input=None, env=None, timeout=None,
            mutating=True, log_output=True):
        argv = [str(c) for c in cmd]
        if self.dry_run and mutating:
            return subprocess.CompletedProcess(argv, 0, "", "")
        self.calls.append(argv)
        if mutating:
            self.mutations.append(argv)
        # same records the real runner emits, so redaction is exercised
        log.debug("[fake] $ %s", " ".join(argv))
        rc, out, err = self.host.handle(argv, input)
        if out and log_output:
            log.debug("[fake][stdout] %s", out.rstrip())
        if err:
            log.debug("[fake][stderr] %s", err.rstrip())
        if check and rc != 0:
            raise CommandFailed(argv, rc, out, err)
        return subprocess.CompletedProcess(argv, rc, out, err)


class FakeFacts(HostFacts):
    def __init__(self, runner, host: FakeHost, *, root: bool = True, **kwargs):
        super().__init__(runner, **kwargs)
        self.host = host
        self.root = root

    def is_root(self) -> bool:
        return self.root

    def has_command(self, name: str) -> bool:
        return name in ("apt-get", "systemctl", "visudo", "snap")


class FakeResponse:
    def __init__(self, status_code=200, content=b""):
        self.status_code = status_code
        self.content = content


class FakeSession:
    """Stands in for requests.Session; records every GET."""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, b"ssh-rsa AAAAB3NzaFAKE ops@laptop\n")
        self.error = error
        self.requests = []

    def get(self, url, timeout=None):
        self.requests.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def make_toolkit(host: FakeHost, cfg: HostPrepConfig, *, dry_run=False, root=True,
                 session=None, environ=None) -> Toolkit:
    runner = FakeRunner(host, dry_run=dry_run)
    facts = FakeFacts(
        runner,
        host,
        root=root,
        environ=environ if environ is not None else {"SUDO_USER": "ops"},
        os_release=str(host.os_release),
        snap_mode_file=str(host.snap_mode_file),
        regiond_conf=str(host.regiond_conf),
    )
    actions = HostActions(runner, facts, service_wait_seconds=3, service_poll_seconds=1,
                          sleep=lambda _s: None)
    return Toolkit(
        config=cfg,
        runner=runner,
        facts=facts,
        actions=actions,
        secrets=SecretProvider(session=session or FakeSession()),
        sink=CredentialSink(),
    )


@pytest.fixture
def host(tmp_path: Path) -> FakeHost:
    return FakeHost(tmp_path)


@pytest.fixture(autouse=True)
def reset_hostprep_logger():
    """init_logging() detaches the package logger from the root; undo it."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        h.close()
        logger.removeHandler(h)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def broken_network():
    return FakeSession(error=requests.ConnectionError("connection refused"))
