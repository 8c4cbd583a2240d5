# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/playbooks/base.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests

from hostprep.config.models import HostPrepConfig
from hostprep.credentials.sink import CredentialSink
from hostprep.engine.step import Step
from hostprep.errors import PermissionDenied, PreconditionUnmet, ValidationError
from hostprep.execution.runner import CommandRunner
from hostprep.host.actions import HostActions
from hostprep.host.facts import HostFacts
from hostprep.host.models import UserIdentity
from hostprep.secrets.models import Secret
from hostprep.secrets.provider import SecretProvider


@dataclass
class Toolkit:
    """Everything a playbook needs, built once per run from the config."""

    config: HostPrepConfig
    runner: CommandRunner
    facts: HostFacts
    actions: HostActions
    secrets: SecretProvider
    sink: CredentialSink


@dataclass
class Playbook:
    name: str
    steps: List[Step]
    secrets: List[Secret] = field(default_factory=list)
    summary: Dict[str, str] = field(default_factory=dict)
    # printed on stdout after a successful run (e.g. the public key)
    epilogue: Optional[Callable[[], str]] = None

    def wipe_secrets(self) -> None:
        for s in self.secrets:
            s.wipe()


def build_toolkit(
    cfg: HostPrepConfig,
    *,
    dry_run: bool = False,
    session: Optional[requests.Session] = None,
) -> Toolkit:
    runner = CommandRunner(dry_run=dry_run, timeout=cfg.timeouts.command_seconds)
    facts = HostFacts(runner, postgres_port=cfg.maas.postgres_port)
    actions = HostActions(
        runner,
        facts,
        service_wait_seconds=cfg.timeouts.service_wait_seconds,
        service_poll_seconds=cfg.timeouts.service_poll_seconds,
    )
    provider = SecretProvider(download_timeout=cfg.timeouts.download_seconds, session=session)
    return Toolkit(
        config=cfg,
        runner=runner,
        facts=facts,
        actions=actions,
        secrets=provider,
        sink=CredentialSink(),
    )


# ------------------ preflight helpers ------------------

def require_root(facts: HostFacts) -> None:
    if not facts.is_root():
        raise PermissionDenied("this command must be run as root (use sudo)")


APT_FAMILIES = ("debian", "ubuntu")


def require_apt_host(facts: HostFacts) -> None:
    family = facts.os_family()
    if family not in APT_FAMILIES:
        raise PreconditionUnmet(f"unsupported OS family '{family}'; a Debian or Ubuntu host is required")


def require_commands(facts: HostFacts, *names: str) -> None:
    missing = [n for n in names if not facts.has_command(n)]
    if missing:
        raise PreconditionUnmet(f"required command(s) not found: {', '.join(missing)}")


def require_user(facts: HostFacts, name: str) -> UserIdentity:
    ident = facts.lookup_user(name)
    if ident is None:
        raise ValidationError(f"user '{name}' does not exist")
    return ident


def resolve_user(facts: HostFacts, name: str) -> Callable[[], UserIdentity]:
    """Lazy lookup for users that an earlier step creates."""
    def _get() -> UserIdentity:
        return require_user(facts, name)
    return _get
