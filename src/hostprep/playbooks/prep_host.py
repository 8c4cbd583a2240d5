# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/playbooks/prep_host.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from hostprep.engine.step import Step
from hostprep.host.actions import file_has_line, path_matches, sudoers_rule
from hostprep.secrets.models import Secret
from hostprep.secrets.provider import validate_url
from .base import Playbook, Toolkit, require_apt_host, require_commands, require_root, resolve_user

log = logging.getLogger("hostprep")

NAME = "prep-host"


def preflight(tk: Toolkit) -> None:
    """Checks that must pass before anything on the host is touched."""
    require_root(tk.facts)
    require_apt_host(tk.facts)
    require_commands(tk.facts, "apt-get", "systemctl")
    if tk.config.prep_host.key_url is not None:
        validate_url(tk.config.prep_host.key_url)


def build(tk: Toolkit) -> Playbook:
    """
    Prepare a host to be managed by Ansible/Semaphore:

      - required packages (sudo, OpenSSH, Python)
      - ssh enabled, started and healthy
      - management user with passwordless sudo (validated drop-in)
      - ~/.ssh with optional downloaded key and known_hosts
      - sshd options for key based login
    """
    cfg = tk.config.prep_host
    facts, actions = tk.facts, tk.actions
    user = cfg.user_name
    owner = resolve_user(facts, user)
    dropin = Path(cfg.sudoers_dropin)

    def ssh_dir() -> Path:
        return Path(owner().home) / ".ssh"

    def packages_ok() -> bool:
        return not facts.missing_packages(cfg.packages)

    def ssh_running() -> bool:
        return facts.service_enabled(cfg.ssh_service) and facts.service_active(cfg.ssh_service)

    def ssh_healthy() -> bool:
        if not facts.service_active(cfg.ssh_service):
            return False
        if cfg.probe_ssh:
            banner = facts.ssh_banner(port=cfg.probe_port)
            return bool(banner and banner.startswith("SSH-"))
        return True

    def user_exists() -> bool:
        return facts.lookup_user(user) is not None

    def in_sudo_group() -> bool:
        return user in facts.group_members(cfg.sudo_group)

    def dropin_ok() -> bool:
        return path_matches(dropin, 0o440) and dropin.read_text() == sudoers_rule(user)

    def ssh_dir_ok() -> bool:
        return user_exists() and path_matches(ssh_dir(), 0o700, owner(), directory=True)

    def key_ok() -> bool:
        if not user_exists():
            return False
        key = ssh_dir() / cfg.key_filename
        return path_matches(key, 0o600, owner()) and key.stat().st_size > 0

    def known_hosts_ok() -> bool:
        return user_exists() and path_matches(ssh_dir() / "known_hosts", 0o644, owner())

    def sshd_config_ok() -> bool:
        return all(file_has_line(cfg.sshd_config_path, line) for line in cfg.sshd_config_lines)

    def configure_sshd() -> None:
        changed = [
            actions.append_config_line_if_absent(cfg.sshd_config_path, line)
            for line in cfg.sshd_config_lines
        ]
        if any(changed):
            actions.ensure_service_enabled_and_running(cfg.ssh_service)

    steps: List[Step] = [
        Step(
            name="packages-installed",
            precondition=packages_ok,
            action=lambda: actions.ensure_packages(cfg.packages, upgrade=cfg.upgrade),
            postcondition=packages_ok,
        ),
        Step(
            name="ssh-service-active",
            precondition=ssh_running,
            action=lambda: actions.ensure_service_enabled_and_running(cfg.ssh_service),
            postcondition=ssh_running,
        ),
        Step(
            name="user-present",
            precondition=user_exists,
            action=lambda: actions.ensure_user(user, cfg.user_shell),
            postcondition=user_exists,
        ),
        Step(
            name="sudo-group-membership",
            precondition=in_sudo_group,
            action=lambda: actions.ensure_group_membership(user, cfg.sudo_group),
            postcondition=in_sudo_group,
        ),
        Step(
            name="sudoers-dropin",
            precondition=dropin_ok,
            action=lambda: actions.ensure_sudoers_dropin(user, dropin),
            postcondition=dropin_ok,
        ),
        Step(
            name="ssh-directory",
            precondition=ssh_dir_ok,
            action=lambda: actions.ensure_directory(ssh_dir(), 0o700, owner()),
            postcondition=ssh_dir_ok,
        ),
    ]

    # downloaded key material, wiped with the playbook's other secrets
    held: List[Secret] = []

    def install_key() -> None:
        held.append(
            tk.secrets.fetch_remote_key(
                cfg.key_url, ssh_dir() / cfg.key_filename, mode=0o600, owner=owner()
            )
        )

    if cfg.key_url is not None:
        steps.append(
            Step(
                name="ssh-key-installed",
                precondition=key_ok,
                action=install_key,
                postcondition=key_ok,
            )
        )

    steps += [
        Step(
            name="known-hosts",
            precondition=known_hosts_ok,
            action=lambda: actions.ensure_file(ssh_dir() / "known_hosts", 0o644, owner()),
            postcondition=known_hosts_ok,
        ),
        Step(
            name="sshd-config",
            precondition=sshd_config_ok,
            action=configure_sshd,
            postcondition=lambda: sshd_config_ok() and facts.service_active(cfg.ssh_service),
        ),
        Step(
            name="ssh-healthy",
            precondition=ssh_healthy,
            action=lambda: actions.ensure_service_enabled_and_running(cfg.ssh_service),
            postcondition=ssh_healthy,
        ),
    ]

    summary = {
        "User": user,
        "Sudoers": str(dropin),
    }
    if cfg.key_url is not None:
        summary["Key"] = f"~{user}/.ssh/{cfg.key_filename}"

    return Playbook(
        name=NAME,
        steps=steps,
        secrets=held,
        summary=summary,
        epilogue=lambda: (
            f"Host is ready for Ansible/Semaphore. User '{user}' has passwordless sudo."
        ),
    )
