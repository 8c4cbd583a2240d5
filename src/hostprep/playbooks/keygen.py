# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/playbooks/keygen.py

from __future__ import annotations

import getpass
from pathlib import Path
from typing import List

from hostprep.engine.step import Step
from hostprep.errors import PermissionDenied
from hostprep.host.actions import path_matches
from hostprep.secrets.models import Secret
from .base import Playbook, Toolkit, require_user

NAME = "keygen"

_DEFAULT_NAMES = {"rsa": "id_rsa", "ecdsa": "id_ecdsa"}


def key_path(tk: Toolkit) -> Path:
    cfg = tk.config.keygen
    if cfg.key_path:
        return Path(cfg.key_path).expanduser()
    owner = require_user(tk.facts, cfg.owner)
    return Path(owner.home) / ".ssh" / _DEFAULT_NAMES[cfg.algorithm]


def preflight(tk: Toolkit) -> None:
    cfg = tk.config.keygen
    require_user(tk.facts, cfg.owner)
    if cfg.owner != getpass.getuser() and not tk.facts.is_root():
        raise PermissionDenied(
            f"generating keys for '{cfg.owner}' requires root (use sudo)"
        )


def build(tk: Toolkit) -> Playbook:
    """
    Generate the Semaphore server's SSH keypair.

    An existing keypair is kept unless ``force`` is set; the public key is
    printed at the end for distribution to target hosts.
    """
    cfg = tk.config.keygen
    owner = require_user(tk.facts, cfg.owner)
    private = key_path(tk)
    public = private.with_name(private.name + ".pub")
    ssh_dir = private.parent

    def dir_ok() -> bool:
        return path_matches(ssh_dir, 0o700, owner, directory=True)

    def keypair_present() -> bool:
        return private.is_file() and public.is_file()

    def perms_ok() -> bool:
        return path_matches(private, 0o600, owner) and path_matches(public, 0o644, owner)

    def fix_perms() -> None:
        tk.actions.ensure_file_mode(private, 0o600, owner)
        tk.actions.ensure_file_mode(public, 0o644, owner)

    held: List[Secret] = []

    def generate() -> None:
        pair = tk.secrets.generate_keypair(
            private,
            algorithm=cfg.algorithm,
            bits=cfg.bits,
            comment=cfg.comment,
            force=cfg.force,
            owner=owner,
        )
        held.append(pair.private)

    steps = [
        Step(
            name="ssh-directory",
            precondition=dir_ok,
            action=lambda: tk.actions.ensure_directory(ssh_dir, 0o700, owner),
            postcondition=dir_ok,
        ),
        Step(
            name="keypair-generated",
            # forcing means "regenerate on this run", never "already satisfied"
            precondition=lambda: keypair_present() and not cfg.force,
            action=generate,
            postcondition=keypair_present,
            idempotent=False,
        ),
        Step(
            name="key-permissions",
            precondition=perms_ok,
            action=fix_perms,
            postcondition=perms_ok,
        ),
    ]

    def epilogue() -> str:
        return (
            "Public key (copy this to your target hosts):\n"
            f"{public.read_text().strip()}\n"
            f"Private key stored at: {private}"
        )

    return Playbook(
        name=NAME,
        steps=steps,
        secrets=held,
        summary={"Private key": str(private), "Public key": str(public)},
        epilogue=epilogue,
    )
