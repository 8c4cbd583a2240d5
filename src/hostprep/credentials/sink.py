# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/credentials/sink.py

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from hostprep.errors import CredentialWriteError, PermissionDenied, ValidationError
from hostprep.host.models import UserIdentity
from hostprep.secrets.models import Secret, SecretSource

log = logging.getLogger("hostprep")

CREDS_MODE = 0o600

Value = Union[str, Secret]


@dataclass(frozen=True)
class CredentialRecord:
    path: Path
    owner: UserIdentity
    fields: Dict[str, Value] = field(default_factory=dict)
    header: Optional[str] = None
    mode: int = CREDS_MODE

    def __post_init__(self) -> None:
        if self.owner.is_root:
            raise PermissionDenied(
                "credentials must be owned by a non-root user; run through sudo "
                "or set the credentials owner explicitly"
            )
        if self.mode != CREDS_MODE:
            raise ValidationError(f"credentials mode must be {CREDS_MODE:o}")
        for key in self.fields:
            if not key or "=" in key or "\n" in key:
                raise ValidationError(f"invalid credentials key {key!r}")

    def render(self) -> str:
        lines: List[str] = []
        if self.header:
            lines.append(f"# {self.header}")
        for key, value in self.fields.items():
            text = value.reveal() if isinstance(value, Secret) else str(value)
            if "\n" in text:
                raise ValidationError(f"value for {key} spans several lines")
            lines.append(f"{key}={text}")
        return "\n".join(lines) + "\n"


class CredentialSink:
    """
    Persists a CredentialRecord as KEY=VALUE lines.

    The temp file lives in the destination directory and is 0600 from the
    moment it is created; it is fsynced, renamed over the canonical path and
    then handed to the owner. A crash at any point leaves either the old file
    or no file at the canonical path, never a partial one.
    """

    def persist(self, record: CredentialRecord) -> Path:
        path = Path(record.path)
        owner = record.owner
        try:
            if not path.parent.is_dir():
                path.parent.mkdir(parents=True, mode=0o700)
                os.chown(path.parent, owner.uid, owner.gid)

            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        except OSError as e:
            raise CredentialWriteError(f"cannot prepare {path.parent}: {e}") from e

        try:
            # mkstemp already creates 0600; keep it explicit before any write
            os.fchmod(fd, record.mode)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.render())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
            os.chown(path, owner.uid, owner.gid)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise CredentialWriteError(f"cannot write credentials to {path}: {e}") from e
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        log.info("Credentials saved to %s (owner %s, mode %o).", path, owner.name, record.mode)
        return path


def load_credentials(path: str | Path) -> Dict[str, str]:
    """Parse an existing KEY=VALUE record; missing file -> empty dict."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value
    return values


def recovered(values: Dict[str, str], key: str) -> Optional[Secret]:
    """A password previously persisted under ``key``, if any."""
    value = values.get(key)
    if not value:
        return None
    return Secret.password(value, SecretSource.RECOVERED)
