# src/hostprep/host/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class UserIdentity:
    """
    A local account as reported by ``getent passwd``.
    """
    name: str
    uid: int
    gid: int
    home: str
    shell: str = "/bin/bash"

    @property
    def is_root(self) -> bool:
        return self.uid == 0

    @classmethod
    def from_passwd(cls, line: str) -> "UserIdentity":
        # name:x:uid:gid:gecos:home:shell
        parts = line.strip().split(":")
        if len(parts) < 7:
            raise ValueError(f"malformed passwd entry: {line!r}")
        return cls(
            name=parts[0],
            uid=int(parts[2]),
            gid=int(parts[3]),
            home=parts[5],
            shell=parts[6],
        )


class ServiceState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
