# src/hostprep/secrets/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from hostprep.logging.log import register_secret


class SecretKind(str, Enum):
    PASSWORD = "password"
    SSH_KEY = "ssh-key"


class SecretSource(str, Enum):
    GENERATED = "generated"
    DOWNLOADED = "downloaded"
    CONFIGURED = "configured"     # config file, CLI flag or environment variable
    RECOVERED = "recovered"       # read back from an earlier credentials record


@dataclass(eq=False)
class Secret:
    """
    Secret material. The value never appears in repr/str, and the text form
    is registered with the log redaction filter on creation.
    """

    kind: SecretKind
    value: bytearray = field(repr=False)
    source: SecretSource
    url: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.value, bytearray):
            self.value = bytearray(self.value)
        text = self.reveal()
        register_secret(text)
        if self.kind is SecretKind.SSH_KEY and text.strip() != text:
            register_secret(text.strip())

    @classmethod
    def password(cls, text: str, source: SecretSource) -> "Secret":
        return cls(SecretKind.PASSWORD, bytearray(text.encode()), source)

    def reveal(self) -> str:
        return bytes(self.value).decode("utf-8", errors="replace")

    def wipe(self) -> None:
        for i in range(len(self.value)):
            self.value[i] = 0

    @property
    def wiped(self) -> bool:
        return not any(self.value)

    def __len__(self) -> int:
        return len(self.value)

    def __str__(self) -> str:
        return f"<{self.kind.value} secret ({self.source.value})>"

    def __repr__(self) -> str:
        return f"Secret(kind={self.kind.value}, source={self.source.value}, value=<redacted>)"


@dataclass(frozen=True)
class KeyPair:
    private: Secret
    public: str
    private_path: Path
    public_path: Path
