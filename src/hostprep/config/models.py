# src/hostprep/config/models.py

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Timeouts(_Frozen):
    command_seconds: float = 600.0
    download_seconds: float = 30.0
    service_wait_seconds: float = 30.0
    service_poll_seconds: float = 1.0


class PrepHostConfig(_Frozen):
    """Managed host for Ansible/Semaphore: user, passwordless sudo, SSH."""

    user_name: str = "semaphore"
    user_shell: str = "/bin/bash"
    sudo_group: str = "sudo"
    sudoers_dir: str = "/etc/sudoers.d"
    packages: List[str] = Field(
        default_factory=lambda: [
            "sudo",
            "openssh-server",
            "python3",
            "python3-apt",
            "ca-certificates",
        ]
    )
    upgrade: bool = False
    ssh_service: str = "ssh"
    # URL of an SSH key to install into the user's ~/.ssh; skipped when unset
    key_url: Optional[str] = None
    key_filename: str = "id_rsa"
    sshd_config_path: str = "/etc/ssh/sshd_config"
    sshd_config_lines: List[str] = Field(
        default_factory=lambda: [
            "PubkeyAuthentication yes",
            "KbdInteractiveAuthentication yes",
        ]
    )
    probe_ssh: bool = False
    probe_port: int = 22

    @field_validator("user_name")
    @classmethod
    def _non_empty_user(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("user_name must not be empty")
        if v == "root":
            raise ValueError("user_name must not be root")
        return v

    @property
    def sudoers_dropin(self) -> str:
        return f"{self.sudoers_dir.rstrip('/')}/99-{self.user_name}-nopasswd"


class KeygenConfig(_Frozen):
    # None -> ~<owner>/.ssh/id_rsa, resolved at run time
    key_path: Optional[str] = None
    owner: str = "semaphore"
    comment: str = "semaphore@server"
    algorithm: Literal["rsa", "ecdsa"] = "rsa"
    bits: int = 4096
    force: bool = False


class MaasConfig(_Frozen):
    version: str = "3.6"
    postgres_major: str = "16"
    postgres_port: int = 5432
    postgres_conf_root: str = "/etc/postgresql"
    db_user: str = "maasuser"
    db_name: str = "maasdb"
    db_password: Optional[SecretStr] = None
    admin_user: str = "admin"
    admin_email: str = ""
    admin_password: Optional[SecretStr] = None
    # None -> http://<fqdn>:5240/MAAS
    maas_url: Optional[str] = None
    # None -> SUDO_USER or the current user
    creds_owner: Optional[str] = None
    creds_dir_name: str = "maas"
    password_bytes: int = 32

    @property
    def channel(self) -> str:
        return f"{self.version}/stable"

    @field_validator("db_user", "db_name", "admin_user")
    @classmethod
    def _sql_identifier(cls, v: str) -> str:
        # interpolated into SQL and pg_hba.conf, so keep to plain identifiers
        if not v or not (v[0].isalpha() or v[0] == "_") or not all(
            c.isalnum() or c == "_" for c in v
        ):
            raise ValueError(f"'{v}' is not a plain identifier")
        return v


class HostPrepConfig(_Frozen):
    prep_host: PrepHostConfig = Field(default_factory=PrepHostConfig)
    keygen: KeygenConfig = Field(default_factory=KeygenConfig)
    maas: MaasConfig = Field(default_factory=MaasConfig)
    timeouts: Timeouts = Field(default_factory=Timeouts)
