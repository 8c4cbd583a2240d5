# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/secrets/provider.py

from __future__ import annotations

import base64
import io
import logging
import os
import secrets
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import paramiko
import requests

from hostprep.errors import DownloadError, KeyExistsError, ValidationError
from hostprep.host.models import UserIdentity
from .models import KeyPair, Secret, SecretKind, SecretSource

log = logging.getLogger("hostprep")

MIN_PASSWORD_BYTES = 24
ECDSA_CURVE_BITS = (256, 384, 521)


def validate_url(url: Optional[str]) -> str:
    if url is None or not url.strip():
        raise ValidationError("key URL is not set")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError("key URL must start with http:// or https://")
    if not parsed.netloc:
        raise ValidationError("key URL has no host")
    return url


def _write_private(path: Path, data: bytes, mode: int, owner: Optional[UserIdentity]) -> None:
    """
    Write ``data`` to a temp file beside ``path`` (mode set before any
    content), then rename into place. ``path`` is never partially written.
    """
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if owner is not None:
            os.chown(tmp, owner.uid, owner.gid)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class SecretProvider:
    """
    Produces secrets: random passwords, downloaded keys, SSH keypairs.
    """

    def __init__(
        self,
        *,
        download_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.download_timeout = download_timeout
        self.session = session or requests.Session()

    # ------------------ passwords ------------------

    def generate_password(self, byte_strength: int = 32) -> Secret:
        """
        ``byte_strength`` random bytes from the OS CSPRNG, base64 encoded
        (same shape as ``openssl rand -base64 32``).
        """
        if byte_strength < MIN_PASSWORD_BYTES:
            raise ValidationError(
                f"password strength must be at least {MIN_PASSWORD_BYTES} bytes"
            )
        raw = secrets.token_bytes(byte_strength)
        return Secret(
            SecretKind.PASSWORD,
            bytearray(base64.b64encode(raw)),
            SecretSource.GENERATED,
        )

    # ------------------ remote keys ------------------

    def fetch_remote_key(
        self,
        url: str,
        dest: str | Path,
        *,
        mode: int = 0o600,
        owner: Optional[UserIdentity] = None,
    ) -> Secret:
        url = validate_url(url)
        dest = Path(dest)
        log.info("Downloading SSH key to %s ...", dest)

        try:
            resp = self.session.get(url, timeout=self.download_timeout)
        except requests.RequestException as e:
            raise DownloadError(f"failed to download key from {url}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise DownloadError(f"failed to download key from {url}: HTTP {resp.status_code}")
        content = resp.content or b""
        if not content.strip():
            raise DownloadError(f"downloaded key from {url} is empty")

        key = Secret(SecretKind.SSH_KEY, bytearray(content), SecretSource.DOWNLOADED, url=url)
        try:
            _write_private(dest, content, mode, owner)
        except OSError as e:
            raise DownloadError(f"could not install key at {dest}: {e}") from e
        log.info("SSH key installed at %s.", dest)
        return key

    # ------------------ keypairs ------------------

    def generate_keypair(
        self,
        path: str | Path,
        *,
        algorithm: str = "rsa",
        bits: int = 4096,
        comment: str = "",
        force: bool = False,
        owner: Optional[UserIdentity] = None,
    ) -> KeyPair:
        """
        Create an unencrypted keypair at ``path`` / ``path.pub``.

        Refuses with ``KeyExistsError`` when either file exists, unless
        ``force`` is set: regenerating would silently invalidate a public key
        that may already be distributed.
        """
        private_path = Path(path)
        public_path = private_path.with_name(private_path.name + ".pub")
        if not force and (private_path.exists() or public_path.exists()):
            raise KeyExistsError(
                f"a key already exists at {private_path}; pass --force to overwrite"
            )

        if algorithm == "rsa":
            if bits < 2048:
                raise ValidationError("RSA keys must be at least 2048 bits")
            key = paramiko.RSAKey.generate(bits)
        elif algorithm == "ecdsa":
            if bits not in ECDSA_CURVE_BITS:
                raise ValidationError(f"ECDSA bits must be one of {ECDSA_CURVE_BITS}")
            key = paramiko.ECDSAKey.generate(bits=bits)
        else:
            raise ValidationError(f"unsupported key algorithm '{algorithm}'")

        buf = io.StringIO()
        key.write_private_key(buf)
        private = Secret(SecretKind.SSH_KEY, bytearray(buf.getvalue().encode()), SecretSource.GENERATED)
        public = f"{key.get_name()} {key.get_base64()}"
        if comment:
            public = f"{public} {comment}"

        private_path.parent.mkdir(parents=True, exist_ok=True)
        _write_private(private_path, bytes(private.value), 0o600, owner)
        _write_private(public_path, (public + "\n").encode(), 0o644, owner)
        log.info("SSH key pair generated at %s (%s, %d bits).", private_path, algorithm, bits)
        return KeyPair(private=private, public=public, private_path=private_path, public_path=public_path)
