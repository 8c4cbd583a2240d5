# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pydantic
import yaml

from hostprep.errors import ValidationError
from .models import HostPrepConfig

log = logging.getLogger("hostprep")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(config_path: Optional[Path]) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. HOSTPREP_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the config file
    """
    env = os.environ.get("HOSTPREP_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("HOSTPREP_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    if config_path is not None:
        p = config_path.parent / "secrets.yaml"
        if p.is_file():
            return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ValidationError(f"{path}: config root must be a mapping")
    return data


def load_config(
    path: str | Path | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> HostPrepConfig:
    """
    Build the immutable run configuration.

    Layers, lowest first:
      1. model defaults
      2. the YAML config file (``${ENV_VAR}`` placeholders expanded)
      3. ``secrets.yaml`` (``HOSTPREP_SECRETS_FILE`` or next to the config)
      4. ``overrides`` from CLI flags / their environment variables;
         ``None`` and empty values never override
    """
    data: dict = {}
    config_path = Path(path) if path else None

    if config_path is not None:
        if not config_path.is_file():
            raise ValidationError(f"config file not found: {config_path}")
        data = _load_yaml(config_path)

    secrets_path = _find_secrets_file(config_path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))

    if overrides:
        _deep_merge(data, overrides)

    try:
        return HostPrepConfig.model_validate(data)
    except pydantic.ValidationError as e:
        # input values are left out, they may be secrets
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors(include_input=False)
        )
        raise ValidationError(f"invalid configuration: {problems}") from None
