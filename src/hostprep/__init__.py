# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

"""Idempotent, verified single-host provisioning."""

__version__ = "0.1.0"
