# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class Step:
    """
    One unit of desired host state.

    ``precondition`` returns True when the state already holds, in which case
    the action is skipped. ``postcondition`` returns True when the state holds
    after the step; it runs on both paths. Steps that are not idempotent by
    nature must carry a precondition so a re-run cannot repeat them.
    """

    name: str
    action: Callable[[], Any]
    precondition: Optional[Callable[[], bool]] = None
    postcondition: Optional[Callable[[], bool]] = None
    idempotent: bool = True
    description: str = ""
