# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

OK = "OK"
SKIPPED = "SKIPPED"
PLANNED = "PLANNED"
FAILED = "FAILED"
PENDING = "PENDING"


@dataclass
class StepOutcome:
    name: str
    status: str                 # OK | SKIPPED | PLANNED | FAILED | PENDING
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class RunReport:
    outcomes: List[StepOutcome] = field(default_factory=list)

    def add(self, outcome: StepOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def names(self, status: str) -> List[str]:
        return [o.name for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> bool:
        return self.count(FAILED) == 0 and self.count(PENDING) == 0

    @property
    def actions_taken(self) -> int:
        return self.count(OK)

    def summary(self) -> str:
        return (
            f"OK={self.count(OK)} SKIPPED={self.count(SKIPPED)} "
            f"PLANNED={self.count(PLANNED)} FAILED={self.count(FAILED)} "
            f"PENDING={self.count(PENDING)}"
        )
