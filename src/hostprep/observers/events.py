# src/hostprep/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    host: str         # target host name
    playbook: str     # prep-host / keygen / maas-install

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(host: str, playbook: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "host": host,
        "playbook": playbook,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same context with a fresh timestamp."""
    return {**ctx, "ts": new_ctx(ctx["host"], ctx["playbook"], ctx["run_id"])["ts"]}


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    steps: List[str]
    dry_run: bool = False

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    ok: int
    skipped: int
    failed: int
    pending: int
    status: str                  # "OK" | "FAILED"
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    name: str

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    name: str
    reason: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    name: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    name: str
    category: str
    error: str
