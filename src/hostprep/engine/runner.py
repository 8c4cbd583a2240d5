# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Sequence

from hostprep.errors import StepFailure, ValidationError, VerificationFailed
from hostprep.logging.log import redact
from hostprep.observers.dispatcher import EventBus
from hostprep.observers.events import (
    new_ctx,
    stamp,
    RunStarted,
    RunSummary,
    StepStarted,
    StepSkipped,
    StepSucceeded,
    StepFailed,
)
from .report import FAILED, OK, PENDING, PLANNED, SKIPPED, RunReport, StepOutcome
from .step import Step

log = logging.getLogger("hostprep")


def validate_steps(steps: Sequence[Step]) -> None:
    """Reject a step list before anything runs."""
    seen = set()
    for step in steps:
        if not step.name:
            raise ValidationError("step without a name")
        if step.name in seen:
            raise ValidationError(f"duplicate step name '{step.name}'")
        seen.add(step.name)
        if not step.idempotent and step.precondition is None:
            raise ValidationError(
                f"step '{step.name}' is not idempotent and has no precondition guard"
            )


class StepRunner:
    """
    Executes an ordered step list, stopping at the first step that fails.

    There is no rollback: every step is idempotent, so the report (which
    steps finished, which never ran) is enough to re-run safely.
    """

    def __init__(
        self,
        *,
        bus: Optional[EventBus] = None,
        dry_run: bool = False,
        run_ctx: Optional[Dict] = None,
    ):
        self.bus = bus or EventBus()
        self.dry_run = dry_run
        self.run_ctx = run_ctx or new_ctx(host="localhost", playbook="adhoc")

    def _emit(self, event_cls, **kwargs) -> None:
        self.bus.emit(event_cls(**stamp(self.run_ctx), **kwargs))

    def run(self, steps: Sequence[Step]) -> RunReport:
        validate_steps(steps)
        report = RunReport()
        names = [s.name for s in steps]
        self._emit(RunStarted, steps=names, dry_run=self.dry_run)

        for index, step in enumerate(steps):
            try:
                report.add(self._run_step(step))
            except StepFailure as failure:
                report.add(failure.outcome)
                for rest in steps[index + 1:]:
                    report.add(StepOutcome(name=rest.name, status=PENDING))
                failure.report = report
                self._summary(report, error=failure.diagnostic)
                raise

        self._summary(report)
        return report

    def _run_step(self, step: Step) -> StepOutcome:
        self._emit(StepStarted, name=step.name)
        t0 = time.time()
        try:
            satisfied = bool(step.precondition()) if step.precondition else False

            if satisfied:
                log.info(f"[{step.name}] already satisfied")
            elif self.dry_run:
                log.info(f"[{step.name}] dry-run: would apply")
                self._emit(StepSkipped, name=step.name, reason="dry-run")
                return StepOutcome(name=step.name, status=PLANNED)
            else:
                log.info(f"[{step.name}] applying")
                step.action()

            if step.postcondition is not None and not step.postcondition():
                raise VerificationFailed(
                    "postcondition does not hold after the step"
                    if not satisfied
                    else "state reported as satisfied but postcondition does not hold"
                )
        except Exception as e:
            raise self._failure(step, e, t0) from e

        duration_ms = int((time.time() - t0) * 1000)
        if satisfied:
            self._emit(StepSkipped, name=step.name, reason="already satisfied")
            return StepOutcome(name=step.name, status=SKIPPED, duration_ms=duration_ms)

        log.info(f"[{step.name}] ok ({duration_ms} ms)")
        self._emit(StepSucceeded, name=step.name, duration_ms=duration_ms)
        return StepOutcome(name=step.name, status=OK, duration_ms=duration_ms)

    def _failure(self, step: Step, exc: Exception, t0: float) -> StepFailure:
        duration_ms = int((time.time() - t0) * 1000)
        diagnostic = redact(str(exc)) or exc.__class__.__name__
        failure = StepFailure(step.name, diagnostic, cause=exc)
        log.error(f"[{step.name}] {failure.category}: {diagnostic}")
        self._emit(StepFailed, name=step.name, category=failure.category, error=diagnostic)
        failure.outcome = StepOutcome(
            name=step.name, status=FAILED, duration_ms=duration_ms, error=diagnostic
        )
        return failure

    def _summary(self, report: RunReport, error: Optional[str] = None) -> None:
        self._emit(
            RunSummary,
            ok=report.count(OK),
            skipped=report.count(SKIPPED),
            failed=report.count(FAILED),
            pending=report.count(PENDING),
            status="FAILED" if error else "OK",
            error=error,
        )
