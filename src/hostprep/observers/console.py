# src/hostprep/observers/console.py
import sys

from .events import BaseEvent, RunSummary, StepFailed, StepSkipped, StepSucceeded


class ConsoleObserver:
    """Short human-readable progress lines on stderr."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stderr

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StepSucceeded):
            line = f"[ok]   {event.name} ({event.duration_ms} ms)"
        elif isinstance(event, StepSkipped):
            line = f"[skip] {event.name}: {event.reason}"
        elif isinstance(event, StepFailed):
            line = f"[fail] {event.name}: {event.category}: {event.error}"
        elif isinstance(event, RunSummary):
            line = (f"[{event.playbook}] {event.status} ok={event.ok} skipped={event.skipped} "
                    f"failed={event.failed} pending={event.pending}")
        else:
            return
        print(line, file=self.stream, flush=True)
