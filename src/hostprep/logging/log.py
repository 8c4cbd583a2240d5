# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/logging/log.py

from __future__ import annotations

import bisect
import logging
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

LOGGER_NAME = "hostprep"
MASK = "********"


class RedactingFilter(logging.Filter):
    """
    Replaces every registered secret value in a record's rendered message.

    Attached to the ``hostprep`` logger itself so records are scrubbed before
    any handler (file, stderr, pytest's caplog) sees them.
    """

    def __init__(self) -> None:
        super().__init__()
        self._values: set[str] = set()
        self._ordered: list[str] = []
        self._lock = threading.Lock()

    def register(self, value: str) -> None:
        if value:
            with self._lock:
                if value not in self._values:
                    self._values.add(value)
                    # longest first so a secret containing another one is masked whole
                    bisect.insort(self._ordered, value, key=lambda v: -len(v))

    def redact(self, text: str) -> str:
        for value in tuple(self._ordered):
            if value in text:
                text = text.replace(value, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._values:
            message = record.getMessage()
            record.msg = self.redact(message)
            record.args = None
        return True


_redactor = RedactingFilter()
logging.getLogger(LOGGER_NAME).addFilter(_redactor)


def register_secret(*values: str) -> None:
    for v in values:
        _redactor.register(v)


def redact(text: str) -> str:
    return _redactor.redact(text)


def redact_argv(argv: Iterable[str]) -> str:
    return redact(" ".join(str(a) for a in argv))


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = LOGGER_NAME,
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full trace log file under ~/.hostprep/logs
      - stderr stream (INFO, DEBUG with --verbose)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".hostprep" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False
    if _redactor not in logger.filters:
        logger.addFilter(_redactor)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    # stderr keeps stdout free for the public key / summary output
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("=== hostprep run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path
