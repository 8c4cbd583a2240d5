# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

from hostprep.errors import ActionFailed, CommandFailed
from hostprep.logging.log import redact, redact_argv

Cmd = Sequence[Union[str, "os.PathLike[str]"]]

log = logging.getLogger("hostprep")


@dataclass
class CommandRunner:
    """
    Runs local OS commands as argv lists (never through a shell).

    Every command line and its output is logged through the redacting
    ``hostprep`` logger. ``dry_run`` only applies to mutating calls; read-only
    queries pass ``mutating=False`` so facts are still discovered.
    """

    dry_run: bool = False
    timeout: float = 600.0
    label: Optional[str] = None

    def run(
        self,
        cmd: Cmd,
        *,
        check: bool = True,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        mutating: bool = True,
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        argv = [str(c) for c in cmd]
        cmd_str = redact_argv(argv)

        log.debug(f"[{label}] $ {cmd_str}")

        if self.dry_run and mutating:
            log.info(f"[{label}] dry-run: skipped {cmd_str}")
            return subprocess.CompletedProcess(args=argv, returncode=0, stdout="", stderr="")

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        start = time.time()
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                input=input,
                env=full_env,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise ActionFailed(f"command not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ActionFailed(
                f"[{label}] '{argv[0]}' timed out after {e.timeout}s"
            ) from e

        duration = time.time() - start

        if result.stdout and log_output:
            log.debug(f"[{label}][stdout]\n{redact(result.stdout.rstrip())}")
        if result.stderr:
            log.debug(f"[{label}][stderr]\n{redact(result.stderr.rstrip())}")
        log.debug(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")

        if check and result.returncode != 0:
            raise CommandFailed(
                argv,
                result.returncode,
                redact(result.stdout or ""),
                redact(result.stderr or ""),
            )
        return result

    def succeeds(self, cmd: Cmd, *, timeout: Optional[float] = None) -> bool:
        """Read-only probe: True when the command exits 0."""
        try:
            return self.run(cmd, check=False, timeout=timeout, mutating=False).returncode == 0
        except ActionFailed:
            return False

    def output(self, cmd: Cmd, *, timeout: Optional[float] = None) -> str:
        """Read-only query returning stdout; raises on non-zero exit."""
        return self.run(cmd, check=True, timeout=timeout, mutating=False).stdout
