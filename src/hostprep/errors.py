# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hostprep/errors.py

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from hostprep.engine.report import RunReport


EXIT_OK = 0
# 1 and 2 are taken by click (abort, usage error)
EXIT_ACTION_FAILED = 3
EXIT_VERIFICATION_FAILED = 4
EXIT_VALIDATION_ERROR = 5
EXIT_PERMISSION_ERROR = 6
EXIT_PRECONDITION_UNMET = 7


class HostPrepError(RuntimeError):
    """Base class for provisioning failures."""

    category = "error"
    exit_code = EXIT_ACTION_FAILED


class ValidationError(HostPrepError):
    """Bad input: malformed URL, empty required field, invalid step list."""

    category = "validation-error"
    exit_code = EXIT_VALIDATION_ERROR


class KeyExistsError(ValidationError):
    """A keypair already exists at the destination and overwrite was not forced."""


class PreconditionUnmet(HostPrepError):
    """The host cannot run this playbook (missing tooling, unsupported OS)."""

    category = "precondition-unmet"
    exit_code = EXIT_PRECONDITION_UNMET


class PermissionDenied(HostPrepError):
    category = "permission-error"
    exit_code = EXIT_PERMISSION_ERROR


class ActionFailed(HostPrepError):
    """An OS call reported failure."""

    category = "action-failed"
    exit_code = EXIT_ACTION_FAILED


class CommandFailed(ActionFailed):
    def __init__(self, argv, returncode: int, stdout: str = "", stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        msg = f"'{self.argv[0]}' exited with {returncode}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ConfigError(ActionFailed):
    """A written configuration file was rejected by the system's validator."""


class DownloadError(ActionFailed):
    pass


class CredentialWriteError(ActionFailed):
    pass


class VerificationFailed(HostPrepError):
    """The action reported success but the desired state does not hold."""

    category = "verification-failed"
    exit_code = EXIT_VERIFICATION_FAILED


class ServiceFailure(VerificationFailed):
    def __init__(self, service: str, diagnostics: str = ""):
        self.service = service
        self.diagnostics = diagnostics
        super().__init__(f"service '{service}' is not active after restart")


class StepFailure(HostPrepError):
    """
    Raised by the step runner when a step cannot be completed.

    Carries the failing step name, the categorised cause and the run report
    (which steps finished, which never ran) so the run can be resumed.
    """

    def __init__(
        self,
        step_name: str,
        diagnostic: str,
        *,
        cause: Optional[BaseException] = None,
        report: Optional["RunReport"] = None,
    ):
        self.step_name = step_name
        self.diagnostic = diagnostic
        self.cause = cause
        self.report = report
        self.outcome = None
        if isinstance(cause, HostPrepError):
            self.category = cause.category
            self.exit_code = cause.exit_code
        else:
            self.category = ActionFailed.category
            self.exit_code = ActionFailed.exit_code
        super().__init__(f"{self.category} in step '{step_name}': {diagnostic}")
