from __future__ import annotations

from typing import Optional


class ApplianceError(RuntimeError):
    """Base class for every failure the installer reports to the operator.

    `stage` names the build stage, convergence step or rollout stage that failed.
    """

    exit_code = 1

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        msg = super().__str__()
        if self.stage:
            return f"[{self.stage}] {msg}"
        return msg


class ConfigError(ApplianceError):
    exit_code = 2


class CommandError(ApplianceError):
    """An external command exited non-zero."""

    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        returncode: int = 1,
        stderr: str = "",
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeout(ApplianceError):
    """An external operation ran past its deadline (distinct from a failure)."""

    exit_code = 17


class LayoutError(ApplianceError):
    exit_code = 10


class MountError(ApplianceError):
    exit_code = 11


class BootstrapError(ApplianceError):
    exit_code = 12


class ConnectivityError(ApplianceError):
    exit_code = 13


class IntegrityError(ApplianceError):
    exit_code = 14


class ConvergenceStepFailure(ApplianceError):
    """A single convergence step could not reach its postcondition.

    Recorded in the report and aggregated; never aborts sibling steps.
    """


class ConvergenceIncomplete(ApplianceError):
    """Raised by the CLI when a convergence report is degraded."""

    exit_code = 15


class ServiceStartError(ApplianceError):
    exit_code = 16


class BusyResourceWarning(UserWarning):
    """A best-effort operation was blocked by open handles (e.g. read-only remount)."""
