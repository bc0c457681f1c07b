"""Device convergence: drive a live appliance to the configuration its identity implies.

Every step answers `satisfied(ctx)` before and after `apply(ctx)`. A step already satisfied is
recorded without side effects; a step whose postcondition still fails after applying is recorded
as failed. A failing step never stops the steps after it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from ..errors import ApplianceError, CommandTimeout, ConvergenceStepFailure
from ..lib.command import CmdResult
from ..lib.transport import Transport
from ..models import (
    ConvergenceReport,
    DeviceIdentity,
    FleetSpec,
    PayloadSpec,
    StepOutcome,
    StepResult,
)

logger = logging.getLogger(__name__)


@dataclass
class ConvergeCtx:
    transport: Transport
    identity: DeviceIdentity
    fleet: FleetSpec
    payload: PayloadSpec
    timeout: Optional[float] = None

    def run(self, argv: Sequence[str], *, check: bool = True) -> CmdResult:
        return self.transport.run(argv, check=check, timeout=self.timeout)

    def read(self, path: str) -> Optional[str]:
        return self.transport.read_text(path)

    def file_matches(self, path: str, content: str) -> bool:
        return self.transport.read_text(path) == content

    def ensure_file(self, path: str, content: str, *, mode: int = 0o644) -> bool:
        """Write `content` to `path` unless it is already there. Returns True if written."""

        if self.file_matches(path, content):
            return False
        self.transport.write_text(path, content, mode=mode)
        logger.debug("Wrote %s on %s", path, self.transport.label)
        return True

    def unit_state(self, unit: str) -> str:
        """`systemctl is-enabled` state; empty string when the unit does not exist."""

        r = self.run(["systemctl", "is-enabled", unit], check=False)
        return r.stdout.strip()


class ConvergenceStep(Protocol):
    name: str
    # Action that must be run separately for the change to take effect (never run here).
    deferred_action: Optional[str]

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        ...

    def apply(self, ctx: ConvergeCtx) -> None:
        ...


def run_step(step: ConvergenceStep, ctx: ConvergeCtx) -> StepResult:
    try:
        if step.satisfied(ctx):
            return StepResult(step.name, StepOutcome.ALREADY_SATISFIED)
        step.apply(ctx)
        if not step.satisfied(ctx):
            raise ConvergenceStepFailure("postcondition not met after apply", stage=step.name)
    except CommandTimeout as e:
        return StepResult(step.name, StepOutcome.TIMED_OUT, str(e))
    except (ApplianceError, OSError) as e:
        return StepResult(step.name, StepOutcome.FAILED, str(e))
    except Exception as e:
        # Sibling steps still run; the traceback goes to the log.
        logger.exception("step %s raised unexpectedly", step.name)
        return StepResult(step.name, StepOutcome.FAILED, f"{type(e).__name__}: {e}")
    return StepResult(step.name, StepOutcome.APPLIED)


def converge(
    identity: DeviceIdentity,
    transport: Transport,
    *,
    fleet: FleetSpec,
    payload: PayloadSpec,
    timeout: Optional[float] = None,
    steps: Optional[Sequence[ConvergenceStep]] = None,
) -> ConvergenceReport:
    """Run every convergence step in order against `transport` and report per-step outcomes."""

    from .steps import default_steps

    ctx = ConvergeCtx(transport=transport, identity=identity, fleet=fleet, payload=payload, timeout=timeout)
    report = ConvergenceReport(identity=identity)
    pending: List[str] = []

    logger.info(
        "Converging %s as %s (%s, stream=%s)",
        transport.label,
        identity.name,
        identity.address,
        identity.stream_id,
    )
    for step in steps if steps is not None else default_steps():
        result = run_step(step, ctx)
        report.results.append(result)
        if result.outcome.is_failure:
            logger.error("step %s: %s (%s)", step.name, result.outcome.value, result.detail)
        else:
            logger.info("step %s: %s", step.name, result.outcome.value)
        action = getattr(step, "deferred_action", None)
        if action and result.outcome is StepOutcome.APPLIED and action not in pending:
            pending.append(action)

    report.pending_actions = pending
    if report.converged:
        logger.info("%s converged (%d applied)", identity.name, report.applied_count)
    else:
        logger.warning("%s degraded: %d step(s) failed", identity.name, report.failure_count)
    for action in pending:
        logger.warning("Pending: run '%s' to activate the new configuration", action)
    return report
