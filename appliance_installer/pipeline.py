from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import ApplianceError
from .lib.mounts import MountBackend, MountStack
from .models import FleetSpec, ImageSpec, OverlaySpec, PartitionLayout, PlannedPartition

logger = logging.getLogger(__name__)


@dataclass
class BuildCtx:
    """Everything a build stage reads, plus what earlier stages produced."""

    spec: ImageSpec
    overlay: OverlaySpec
    fleet: FleetSpec
    work_dir: str
    backend: MountBackend
    dry_run: bool = False
    timeout: Optional[float] = None

    stack: Optional[MountStack] = None
    layout: Optional[PartitionLayout] = None
    loop_device: Optional[str] = None
    devices: Dict[str, str] = field(default_factory=dict)
    artifact: Optional[str] = None
    checksum: Optional[str] = None

    @property
    def image_path(self) -> str:
        return self.spec.output

    @property
    def target_root(self) -> str:
        return str(Path(self.work_dir) / "rootfs")

    def target(self, path: str) -> Path:
        return Path(self.target_root) / path.lstrip("/")

    @property
    def root_partition(self) -> PlannedPartition:
        if self.layout is None:
            raise ApplianceError("Partition layout not planned yet", stage="build")
        for p in self.layout.partitions:
            if not p.esp and p.label != self.overlay.label:
                return p
        raise ApplianceError("No root partition in layout", stage="build")

    def write(self, path: str, content: str, *, mode: int = 0o644) -> Path:
        p = self.target(path)
        if self.dry_run:
            logger.info("Would write %s", str(p))
            return p
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        p.chmod(mode)
        return p


class Step(Protocol):
    """A single build stage."""

    step_id: str

    def run(self, ctx: BuildCtx) -> None:
        ...


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]


def run_pipeline(
    *,
    ctx: BuildCtx,
    steps: Sequence[Step],
    stop_after: Optional[str] = None,
) -> PipelineResult:
    """Run steps in order. The first failure aborts the run; the error names the failed step."""

    ran: List[str] = []
    for step in steps:
        logger.info("Running step %s", step.step_id)
        try:
            step.run(ctx)
        except ApplianceError as e:
            if e.stage is None:
                e.stage = step.step_id
            logger.error("Step %s failed: %s", step.step_id, e)
            raise
        ran.append(step.step_id)

        if stop_after is not None and step.step_id == stop_after:
            logger.info("Stopping after %s", stop_after)
            break

    return PipelineResult(ran_steps=ran)
