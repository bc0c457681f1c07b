from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .build_config import BuildConfig
from .lib.mounts import HostMounts, MountBackend, MountStack
from .pipeline import BuildCtx, Step, run_pipeline
from .steps import (
    BootstrapStep,
    BootTransformStep,
    InstallApplianceStep,
    InstallBootloaderStep,
    InstallPackagesStep,
    MountTargetStep,
    PackageImageStep,
    PartitionImageStep,
    PlanLayoutStep,
)

logger = logging.getLogger(__name__)


def build_steps() -> List[Step]:
    return [
        PlanLayoutStep(),
        PartitionImageStep(),
        MountTargetStep(),
        BootstrapStep(),
        InstallPackagesStep(),
        InstallApplianceStep(),
        BootTransformStep(),
        InstallBootloaderStep(),
        PackageImageStep(),
    ]


def make_ctx(
    cfg: BuildConfig,
    *,
    output: Optional[str] = None,
    compress: Optional[str] = None,
    work_dir: Optional[str] = None,
    backend: Optional[MountBackend] = None,
    dry_run: bool = False,
) -> BuildCtx:
    return BuildCtx(
        spec=cfg.image_spec(output=output, compress=compress),
        overlay=cfg.overlay,
        fleet=cfg.fleet,
        work_dir=work_dir or cfg.work_dir,
        backend=backend or HostMounts(dry_run=dry_run),
        dry_run=dry_run,
        timeout=cfg.command_timeout,
    )


def run_build(
    ctx: BuildCtx,
    *,
    steps: Optional[Sequence[Step]] = None,
    stop_after: Optional[str] = None,
) -> BuildCtx:
    """Build the golden image.

    Every mount and loop device is acquired through one MountStack. On failure (including
    interruption) the stack is released best-effort and the error propagates; no checksum
    is written, so no artifact is ever marked ready.
    """

    if not ctx.dry_run:
        Path(ctx.work_dir).mkdir(parents=True, exist_ok=True)

    logger.info("=== Build image: %s (%d bytes) ===", ctx.image_path, ctx.spec.size)
    with MountStack(ctx.backend) as stack:
        ctx.stack = stack
        result = run_pipeline(ctx=ctx, steps=steps if steps is not None else build_steps(), stop_after=stop_after)
    logger.info("Build finished: ran %s", ", ".join(result.ran_steps))
    return ctx
