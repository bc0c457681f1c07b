from __future__ import annotations

import logging

from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)


class MountTargetStep:
    step_id = "30_mount_target"

    def run(self, ctx: BuildCtx) -> None:
        if ctx.layout is None or ctx.stack is None or not ctx.devices:
            raise RuntimeError("Formatted partitions required; run partition step first")

        root = ctx.root_partition
        esp = ctx.layout.esp
        ctx.stack.mount(ctx.devices[root.name], ctx.target_root, fstype="ext4")
        ctx.stack.mount(ctx.devices[esp.name], str(ctx.target("/boot/efi")), fstype="vfat")
        logger.info("Target mounted at %s (mounts held: %d)", ctx.target_root, len(ctx.stack.held))
