from __future__ import annotations

import logging

from ..lib import templates
from ..lib.chroot import chroot_binds, chroot_cmd
from ..lib.overlay import write_hook
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)

INITRAMFS_MODULES_PATH = "/etc/initramfs-tools/modules"


class BootTransformStep:
    step_id = "70_boot_transform"

    def run(self, ctx: BuildCtx) -> None:
        write_hook(ctx.target_root, ctx.overlay, dry_run=ctx.dry_run)
        ctx.write(
            ctx.spec.payload.reset_script_path,
            templates.render_factory_reset_script(ctx.overlay.overlay_mount),
            mode=0o755,
        )

        modules = ctx.target(INITRAMFS_MODULES_PATH)
        existing = modules.read_text(encoding="utf-8") if modules.exists() else ""
        if "overlay" not in existing.split():
            if existing and not existing.endswith("\n"):
                existing += "\n"
            ctx.write(INITRAMFS_MODULES_PATH, existing + "overlay\n")

        with chroot_binds(ctx.target_root, ctx.backend):
            chroot_cmd(ctx.target_root, ["update-initramfs", "-u", "-k", "all"], timeout=ctx.timeout, dry_run=ctx.dry_run)
        logger.info("Overlay root hook installed (label=%s)", ctx.overlay.label)
