from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..errors import BootstrapError, CommandError
from ..lib.chroot import chroot_binds
from ..lib.pkg import apt_clean, apt_install, apt_update
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)


class InstallPackagesStep:
    step_id = "50_install_packages"

    def run(self, ctx: BuildCtx) -> None:
        resolv = Path("/etc/resolv.conf")
        if resolv.exists() and not ctx.dry_run:
            dst = ctx.target("/etc/resolv.conf")
            dst.unlink(missing_ok=True)
            shutil.copyfile(resolv, dst)

        try:
            with chroot_binds(ctx.target_root, ctx.backend):
                apt_update(ctx.target_root, timeout=ctx.timeout, dry_run=ctx.dry_run)
                apt_install(ctx.target_root, ctx.spec.packages, timeout=ctx.timeout, dry_run=ctx.dry_run)
                apt_clean(ctx.target_root, dry_run=ctx.dry_run)
        except CommandError as e:
            raise BootstrapError(f"Package installation failed: {e}", stage=self.step_id) from e
        logger.info("Installed %d packages", len(ctx.spec.packages))
