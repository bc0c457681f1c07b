from __future__ import annotations

import logging

from ..errors import BootstrapError, CommandError
from ..lib.bootloader import install_grub_efi, write_grub_defaults
from ..lib.chroot import chroot_binds
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)


class InstallBootloaderStep:
    step_id = "80_install_bootloader"

    def run(self, ctx: BuildCtx) -> None:
        write_grub_defaults(target_root=ctx.target_root, distributor=ctx.spec.hostname, dry_run=ctx.dry_run)
        try:
            with chroot_binds(ctx.target_root, ctx.backend):
                install_grub_efi(
                    target_root=ctx.target_root,
                    bootloader_id=ctx.spec.hostname,
                    dry_run=ctx.dry_run,
                )
        except CommandError as e:
            raise BootstrapError(f"Bootloader installation failed: {e}", stage=self.step_id) from e
