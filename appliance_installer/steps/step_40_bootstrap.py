from __future__ import annotations

import logging

from ..errors import BootstrapError, CommandError
from ..lib.pkg import debootstrap_rootfs
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)


class BootstrapStep:
    step_id = "40_bootstrap"

    def run(self, ctx: BuildCtx) -> None:
        spec = ctx.spec
        try:
            debootstrap_rootfs(
                target_root=ctx.target_root,
                suite=spec.suite,
                mirror=spec.mirror,
                variant=spec.variant,
                include=spec.include,
                timeout=ctx.timeout,
                dry_run=ctx.dry_run,
            )
        except CommandError as e:
            raise BootstrapError(f"debootstrap {spec.suite} failed: {e}", stage=self.step_id) from e
        logger.info("Base system %s bootstrapped from %s", spec.suite, spec.mirror)
