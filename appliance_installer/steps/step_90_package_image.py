from __future__ import annotations

import logging

from ..errors import ApplianceError
from ..lib.checksum import write_checksum
from ..lib.command import run_cmd
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)

COMPRESSORS = {
    "xz": (["xz", "-T0", "-f"], ".xz"),
    "gz": (["gzip", "-f"], ".gz"),
}


class PackageImageStep:
    """Release every mount and the loop device, then compress and checksum.

    The checksum is what marks an artifact ready, and it is only written once every
    release has succeeded.
    """

    step_id = "90_package_image"

    def run(self, ctx: BuildCtx) -> None:
        if ctx.stack is None:
            raise ApplianceError("No mount stack to release", stage=self.step_id)

        ctx.backend.sync()
        # Strict: raises MountError if anything stays mounted or attached.
        ctx.stack.close()

        artifact = ctx.image_path
        compress = ctx.spec.compress
        if compress in COMPRESSORS:
            argv, suffix = COMPRESSORS[compress]
            run_cmd([*argv, artifact], timeout=ctx.timeout, dry_run=ctx.dry_run)
            artifact += suffix

        ctx.artifact = artifact
        if ctx.dry_run:
            logger.info("Would write checksum for %s", artifact)
            return
        ctx.checksum = str(write_checksum(artifact))
        logger.info("Image ready: %s", artifact)
