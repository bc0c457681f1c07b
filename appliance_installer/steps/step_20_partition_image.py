from __future__ import annotations

import logging

from ..lib import loopdev
from ..lib.checksum import checksum_path
from ..lib.storage import create_image_file, format_all, write_partition_table
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = ("", ".xz", ".gz")


class PartitionImageStep:
    step_id = "20_partition_image"

    def run(self, ctx: BuildCtx) -> None:
        if ctx.layout is None or ctx.stack is None:
            raise RuntimeError("Layout and mount stack required; run plan step first")

        # A checksum marks an artifact as ready; drop any left from an earlier build.
        for suffix in ARTIFACT_SUFFIXES:
            stale = checksum_path(ctx.image_path + suffix)
            if stale.exists() and not ctx.dry_run:
                stale.unlink()
                logger.info("Removed stale checksum %s", str(stale))

        create_image_file(ctx.image_path, ctx.spec.size, dry_run=ctx.dry_run)
        ctx.loop_device = loopdev.attach(ctx.image_path, ctx.stack, dry_run=ctx.dry_run)
        write_partition_table(ctx.loop_device, ctx.layout, dry_run=ctx.dry_run)
        ctx.devices = format_all(ctx.loop_device, ctx.layout, dry_run=ctx.dry_run)
        logger.info("Formatted partitions: %s", ctx.devices)
