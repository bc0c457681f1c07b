from __future__ import annotations

import logging

from ..lib.partition import plan_layout
from ..models import describe_layout
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)


class PlanLayoutStep:
    step_id = "10_plan_layout"

    def run(self, ctx: BuildCtx) -> None:
        # Pure computation: a bad plan fails here, before any file or device is touched.
        ctx.layout = plan_layout(ctx.spec.size, ctx.spec.partitions)
        for line in describe_layout(ctx.layout):
            logger.info("Partition %s", line)
