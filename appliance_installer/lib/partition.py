from __future__ import annotations

import logging
from typing import List, Sequence

from ..errors import LayoutError
from ..models import MIB, PartitionLayout, PartitionRequest, PlannedPartition

logger = logging.getLogger(__name__)

ALIGNMENT = MIB
# Primary GPT lives in the first MiB; keep the last MiB free for the backup header.
GPT_RESERVED_HEAD = MIB
GPT_RESERVED_TAIL = MIB


def _align_up(n: int) -> int:
    return -(-n // ALIGNMENT) * ALIGNMENT


def _align_down(n: int) -> int:
    return (n // ALIGNMENT) * ALIGNMENT


def plan_layout(total_size: int, requests: Sequence[PartitionRequest]) -> PartitionLayout:
    """Compute concrete, 1 MiB aligned GPT offsets.

    Partitions are laid out in request order. Exactly one request must claim the
    remaining space and exactly one must carry the ESP flag. Absolute sizes are rounded
    up to the alignment.
    """

    if not requests:
        raise LayoutError("No partitions requested", stage="plan_layout")

    esp_count = sum(1 for r in requests if r.esp)
    if esp_count != 1:
        raise LayoutError(f"Exactly one ESP partition required, got {esp_count}", stage="plan_layout")

    rest_count = sum(1 for r in requests if r.is_rest)
    if rest_count != 1:
        raise LayoutError(
            f"Exactly one partition must claim the remaining space, got {rest_count}",
            stage="plan_layout",
        )

    names = [r.name for r in requests]
    if len(set(names)) != len(names):
        raise LayoutError(f"Duplicate partition names: {names}", stage="plan_layout")

    for r in requests:
        if r.size is not None and r.size <= 0:
            raise LayoutError(f"Partition {r.name} has non-positive size", stage="plan_layout")

    usable_end = _align_down(total_size - GPT_RESERVED_TAIL)
    usable = usable_end - GPT_RESERVED_HEAD
    fixed = sum(_align_up(r.size) for r in requests if r.size is not None)
    if usable <= 0 or fixed >= usable:
        raise LayoutError(
            f"Absolute partition sizes ({fixed // MIB} MiB) do not fit in "
            f"{max(usable, 0) // MIB} MiB of usable space",
            stage="plan_layout",
        )

    rest_size = usable - fixed
    rest_req = next(r for r in requests if r.is_rest)
    if rest_size < rest_req.min_size:
        raise LayoutError(
            f"Partition {rest_req.name} would get {rest_size // MIB} MiB, "
            f"minimum is {rest_req.min_size // MIB} MiB",
            stage="plan_layout",
        )

    planned: List[PlannedPartition] = []
    offset = GPT_RESERVED_HEAD
    for number, r in enumerate(requests, start=1):
        size = rest_size if r.size is None else _align_up(r.size)
        planned.append(
            PlannedPartition(
                number=number,
                name=r.name,
                fstype=r.fstype,
                label=r.label,
                start=offset,
                end=offset + size,
                esp=r.esp,
            )
        )
        offset += size

    layout = PartitionLayout(total_size=total_size, partitions=tuple(planned))
    logger.info("Planned %d partitions in %d MiB image", len(planned), total_size // MIB)
    return layout
