from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict

from ..errors import CommandError, LayoutError, MountError
from ..models import PartitionLayout, PlannedPartition
from .command import run_cmd

logger = logging.getLogger(__name__)

SECTOR = 512

GPT_TYPECODES = {
    "esp": "ef00",
    "linux": "8300",
}

MKFS = {
    "vfat": lambda p: ["mkfs.vfat", "-F", "32", "-n", p.label],
    "fat32": lambda p: ["mkfs.vfat", "-F", "32", "-n", p.label],
    "ext4": lambda p: ["mkfs.ext4", "-F", "-q", "-L", p.label],
}


def part_suffix(disk: str, n: int) -> str:
    # nvme/mmcblk/loop devices use p suffix
    if disk.endswith(tuple("0123456789")):
        return f"{disk}p{n}"
    return f"{disk}{n}"


def create_image_file(path: str, size: int, *, dry_run: bool = False) -> None:
    """Create a sparse image file of exactly `size` bytes (replacing any previous one)."""

    p = Path(path)
    if dry_run:
        logger.info("Would create %s (%d bytes)", str(p), size)
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("wb") as f:
        f.truncate(size)
    logger.info("Created image file %s", str(p))


def write_partition_table(disk: str, layout: PartitionLayout, *, dry_run: bool = False) -> None:
    """Write a fresh GPT with the planned partitions."""

    logger.info("Partitioning disk=%s", disk)
    try:
        run_cmd(["sgdisk", "--zap-all", disk], dry_run=dry_run)
        run_cmd(["sgdisk", "--clear", disk], dry_run=dry_run)
        for p in layout.partitions:
            first = p.start // SECTOR
            last = p.end // SECTOR - 1
            typecode = GPT_TYPECODES["esp" if p.esp else "linux"]
            run_cmd(
                [
                    "sgdisk",
                    f"--new={p.number}:{first}:{last}",
                    f"--typecode={p.number}:{typecode}",
                    f"--change-name={p.number}:{p.name}",
                    disk,
                ],
                dry_run=dry_run,
            )
        # Inform kernel
        run_cmd(["partprobe", disk], check=False, dry_run=dry_run)
    except CommandError as e:
        raise LayoutError(f"Unable to write partition table: {e}", stage="partition") from e


def format_partition(device: str, part: PlannedPartition, *, dry_run: bool = False) -> None:
    builder = MKFS.get(part.fstype)
    if builder is None:
        raise LayoutError(f"Unsupported filesystem type {part.fstype!r} for {part.name}", stage="format")
    try:
        run_cmd([*builder(part), device], dry_run=dry_run)
    except CommandError as e:
        raise MountError(f"Unable to format {device} as {part.fstype}: {e}", stage="format") from e


def format_all(disk: str, layout: PartitionLayout, *, dry_run: bool = False) -> Dict[str, str]:
    """Format every planned partition; return {partition name: device node}."""

    devices: Dict[str, str] = {}
    for p in layout.partitions:
        dev = part_suffix(disk, p.number)
        format_partition(dev, p, dry_run=dry_run)
        devices[p.name] = dev
    return devices
