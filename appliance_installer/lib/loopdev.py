from __future__ import annotations

import logging

from ..errors import CommandError, MountError
from .command import run_cmd
from .mounts import MountStack

logger = logging.getLogger(__name__)


def attach(image_path: str, stack: MountStack, *, dry_run: bool = False) -> str:
    """Attach an image file as a partition-scanned loop device, detached by `stack`."""

    try:
        r = run_cmd(["losetup", "--find", "--show", "--partscan", image_path], dry_run=dry_run)
    except CommandError as e:
        raise MountError(f"Unable to attach {image_path}: {e}", stage="losetup") from e

    device = (r.stdout or "").strip() or "/dev/loop0"
    stack.push(f"detach {device}", lambda: detach(device, dry_run=dry_run))

    # Partition nodes appear asynchronously.
    run_cmd(["udevadm", "settle"], check=False, dry_run=dry_run)
    logger.info("Loop device: %s", device)
    return device


def detach(device: str, *, dry_run: bool = False) -> None:
    try:
        run_cmd(["losetup", "--detach", device], dry_run=dry_run)
    except CommandError as e:
        raise MountError(f"Unable to detach {device}: {e}", stage="losetup") from e
