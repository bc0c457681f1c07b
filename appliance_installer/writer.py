from __future__ import annotations

import gzip
import logging
import lzma
import os
import stat
from typing import BinaryIO, Callable, List, Optional

from .errors import ApplianceError, CommandError, ConfigError, MountError
from .lib.checksum import verify_checksum
from .lib.command import run_cmd

logger = logging.getLogger(__name__)

# Never written to, regardless of what backs /.
SYSTEM_DISKS = ("/dev/sda", "/dev/nvme0n1")
CHUNK = 4 * 1024 * 1024
CONFIRM_WORD = "YES"


def root_backing_disk() -> Optional[str]:
    """Whole-disk device node that holds the running system's root filesystem."""

    src = run_cmd(["findmnt", "-n", "-o", "SOURCE", "/"], check=False).stdout.strip()
    if not src.startswith("/dev/"):
        return None
    parent = run_cmd(["lsblk", "-n", "-o", "PKNAME", src], check=False).stdout.strip()
    return f"/dev/{parent}" if parent else src


def check_target(device: str) -> None:
    if device in SYSTEM_DISKS:
        raise ConfigError(f"Refusing to write to system disk {device}", stage="write-image")
    backing = root_backing_disk()
    if backing and os.path.realpath(device) == os.path.realpath(backing):
        raise ConfigError(f"Refusing to write to {device}: it holds the running root filesystem", stage="write-image")
    try:
        mode = os.stat(device).st_mode
    except FileNotFoundError as e:
        raise ConfigError(f"Device {device} does not exist", stage="write-image") from e
    if not stat.S_ISBLK(mode):
        raise ConfigError(f"{device} is not a block device", stage="write-image")


def mounted_partitions(device: str) -> List[str]:
    r = run_cmd(["lsblk", "-n", "-l", "-o", "MOUNTPOINT", device], check=False)
    return [ln.strip() for ln in r.stdout.splitlines() if ln.strip()]


def unmount_partitions(device: str, *, dry_run: bool = False) -> None:
    for mp in mounted_partitions(device):
        try:
            run_cmd(["umount", mp], dry_run=dry_run)
        except CommandError as e:
            raise MountError(f"Unable to unmount {mp} on {device}: {e}", stage="write-image") from e


def open_image(path: str) -> BinaryIO:
    if path.endswith(".xz"):
        return lzma.open(path, "rb")
    if path.endswith(".gz"):
        return gzip.open(path, "rb")
    return open(path, "rb")


def stream_image(image: str, device: str) -> int:
    """Copy the (possibly compressed) image onto `device` and fsync it."""

    written = 0
    with open_image(image) as src, open(device, "wb", buffering=0) as dst:
        for chunk in iter(lambda: src.read(CHUNK), b""):
            dst.write(chunk)
            written += len(chunk)
        dst.flush()
        os.fsync(dst.fileno())
    return written


def write_image(
    image: str,
    device: str,
    *,
    assume_yes: bool = False,
    input_fn: Callable[[str], str] = input,
    dry_run: bool = False,
) -> int:
    """Write a verified image to removable media. Returns the number of bytes written."""

    verify_checksum(image)
    check_target(device)

    if not assume_yes:
        answer = input_fn(f"All data on {device} will be destroyed. Type '{CONFIRM_WORD}' to continue: ")
        if answer.strip() != CONFIRM_WORD:
            raise ApplianceError("Aborted by operator", stage="write-image")

    unmount_partitions(device, dry_run=dry_run)
    if dry_run:
        logger.info("Would write %s to %s", image, device)
        return 0

    logger.info("Writing %s to %s", image, device)
    written = stream_image(image, device)
    run_cmd(["sync"], check=False)
    logger.info("Wrote %d bytes to %s; safe to remove", written, device)
    return written
