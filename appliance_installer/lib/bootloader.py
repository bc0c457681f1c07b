from __future__ import annotations

import logging
from pathlib import Path

from .chroot import chroot_cmd
from .templates import GRUB_DEFAULTS_PATH, render_grub_defaults

logger = logging.getLogger(__name__)


def install_grub_efi(
    *,
    target_root: str,
    bootloader_id: str = "appliance",
    dry_run: bool = False,
) -> None:
    """Install GRUB for x86_64 EFI targets on removable media.

    --removable writes the fallback EFI/BOOT/BOOTX64.EFI path so the image boots on any
    machine without an NVRAM entry.
    """

    # Assumes /boot/efi is mounted in target.
    chroot_cmd(
        target_root,
        [
            "grub-install",
            "--target=x86_64-efi",
            "--efi-directory=/boot/efi",
            f"--bootloader-id={bootloader_id}",
            "--removable",
        ],
        dry_run=dry_run,
    )
    chroot_cmd(target_root, ["update-grub"], dry_run=dry_run)
    logger.info("GRUB EFI installed")


def write_grub_defaults(*, target_root: str, distributor: str = "Appliance", dry_run: bool = False) -> None:
    cfg = Path(target_root) / GRUB_DEFAULTS_PATH.lstrip("/")
    if dry_run:
        logger.info("Would write %s", str(cfg))
        return
    cfg.parent.mkdir(parents=True, exist_ok=True)
    cfg.write_text(render_grub_defaults(distributor), encoding="utf-8")
    logger.info("Wrote grub defaults: %s", str(cfg))
