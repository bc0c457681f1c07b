from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from .chroot import chroot_cmd
from .command import run_cmd

logger = logging.getLogger(__name__)


def debootstrap_rootfs(
    *,
    target_root: str,
    suite: str = "bookworm",
    mirror: str = "http://deb.debian.org/debian",
    variant: Optional[str] = "minbase",
    include: Sequence[str] = (),
    arch: str | None = None,
    timeout: Optional[float] = None,
    dry_run: bool = False,
) -> None:
    argv = ["debootstrap"]
    if arch:
        argv += ["--arch", arch]
    if variant:
        argv.append(f"--variant={variant}")
    if include:
        argv.append("--include=" + ",".join(include))
    argv += [suite, target_root, mirror]
    kwargs = {} if timeout is None else {"timeout": timeout}
    run_cmd(argv, dry_run=dry_run, **kwargs)


def apt_update(target_root: str, *, timeout: Optional[float] = None, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["apt-get", "update"], timeout=timeout, dry_run=dry_run)


def apt_install(
    target_root: str,
    packages: Sequence[str],
    *,
    with_recommends: bool = False,
    timeout: Optional[float] = None,
    dry_run: bool = False,
) -> None:
    if not packages:
        return
    argv = [
        "apt-get",
        "install",
        "-y",
    ]
    if not with_recommends:
        argv.append("--no-install-recommends")
    chroot_cmd(
        target_root,
        [*argv, *packages],
        timeout=timeout,
        dry_run=dry_run,
    )


def apt_clean(target_root: str, *, dry_run: bool = False) -> None:
    """Drop downloaded archives and package lists to keep the image small."""

    chroot_cmd(target_root, ["apt-get", "clean"], dry_run=dry_run)
    lists = Path(target_root) / "var/lib/apt/lists"
    if dry_run:
        logger.info("Would clear %s", str(lists))
        return
    if lists.exists():
        run_cmd(["find", str(lists), "-mindepth", "1", "-delete"], check=False)
