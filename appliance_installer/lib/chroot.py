from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from .command import CmdResult, run_cmd
from .mounts import MountBackend, MountStack

logger = logging.getLogger(__name__)

CHROOT_ENV = {"DEBIAN_FRONTEND": "noninteractive", "LC_ALL": "C"}

# Minimal bind mounts for apt, grub-install, initramfs tooling
BIND_SOURCES = ("/dev", "/dev/pts", "/proc", "/sys")


def chroot_cmd(
    target_root: str,
    argv: Sequence[str],
    *,
    check: bool = True,
    timeout: Optional[float] = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command inside target root."""

    kwargs = {} if timeout is None else {"timeout": timeout}
    return run_cmd(["chroot", target_root, *argv], check=check, env=CHROOT_ENV, dry_run=dry_run, **kwargs)


@contextmanager
def chroot_binds(target_root: str, backend: MountBackend) -> Iterator[MountStack]:
    """Bind the host's pseudo filesystems into target root for the duration of the block."""

    with MountStack(backend) as stack:
        for src in BIND_SOURCES:
            stack.bind(src, f"{target_root}{src}")
        yield stack
