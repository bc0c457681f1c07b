from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple

from ..errors import CommandError, CommandTimeout, MountError
from .command import run_cmd

logger = logging.getLogger(__name__)


class MountBackend(Protocol):
    """The mount primitives the build and the boot transform rely on."""

    def makedirs(self, path: str) -> None:
        ...

    def mount(self, source: str, target: str, *, fstype: Optional[str] = None, options: Optional[str] = None) -> None:
        ...

    def bind(self, source: str, target: str) -> None:
        ...

    def move(self, source: str, target: str) -> None:
        ...

    def umount(self, target: str) -> None:
        ...

    def sync(self) -> None:
        ...


class HostMounts:
    """MountBackend backed by mount(8)/umount(8) on the running host."""

    def __init__(self, *, dry_run: bool = False, timeout: Optional[float] = 120.0) -> None:
        self.dry_run = dry_run
        self.timeout = timeout

    def _run(self, argv: List[str]) -> None:
        try:
            run_cmd(argv, timeout=self.timeout, dry_run=self.dry_run)
        except CommandError as e:
            raise MountError(str(e), stage=argv[0]) from e

    def makedirs(self, path: str) -> None:
        if self.dry_run:
            logger.info("Would create %s", path)
            return
        Path(path).mkdir(parents=True, exist_ok=True)

    def mount(self, source: str, target: str, *, fstype: Optional[str] = None, options: Optional[str] = None) -> None:
        argv = ["mount"]
        if fstype:
            argv += ["-t", fstype]
        if options:
            argv += ["-o", options]
        self._run([*argv, source, target])

    def bind(self, source: str, target: str) -> None:
        self._run(["mount", "--bind", source, target])

    def move(self, source: str, target: str) -> None:
        self._run(["mount", "--move", source, target])

    def umount(self, target: str) -> None:
        self._run(["umount", target])

    def sync(self) -> None:
        self._run(["sync"])


class MountStack:
    """Scoped acquisition of mounts (and anything else that needs releasing).

    Releases run in strict reverse order of acquisition. Leaving the `with` block
    normally performs a strict release (any failure raises MountError after every
    release was attempted); leaving it with an exception, including KeyboardInterrupt,
    performs a best-effort release that logs failures and lets the original exception
    propagate.
    """

    def __init__(self, backend: MountBackend) -> None:
        self.backend = backend
        self._releases: List[Tuple[str, Callable[[], None]]] = []

    def __enter__(self) -> "MountStack":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    @property
    def held(self) -> List[str]:
        return [desc for desc, _ in self._releases]

    def push(self, description: str, release: Callable[[], None]) -> None:
        self._releases.append((description, release))

    def mount(self, source: str, target: str, *, fstype: Optional[str] = None, options: Optional[str] = None) -> str:
        self.backend.makedirs(target)
        self.backend.mount(source, target, fstype=fstype, options=options)
        self.push(f"umount {target}", lambda: self.backend.umount(target))
        return target

    def bind(self, source: str, target: str) -> str:
        self.backend.makedirs(target)
        self.backend.bind(source, target)
        self.push(f"umount {target}", lambda: self.backend.umount(target))
        return target

    def _drain(self) -> List[str]:
        failures: List[str] = []
        while self._releases:
            desc, release = self._releases.pop()
            try:
                release()
                logger.info("Released: %s", desc)
            except (MountError, CommandError, CommandTimeout, OSError) as e:
                logger.error("Release failed: %s (%s)", desc, e)
                failures.append(f"{desc}: {e}")
        return failures

    def close(self) -> None:
        """Release everything; raise MountError if any release failed."""

        failures = self._drain()
        if failures:
            raise MountError("Teardown incomplete: " + "; ".join(failures), stage="teardown")

    def abort(self) -> None:
        """Release everything on an error path without masking the original error."""

        failures = self._drain()
        if failures:
            logger.warning("Cleanup after failure left %d resource(s) held", len(failures))
