from __future__ import annotations

import logging
import os
import shlex
import shutil
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, Sequence

from ..errors import CommandError, ConnectivityError
from .command import CmdResult, fmt_argv, run_cmd

logger = logging.getLogger(__name__)

SSH_UNREACHABLE = 255


class Transport(Protocol):
    """What convergence and rollout need from a machine: run, read, write, copy."""

    label: str

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CmdResult:
        ...

    def read_text(self, path: str) -> Optional[str]:
        ...

    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def remove(self, path: str) -> None:
        ...

    def put_file(self, local_path: str, remote_path: str, *, timeout: Optional[float] = None) -> None:
        ...

    def ping(self) -> None:
        ...


class LocalTransport:
    """Operate on this machine. `root` prefixes every file path (commands are not chrooted)."""

    def __init__(self, root: str = "/", *, timeout: Optional[float] = 600.0) -> None:
        self.root = root
        self.timeout = timeout
        self.label = "localhost" if root == "/" else f"local:{root}"

    def path(self, path: str) -> Path:
        return Path(self.root) / path.lstrip("/")

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CmdResult:
        return run_cmd(argv, check=check, timeout=timeout or self.timeout, input_text=input_text)

    def read_text(self, path: str) -> Optional[str]:
        p = self.path(path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8", errors="replace")

    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        p = self.path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        os.chmod(p, mode)

    def exists(self, path: str) -> bool:
        return self.path(path).exists()

    def remove(self, path: str) -> None:
        self.path(path).unlink(missing_ok=True)

    def put_file(self, local_path: str, remote_path: str, *, timeout: Optional[float] = None) -> None:
        dst = self.path(remote_path)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dst)

    def ping(self) -> None:
        return None


class SshTransport:
    """Operate on a remote machine through ssh(1)/scp(1).

    Authentication comes from the operator's ssh configuration (agent, keys); no
    credentials are handled here. Exit status 255 from ssh means the connection itself
    failed and is reported as ConnectivityError.
    """

    def __init__(
        self,
        host: str,
        *,
        user: str = "root",
        port: int = 22,
        connect_timeout: int = 5,
        identity_file: Optional[str] = None,
        strict_host_key_checking: str = "accept-new",
        timeout: Optional[float] = 120.0,
    ) -> None:
        self.host = host
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout
        self.identity_file = identity_file
        self.strict_host_key_checking = strict_host_key_checking
        self.timeout = timeout
        self.label = host

    def _options(self) -> list[str]:
        opts = [
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            f"StrictHostKeyChecking={self.strict_host_key_checking}",
        ]
        if self.identity_file:
            opts += ["-i", self.identity_file]
        return opts

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CmdResult:
        remote = fmt_argv(argv)
        r = run_cmd(
            ["ssh", *self._options(), "-p", str(self.port), self.destination, "--", remote],
            check=False,
            timeout=timeout or self.timeout,
            input_text=input_text,
        )
        if r.returncode == SSH_UNREACHABLE:
            raise ConnectivityError(
                f"ssh to {self.destination} failed: {r.stderr.strip() or 'unreachable'}",
                stage="connect",
            )
        if check and r.returncode != 0:
            raise CommandError(
                f"Remote command failed on {self.host} ({r.returncode}): {remote}\n{r.stderr}",
                returncode=r.returncode,
                stderr=r.stderr,
            )
        return CmdResult(argv=list(argv), returncode=r.returncode, stdout=r.stdout, stderr=r.stderr)

    def read_text(self, path: str) -> Optional[str]:
        r = self.run(["cat", path], check=False)
        if r.returncode != 0:
            return None
        return r.stdout

    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        parent = str(PurePosixPath(path).parent)
        script = (
            f"mkdir -p {shlex.quote(parent)} && cat > {shlex.quote(path)} "
            f"&& chmod {mode:o} {shlex.quote(path)}"
        )
        self.run(["sh", "-c", script], input_text=content)

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path], check=False).returncode == 0

    def remove(self, path: str) -> None:
        self.run(["rm", "-f", path])

    def put_file(self, local_path: str, remote_path: str, *, timeout: Optional[float] = None) -> None:
        r = run_cmd(
            ["scp", "-q", *self._options(), "-P", str(self.port), local_path, f"{self.destination}:{remote_path}"],
            check=False,
            timeout=timeout or self.timeout,
        )
        if r.returncode != 0:
            raise CommandError(
                f"Copy of {local_path} to {self.host}:{remote_path} failed: {r.stderr.strip()}",
                returncode=r.returncode,
                stderr=r.stderr,
                stage="transfer",
            )

    def ping(self) -> None:
        self.run(["true"], timeout=self.connect_timeout + 10)
        logger.info("Connection to %s OK", self.destination)
