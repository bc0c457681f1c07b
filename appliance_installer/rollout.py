"""Remote rollout: replace the appliance binary on one or more devices.

Per target the sequence is:

    reachability -> stage artifact -> verify checksum on the device
    -> [quiesce service -> root read-write -> install (binary, then runtime library when given)
        -> root read-only (best-effort) -> start]
    -> wait until the service is active

The bracketed part is the deployment window. Its post-actions always run once its pre-actions
have started, even when the install or the quiesce itself fails, and a failed window removes
the staged files. Artifacts are verified before the window opens, so an integrity failure
leaves the device exactly as it was.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, List, Optional, Sequence

from .errors import (
    ApplianceError,
    BusyResourceWarning,
    CommandTimeout,
    IntegrityError,
    ServiceStartError,
)
from .lib import templates
from .lib.checksum import checksum_path, sha256_file, verify_checksum
from .lib.transport import Transport
from .models import DeploymentWindow, DeployResult, DeployStatus, PayloadSpec

logger = logging.getLogger(__name__)

STAGING_DIR = "/tmp"
TARBALL_SUFFIXES = (".tar.gz", ".tgz")


def _stage(result: DeployResult, name: str) -> None:
    result.stages.append(name)
    logger.info("[%s] %s", result.target, name)


def is_tarball(artifact: str) -> bool:
    return artifact.endswith(TARBALL_SUFFIXES)


def staging_path(artifact: str) -> str:
    return str(PurePosixPath(STAGING_DIR) / f"{Path(artifact).name}.staged")


def local_digest(artifact: str) -> str:
    """Digest of the local artifact, checked against its detached checksum when one exists."""

    if not Path(artifact).is_file():
        raise IntegrityError(f"Artifact not found: {artifact}", stage="verify")
    if checksum_path(artifact).exists():
        return verify_checksum(artifact)
    return sha256_file(artifact)


def stage_artifact(transport: Transport, artifact: str, digest: str, *, timeout: Optional[float] = None) -> str:
    """Copy the artifact to the device's staging area and verify it there."""

    remote = staging_path(artifact)
    transport.put_file(artifact, remote, timeout=timeout)
    r = transport.run(["sha256sum", remote], check=False, timeout=timeout)
    fields = r.stdout.split()
    remote_digest = fields[0].lower() if r.ok and fields else ""
    if remote_digest != digest:
        transport.run(["rm", "-f", remote], check=False, timeout=timeout)
        raise IntegrityError(
            f"Transferred artifact does not match: expected {digest}, got {remote_digest or 'nothing'}",
            stage="verify",
        )
    return remote


def restore_read_only(transport: Transport, window: DeploymentWindow, result: DeployResult, *, timeout=None) -> None:
    """Remount the root read-only. Never fails the deployment; problems become warnings."""

    try:
        r = transport.run(["mount", "-o", "remount,ro", window.root_mount], check=False, timeout=timeout)
    except ApplianceError as e:
        warning: Warning = UserWarning(f"Read-only remount of {window.root_mount} not attempted: {e}")
    else:
        if r.ok:
            _stage(result, "read-only")
            return
        if "busy" in (r.stderr or "").lower():
            warning = BusyResourceWarning(
                f"{window.root_mount} is busy and stays writable until the next reboot"
            )
        else:
            warning = UserWarning(f"Read-only remount of {window.root_mount} failed: {r.stderr.strip()}")
    result.warnings.append(warning)
    logger.warning("[%s] %s", result.target, warning)


def _discard_staged(transport: Transport, staged: Sequence[str], result: DeployResult, *, timeout=None) -> None:
    for path in staged:
        try:
            transport.run(["rm", "-f", path], check=False, timeout=timeout)
        except ApplianceError as e:
            logger.warning("[%s] could not remove %s: %s", result.target, path, e)


@contextmanager
def deployment_window(
    transport: Transport,
    window: DeploymentWindow,
    result: DeployResult,
    *,
    staged: Sequence[str] = (),
    timeout: Optional[float] = None,
) -> Iterator[None]:
    completed = False
    try:
        transport.run(["systemctl", "stop", window.service], timeout=timeout)
        _stage(result, "quiesce")
        transport.run(["mount", "-o", "remount,rw", window.root_mount], timeout=timeout)
        _stage(result, "writable")
        yield
        completed = True
    finally:
        if not completed:
            _discard_staged(transport, staged, result, timeout=timeout)
        restore_read_only(transport, window, result, timeout=timeout)
        try:
            transport.run(["systemctl", "start", window.service], timeout=timeout)
            _stage(result, "resume")
        except ApplianceError as e:
            if completed:
                raise ServiceStartError(f"{window.service} could not be started: {e}", stage="resume") from e
            logger.error("[%s] restart of %s after a failed window also failed: %s", result.target, window.service, e)


def install_artifact(
    transport: Transport,
    staged: str,
    artifact: str,
    payload: PayloadSpec,
    *,
    timeout: Optional[float] = None,
) -> None:
    if is_tarball(artifact):
        transport.run(["tar", "-xzf", staged, "-C", payload.install_dir], timeout=timeout)
    else:
        transport.run(["install", "-m", "755", staged, payload.binary_path], timeout=timeout)
    # Replacing the file drops its capabilities.
    transport.run(["setcap", templates.CAPABILITY_GRANT, payload.binary_path], timeout=timeout)
    transport.run(["rm", "-f", staged], check=False, timeout=timeout)


def install_runtime_library(
    transport: Transport,
    staged: str,
    payload: PayloadSpec,
    *,
    timeout: Optional[float] = None,
) -> None:
    """Install the runtime library under its versioned name and point the unversioned link at it."""

    transport.run(["install", "-D", "-m", "644", staged, payload.runtime_library_path], timeout=timeout)
    transport.run(["ln", "-sf", payload.runtime_library_name, payload.runtime_library_link], timeout=timeout)
    transport.run(["ldconfig"], timeout=timeout)
    transport.run(["rm", "-f", staged], check=False, timeout=timeout)


def wait_until_active(
    transport: Transport,
    service: str,
    *,
    start_timeout: float = 30.0,
    poll_interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    deadline = time.monotonic() + start_timeout
    state = ""
    while True:
        state = transport.run(["systemctl", "is-active", service], check=False).stdout.strip()
        if state == "active":
            return
        if state == "failed" or time.monotonic() >= deadline:
            break
        sleep(poll_interval)
    raise ServiceStartError(
        f"{service} did not reach running state (is-active: {state or 'unknown'})",
        stage="verify-running",
    )


def deploy(
    transport: Transport,
    artifact: str,
    *,
    payload: PayloadSpec,
    runtime_library: Optional[str] = None,
    timeout: Optional[float] = None,
    start_timeout: float = 30.0,
    poll_interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> DeployResult:
    """Deploy `artifact` to the device behind `transport`. Errors are returned, not raised.

    `runtime_library`, when given, is staged and verified like the artifact and installed
    in the same window as `payload.runtime_library_path`.
    """

    result = DeployResult(target=transport.label)
    window = DeploymentWindow(target=transport.label, artifact=artifact, service=payload.unit_name)
    try:
        transport.ping()
        _stage(result, "reachable")

        staged = stage_artifact(transport, artifact, local_digest(artifact), timeout=timeout)
        staged_paths = [staged]
        staged_library = None
        if runtime_library:
            try:
                staged_library = stage_artifact(
                    transport, runtime_library, local_digest(runtime_library), timeout=timeout
                )
            except (ApplianceError, OSError):
                _discard_staged(transport, staged_paths, result, timeout=timeout)
                raise
            staged_paths.append(staged_library)
        _stage(result, "staged")

        with deployment_window(transport, window, result, staged=staged_paths, timeout=timeout):
            install_artifact(transport, staged, artifact, payload, timeout=timeout)
            _stage(result, "installed")
            if staged_library:
                install_runtime_library(transport, staged_library, payload, timeout=timeout)
                _stage(result, "runtime-library")

        wait_until_active(
            transport,
            payload.unit_name,
            start_timeout=start_timeout,
            poll_interval=poll_interval,
            sleep=sleep,
        )
        _stage(result, "running")
    except CommandTimeout as e:
        result.status = DeployStatus.TIMEOUT
        result.error = e
        logger.error("[%s] timed out: %s", result.target, e)
    except ApplianceError as e:
        result.status = DeployStatus.FAILED
        result.error = e
        logger.error("[%s] failed: %s", result.target, e)
    except OSError as e:
        result.status = DeployStatus.FAILED
        stage = result.stages[-1] if result.stages else "reachable"
        result.error = ApplianceError(f"{type(e).__name__}: {e}", stage=stage)
        logger.error("[%s] failed: %s", result.target, e)
    else:
        logger.info("[%s] deployed %s", result.target, Path(artifact).name)
    return result


def deploy_many(
    targets: Sequence[str],
    artifact: str,
    *,
    transport_factory: Callable[[str], Transport],
    payload: PayloadSpec,
    max_workers: Optional[int] = None,
    **kwargs,
) -> List[DeployResult]:
    """Deploy to several independent devices concurrently; results keep the order of `targets`."""

    if not targets:
        return []

    def one(target: str) -> DeployResult:
        return deploy(transport_factory(target), artifact, payload=payload, **kwargs)

    with ThreadPoolExecutor(max_workers=max_workers or min(8, len(targets))) as pool:
        return list(pool.map(one, targets))
