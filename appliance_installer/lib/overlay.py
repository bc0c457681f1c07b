"""Boot-time transform of the read-only root into an overlay union.

The transform is expressed once, as an ordered list of mount operations, and used two ways:

- rendered into an initramfs-tools ``init-bottom`` hook that runs on the appliance before
  the init system takes over (``render_hook_script``);
- executed against a ``MountBackend`` (``run_transform``), with every completed operation
  undone in reverse order if a later one fails.

Phases, in their fixed order:

1. ACQUIRE_OVERLAY   mount the overlay partition (by label) at O
2. PREPARE_LAYERS    ensure O/upper and O/work exist (never wiped)
3. RELOCATE_LOWER    move-mount R to L
4. MOUNT_UNION       overlay at R: lowerdir=L, upperdir=O/upper, workdir=O/work
5. REPARENT          move-mount L and O to R/L and R/O so they survive the root switch
"""

from __future__ import annotations

import enum
import logging
import os
import shlex
import shutil
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from ..errors import CommandError, MountError
from ..models import OverlaySpec
from .mounts import MountBackend

logger = logging.getLogger(__name__)

ROOTMNT_VAR = "${rootmnt}"
HOOK_REL_PATH = "etc/initramfs-tools/scripts/init-bottom/overlay"


class TransformPhase(str, enum.Enum):
    ACQUIRE_OVERLAY = "acquire-overlay"
    PREPARE_LAYERS = "prepare-layers"
    RELOCATE_LOWER = "relocate-lower"
    MOUNT_UNION = "mount-union"
    REPARENT = "reparent-auxiliary-mounts"


PHASE_ORDER = tuple(TransformPhase)


@dataclass(frozen=True)
class MakeDirs:
    phase: TransformPhase
    paths: Tuple[str, ...]

    def apply(self, backend: MountBackend) -> None:
        for p in self.paths:
            backend.makedirs(p)

    def undo(self, backend: MountBackend) -> None:
        # Empty directories are harmless and the upper layer must never be removed.
        return None

    def shell(self) -> str:
        return "mkdir -p " + " ".join(_sh(p) for p in self.paths)


@dataclass(frozen=True)
class Mount:
    phase: TransformPhase
    source: str
    target: str
    fstype: str
    options: Optional[str] = None

    def apply(self, backend: MountBackend) -> None:
        backend.mount(self.source, self.target, fstype=self.fstype, options=self.options)

    def undo(self, backend: MountBackend) -> None:
        backend.umount(self.target)

    def shell(self) -> str:
        argv = ["mount", "-t", self.fstype]
        if self.options:
            argv += ["-o", _sh(self.options)]
        return " ".join(argv + [_sh(self.source), _sh(self.target)])


@dataclass(frozen=True)
class MoveMount:
    phase: TransformPhase
    source: str
    target: str

    def apply(self, backend: MountBackend) -> None:
        backend.move(self.source, self.target)

    def undo(self, backend: MountBackend) -> None:
        backend.move(self.target, self.source)

    def shell(self) -> str:
        return f"mount --move {_sh(self.source)} {_sh(self.target)}"


MountOp = Union[MakeDirs, Mount, MoveMount]


def _sh(word: str) -> str:
    """Quote for /bin/sh while leaving ${rootmnt} expandable."""

    if ROOTMNT_VAR in word:
        head, _, tail = word.partition(ROOTMNT_VAR)
        return (shlex.quote(head) if head else "") + '"' + ROOTMNT_VAR + '"' + (shlex.quote(tail) if tail else "")
    return shlex.quote(word)


def plan_overlay_transform(spec: OverlaySpec, *, root: Optional[str] = None) -> List[MountOp]:
    """Return the ordered operations for the transform.

    `root` overrides `spec.root_mount` (the hook renderer passes ``${rootmnt}``).
    """

    r = root if root is not None else spec.root_mount
    lower = spec.lower_mount
    ovl = spec.overlay_mount
    union_opts = f"lowerdir={lower},upperdir={spec.upper_dir},workdir={spec.work_dir}"

    P = TransformPhase
    return [
        MakeDirs(P.ACQUIRE_OVERLAY, (ovl,)),
        Mount(P.ACQUIRE_OVERLAY, spec.device, ovl, spec.fstype),
        MakeDirs(P.PREPARE_LAYERS, (spec.upper_dir, spec.work_dir)),
        MakeDirs(P.RELOCATE_LOWER, (lower,)),
        MoveMount(P.RELOCATE_LOWER, r, lower),
        Mount(P.MOUNT_UNION, "overlay", r, "overlay", union_opts),
        MakeDirs(P.REPARENT, (f"{r}{lower}", f"{r}{ovl}")),
        MoveMount(P.REPARENT, lower, f"{r}{lower}"),
        MoveMount(P.REPARENT, ovl, f"{r}{ovl}"),
    ]


def check_plan_order(ops: Sequence[MountOp]) -> None:
    """Raise MountError if the operations violate the transform's ordering constraints."""

    phases = [op.phase for op in ops]
    ranks = [PHASE_ORDER.index(p) for p in phases]
    if ranks != sorted(ranks):
        raise MountError(f"Transform phases out of order: {[p.value for p in phases]}", stage="plan")
    present = set(phases)
    missing = [p.value for p in PHASE_ORDER if p not in present]
    if missing:
        raise MountError(f"Transform is missing phases: {missing}", stage="plan")


def run_transform(spec: OverlaySpec, backend: MountBackend) -> List[TransformPhase]:
    """Execute the transform against `backend`.

    Single pass, no retries. If any operation fails, every completed operation is
    undone in reverse order and MountError (naming the failed phase) is raised.
    """

    ops = plan_overlay_transform(spec)
    check_plan_order(ops)

    done: List[TransformPhase] = []
    with ExitStack() as rollback:
        for op in ops:
            try:
                op.apply(backend)
            except (MountError, CommandError, OSError) as e:
                logger.error("Overlay transform failed in %s: %s", op.phase.value, e)
                raise MountError(f"Overlay transform failed: {e}", stage=op.phase.value) from e
            rollback.callback(_safe_undo, op, backend)
            if not done or done[-1] is not op.phase:
                done.append(op.phase)
        rollback.pop_all()

    logger.info("Overlay root active at %s (upper=%s)", spec.root_mount, spec.upper_dir)
    return done


def _safe_undo(op: MountOp, backend: MountBackend) -> None:
    try:
        op.undo(backend)
    except (MountError, CommandError, OSError) as e:
        logger.error("Rollback of %s (%s) failed: %s", op.phase.value, type(op).__name__, e)


def render_hook_script(spec: OverlaySpec) -> str:
    """Render the initramfs-tools init-bottom hook for `spec`."""

    ops = plan_overlay_transform(spec, root=ROOTMNT_VAR)
    check_plan_order(ops)

    lines = [
        "#!/bin/sh",
        "# Union the read-only root with the writable overlay partition.",
        "# Runs once per boot from the initramfs; the upper layer is never wiped here.",
        'PREREQ=""',
        'prereqs() { echo "$PREREQ"; }',
        'case "$1" in',
        "    prereqs) prereqs; exit 0 ;;",
        "esac",
        "",
        ". /scripts/functions",
        "",
        "fail() {",
        '    panic "overlay-root: $1 failed"',
        "    exit 1",
        "}",
    ]
    current: Optional[TransformPhase] = None
    for op in ops:
        if op.phase is not current:
            current = op.phase
            lines += ["", f"# {current.value}"]
        lines.append(f"{op.shell()} || fail {current.value}")
    lines.append("")
    return "\n".join(lines)


def write_hook(target_root: str, spec: OverlaySpec, *, dry_run: bool = False) -> Path:
    """Install the hook (mode 0755) into the initramfs-tools tree of `target_root`."""

    path = Path(target_root) / HOOK_REL_PATH
    if dry_run:
        logger.info("Would write %s", str(path))
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_hook_script(spec), encoding="utf-8")
    os.chmod(path, 0o755)

    # Reparent targets exist in the lower layer so boot never has to create them.
    for d in (spec.lower_mount, spec.overlay_mount):
        (Path(target_root) / d.lstrip("/")).mkdir(parents=True, exist_ok=True)

    logger.info("Wrote overlay boot hook: %s", str(path))
    return path


def factory_reset(spec: OverlaySpec, *, dry_run: bool = False) -> int:
    """Discard every change stored in the upper layer. Explicit operation only.

    Returns the number of top-level entries removed from upper/ and work/.
    """

    upper = Path(spec.upper_dir)
    work = Path(spec.work_dir)
    if not upper.is_dir():
        raise MountError(f"Overlay upper layer not found at {upper}", stage="factory-reset")

    removed = 0
    for layer in (upper, work):
        if not layer.is_dir():
            continue
        for child in layer.iterdir():
            if dry_run:
                logger.info("Would remove %s", str(child))
            elif child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
            removed += 1

    logger.info("Factory reset removed %d entries from %s", removed, spec.overlay_mount)
    return removed
