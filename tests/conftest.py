import hashlib
import os
import shutil
import tarfile
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from appliance_installer.errors import CommandError, CommandTimeout, ConnectivityError, MountError
from appliance_installer.lib.command import CmdResult, fmt_argv
from appliance_installer.lib.transport import LocalTransport
from appliance_installer.lib import templates
from appliance_installer.models import FleetSpec, PayloadSpec

ENABLED_STATES = ("enabled", "enabled-runtime")


class FakeDevice(LocalTransport):
    """A device whose filesystem lives under tmp_path and whose commands are emulated."""

    def __init__(self, root: Path, *, label: str = "cam-test") -> None:
        super().__init__(str(root))
        self.label = label
        self.hostname = "camera-box"
        self.unit_states: Dict[str, str] = {}
        self.active: Dict[str, str] = {}
        self.caps: Dict[str, str] = {}
        self.packages: Set[str] = set()
        self.commands: List[List[str]] = []
        self.failures: Dict[str, Tuple[int, str]] = {}
        self.timeouts: Set[str] = set()
        self.start_failures: Set[str] = set()
        self.reachable = True
        self.busy_remount = False
        self.corrupt_transfers = False
        self.root_writable = False

    # -- transport ---------------------------------------------------------

    def ping(self) -> None:
        if not self.reachable:
            raise ConnectivityError(f"{self.label} unreachable", stage="connect")

    def put_file(self, local_path, remote_path, *, timeout=None) -> None:
        super().put_file(local_path, remote_path, timeout=timeout)
        if self.corrupt_transfers:
            with open(self.path(remote_path), "ab") as f:
                f.write(b"\0corrupt")

    def run(self, argv, *, check=True, timeout=None, input_text=None) -> CmdResult:
        argv = list(argv)
        self.commands.append(argv)
        name = argv[0]
        if name in self.timeouts:
            raise CommandTimeout(f"Command timed out: {fmt_argv(argv)}")
        if name in self.failures:
            rc, err = self.failures[name]
            out = ""
        else:
            rc, out, err = self._emulate(argv)
        return self._result(argv, rc, out, err, check)

    def _result(self, argv, rc, out, err, check) -> CmdResult:
        if check and rc != 0:
            raise CommandError(f"Command failed ({rc}): {fmt_argv(argv)}\n{err}", returncode=rc, stderr=err)
        return CmdResult(argv=argv, returncode=rc, stdout=out, stderr=err)

    # -- emulation ---------------------------------------------------------

    def _emulate(self, argv: List[str]) -> Tuple[int, str, str]:
        name, args = argv[0], argv[1:]
        handler = getattr(self, "_cmd_" + name.replace("-", "_"), None)
        if handler is None:
            return 0, "", ""
        return handler(args)

    def _cmd_hostname(self, args):
        return 0, self.hostname + "\n", ""

    def _cmd_hostnamectl(self, args):
        self.hostname = args[-1]
        return 0, "", ""

    def _cmd_systemctl(self, args):
        verb, rest = args[0], args[1:]
        units = [u for u in rest if not u.startswith("--")]
        if verb == "is-enabled":
            state = self.unit_states.get(units[0], "")
            return (0 if state in ENABLED_STATES else 1), (state + "\n" if state else ""), ""
        if verb == "is-active":
            state = self.active.get(units[0], "inactive")
            return (0 if state == "active" else 3), state + "\n", ""
        for u in units:
            if verb == "enable":
                self.unit_states[u] = "enabled"
                if "--now" in rest:
                    self.active[u] = "active"
            elif verb == "disable":
                self.unit_states[u] = "disabled"
                if "--now" in rest:
                    self.active[u] = "inactive"
            elif verb == "mask":
                self.unit_states[u] = "masked"
            elif verb == "stop":
                self.active[u] = "inactive"
            elif verb == "start":
                self.active[u] = "failed" if u in self.start_failures else "active"
        return 0, "", ""

    def _cmd_getcap(self, args):
        path = args[0]
        if path in self.caps:
            return 0, f"{path} {self.caps[path]}\n", ""
        return 0, "", ""

    def _cmd_setcap(self, args):
        spec, path = args
        if not self.exists(path):
            return 1, "", f"Failed to set capabilities on file '{path}' (No such file or directory)"
        names, _, flags = spec.partition("+")
        self.caps[path] = ",".join(sorted(names.split(","))) + "=" + flags
        return 0, "", ""

    def _cmd_dpkg_query(self, args):
        pkg = args[-1]
        if pkg in self.packages:
            return 0, "install ok installed", ""
        return 1, "", f"dpkg-query: no packages found matching {pkg}"

    def _cmd_apt_get(self, args):
        if args[0] == "install":
            self.packages.update(a for a in args[1:] if not a.startswith("-"))
        return 0, "", ""

    def _cmd_mount(self, args):
        if args[:2] == ["-o", "remount,rw"]:
            self.root_writable = True
        elif args[:2] == ["-o", "remount,ro"]:
            if self.busy_remount:
                return 32, "", "mount: /: mount point is busy."
            self.root_writable = False
        return 0, "", ""

    def _cmd_sha256sum(self, args):
        p = self.path(args[0])
        if not p.is_file():
            return 1, "", f"sha256sum: {args[0]}: No such file or directory"
        return 0, f"{hashlib.sha256(p.read_bytes()).hexdigest()}  {args[0]}\n", ""

    def _cmd_install(self, args):
        src, dst = args[-2], args[-1]
        if not self.root_writable:
            return 1, "", f"install: cannot create regular file '{dst}': Read-only file system"
        self.path(dst).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.path(src), self.path(dst))
        self.caps.pop(dst, None)
        return 0, "", ""

    def _cmd_tar(self, args):
        src, dest = args[1], args[3]
        if not self.root_writable:
            return 2, "", "tar: Cannot open: Read-only file system"
        with tarfile.open(self.path(src), "r:gz") as tf:
            tf.extractall(self.path(dest))
        for member in list(self.caps):
            if member.startswith(dest):
                self.caps.pop(member)
        return 0, "", ""

    def _cmd_rm(self, args):
        self.remove(args[-1])
        return 0, "", ""

    def _cmd_test(self, args):
        return (0 if self.exists(args[-1]) else 1), "", ""

    def _cmd_ln(self, args):
        target, link = args[-2], args[-1]
        p = self.path(link)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.is_symlink() or p.exists():
            p.unlink()
        p.symlink_to(target)
        return 0, "", ""

    def _cmd_readlink(self, args):
        p = self.path(args[-1])
        if not p.is_symlink():
            return 1, "", ""
        return 0, os.readlink(p) + "\n", ""

    # -- helpers for tests -------------------------------------------------

    def ran(self, *prefix: str) -> bool:
        return any(argv[: len(prefix)] == list(prefix) for argv in self.commands)


def golden_device(root: Path, payload: Optional[PayloadSpec] = None) -> FakeDevice:
    """A device as it boots from a freshly written golden image."""

    payload = payload or PayloadSpec()
    dev = FakeDevice(root)
    dev.write_text(payload.binary_path, "#!/bin/sh\necho old\n", mode=0o755)
    dev.write_text(payload.runtime_library_path, "runtime v6\n")
    dev.write_text(templates.HOSTNAME_PATH, templates.render_hostname("camera-box"))
    dev.write_text(templates.HOSTS_PATH, templates.render_hosts("camera-box"))
    dev.write_text(templates.GRUB_DEFAULTS_PATH, templates.render_grub_defaults())
    dev.write_text(templates.NETPLAN_CLOUD_INIT_PATH, "network: {version: 2}\n")
    dev.unit_states.update(
        {
            "snapd.service": "enabled",
            "snapd.socket": "enabled",
            "cloud-init.service": "enabled",
            "bluetooth.service": "enabled",
            "sleep.target": "static",
        }
    )
    dev.active[payload.unit_name] = "active"
    return dev


@pytest.fixture
def fleet():
    return FleetSpec()


@pytest.fixture
def payload():
    return PayloadSpec()


@pytest.fixture
def device(tmp_path, payload):
    return golden_device(tmp_path / "device", payload)


# ---------------------------------------------------------------------------
# Mount backends
# ---------------------------------------------------------------------------


class DirFs:
    def __init__(self, base: Path) -> None:
        self.base = base

    def real(self, rel: str) -> Path:
        return self.base / rel.lstrip("/")

    def exists(self, rel: str) -> bool:
        return self.real(rel).exists()

    def writable_path(self, rel: str) -> Path:
        return self.real(rel)


class OverlayFs:
    def __init__(self, lower, upper: Path) -> None:
        self.lower = lower
        self.upper = upper

    def real(self, rel: str) -> Path:
        up = self.upper / rel.lstrip("/")
        return up if up.exists() else self.lower.real(rel)

    def exists(self, rel: str) -> bool:
        return (self.upper / rel.lstrip("/")).exists() or self.lower.exists(rel)

    def writable_path(self, rel: str) -> Path:
        return self.upper / rel.lstrip("/")


class ScratchNamespace:
    """Mount namespace emulated over directories: mount, move-mount and overlay semantics."""

    def __init__(self, base: Path) -> None:
        root = base / "ns-root"
        root.mkdir(parents=True, exist_ok=True)
        self.mounts: Dict[str, object] = {"/": DirFs(root)}
        self.devices: Dict[str, DirFs] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Optional[Tuple[str, str]] = None

    def _check(self, op: str, target: str) -> None:
        self.calls.append((op, target))
        if self.fail_on == (op, target):
            raise MountError(f"{op} {target} failed", stage=op)

    def resolve(self, path: str):
        best = "/"
        for m in self.mounts:
            if (path == m or path.startswith(m.rstrip("/") + "/")) and len(m) > len(best):
                best = m
        rel = path[len(best):] if best != "/" else path
        return self.mounts[best], rel

    def is_dir(self, path: str) -> bool:
        fs, rel = self.resolve(path)
        return fs.exists(rel) and fs.real(rel).is_dir()

    def makedirs(self, path: str) -> None:
        self._check("makedirs", path)
        fs, rel = self.resolve(path)
        if not fs.exists(rel):
            fs.writable_path(rel).mkdir(parents=True, exist_ok=True)

    def mount(self, source, target, *, fstype=None, options=None) -> None:
        self._check("mount", target)
        if not self.is_dir(target):
            raise MountError(f"mount point {target} does not exist", stage="mount")
        if fstype == "overlay":
            opts = dict(kv.split("=", 1) for kv in options.split(","))
            lower = self.mounts.get(opts["lowerdir"])
            if lower is None:
                raise MountError(f"lowerdir {opts['lowerdir']} is not mounted", stage="mount")
            ufs, urel = self.resolve(opts["upperdir"])
            if not self.is_dir(opts["upperdir"]) or not self.is_dir(opts["workdir"]):
                raise MountError("upper/work directories missing", stage="mount")
            self.mounts[target] = OverlayFs(lower, ufs.real(urel))
            return
        fs = self.devices.get(source)
        if fs is None:
            raise MountError(f"special device {source} does not exist", stage="mount")
        self.mounts[target] = fs

    def bind(self, source, target) -> None:
        self._check("bind", target)
        fs, rel = self.resolve(source)
        self.mounts[target] = DirFs(fs.real(rel))

    def move(self, source, target) -> None:
        self._check("move", target)
        if source not in self.mounts:
            raise MountError(f"{source} is not a mount point", stage="move")
        if not self.is_dir(target):
            raise MountError(f"mount point {target} does not exist", stage="move")
        moving = {m: fs for m, fs in self.mounts.items() if m == source or m.startswith(source + "/")}
        for m in moving:
            del self.mounts[m]
        for m, fs in moving.items():
            self.mounts[target + m[len(source):]] = fs

    def umount(self, target) -> None:
        self._check("umount", target)
        if target not in self.mounts:
            raise MountError(f"{target}: not mounted", stage="umount")
        del self.mounts[target]

    def sync(self) -> None:
        self.calls.append(("sync", ""))

    def read_text(self, path: str) -> str:
        fs, rel = self.resolve(path)
        return fs.real(rel).read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> None:
        fs, rel = self.resolve(path)
        p = fs.writable_path(rel)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")


class RecordingBackend:
    """MountBackend that records calls; `fail_umount` targets raise MountError."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.fail_umount: Set[str] = set()

    def makedirs(self, path):
        self.calls.append(("makedirs", path))

    def mount(self, source, target, *, fstype=None, options=None):
        self.calls.append(("mount", source, target))

    def bind(self, source, target):
        self.calls.append(("bind", source, target))

    def move(self, source, target):
        self.calls.append(("move", source, target))

    def umount(self, target):
        self.calls.append(("umount", target))
        if target in self.fail_umount:
            raise MountError(f"umount: {target}: target is busy.", stage="umount")

    def sync(self):
        self.calls.append(("sync",))


@pytest.fixture
def recording_backend():
    return RecordingBackend()
