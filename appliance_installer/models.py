from __future__ import annotations

import enum
import ipaddress
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import ApplianceError, ConfigError

MIB = 1024 * 1024

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": MIB, "G": 1024 * MIB, "T": 1024 * 1024 * MIB}
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

REST = "rest"


def parse_size(value: Union[int, str]) -> int:
    """Parse '256M', '3G', '4GiB' or a plain byte count into bytes."""

    if isinstance(value, int):
        return value
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ConfigError(f"Invalid size: {value!r}")
    number, unit = m.groups()
    return int(float(number) * _UNITS[unit.upper()])


# ---------------------------------------------------------------------------
# Image build
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartitionRequest:
    name: str
    fstype: str
    size: Optional[int]  # bytes; None claims the remaining space
    label: str
    esp: bool = False
    min_size: int = 0

    @property
    def is_rest(self) -> bool:
        return self.size is None


@dataclass(frozen=True)
class PlannedPartition:
    number: int
    name: str
    fstype: str
    label: str
    start: int  # bytes, inclusive
    end: int  # bytes, exclusive
    esp: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def start_mib(self) -> int:
        return self.start // MIB

    @property
    def end_mib(self) -> int:
        return self.end // MIB


@dataclass(frozen=True)
class PartitionLayout:
    total_size: int
    partitions: Tuple[PlannedPartition, ...]

    @property
    def esp(self) -> PlannedPartition:
        return next(p for p in self.partitions if p.esp)

    def by_name(self, name: str) -> PlannedPartition:
        for p in self.partitions:
            if p.name == name:
                return p
        raise KeyError(name)


@dataclass(frozen=True)
class PayloadSpec:
    binary_tarball: Optional[str] = None
    binary_name: str = "camera-box"
    install_dir: str = "/usr/local/bin"
    config_dir: str = "/etc/camera-box"
    service_name: str = "camera-box"
    runtime_library_src: Optional[str] = None
    runtime_library_dir: str = "/usr/lib/ndi"
    runtime_library_name: str = "libndi.so.6"

    @property
    def binary_path(self) -> str:
        return str(PurePosixPath(self.install_dir) / self.binary_name)

    @property
    def config_path(self) -> str:
        return str(PurePosixPath(self.config_dir) / "config.toml")

    @property
    def unit_name(self) -> str:
        return f"{self.service_name}.service"

    @property
    def reset_script_path(self) -> str:
        return str(PurePosixPath(self.install_dir) / f"{self.binary_name}-reset")

    @property
    def runtime_library_path(self) -> str:
        return str(PurePosixPath(self.runtime_library_dir) / self.runtime_library_name)

    @property
    def runtime_library_link(self) -> str:
        """Unversioned name the loader resolves, e.g. libndi.so for libndi.so.6."""

        return str(PurePosixPath(self.runtime_library_dir) / (self.runtime_library_name.split(".so")[0] + ".so"))


@dataclass(frozen=True)
class OverlaySpec:
    """Which partition is lower/upper and where the union replaces the root.

    `root_mount` is the path the kernel mounted the nominal root at (initramfs-tools uses
    `${rootmnt}`, normally /root).
    """

    label: str = "overlay"
    fstype: str = "ext4"
    root_mount: str = "/root"
    lower_mount: str = "/mnt/root-ro"
    overlay_mount: str = "/mnt/overlay"

    @property
    def upper_dir(self) -> str:
        return f"{self.overlay_mount}/upper"

    @property
    def work_dir(self) -> str:
        return f"{self.overlay_mount}/work"

    @property
    def device(self) -> str:
        return f"/dev/disk/by-label/{self.label}"


@dataclass(frozen=True)
class ImageSpec:
    output: str
    size: int
    partitions: Tuple[PartitionRequest, ...]
    payload: PayloadSpec
    suite: str = "bookworm"
    mirror: str = "http://deb.debian.org/debian"
    variant: str = "minbase"
    include: Tuple[str, ...] = ("systemd", "systemd-sysv", "dbus", "udev")
    packages: Tuple[str, ...] = ()
    compress: str = "none"
    hostname: str = "camera-box"


# ---------------------------------------------------------------------------
# Device identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FleetSpec:
    """Values shared by every device in the fleet."""

    subnet: ipaddress.IPv4Network = ipaddress.IPv4Network("10.77.8.0/23")
    gateway: ipaddress.IPv4Address = ipaddress.IPv4Address("10.77.8.1")
    dns: Tuple[ipaddress.IPv4Address, ...] = (ipaddress.IPv4Address("10.77.8.1"),)
    ndi_name: str = "usb"
    display_label: str = "STRIH-SNV (interkom)"
    capture_device: str = "auto"
    intercom_target: str = "strih.lan"
    sample_rate: int = 48000
    channels: int = 1


@dataclass(frozen=True)
class NetworkAddress:
    interface: ipaddress.IPv4Interface
    gateway: ipaddress.IPv4Address
    dns: Tuple[ipaddress.IPv4Address, ...]

    @property
    def host(self) -> ipaddress.IPv4Address:
        return self.interface.ip

    @property
    def prefix(self) -> int:
        return self.interface.network.prefixlen

    def __str__(self) -> str:
        return self.interface.with_prefixlen


def derive_stream_id(name: str) -> str:
    """Stream identifier derived from the device name (lowercasing)."""

    return name.lower()


@dataclass(frozen=True)
class DeviceIdentity:
    name: str
    address: NetworkAddress
    ndi_label: str
    stream_override: Optional[str] = None

    @property
    def stream_id(self) -> str:
        if self.stream_override is not None:
            return self.stream_override
        return derive_stream_id(self.name)

    @property
    def stream_overridden(self) -> bool:
        return self.stream_override is not None

    @classmethod
    def create(
        cls,
        name: str,
        address: str,
        fleet: FleetSpec,
        *,
        stream: Optional[str] = None,
    ) -> "DeviceIdentity":
        """Validate operator input and build an identity.

        `address` may omit the prefix, in which case the fleet subnet prefix is used.
        A `stream` equal to the derived value is not an override.
        """

        name = name.strip()
        if not _HOSTNAME_RE.match(name):
            raise ConfigError(f"Invalid device name (must be a hostname label): {name!r}")

        if "/" not in address:
            address = f"{address}/{fleet.subnet.prefixlen}"
        try:
            iface = ipaddress.IPv4Interface(address)
        except ValueError as e:
            raise ConfigError(f"Invalid address {address!r}: {e}") from e
        if iface.ip not in fleet.subnet or iface.network.prefixlen < fleet.subnet.prefixlen:
            raise ConfigError(f"Address {address} is outside fleet subnet {fleet.subnet}")
        if iface.ip in (fleet.subnet.network_address, fleet.subnet.broadcast_address):
            raise ConfigError(f"Address {address} is not a usable host address")

        override: Optional[str] = None
        if stream is not None:
            stream = stream.strip()
            if not stream:
                raise ConfigError("Stream identifier must not be empty")
            if stream != derive_stream_id(name):
                override = stream

        return cls(
            name=name,
            address=NetworkAddress(interface=iface, gateway=fleet.gateway, dns=fleet.dns),
            ndi_label=fleet.display_label,
            stream_override=override,
        )


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class StepOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_SATISFIED = "already-satisfied"
    FAILED = "failed"
    TIMED_OUT = "timeout"

    @property
    def is_failure(self) -> bool:
        return self in (StepOutcome.FAILED, StepOutcome.TIMED_OUT)


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: StepOutcome
    detail: str = ""


@dataclass
class ConvergenceReport:
    identity: DeviceIdentity
    results: List[StepResult] = field(default_factory=list)
    pending_actions: List[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.outcome.is_failure)

    @property
    def applied_count(self) -> int:
        return sum(1 for r in self.results if r.outcome is StepOutcome.APPLIED)

    @property
    def converged(self) -> bool:
        return self.failure_count == 0

    def outcome_of(self, name: str) -> StepOutcome:
        for r in self.results:
            if r.name == name:
                return r.outcome
        raise KeyError(name)

    def to_dict(self) -> Dict[str, object]:
        return {
            "device": self.identity.name,
            "address": str(self.identity.address),
            "stream_id": self.identity.stream_id,
            "stream_overridden": self.identity.stream_overridden,
            "converged": self.converged,
            "failure_count": self.failure_count,
            "steps": [
                {"name": r.name, "outcome": r.outcome.value, "detail": r.detail} for r in self.results
            ],
            "pending_actions": list(self.pending_actions),
        }


# ---------------------------------------------------------------------------
# Rollout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentWindow:
    """Paired pre/post actions around an artifact replacement.

    pre: quiesce `service`, remount `root_mount` read-write.
    post: remount `root_mount` read-only (best-effort), start `service`.
    """

    target: str
    artifact: str
    service: str
    root_mount: str = "/"


class DeployStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class DeployResult:
    target: str
    status: DeployStatus = DeployStatus.SUCCESS
    error: Optional[ApplianceError] = None
    warnings: List[Warning] = field(default_factory=list)
    stages: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is DeployStatus.SUCCESS


def describe_layout(layout: PartitionLayout) -> Sequence[str]:
    return [
        f"{p.number}: {p.name} {p.fstype} label={p.label} {p.start_mib}MiB-{p.end_mib}MiB"
        + (" [esp]" if p.esp else "")
        for p in layout.partitions
    ]
