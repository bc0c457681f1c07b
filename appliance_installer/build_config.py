from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .models import (
    REST,
    FleetSpec,
    ImageSpec,
    OverlaySpec,
    PartitionRequest,
    PayloadSpec,
    parse_size,
)

DEFAULT_CONFIG_PATH = "appliance.yaml"

DEFAULT_PARTITIONS: List[Dict[str, Any]] = [
    {"name": "EFI", "fstype": "vfat", "size": "256M", "label": "EFI", "esp": True},
    {"name": "root", "fstype": "ext4", "size": "3G", "label": "root"},
    {"name": "overlay", "fstype": "ext4", "size": REST, "label": "overlay", "min_size": "512M"},
]

DEFAULT_PACKAGES = [
    "linux-image-amd64",
    "grub-efi-amd64",
    "initramfs-tools",
    "avahi-daemon",
    "v4l-utils",
    "util-linux",
    "iproute2",
    "openssh-server",
    "curl",
    "ca-certificates",
    "ffmpeg",
]

COMPRESSIONS = ("none", "xz", "gz")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = raw.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return sec


@dataclass(frozen=True)
class SshSettings:
    user: str = "root"
    port: int = 22
    connect_timeout: int = 5
    identity_file: Optional[str] = None
    strict_host_key_checking: str = "accept-new"


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def image_output(self) -> str:
        return str(_section(self.raw, "image").get("output") or "camera-box-image.img")

    @property
    def image_size(self) -> int:
        return parse_size(_section(self.raw, "image").get("size") or "4G")

    @property
    def compress(self) -> str:
        value = str(_section(self.raw, "image").get("compress") or "none")
        if value not in COMPRESSIONS:
            raise ConfigError(f"image.compress must be one of {COMPRESSIONS}, got {value!r}")
        return value

    @property
    def work_dir(self) -> str:
        return str(_section(self.raw, "image").get("work_dir") or "/tmp/camera-box-build")

    @property
    def hostname(self) -> str:
        return str(_section(self.raw, "image").get("hostname") or "camera-box")

    @property
    def partitions(self) -> List[PartitionRequest]:
        items = self.raw.get("partitions") or DEFAULT_PARTITIONS
        if not isinstance(items, list):
            raise ConfigError("partitions must be a list")
        out: List[PartitionRequest] = []
        for item in items:
            if not isinstance(item, dict) or "name" not in item:
                raise ConfigError(f"Invalid partition entry: {item!r}")
            size = item.get("size", REST)
            out.append(
                PartitionRequest(
                    name=str(item["name"]),
                    fstype=str(item.get("fstype") or "ext4"),
                    size=None if str(size) == REST else parse_size(size),
                    label=str(item.get("label") or item["name"]),
                    esp=bool(item.get("esp", False)),
                    min_size=parse_size(item.get("min_size") or 0),
                )
            )
        return out

    @property
    def debian_suite(self) -> str:
        return str(_section(self.raw, "debian").get("suite") or "bookworm")

    @property
    def debian_mirror(self) -> str:
        return str(_section(self.raw, "debian").get("mirror") or "http://deb.debian.org/debian")

    @property
    def debian_variant(self) -> str:
        return str(_section(self.raw, "debian").get("variant") or "minbase")

    @property
    def debian_include(self) -> List[str]:
        return [str(p) for p in (_section(self.raw, "debian").get("include") or ["systemd", "systemd-sysv", "dbus", "udev"])]

    @property
    def packages(self) -> List[str]:
        return [str(p) for p in (self.raw.get("packages") or DEFAULT_PACKAGES)]

    @property
    def payload(self) -> PayloadSpec:
        sec = _section(self.raw, "payload")
        defaults = PayloadSpec()
        return PayloadSpec(
            binary_tarball=sec.get("binary_tarball"),
            binary_name=str(sec.get("binary_name") or defaults.binary_name),
            install_dir=str(sec.get("install_dir") or defaults.install_dir),
            config_dir=str(sec.get("config_dir") or defaults.config_dir),
            service_name=str(sec.get("service_name") or defaults.service_name),
            runtime_library_src=sec.get("runtime_library_src"),
            runtime_library_dir=str(sec.get("runtime_library_dir") or defaults.runtime_library_dir),
            runtime_library_name=str(sec.get("runtime_library_name") or defaults.runtime_library_name),
        )

    @property
    def overlay(self) -> OverlaySpec:
        sec = _section(self.raw, "overlay")
        defaults = OverlaySpec()
        return OverlaySpec(
            label=str(sec.get("label") or defaults.label),
            fstype=str(sec.get("fstype") or defaults.fstype),
            lower_mount=str(sec.get("lower_mount") or defaults.lower_mount),
            overlay_mount=str(sec.get("overlay_mount") or defaults.overlay_mount),
        )

    @property
    def fleet(self) -> FleetSpec:
        sec = _section(self.raw, "fleet")
        defaults = FleetSpec()
        try:
            subnet = ipaddress.IPv4Network(str(sec.get("subnet") or defaults.subnet))
            gateway = ipaddress.IPv4Address(str(sec.get("gateway") or defaults.gateway))
            dns = tuple(ipaddress.IPv4Address(str(d)) for d in (sec.get("dns") or defaults.dns))
        except ValueError as e:
            raise ConfigError(f"Invalid fleet network settings: {e}") from e
        if gateway not in subnet:
            raise ConfigError(f"Fleet gateway {gateway} is outside subnet {subnet}")
        return FleetSpec(
            subnet=subnet,
            gateway=gateway,
            dns=dns,
            ndi_name=str(sec.get("ndi_name") or defaults.ndi_name),
            display_label=str(sec.get("display_label") or defaults.display_label),
            capture_device=str(sec.get("capture_device") or defaults.capture_device),
            intercom_target=str(sec.get("intercom_target") or defaults.intercom_target),
            sample_rate=int(sec.get("sample_rate") or defaults.sample_rate),
            channels=int(sec.get("channels") or defaults.channels),
        )

    @property
    def ssh(self) -> SshSettings:
        sec = _section(self.raw, "ssh")
        return SshSettings(
            user=str(sec.get("user") or "root"),
            port=int(sec.get("port") or 22),
            connect_timeout=int(sec.get("connect_timeout") or 5),
            identity_file=sec.get("identity_file"),
            strict_host_key_checking=str(sec.get("strict_host_key_checking") or "accept-new"),
        )

    @property
    def command_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("command") or 600)

    @property
    def remote_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("remote") or 120)

    def image_spec(self, *, output: Optional[str] = None, compress: Optional[str] = None) -> ImageSpec:
        """ImageSpec from this config; explicit arguments (CLI flags) win."""

        comp = compress or self.compress
        if comp not in COMPRESSIONS:
            raise ConfigError(f"compress must be one of {COMPRESSIONS}, got {comp!r}")
        return ImageSpec(
            output=output or self.image_output,
            size=self.image_size,
            partitions=tuple(self.partitions),
            payload=self.payload,
            suite=self.debian_suite,
            mirror=self.debian_mirror,
            variant=self.debian_variant,
            include=tuple(self.debian_include),
            packages=tuple(self.packages),
            compress=comp,
            hostname=self.hostname,
        )


def load_build_config(path: str, *, required: bool = False) -> BuildConfig:
    """Load the YAML config. A missing file yields all defaults unless `required`."""

    p = Path(path)
    if not p.exists():
        if required:
            raise ConfigError(f"Config file not found: {path}")
        return BuildConfig(raw={})

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("config must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping/object")

    return BuildConfig(raw=raw)
