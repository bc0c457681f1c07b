"""Renderers for every static file the image and the convergence steps write.

All renderers are pure and deterministic: convergence compares rendered text with what is on
disk to decide whether a step is already satisfied, so no timestamps or host-dependent values.
"""

from __future__ import annotations

import json
import re
from typing import Optional

import yaml

from ..models import DeviceIdentity, FleetSpec, PayloadSpec

NETPLAN_PATH = "/etc/netplan/01-netcfg.yaml"
NETPLAN_CLOUD_INIT_PATH = "/etc/netplan/50-cloud-init.yaml"
LOGIND_DROPIN_PATH = "/etc/systemd/logind.conf.d/disable-power-button.conf"
SYSCTL_PATH = "/etc/sysctl.d/99-network-performance.conf"
WAIT_ONLINE_DROPIN_PATH = "/etc/systemd/system/systemd-networkd-wait-online.service.d/override.conf"
CPU_PERFORMANCE_UNIT_PATH = "/etc/systemd/system/cpu-performance.service"
GRUB_DEFAULTS_PATH = "/etc/default/grub"
ASOUND_PATH = "/etc/asound.conf"
LD_CONF_PATH = "/etc/ld.so.conf.d/ndi.conf"
NETWORKD_DHCP_PATH = "/etc/systemd/network/20-wired.network"
HOSTNAME_PATH = "/etc/hostname"
HOSTS_PATH = "/etc/hosts"
FSTAB_PATH = "/etc/fstab"

# Scheduling priority and locked memory for the appliance binary.
CAPABILITIES = ("cap_ipc_lock", "cap_sys_nice")
CAPABILITY_GRANT = ",".join(CAPABILITIES) + "+ep"


def _toml_str(value: str) -> str:
    # JSON basic strings are valid TOML basic strings.
    return json.dumps(value)


def render_hostname(name: str) -> str:
    return name + "\n"


def render_hosts(name: str, existing: Optional[str] = None) -> str:
    """Point 127.0.1.1 at `name`, preserving any other lines of an existing hosts file."""

    if existing is None:
        return "\n".join(
            [
                "127.0.0.1\tlocalhost",
                f"127.0.1.1\t{name}",
                "",
                "# IPv6",
                "::1\tlocalhost ip6-localhost ip6-loopback",
                "ff02::1\tip6-allnodes",
                "ff02::2\tip6-allrouters",
                "",
            ]
        )
    lines = existing.splitlines()
    out = []
    replaced = False
    for ln in lines:
        if ln.startswith("127.0.1.1"):
            if not replaced:
                out.append(f"127.0.1.1\t{name}")
                replaced = True
            continue
        out.append(ln)
    if not replaced:
        insert_at = 1 if out and out[0].startswith("127.0.0.1") else 0
        out.insert(insert_at, f"127.0.1.1\t{name}")
    return "\n".join(out) + "\n"


def render_fstab(esp_label: str) -> str:
    return (
        "# appliance fstab - read-only root with overlay\n"
        f"LABEL={esp_label}\t/boot/efi\tvfat\tumask=0077,noatime\t0 1\n"
        "tmpfs\t/tmp\ttmpfs\tdefaults,noatime,nosuid,nodev,mode=1777\t0 0\n"
        "tmpfs\t/var/log\ttmpfs\tdefaults,noatime,nosuid,nodev,size=64M\t0 0\n"
        "tmpfs\t/var/tmp\ttmpfs\tdefaults,noatime,nosuid,nodev,mode=1777\t0 0\n"
    )


def render_device_config(
    fleet: FleetSpec,
    identity: Optional[DeviceIdentity] = None,
    *,
    hostname: str = "camera-box",
) -> str:
    """Render the appliance's config.toml.

    Without an identity (golden image) only the fleet-wide keys are written; the
    intercom and network sections are added when convergence assigns an identity.
    """

    name = identity.name if identity else hostname
    lines = [
        "# Appliance configuration",
        f"# Device: {name}",
    ]
    if identity is not None:
        source = "override" if identity.stream_overridden else "derived from device name"
        lines.append(f"# Stream id: {identity.stream_id} ({source})")
    lines += [
        "",
        f"hostname = {_toml_str(name)}",
        "",
        "# NDI source name (appears on network)",
        f"ndi_name = {_toml_str(fleet.ndi_name)}",
        "",
        '# Video capture device ("auto" for auto-detection)',
        f"device = {_toml_str(fleet.capture_device)}",
    ]
    if identity is not None:
        lines += [
            "",
            "[intercom]",
            f"stream = {_toml_str(identity.stream_id)}",
            f"target = {_toml_str(fleet.intercom_target)}",
            f"sample_rate = {int(fleet.sample_rate)}",
            f"channels = {int(fleet.channels)}",
            "",
            "[network]",
            'mode = "static"',
            f"address = {_toml_str(str(identity.address))}",
            f"gateway = {_toml_str(str(identity.address.gateway))}",
            "dns = [" + ", ".join(_toml_str(str(d)) for d in identity.address.dns) + "]",
        ]
    return "\n".join(lines) + "\n"


def render_service_unit(payload: PayloadSpec, display_label: str) -> str:
    return f"""[Unit]
Description=Appliance service ({payload.binary_name})
After=network-online.target avahi-daemon.service
Wants=network-online.target

[Service]
Type=simple
ExecStart={payload.binary_path} --display {_toml_str(display_label)}
Restart=always
RestartSec=3

# Real-time priority and locked memory for low latency
Nice=-10
CPUSchedulingPolicy=fifo
CPUSchedulingPriority=50
LimitMEMLOCK=infinity
AmbientCapabilities=CAP_SYS_NICE CAP_IPC_LOCK

Environment=NDI_RUNTIME_DIR_V6={payload.runtime_library_dir}

StandardOutput=journal
StandardError=journal
SyslogIdentifier={payload.service_name}

NoNewPrivileges=yes
ProtectSystem=strict
ProtectHome=yes
PrivateTmp=yes
ReadOnlyPaths=/
ReadWritePaths=/dev /sys /run

# Video device access
SupplementaryGroups=video

[Install]
WantedBy=multi-user.target
"""


def render_netplan(identity: DeviceIdentity) -> str:
    doc = {
        "network": {
            "version": 2,
            "renderer": "networkd",
            "ethernets": {
                "all-ethernet": {
                    "match": {"driver": "*"},
                    "addresses": [str(identity.address)],
                    "routes": [{"to": "default", "via": str(identity.address.gateway)}],
                    "nameservers": {"addresses": [str(d) for d in identity.address.dns]},
                }
            },
        }
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def render_networkd_dhcp() -> str:
    return """[Match]
Name=en* eth*

[Network]
DHCP=yes

[DHCPv4]
UseDNS=yes
UseNTP=yes
"""


def render_logind_dropin() -> str:
    return """[Login]
HandlePowerKey=ignore
HandleSuspendKey=ignore
HandleHibernateKey=ignore
HandleLidSwitch=ignore
"""


def render_wait_online_dropin(timeout_s: int = 5) -> str:
    return f"""[Service]
ExecStart=
ExecStart=/usr/lib/systemd/systemd-networkd-wait-online --timeout={timeout_s}
"""


def render_cpu_performance_unit() -> str:
    return """[Unit]
Description=Set CPU to performance mode
After=multi-user.target

[Service]
Type=oneshot
ExecStart=/bin/sh -c 'for cpu in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; do echo performance > $cpu; done'
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def render_sysctl_network() -> str:
    return """# Network performance tuning for low-latency streaming
net.core.rmem_max = 134217728
net.core.wmem_max = 134217728
net.core.rmem_default = 1048576
net.core.wmem_default = 1048576
net.core.netdev_max_backlog = 5000
net.ipv4.tcp_rmem = 4096 1048576 134217728
net.ipv4.tcp_wmem = 4096 1048576 134217728
net.ipv4.tcp_congestion_control = bbr
net.ipv4.tcp_fastopen = 3
net.ipv4.tcp_low_latency = 1
net.ipv6.conf.all.disable_ipv6 = 1
net.ipv6.conf.default.disable_ipv6 = 1
"""


def render_asound(card: int = 1) -> str:
    return f"""# Asymmetric config: stereo output, mono input (USB headset on card {card})
pcm.!default {{
    type asym
    playback.pcm {{
        type plug
        slave {{
            pcm "hw:{card},0"
            channels 2
        }}
    }}
    capture.pcm {{
        type plug
        slave {{
            pcm "hw:{card},0"
            channels 1
        }}
    }}
}}

ctl.!default {{
    type hw
    card {card}
}}
"""


def render_ld_conf(library_dir: str) -> str:
    return library_dir + "\n"


def render_grub_defaults(distributor: str = "Appliance") -> str:
    return f"""GRUB_DEFAULT=0
GRUB_TIMEOUT=3
GRUB_DISTRIBUTOR="{distributor}"
GRUB_CMDLINE_LINUX_DEFAULT="quiet"
GRUB_CMDLINE_LINUX=""
"""


def read_shell_assignments(text: str) -> dict:
    out = {}
    for ln in text.splitlines():
        m = re.match(r"^\s*([A-Z_][A-Z0-9_]*)=(.*)$", ln)
        if m:
            out[m.group(1)] = m.group(2).strip().strip('"')
    return out


def set_shell_assignments(text: str, values: dict) -> str:
    """Set KEY=value lines in a shell-style defaults file, appending missing keys."""

    lines = text.splitlines()
    seen = set()
    for i, ln in enumerate(lines):
        m = re.match(r"^\s*#?\s*([A-Z_][A-Z0-9_]*)=", ln)
        if m and m.group(1) in values and m.group(1) not in seen:
            lines[i] = f"{m.group(1)}={values[m.group(1)]}"
            seen.add(m.group(1))
    for k, v in values.items():
        if k not in seen:
            lines.append(f"{k}={v}")
    return "\n".join(lines) + "\n"


def render_factory_reset_script(overlay_mount: str) -> str:
    return f"""#!/bin/sh
# Factory reset: discard every change written on top of the read-only base.
set -e
echo "Factory reset: clearing overlay partition..."
find {overlay_mount}/upper {overlay_mount}/work -mindepth 1 -delete
echo "Done. Reboot to apply."
"""

