from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

from ..errors import ConvergenceStepFailure
from ..lib import templates
from .engine import ConvergeCtx, ConvergenceStep

logger = logging.getLogger(__name__)

SLEEP_TARGETS = ("sleep.target", "suspend.target", "hibernate.target", "hybrid-sleep.target")
CPU_PERFORMANCE_UNIT = "cpu-performance.service"
CLOUD_INIT_MARKER = "/etc/cloud/cloud-init.disabled"
SNAPD_UNITS = ("snapd.service", "snapd.socket")
UNNECESSARY_UNITS = (
    *SNAPD_UNITS,
    "cloud-init.service",
    "unattended-upgrades.service",
    "ModemManager.service",
    "bluetooth.service",
    "cups.service",
)
REQUIRED_PACKAGES = ("avahi-daemon", "libavahi-client3", "v4l-utils", "alsa-utils")
DISCOVERY_UNIT = "avahi-daemon.service"
GRUB_FAST_BOOT = {"GRUB_TIMEOUT": "0", "GRUB_TIMEOUT_STYLE": "hidden"}
WAIT_ONLINE_TIMEOUT_S = 5


class HostnameStep:
    name = "hostname"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        want = ctx.identity.name
        if (ctx.read(templates.HOSTNAME_PATH) or "").strip() != want:
            return False
        hosts = ctx.read(templates.HOSTS_PATH)
        if hosts is None or templates.render_hosts(want, hosts) != hosts:
            return False
        return ctx.run(["hostname"], check=False).stdout.strip() == want

    def apply(self, ctx: ConvergeCtx) -> None:
        name = ctx.identity.name
        ctx.ensure_file(templates.HOSTNAME_PATH, templates.render_hostname(name))
        ctx.ensure_file(templates.HOSTS_PATH, templates.render_hosts(name, ctx.read(templates.HOSTS_PATH)))
        ctx.run(["hostnamectl", "set-hostname", name])


class StaticNetworkStep:
    """Write the static address. Activation is left to `apply-network`."""

    name = "static-network"
    deferred_action = "apply-network"

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        if not ctx.file_matches(templates.NETPLAN_PATH, templates.render_netplan(ctx.identity)):
            return False
        return not ctx.transport.exists(templates.NETPLAN_CLOUD_INIT_PATH)

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(templates.NETPLAN_PATH, templates.render_netplan(ctx.identity), mode=0o600)
        if ctx.transport.exists(templates.NETPLAN_CLOUD_INIT_PATH):
            ctx.transport.remove(templates.NETPLAN_CLOUD_INIT_PATH)


class RuntimeLibraryStep:
    """Loader path for the runtime library, plus its unversioned link.

    The library itself is licensed separately and only arrives through `deploy
    --runtime-library` or the image build; this step fails rather than guess.
    """

    name = "runtime-library"
    deferred_action = None

    def _link_ok(self, ctx: ConvergeCtx) -> bool:
        r = ctx.run(["readlink", ctx.payload.runtime_library_link], check=False)
        return r.ok and PurePosixPath(r.stdout.strip()).name == ctx.payload.runtime_library_name

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        payload = ctx.payload
        if not ctx.transport.exists(payload.runtime_library_path):
            raise ConvergenceStepFailure(
                f"{payload.runtime_library_path} is not installed; deploy it with --runtime-library",
                stage=self.name,
            )
        conf = templates.render_ld_conf(payload.runtime_library_dir)
        return ctx.file_matches(templates.LD_CONF_PATH, conf) and self._link_ok(ctx)

    def apply(self, ctx: ConvergeCtx) -> None:
        payload = ctx.payload
        ctx.ensure_file(templates.LD_CONF_PATH, templates.render_ld_conf(payload.runtime_library_dir))
        ctx.run(["ln", "-sf", payload.runtime_library_name, payload.runtime_library_link])
        ctx.run(["ldconfig"])


class AudioStep:
    name = "audio"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return ctx.file_matches(templates.ASOUND_PATH, templates.render_asound())

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(templates.ASOUND_PATH, templates.render_asound())


class ApplianceConfigStep:
    name = "appliance-config"
    deferred_action = None

    def _content(self, ctx: ConvergeCtx) -> str:
        return templates.render_device_config(ctx.fleet, ctx.identity)

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return ctx.file_matches(ctx.payload.config_path, self._content(ctx))

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(ctx.payload.config_path, self._content(ctx))


class ServiceUnitStep:
    name = "service-unit"
    deferred_action = None

    def _path(self, ctx: ConvergeCtx) -> str:
        return f"/etc/systemd/system/{ctx.payload.unit_name}"

    def _content(self, ctx: ConvergeCtx) -> str:
        return templates.render_service_unit(ctx.payload, ctx.identity.ndi_label)

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return ctx.file_matches(self._path(ctx), self._content(ctx)) and (
            ctx.unit_state(ctx.payload.unit_name) == "enabled"
        )

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(self._path(ctx), self._content(ctx))
        ctx.run(["systemctl", "daemon-reload"])
        ctx.run(["systemctl", "enable", ctx.payload.unit_name])


def parse_getcap(output: str) -> Dict[str, str]:
    """Parse getcap(8) output into {capability: flags}.

    Handles both `path cap_a,cap_b=ep` and the older `path = cap_a,cap_b+ep` forms.
    """

    caps: Dict[str, str] = {}
    for line in output.splitlines():
        fields = line.split(None, 1)
        if len(fields) < 2:
            continue
        for clause in fields[1].lstrip("= ").split():
            for sep in ("=", "+"):
                if sep in clause:
                    names, flags = clause.split(sep, 1)
                    for cap in names.split(","):
                        caps[cap.strip().lower()] = flags
                    break
    return caps


class CapabilityStep:
    name = "capability"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        binary = ctx.payload.binary_path
        if not ctx.transport.exists(binary):
            raise ConvergenceStepFailure(f"{binary} is not installed", stage=self.name)
        caps = parse_getcap(ctx.run(["getcap", binary], check=False).stdout)
        return all(c in caps and "e" in caps[c] and "p" in caps[c] for c in templates.CAPABILITIES)

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.run(["setcap", templates.CAPABILITY_GRANT, ctx.payload.binary_path])


class BootSpeedStep:
    name = "boot-speed"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        grub = templates.read_shell_assignments(ctx.read(templates.GRUB_DEFAULTS_PATH) or "")
        if any(grub.get(k) != v for k, v in GRUB_FAST_BOOT.items()):
            return False
        dropin = templates.render_wait_online_dropin(WAIT_ONLINE_TIMEOUT_S)
        return ctx.file_matches(templates.WAIT_ONLINE_DROPIN_PATH, dropin)

    def apply(self, ctx: ConvergeCtx) -> None:
        current = ctx.read(templates.GRUB_DEFAULTS_PATH) or templates.render_grub_defaults()
        ctx.ensure_file(templates.GRUB_DEFAULTS_PATH, templates.set_shell_assignments(current, GRUB_FAST_BOOT))
        dropin = templates.render_wait_online_dropin(WAIT_ONLINE_TIMEOUT_S)
        ctx.ensure_file(templates.WAIT_ONLINE_DROPIN_PATH, dropin)
        ctx.run(["update-grub"])
        ctx.run(["systemctl", "daemon-reload"])


class PowerManagementStep:
    name = "power-management"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        if not ctx.file_matches(templates.LOGIND_DROPIN_PATH, templates.render_logind_dropin()):
            return False
        if any(ctx.unit_state(u) != "masked" for u in SLEEP_TARGETS):
            return False
        return ctx.file_matches(templates.CPU_PERFORMANCE_UNIT_PATH, templates.render_cpu_performance_unit()) and (
            ctx.unit_state(CPU_PERFORMANCE_UNIT) == "enabled"
        )

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(templates.LOGIND_DROPIN_PATH, templates.render_logind_dropin())
        ctx.run(["systemctl", "mask", *SLEEP_TARGETS])
        ctx.ensure_file(templates.CPU_PERFORMANCE_UNIT_PATH, templates.render_cpu_performance_unit())
        ctx.run(["systemctl", "daemon-reload"])
        ctx.run(["systemctl", "enable", CPU_PERFORMANCE_UNIT])


class NetworkPerformanceStep:
    name = "network-performance"
    deferred_action = None

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return ctx.file_matches(templates.SYSCTL_PATH, templates.render_sysctl_network())

    def apply(self, ctx: ConvergeCtx) -> None:
        ctx.ensure_file(templates.SYSCTL_PATH, templates.render_sysctl_network())
        r = ctx.run(["sysctl", "-p", templates.SYSCTL_PATH], check=False)
        if not r.ok:
            # Some keys (bbr) need a module; the file still applies on next boot.
            logger.warning("sysctl -p reported errors: %s", r.stderr.strip())


class UnnecessaryServicesStep:
    name = "unnecessary-services"
    deferred_action = None

    def _enabled(self, ctx: ConvergeCtx) -> List[str]:
        return [u for u in UNNECESSARY_UNITS if ctx.unit_state(u) == "enabled"]

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return not self._enabled(ctx) and ctx.transport.exists(CLOUD_INIT_MARKER)

    def apply(self, ctx: ConvergeCtx) -> None:
        for unit in self._enabled(ctx):
            ctx.run(["systemctl", "disable", "--now", unit])
        installed_snapd = [u for u in SNAPD_UNITS if ctx.unit_state(u) not in ("", "masked")]
        if installed_snapd:
            ctx.run(["systemctl", "mask", *installed_snapd])
        ctx.ensure_file(CLOUD_INIT_MARKER, "")


class PackagesStep:
    name = "packages"
    deferred_action = None

    def _missing(self, ctx: ConvergeCtx) -> List[str]:
        missing = []
        for pkg in REQUIRED_PACKAGES:
            r = ctx.run(["dpkg-query", "-W", "-f=${Status}", pkg], check=False)
            if r.stdout.strip() != "install ok installed":
                missing.append(pkg)
        return missing

    def satisfied(self, ctx: ConvergeCtx) -> bool:
        return not self._missing(ctx) and ctx.unit_state(DISCOVERY_UNIT) == "enabled"

    def apply(self, ctx: ConvergeCtx) -> None:
        missing = self._missing(ctx)
        if missing:
            ctx.run(["apt-get", "update"])
            ctx.run(["apt-get", "install", "-y", "--no-install-recommends", *missing])
        ctx.run(["systemctl", "enable", "--now", DISCOVERY_UNIT])


def default_steps() -> List[ConvergenceStep]:
    return [
        HostnameStep(),
        StaticNetworkStep(),
        RuntimeLibraryStep(),
        AudioStep(),
        ApplianceConfigStep(),
        ServiceUnitStep(),
        CapabilityStep(),
        BootSpeedStep(),
        PowerManagementStep(),
        NetworkPerformanceStep(),
        UnnecessaryServicesStep(),
        PackagesStep(),
    ]


STEP_NAMES: Tuple[str, ...] = tuple(s.name for s in default_steps())


def apply_network(transport, *, timeout: Optional[float] = None) -> None:
    """Activate the written network configuration. May drop the current connection."""

    if not transport.exists(templates.NETPLAN_PATH):
        raise ConvergenceStepFailure(
            f"{templates.NETPLAN_PATH} not present; run converge first", stage="apply-network"
        )
    logger.warning("Activating network configuration on %s; the connection may drop", transport.label)
    transport.run(["netplan", "apply"], timeout=timeout)
