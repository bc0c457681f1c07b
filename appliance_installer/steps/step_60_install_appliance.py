from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..lib import templates
from ..lib.chroot import chroot_binds, chroot_cmd
from ..lib.command import run_cmd
from ..pipeline import BuildCtx

logger = logging.getLogger(__name__)

ENABLED_UNITS = ("systemd-networkd.service", "systemd-resolved.service", "avahi-daemon.service")
MASKED_UNITS = (
    "systemd-timesyncd.service",
    "apt-daily.timer",
    "apt-daily-upgrade.timer",
    "sleep.target",
    "suspend.target",
    "hibernate.target",
    "hybrid-sleep.target",
)


class InstallApplianceStep:
    """Payload binary, its config and unit, plus the static system files of the golden image."""

    step_id = "60_install_appliance"

    def _install_binary(self, ctx: BuildCtx) -> None:
        payload = ctx.spec.payload
        dest = ctx.target(payload.install_dir)
        if not payload.binary_tarball:
            logger.warning("No binary tarball configured; %s must be deployed later", payload.binary_path)
            return
        if not ctx.dry_run:
            dest.mkdir(parents=True, exist_ok=True)
        run_cmd(["tar", "-xzf", payload.binary_tarball, "-C", str(dest)], dry_run=ctx.dry_run)
        logger.info("Installed %s", payload.binary_path)

    def _install_runtime_library(self, ctx: BuildCtx) -> None:
        payload = ctx.spec.payload
        src = payload.runtime_library_src
        if not src or not Path(src).exists():
            logger.warning("Runtime library not found (%s); the service will not start until it is copied", src)
            return
        dest = ctx.target(payload.runtime_library_dir)
        if ctx.dry_run:
            logger.info("Would copy %s to %s", src, str(dest))
            return
        if Path(src).is_dir():
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        else:
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest / Path(src).name)
        link = ctx.target(payload.runtime_library_link)
        if (dest / payload.runtime_library_name).exists() and not (link.is_symlink() or link.exists()):
            link.symlink_to(payload.runtime_library_name)
        logger.info("Copied runtime library to %s", payload.runtime_library_dir)

    def run(self, ctx: BuildCtx) -> None:
        if ctx.layout is None:
            raise RuntimeError("Layout required; run plan step first")
        spec = ctx.spec
        payload = spec.payload

        self._install_binary(ctx)
        self._install_runtime_library(ctx)

        ctx.write(payload.config_path, templates.render_device_config(ctx.fleet, hostname=spec.hostname))
        unit = templates.render_service_unit(payload, ctx.fleet.display_label)
        ctx.write(f"/etc/systemd/system/{payload.unit_name}", unit)
        ctx.write(templates.LD_CONF_PATH, templates.render_ld_conf(payload.runtime_library_dir))
        ctx.write(templates.ASOUND_PATH, templates.render_asound())
        ctx.write(templates.FSTAB_PATH, templates.render_fstab(ctx.layout.esp.label))
        ctx.write(templates.HOSTNAME_PATH, templates.render_hostname(spec.hostname))
        ctx.write(templates.HOSTS_PATH, templates.render_hosts(spec.hostname))
        ctx.write(templates.NETWORKD_DHCP_PATH, templates.render_networkd_dhcp())
        ctx.write(templates.LOGIND_DROPIN_PATH, templates.render_logind_dropin())
        ctx.write(templates.SYSCTL_PATH, templates.render_sysctl_network())

        with chroot_binds(ctx.target_root, ctx.backend):
            chroot_cmd(ctx.target_root, ["systemctl", "enable", payload.unit_name, *ENABLED_UNITS], dry_run=ctx.dry_run)
            chroot_cmd(ctx.target_root, ["systemctl", "mask", *MASKED_UNITS], dry_run=ctx.dry_run)
            chroot_cmd(ctx.target_root, ["ldconfig"], dry_run=ctx.dry_run)
            if payload.binary_tarball:
                chroot_cmd(
                    ctx.target_root,
                    ["setcap", templates.CAPABILITY_GRANT, payload.binary_path],
                    dry_run=ctx.dry_run,
                )

        logger.info("Appliance %s installed (service %s)", payload.binary_name, payload.unit_name)
