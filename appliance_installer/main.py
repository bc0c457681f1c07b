from __future__ import annotations

import argparse
import json
import logging
import signal
from typing import Callable, Optional

from .build import make_ctx, run_build
from .build_config import DEFAULT_CONFIG_PATH, BuildConfig, load_build_config
from .converge import apply_network, converge
from .errors import ApplianceError, ConvergenceIncomplete
from .lib.mounts import HostMounts
from .lib.overlay import factory_reset, run_transform
from .lib.transport import LocalTransport, SshTransport, Transport
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .models import DeviceIdentity
from .rollout import deploy_many
from .writer import write_image

logger = logging.getLogger(__name__)


def _transport(cfg: BuildConfig, host: Optional[str]) -> Transport:
    if not host:
        return LocalTransport(timeout=cfg.command_timeout)
    ssh = cfg.ssh
    return SshTransport(
        host,
        user=ssh.user,
        port=ssh.port,
        connect_timeout=ssh.connect_timeout,
        identity_file=ssh.identity_file,
        strict_host_key_checking=ssh.strict_host_key_checking,
        timeout=cfg.remote_timeout,
    )


def cmd_build_image(args: argparse.Namespace, cfg: BuildConfig) -> int:
    ctx = make_ctx(
        cfg,
        output=args.output,
        compress=args.compress,
        work_dir=args.work_dir,
        dry_run=args.dry_run,
    )
    run_build(ctx, stop_after=args.stop_after)
    if ctx.artifact:
        print(ctx.artifact)
    return 0


def cmd_write_image(args: argparse.Namespace, cfg: BuildConfig) -> int:
    write_image(args.image, args.device, assume_yes=args.yes, dry_run=args.dry_run)
    return 0


def cmd_converge(args: argparse.Namespace, cfg: BuildConfig) -> int:
    fleet = cfg.fleet
    identity = DeviceIdentity.create(args.name, args.address, fleet, stream=args.stream)
    transport = _transport(cfg, args.host)
    transport.ping()

    report = converge(
        identity,
        transport,
        fleet=fleet,
        payload=cfg.payload,
        timeout=cfg.remote_timeout if args.host else cfg.command_timeout,
    )
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for r in report.results:
            print(f"{r.name:<22} {r.outcome.value:<18} {r.detail}")
        for action in report.pending_actions:
            print(f"pending: {action}")

    if not report.converged:
        failed = [r.name for r in report.results if r.outcome.is_failure]
        raise ConvergenceIncomplete(
            f"{report.failure_count} step(s) did not converge: {', '.join(failed)}",
            stage="converge",
        )
    return 0


def cmd_apply_network(args: argparse.Namespace, cfg: BuildConfig) -> int:
    apply_network(_transport(cfg, args.host), timeout=cfg.remote_timeout)
    return 0


def cmd_deploy(args: argparse.Namespace, cfg: BuildConfig) -> int:
    results = deploy_many(
        args.targets,
        args.artifact,
        transport_factory=lambda host: _transport(cfg, host),
        payload=cfg.payload,
        runtime_library=args.runtime_library,
        timeout=cfg.remote_timeout,
        start_timeout=args.start_timeout,
    )
    exit_code = 0
    for r in results:
        line = f"{r.target}: {r.status.value}"
        if r.error is not None:
            line += f" ({r.error})"
        for w in r.warnings:
            line += f" [warning: {w}]"
        print(line)
        if not r.ok and exit_code == 0 and r.error is not None:
            exit_code = r.error.exit_code
    return exit_code


def cmd_factory_reset(args: argparse.Namespace, cfg: BuildConfig) -> int:
    if not args.yes:
        answer = input("Discard every change stored on the overlay partition? Type 'YES' to continue: ")
        if answer.strip() != "YES":
            raise ApplianceError("Aborted by operator", stage="factory-reset")
    removed = factory_reset(cfg.overlay, dry_run=args.dry_run)
    print(f"Removed {removed} entries; reboot to apply")
    return 0


def cmd_boot_transform(args: argparse.Namespace, cfg: BuildConfig) -> int:
    phases = run_transform(cfg.overlay, HostMounts(dry_run=args.dry_run))
    logger.info("Completed phases: %s", ", ".join(p.value for p in phases))
    return 0


def _on_sigterm(signum, frame) -> None:
    # Unwind through the scoped releases like an interrupt would.
    raise SystemExit(128 + signum)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="appliance-installer")
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to appliance YAML config")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to log file")
    p.add_argument("--verbose", action="store_true", help="Debug logging")
    p.add_argument("--dry-run", action="store_true", help="Log external commands without running them")

    sub = p.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build-image", help="Build the golden image")
    b.add_argument("--output", default=None)
    b.add_argument("--compress", choices=("none", "xz", "gz"), default=None)
    b.add_argument("--work-dir", default=None)
    b.add_argument("--stop-after", default=None, help="Stop after step_id (e.g. 40_bootstrap)")
    b.set_defaults(func=cmd_build_image)

    w = sub.add_parser("write-image", help="Write a verified image to removable media")
    w.add_argument("image")
    w.add_argument("device")
    w.add_argument("--yes", action="store_true", help="Skip the typed confirmation")
    w.set_defaults(func=cmd_write_image)

    c = sub.add_parser("converge", help="Assign an identity and converge a device")
    c.add_argument("name", help="Device name, e.g. CAM2")
    c.add_argument("address", help="Static address, e.g. 10.77.9.62 or 10.77.9.62/23")
    c.add_argument("stream", nargs="?", default=None, help="Stream id override (default: lowercased name)")
    c.add_argument("--host", default=None, help="Converge a remote device over ssh")
    c.add_argument("--json", action="store_true", help="Print the report as JSON")
    c.set_defaults(func=cmd_converge)

    n = sub.add_parser("apply-network", help="Activate the written network configuration")
    n.add_argument("--host", default=None)
    n.set_defaults(func=cmd_apply_network)

    d = sub.add_parser("deploy", help="Replace the appliance binary on one or more devices")
    d.add_argument("targets", nargs="+")
    d.add_argument("artifact")
    d.add_argument("--start-timeout", type=float, default=30.0)
    d.add_argument(
        "--runtime-library",
        default=None,
        help="Also install this runtime library file (e.g. libndi.so.6) in the same window",
    )
    d.set_defaults(func=cmd_deploy)

    r = sub.add_parser("factory-reset", help="Discard all changes stored on the overlay partition")
    r.add_argument("--yes", action="store_true")
    r.set_defaults(func=cmd_factory_reset)

    t = sub.add_parser("boot-transform", help="Union the read-only root with the overlay partition")
    t.set_defaults(func=cmd_boot_transform)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(log_path=args.log, level=logging.DEBUG if args.verbose else logging.INFO)
    signal.signal(signal.SIGTERM, _on_sigterm)

    func: Callable[[argparse.Namespace, BuildConfig], int] = args.func
    try:
        cfg = load_build_config(args.config, required=args.config != DEFAULT_CONFIG_PATH)
        return func(args, cfg)
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130
    except ApplianceError as e:
        logger.error("%s failed: %s", args.command, e)
        return e.exit_code
    except Exception:
        logger.exception("%s failed unexpectedly", args.command)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
