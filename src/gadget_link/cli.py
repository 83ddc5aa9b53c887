"""gadgetlink command line.

Usage:
    gadgetlink share [--public NAME] [--private NAME] [--dry-run] [--report PATH]
    gadgetlink apply [--config PATH | --preset NAME] [--dry-run] [--report PATH]
    gadgetlink status [--config PATH | --preset NAME]
    gadgetlink history [--adapter NAME] [--limit N]

Environment variables:
    GADGETLINK_LOG_LEVEL        Console log level (default: INFO)
    GADGETLINK_LOG_FILE         Log file; the audit log sits next to it
    GADGETLINK_SSH_PASSWORD     Password for SSH transport
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .backends import create_backend
from .config import PRESETS, TopologyConfig
from .gadget import ensure_gadget_boot_config
from .reconcile import GadgetLinkError, ParseError, Reconciler
from .reconcile.inventory import InventoryReader
from .reconcile.schema import ApplyResult, OutcomeStatus
from .status import build_status_report
from .utils.audit_log import get_recent_changes, setup_audit_logging
from .utils.logging_config import get_log_file, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC = "Wi-Fi"
DEFAULT_PRIVATE = "Ethernet 2"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gadgetlink",
        description="Idempotent network setup for a Raspberry Pi USB gadget link",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Windows: share Wi-Fi to the Pi's RNDIS adapter
    gadgetlink share --public "Wi-Fi" --private "Ethernet 2"

    # Pi: prefer usb0 over Wi-Fi (preview first)
    sudo gadgetlink apply --preset pi-usb-priority --dry-run
""",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    share = sub.add_parser("share", help="Enable Windows Internet Connection Sharing")
    share.add_argument("--public", default=DEFAULT_PUBLIC,
                       help=f"Adapter with internet access (default: {DEFAULT_PUBLIC})")
    share.add_argument("--private", default=DEFAULT_PRIVATE,
                       help=f"Adapter the Pi is connected to (default: {DEFAULT_PRIVATE})")
    share.add_argument("--dry-run", action="store_true", help="Preview without changing anything")
    _add_report_arg(share)

    apply = sub.add_parser("apply", help="Reconcile the host to a topology file or preset")
    _add_source_args(apply)
    apply.add_argument("--dry-run", action="store_true", help="Preview without changing anything")
    apply.add_argument("--skip-boot-config", action="store_true",
                       help="Do not touch config.txt/cmdline.txt")
    apply.add_argument("--no-egress-check", action="store_true",
                       help="Skip the public IP check after applying")
    _add_report_arg(apply)

    status = sub.add_parser("status", help="Show adapters and routes")
    _add_source_args(status)
    status.add_argument("--egress", action="store_true", help="Also check the public IP")

    history = sub.add_parser("history", help="Show recent changes from the audit log")
    history.add_argument("--adapter", help="Only changes to this adapter")
    history.add_argument("--operation", help="Only this action kind (e.g. set_metric)")
    history.add_argument("--limit", type=int, default=20, help="Number of records (default: 20)")

    return parser


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--config", help="Topology YAML file")
    source.add_argument("--preset", choices=sorted(PRESETS), help="Built-in topology")


def _add_report_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--report", metavar="PATH", help="Also write the run result as JSON to PATH")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the gadgetlink CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    commands = {
        "share": cmd_share,
        "apply": cmd_apply,
        "status": cmd_status,
        "history": cmd_history,
    }

    try:
        return commands[args.command](args)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except (GadgetLinkError, ParseError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return EXIT_FATAL


def cmd_share(args: argparse.Namespace) -> int:
    config = TopologyConfig(preset="windows-ics")
    config.raw["sharing"]["public"] = args.public
    config.raw["sharing"]["private"] = args.private
    return _reconcile(config, args.dry_run, boot_config=False, egress=False, report=args.report)


def cmd_apply(args: argparse.Namespace) -> int:
    config = TopologyConfig(config_path=args.config, preset=args.preset)
    return _reconcile(
        config,
        args.dry_run,
        boot_config=not args.skip_boot_config,
        egress=not args.no_egress_check,
        report=args.report,
    )


def cmd_status(args: argparse.Namespace) -> int:
    config = TopologyConfig(config_path=args.config, preset=args.preset)
    url, timeout = config.egress_settings()
    with create_backend(config.backend_config()) as backend:
        report = build_status_report(
            InventoryReader(backend),
            egress_url=url if args.egress and not config.is_remote else None,
            egress_timeout=timeout,
        )
    print(report)
    return EXIT_OK


def cmd_history(args: argparse.Namespace) -> int:
    log_file = get_log_file().parent / "audit.log"
    records = get_recent_changes(
        str(log_file),
        adapter=args.adapter,
        operation=args.operation,
        limit=args.limit,
    )
    if not records:
        print("No recorded changes")
        return EXIT_OK

    for record in records:
        status = "OK" if record.success else "FAILED"
        mode = " (dry-run)" if record.dry_run else ""
        context = f"  [{record.context}]" if record.context else ""
        print(
            f"{record.timestamp}  {record.host}  {record.operation} {record.adapter}  "
            f"{status}{mode}{context}"
        )
        if record.error:
            print(f"    {record.error}")
    return EXIT_OK


def _reconcile(
    config: TopologyConfig,
    dry_run: bool,
    boot_config: bool,
    egress: bool,
    report: Optional[str] = None,
) -> int:
    setup_audit_logging(str(get_log_file().parent))

    gadget = config.gadget_settings()
    if gadget and boot_config:
        if config.is_remote:
            logger.warning("Skipping USB gadget boot configuration on a remote host")
        elif dry_run:
            logger.info("DRY RUN: would ensure USB gadget boot configuration")
        else:
            boot = ensure_gadget_boot_config(
                gadget.get("config_txt", "/boot/firmware/config.txt"),
                gadget.get("cmdline_txt", "/boot/firmware/cmdline.txt"),
            )
            if boot.reboot_required:
                print(f"Boot configuration changed ({', '.join(boot.changed)}); reboot required")

    stop_on_error = bool(config.apply_settings().get("stop_on_error", False))
    with create_backend(config.backend_config()) as backend:
        result = Reconciler(backend).reconcile(
            config.desired_dict(),
            dry_run=dry_run,
            stop_on_error=stop_on_error,
            audit_context="cli",
        )
        print(format_result(result))
        if report:
            write_report(report, result)
        if result.error:
            return EXIT_FATAL

        if not dry_run and config.host_type == "networkmanager":
            url, timeout = config.egress_settings()
            print()
            print(build_status_report(
                InventoryReader(backend),
                egress_url=url if egress and not config.is_remote else None,
                egress_timeout=timeout,
            ))

    if result.failures:
        logger.error(f"{len(result.failures)} action(s) failed")
        return EXIT_FATAL
    return EXIT_OK


def write_report(path: str, result: ApplyResult) -> None:
    """Save an apply result as JSON."""
    report = Path(path)
    report.parent.mkdir(parents=True, exist_ok=True)
    with open(report, "w") as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"Result written to {report}")


def format_result(result: ApplyResult) -> str:
    """Human-readable summary of an apply run."""
    if result.error:
        return f"Error: {result.error}"

    lines = []
    prefix = "DRY RUN: " if result.dry_run else ""
    if not result.outcomes:
        lines.append(f"{prefix}No changes needed - host already matches desired state")

    for outcome in result.outcomes:
        lines.append(f"  [{outcome.status.value:>7}] {outcome.action.describe()}")
        if outcome.status == OutcomeStatus.DRY_RUN:
            lines.extend(f"            $ {cmd}" for cmd in outcome.commands)
        elif outcome.status == OutcomeStatus.FAILED and outcome.detail:
            lines.append(f"            {outcome.detail}")

    if result.outcomes:
        lines.append(
            f"{prefix}{result.changed} changed, {result.skipped} already in place, "
            f"{len(result.failures)} failed"
        )
    for remediation in result.remediations:
        lines.append(f"Remediation: {remediation}")
    for adapter in result.verified:
        lines.append(f"Verified: {adapter}")
    if result.sharing_phase:
        lines.append(f"Sharing: {result.sharing_phase.value}")
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines)


if __name__ == "__main__":
    sys.exit(main())
