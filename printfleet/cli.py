"""
Command line for the print server.

Usage:
    sudo printfleet reconcile            # detect printers, configure CUPS, AirPrint
    sudo printfleet status               # show printer status
    sudo printfleet health               # system health check
    sudo printfleet clean --days 1       # clean the CUPS spool
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import timedelta
import logging
import sys

from printfleet.advertise import AdvertisementSynchronizer
from printfleet.backends import (
    AvahiServiceDirectory,
    CupsdConfFile,
    CupsLogFiles,
    CupsSpoolDirectory,
    PsutilTelemetry,
    QueueService,
    SystemdServiceManager,
)
from printfleet.config import FleetConfig, Settings, load_config
from printfleet.drivers import DriverResolver
from printfleet.errors import (
    ConfigError,
    ExternalServiceUnavailable,
    NotConfirmed,
    PrintFleetError,
    RunOutcome,
)
from printfleet.maintenance import HealthBand, MaintenanceConsole
from printfleet.pipeline import FleetPipeline
from printfleet.reconcile import Absent, NoOp, QueueReconciler, Upsert
from printfleet.scanner import DeviceScanner

logger = logging.getLogger("printfleet")

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_ABORTED = 2

EXIT_CODES = {
    RunOutcome.NOTHING_TO_DO: EXIT_OK,
    RunOutcome.CHANGED: EXIT_OK,
    RunOutcome.DEGRADED: EXIT_DEGRADED,
    RunOutcome.ABORTED: EXIT_ABORTED,
}

BAND_LABELS = {
    HealthBand.NORMAL: "ok",
    HealthBand.WARN: "WARN",
    HealthBand.CRITICAL: "CRITICAL",
}


def _out(text: str = "") -> None:
    sys.stdout.write(text + "\n")


def _confirm(args: argparse.Namespace, question: str) -> bool:
    if args.yes:
        return True
    sys.stdout.write(f"{question} [y/N]: ")
    sys.stdout.flush()
    return sys.stdin.readline().strip().lower().startswith("y")


@dataclass
class App:
    """Everything a command needs, wired to the real backends."""

    config: FleetConfig
    queues: QueueService
    pipeline: FleetPipeline
    reconciler: QueueReconciler
    synchronizer: AdvertisementSynchronizer
    console: MaintenanceConsole


def build_app(settings: Settings) -> App:
    from printfleet.cups_backend import (
        CupsClient,
        CupsDeviceCatalog,
        CupsDriverCatalog,
        CupsQueueService,
    )

    config = load_config(settings.profiles_path)
    client = CupsClient(settings.cups_host, settings.cups_port)
    queues = CupsQueueService(client)
    services = SystemdServiceManager()
    scanner = DeviceScanner(CupsDeviceCatalog(client))
    reconciler = QueueReconciler(DriverResolver(CupsDriverCatalog(client)), queues)
    synchronizer = AdvertisementSynchronizer(
        AvahiServiceDirectory(settings.services_dir, services),
        admin_host=settings.adminurl_host or config.adminurl_host or None,
    )
    console = MaintenanceConsole(
        profiles=config.profiles,
        queues=queues,
        services=services,
        scanner=scanner,
        synchronizer=synchronizer,
        telemetry=PsutilTelemetry(),
        spool=CupsSpoolDirectory(settings.spool_dir),
        cupsd=CupsdConfFile(settings.cupsd_conf),
        logs=CupsLogFiles(settings.cups_log_dir),
        test_page=settings.test_page,
    )
    pipeline = FleetPipeline(config, scanner, reconciler, synchronizer, queues)
    return App(config, queues, pipeline, reconciler, synchronizer, console)


def cmd_reconcile(app: App, args: argparse.Namespace) -> int:
    result = app.pipeline.run(dry_run=args.dry_run)
    if result.plan is not None:
        for step in result.plan.steps:
            if isinstance(step, Upsert):
                reasons = ", ".join(step.reasons)
                _out(f"  upsert  {step.name}  driver={step.driver.name}  ({reasons})")
            elif isinstance(step, NoOp):
                _out(f"  ok      {step.name}")
            elif isinstance(step, Absent):
                _out(f"  absent  {step.name}")
    if result.sync is not None:
        for name in result.sync.written:
            _out(f"  airprint  {name}  written")
        for name in result.sync.deleted:
            _out(f"  airprint  {name}  removed")
    _out(f"Result: {result.outcome.value}")
    return EXIT_CODES[result.outcome]


def cmd_sync(app: App, args: argparse.Namespace) -> int:
    result = app.synchronizer.sync(app.queues.list_queues(), app.config.by_name())
    for name in result.written:
        _out(f"Generated AirPrint-{name}.service")
    for name in result.deleted:
        _out(f"Removed AirPrint-{name}.service")
    if not result.changed:
        _out("AirPrint descriptors already up to date")
    return EXIT_DEGRADED if result.issues else EXIT_OK


def cmd_status(app: App, args: argparse.Namespace) -> int:
    report = app.console.status()
    _out("=== Printer Status ===")
    if report.error:
        _out(f"  CUPS not reachable: {report.error}")
    for q in report.queues:
        state = "enabled" if q.enabled else "disabled"
        accepting = "accepting" if q.accepting else "rejecting"
        shared = "shared" if q.shared else "not shared"
        marker = " (default)" if q.name == report.default else ""
        _out(f"  {q.name}{marker}: {state}, {accepting}, {shared}")
        _out(f"    URI: {q.device_uri}")
        _out(f"    Jobs: {report.jobs.get(q.name, 0)}")
    _out("Service Status:")
    for unit, active in report.services.items():
        _out(f"  {unit}: {'running' if active else 'stopped'}")
    return EXIT_OK if all(report.services.values()) and not report.error else EXIT_DEGRADED


def cmd_queue(app: App, args: argparse.Namespace) -> int:
    jobs = app.console.list_jobs(args.printer)
    if not jobs:
        _out("All print queues are empty")
    for job in jobs:
        _out(f"  {job.queue}-{job.job_id}  {job.user}  {job.size_kb}k  {job.state}  {job.title}")
    return EXIT_OK


def cmd_clear(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, "Cancel all jobs on all printers?")
    for name, count in app.console.clear_queues(confirmed=confirmed).items():
        _out(f"  {name}: {count} job(s) cleared")
    return EXIT_OK


def cmd_cancel(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, f"Cancel job {args.job}?")
    job_id = app.console.cancel_job(args.job, confirmed=confirmed)
    _out(f"Job {job_id} cancelled")
    return EXIT_OK


def cmd_restart(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, "Restart CUPS and Avahi?")
    health = app.console.restart_services(confirmed=confirmed)
    for unit, active in health.items():
        _out(f"  {unit}: {'running' if active else 'failed to restart'}")
    return EXIT_OK if all(health.values()) else EXIT_DEGRADED


def cmd_usb(app: App, args: argparse.Namespace) -> int:
    report = app.console.inventory()
    if not report.entries:
        _out("No printer USB devices detected")
    for entry in report.entries:
        d = entry.device
        profile = entry.profile or "no matching profile"
        queue = "configured" if entry.configured else "no queue"
        _out(f"  {d.vendor_id or '----'}  {d.raw_description}")
        _out(f"    {d.uri}  [{profile}, {queue}]")
    for name in report.missing:
        _out(f"  {name}: not connected")
    for warning in report.warnings:
        _out(f"  warning: {warning}")
    return EXIT_OK


def cmd_logs(app: App, args: argparse.Namespace) -> int:
    which = "access" if args.access else "error"
    for line in app.console.tail_log(which, args.lines):
        _out(line)
    return EXIT_OK


def cmd_health(app: App, args: argparse.Namespace) -> int:
    report = app.console.health()
    _out("=== System Health ===")
    for check in report.checks:
        _out(f"  {check.name}: {check.value:.1f}{check.unit} ({BAND_LABELS[check.band]})")
    _out(f"  spool size: {report.spool_bytes} bytes")
    if report.hostname:
        _out(f"  hostname: {report.hostname}")
    if report.address:
        _out(f"  IP address: {report.address}")
    return {
        HealthBand.NORMAL: EXIT_OK,
        HealthBand.WARN: EXIT_DEGRADED,
        HealthBand.CRITICAL: EXIT_ABORTED,
    }[report.overall]


def cmd_test(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, f"Send a test page to {args.printer}?")
    job_id = app.console.print_test_page(args.printer, confirmed=confirmed)
    _out(f"Test page sent to {args.printer} (job {job_id})")
    return EXIT_OK


def cmd_debug(app: App, args: argparse.Namespace) -> int:
    verbose = args.state == "on"
    question = "Enable debug logging? (generates verbose output)" if verbose else (
        "Turn debug logging off (set to 'warn')?"
    )
    try:
        report = app.console.set_log_verbosity(verbose, confirmed=args.yes)
    except NotConfirmed:
        if not _confirm(args, question):
            raise
        report = app.console.set_log_verbosity(verbose, confirmed=True)
    if not report.changed:
        _out(f"Log level already '{report.previous}'")
        return EXIT_OK
    return EXIT_OK if report.restarted else EXIT_DEGRADED


def cmd_clean(app: App, args: argparse.Namespace) -> int:
    question = "Clean completed job data from spool?"
    if args.cancel_pending:
        question = "Cancel ALL pending jobs and clean the spool?"
    confirmed = _confirm(args, question)
    report = app.console.clean_spool(
        timedelta(days=args.days),
        confirmed=confirmed,
        cancel_pending=args.cancel_pending,
    )
    _out(f"Removed {len(report.deleted)} spool file(s)")
    _out(f"Kept {report.kept_pending} file(s) of pending jobs")
    _out(f"Spool size: {report.size_before} -> {report.size_after} bytes")
    return EXIT_OK


def cmd_remove(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, f"Remove printer {args.printer}?")
    cancelled = app.reconciler.remove_queue(args.printer, confirmed=confirmed)
    _out(f"Removed printer {args.printer} ({cancelled} job(s) cancelled)")
    deleted = app.synchronizer.remove_orphans(app.queues.list_queues())
    if deleted:
        app.synchronizer.host.reload_advertisement_service()
    return EXIT_OK


def cmd_teardown(app: App, args: argparse.Namespace) -> int:
    confirmed = _confirm(args, "Remove all managed printers and AirPrint services?")
    report = app.console.teardown(confirmed=confirmed)
    for name in report.removed:
        _out(f"Removed printer: {name}")
    for name, error in report.failed.items():
        _out(f"Failed to remove printer: {name} ({error})")
    for name in report.descriptors_deleted:
        _out(f"Removed AirPrint-{name}.service")
    if report.reload_error:
        _out(f"Avahi reload failed: {report.reload_error}")
    return EXIT_DEGRADED if report.failed or report.reload_error else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="printfleet",
        description="Configure and maintain a CUPS/AirPrint print server",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="do not ask for confirmation"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reconcile", help="detect printers and configure CUPS and AirPrint")
    p.add_argument("--dry-run", action="store_true", help="only show the plan")
    p.set_defaults(func=cmd_reconcile)

    sub.add_parser("sync", help="regenerate AirPrint service files").set_defaults(func=cmd_sync)
    sub.add_parser("status", help="show printer status").set_defaults(func=cmd_status)

    p = sub.add_parser("queue", help="show print queue")
    p.add_argument("printer", nargs="?", help="only this printer")
    p.set_defaults(func=cmd_queue)

    sub.add_parser("clear", help="clear all print queues").set_defaults(func=cmd_clear)

    p = sub.add_parser("cancel", help="cancel a specific job")
    p.add_argument("job", help="job id, e.g. HP-LaserJet-1320-1")
    p.set_defaults(func=cmd_cancel)

    sub.add_parser("restart", help="restart CUPS and Avahi").set_defaults(func=cmd_restart)
    sub.add_parser("usb", help="check USB devices").set_defaults(func=cmd_usb)

    p = sub.add_parser("logs", help="view CUPS log")
    p.add_argument("--access", action="store_true", help="access log instead of error log")
    p.add_argument("-n", "--lines", type=int, default=50)
    p.set_defaults(func=cmd_logs)

    sub.add_parser("health", help="system health check").set_defaults(func=cmd_health)

    p = sub.add_parser("test", help="print test page")
    p.add_argument("printer")
    p.set_defaults(func=cmd_test)

    p = sub.add_parser("debug", help="toggle CUPS debug logging")
    p.add_argument("state", choices=["on", "off"])
    p.set_defaults(func=cmd_debug)

    p = sub.add_parser("clean", help="clean CUPS spool")
    p.add_argument("--days", type=float, default=1, help="retention in days")
    p.add_argument(
        "--cancel-pending", action="store_true", help="cancel all pending jobs first"
    )
    p.set_defaults(func=cmd_clean)

    p = sub.add_parser("remove", help="remove one printer queue")
    p.add_argument("printer")
    p.set_defaults(func=cmd_remove)

    sub.add_parser(
        "teardown", help="remove all managed printers and AirPrint services"
    ).set_defaults(func=cmd_teardown)
    return parser


def setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def main(argv: list[str] | None = None, app: App | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        if app is None:
            app = build_app(Settings.from_env())
        return args.func(app, args)
    except NotConfirmed as e:
        _out(f"Not confirmed, nothing changed ({e}).")
        return EXIT_ABORTED
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_ABORTED
    except ExternalServiceUnavailable as e:
        logger.error("%s", e)
        return EXIT_ABORTED
    except PrintFleetError as e:
        logger.error("%s", e)
        return EXIT_DEGRADED
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_ABORTED
