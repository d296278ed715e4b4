"""
Maintenance operations for a running print server.

Every operation stands alone: it fetches whatever state it needs and does not
rely on another operation having run first. Operations that change anything
take ``confirmed`` and raise NotConfirmed when it is false; prompting the
operator is left to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import enum
import logging
from pathlib import Path
import re
import time
from typing import Callable, Sequence

from printfleet.advertise import AdvertisementSynchronizer
from printfleet.backends import (
    AVAHI_UNIT,
    CUPS_UNIT,
    CupsdConfig,
    HealthTelemetry,
    LogFiles,
    QueueService,
    ServiceManager,
    SpoolArea,
)
from printfleet.errors import (
    ExternalServiceUnavailable,
    NotConfirmed,
    QueueApplyFailed,
)
from printfleet.models import (
    DeviceDescriptor,
    PrinterProfile,
    PrintJob,
    QueueState,
    SpoolArtifact,
)
from printfleet.reconcile import matches
from printfleet.scanner import DeviceScanner

logger = logging.getLogger(__name__)

VERBOSE_LEVELS = ("debug", "debug2")
VERBOSE_LEVEL = "debug"
NORMAL_LEVEL = "warn"
JOB_ID_RE = re.compile(r"^(?:.+-)?(\d+)$")


class HealthBand(enum.IntEnum):
    NORMAL = 0
    WARN = 1
    CRITICAL = 2


@dataclass(frozen=True)
class HealthThresholds:
    temperature_warn_c: float = 70
    temperature_critical_c: float = 80
    memory_warn_mb: float = 100
    memory_critical_mb: float = 50
    disk_warn_percent: float = 80
    disk_critical_percent: float = 90


@dataclass(frozen=True)
class HealthCheck:
    name: str
    value: float
    unit: str
    band: HealthBand


@dataclass
class HealthReport:
    checks: list[HealthCheck] = field(default_factory=list)
    hostname: str = ""
    address: str = ""
    spool_bytes: int = 0

    @property
    def overall(self) -> HealthBand:
        return max((c.band for c in self.checks), default=HealthBand.NORMAL)


@dataclass
class StatusReport:
    queues: list[QueueState] = field(default_factory=list)
    jobs: dict[str, int] = field(default_factory=dict)
    default: str | None = None
    services: dict[str, bool] = field(default_factory=dict)
    error: str = ""


@dataclass(frozen=True)
class InventoryEntry:
    device: DeviceDescriptor
    profile: str | None
    queue: str | None

    @property
    def configured(self) -> bool:
        return self.queue is not None


@dataclass
class InventoryReport:
    entries: list[InventoryEntry] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class SpoolCleanReport:
    deleted: list[str] = field(default_factory=list)
    kept_pending: int = 0
    kept_recent: int = 0
    cancelled_jobs: int = 0
    size_before: int = 0
    size_after: int = 0


@dataclass
class VerbosityReport:
    previous: str
    current: str
    restarted: bool = False

    @property
    def changed(self) -> bool:
        return self.previous != self.current


@dataclass
class TeardownReport:
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    descriptors_deleted: list[str] = field(default_factory=list)
    reload_error: str = ""


def _band_above(value: float, warn: float, critical: float) -> HealthBand:
    if value >= critical:
        return HealthBand.CRITICAL
    if value >= warn:
        return HealthBand.WARN
    return HealthBand.NORMAL


def _band_below(value: float, warn: float, critical: float) -> HealthBand:
    if value < critical:
        return HealthBand.CRITICAL
    if value < warn:
        return HealthBand.WARN
    return HealthBand.NORMAL


def parse_job_id(job: str | int) -> int:
    """Accept ``12`` or ``HP-LaserJet-1320-12``."""
    if isinstance(job, int):
        return job
    m = JOB_ID_RE.match(job.strip())
    if not m:
        raise ValueError(f"Not a job id: {job!r}")
    return int(m.group(1))


def _require(confirmed: bool, action: str) -> None:
    if not confirmed:
        raise NotConfirmed(action)


class MaintenanceConsole:
    def __init__(
        self,
        *,
        profiles: Sequence[PrinterProfile],
        queues: QueueService,
        services: ServiceManager,
        scanner: DeviceScanner,
        synchronizer: AdvertisementSynchronizer,
        telemetry: HealthTelemetry,
        spool: SpoolArea,
        cupsd: CupsdConfig,
        logs: LogFiles,
        test_page: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.profiles = tuple(profiles)
        self.queues = queues
        self.services = services
        self.scanner = scanner
        self.synchronizer = synchronizer
        self.telemetry = telemetry
        self.spool = spool
        self.cupsd = cupsd
        self.logs = logs
        self.test_page = test_page
        self.clock = clock

    def _service_health(self) -> dict[str, bool]:
        return {unit: self.services.is_active(unit) for unit in (CUPS_UNIT, AVAHI_UNIT)}

    def _queue_names(self) -> set[str]:
        return {q.name for q in self.queues.list_queues()}

    def status(self) -> StatusReport:
        report = StatusReport(services=self._service_health())
        try:
            report.queues = self.queues.list_queues()
            report.default = self.queues.get_default()
            for job in self.queues.list_jobs():
                report.jobs[job.queue] = report.jobs.get(job.queue, 0) + 1
        except ExternalServiceUnavailable as e:
            logger.warning("No printers configured: %s", e)
            report.error = str(e)
        return report

    def list_jobs(self, queue: str | None = None) -> list[PrintJob]:
        jobs = self.queues.list_jobs(queue)
        if not jobs:
            logger.info("All print queues are empty")
        return jobs

    def inventory(self) -> InventoryReport:
        """Attached devices, which profile claims them and whether a queue exists."""
        scan = self.scanner.scan()
        report = InventoryReport(warnings=[str(i) for i in scan.issues])
        queue_names = self._queue_names()
        seen_profiles = set()
        for device in scan.devices:
            profile = next((p for p in self.profiles if matches(p, device)), None)
            name = profile.logical_name if profile else None
            if name:
                seen_profiles.add(name)
            report.entries.append(
                InventoryEntry(
                    device=device,
                    profile=name,
                    queue=name if name in queue_names else None,
                )
            )
        report.missing = [
            p.logical_name for p in self.profiles if p.logical_name not in seen_profiles
        ]
        return report

    def tail_log(self, which: str = "error", lines: int = 50) -> list[str]:
        return self.logs.tail(which, lines)

    def health(self, thresholds: HealthThresholds | None = None) -> HealthReport:
        t = thresholds or HealthThresholds()
        reading = self.telemetry.read()
        report = HealthReport(
            hostname=reading.hostname,
            address=reading.address,
            spool_bytes=self.spool.size(),
        )
        if reading.temperature_c is not None:
            report.checks.append(
                HealthCheck(
                    "cpu-temperature",
                    reading.temperature_c,
                    "C",
                    _band_above(
                        reading.temperature_c,
                        t.temperature_warn_c,
                        t.temperature_critical_c,
                    ),
                )
            )
        report.checks.append(
            HealthCheck(
                "memory-available",
                reading.memory_available_mb,
                "MB",
                _band_below(
                    reading.memory_available_mb, t.memory_warn_mb, t.memory_critical_mb
                ),
            )
        )
        report.checks.append(
            HealthCheck(
                "disk-used",
                reading.disk_used_percent,
                "%",
                _band_above(
                    reading.disk_used_percent,
                    t.disk_warn_percent,
                    t.disk_critical_percent,
                ),
            )
        )
        # Informational only
        report.checks.append(
            HealthCheck("uptime", reading.uptime_seconds, "s", HealthBand.NORMAL)
        )
        for check in report.checks:
            if check.band is HealthBand.CRITICAL:
                logger.error("%s: %.1f%s (CRITICAL)", check.name, check.value, check.unit)
            elif check.band is HealthBand.WARN:
                logger.warning("%s: %.1f%s (HIGH)", check.name, check.value, check.unit)
        return report

    def clear_queues(self, *, confirmed: bool) -> dict[str, int]:
        """Cancel every job on every queue. Returns jobs cleared per queue."""
        _require(confirmed, "clear all print queues")
        cleared = {}
        for queue in self.queues.list_queues():
            cleared[queue.name] = self.queues.cancel_jobs(queue.name)
            if cleared[queue.name]:
                logger.info("Cleared %d job(s) from %s", cleared[queue.name], queue.name)
            else:
                logger.info("%s: queue already empty", queue.name)
        return cleared

    def cancel_job(self, job: str | int, *, confirmed: bool) -> int:
        job_id = parse_job_id(job)
        _require(confirmed, f"cancel job {job_id}")
        self.queues.cancel_job(job_id)
        logger.info("Job %d cancelled", job_id)
        return job_id

    def restart_services(self, *, confirmed: bool) -> dict[str, bool]:
        """Restart CUPS then Avahi; returns whether each is active afterwards."""
        _require(confirmed, "restart CUPS and Avahi")
        for unit in (CUPS_UNIT, AVAHI_UNIT):
            try:
                self.services.restart(unit)
            except ExternalServiceUnavailable as e:
                logger.error("%s: failed to restart: %s", unit, e)
        health = self._service_health()
        for unit, active in health.items():
            if active:
                logger.info("%s: restarted successfully", unit)
        return health

    def print_test_page(self, queue: str, *, confirmed: bool) -> int:
        _require(confirmed, f"print a test page on {queue}")
        if queue not in self._queue_names():
            raise QueueApplyFailed(queue, "no such printer")
        path = self.test_page if self.test_page and self.test_page.exists() else None
        job_id = self.queues.print_test_page(queue, str(path) if path else None)
        logger.info("Test page sent to %s (job %d)", queue, job_id)
        return job_id

    def set_log_verbosity(self, verbose: bool, *, confirmed: bool) -> VerbosityReport:
        """Switch CUPS between ``debug`` and ``warn`` logging."""
        previous = self.cupsd.read_log_level()
        if (previous in VERBOSE_LEVELS) == verbose:
            return VerbosityReport(previous=previous, current=previous)

        target = VERBOSE_LEVEL if verbose else NORMAL_LEVEL
        _require(confirmed, f"set CUPS LogLevel to {target}")
        self.cupsd.write_log_level(target)
        self.services.restart(CUPS_UNIT)
        logger.info("Log level set to '%s'. CUPS restarted.", target)
        return VerbosityReport(previous=previous, current=target, restarted=True)

    def clean_spool(
        self,
        retention: timedelta = timedelta(days=1),
        *,
        confirmed: bool,
        cancel_pending: bool = False,
    ) -> SpoolCleanReport:
        """Delete spool files of finished jobs older than ``retention``.

        Files belonging to pending jobs are kept whatever their age, unless
        ``cancel_pending`` is set, in which case every job is cancelled first.
        """
        _require(confirmed, "clean the CUPS spool")
        report = SpoolCleanReport(size_before=self.spool.size())

        if cancel_pending:
            for queue in self.queues.list_queues():
                report.cancelled_jobs += self.queues.cancel_jobs(queue.name)
            pending: set[int] = set()
        else:
            pending = {job.job_id for job in self.queues.list_jobs()}

        cutoff = self.clock() - retention.total_seconds()
        artifacts: list[SpoolArtifact] = self.spool.list_artifacts()
        for artifact in artifacts:
            if artifact.job_id in pending:
                report.kept_pending += 1
            elif artifact.mtime < cutoff:
                self.spool.delete(artifact)
                report.deleted.append(artifact.path)
            else:
                report.kept_recent += 1

        report.size_after = self.spool.size()
        logger.info(
            "Spool cleaned: %d file(s) removed, size %d -> %d bytes",
            len(report.deleted),
            report.size_before,
            report.size_after,
        )
        return report

    def teardown(self, *, confirmed: bool) -> TeardownReport:
        """Remove every managed queue and the descriptors that no longer apply."""
        _require(confirmed, "remove all managed printers")
        report = TeardownReport()
        existing = self._queue_names()
        for profile in self.profiles:
            name = profile.logical_name
            if name not in existing:
                continue
            try:
                self.queues.cancel_jobs(name)
                self.queues.remove_queue(name)
            except QueueApplyFailed as e:
                logger.warning("Failed to remove printer: %s", name)
                report.failed[name] = str(e)
                continue
            logger.info("Removed printer: %s", name)
            report.removed.append(name)

        remaining = self.queues.list_queues()
        report.descriptors_deleted = self.synchronizer.remove_orphans(remaining)
        if report.descriptors_deleted:
            try:
                self.synchronizer.host.reload_advertisement_service()
            except ExternalServiceUnavailable as e:
                logger.error("AirPrint services removed but reload failed: %s", e)
                report.reload_error = str(e)
        return report
