"""Scan, reconcile, apply and advertise in one run."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging

from printfleet.advertise import AdvertisementSynchronizer, SyncResult
from printfleet.backends import QueueService
from printfleet.config import FleetConfig
from printfleet.errors import (
    ExternalServiceUnavailable,
    Issue,
    IssueKind,
    QueueApplyFailed,
    RunOutcome,
    Severity,
    outcome_for,
    report,
)
from printfleet.reconcile import QueueReconciler, ReconcilePlan, ReconcileResult
from printfleet.scanner import DeviceScanner, ScanResult

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    scan: ScanResult | None = None
    plan: ReconcilePlan | None = None
    applied: ReconcileResult | None = None
    sync: SyncResult | None = None
    default_changed: bool = False
    issues: list[Issue] = field(default_factory=list)
    dry_run: bool = False

    @property
    def aborted(self) -> bool:
        return any(i.severity == Severity.FATAL for i in self.issues)

    @property
    def changed(self) -> bool:
        return bool(
            (self.applied and self.applied.applied)
            or (self.sync and self.sync.changed)
            or self.default_changed
        )

    @property
    def outcome(self) -> RunOutcome:
        return outcome_for(self.issues, changed=self.changed)


class FleetPipeline:
    def __init__(
        self,
        config: FleetConfig,
        scanner: DeviceScanner,
        reconciler: QueueReconciler,
        synchronizer: AdvertisementSynchronizer,
        queues: QueueService,
    ) -> None:
        self.config = config
        self.scanner = scanner
        self.reconciler = reconciler
        self.synchronizer = synchronizer
        self.queues = queues

    def _abort(self, result: PipelineResult, stage: str, error: Exception) -> PipelineResult:
        if isinstance(error, QueueApplyFailed):
            kind = IssueKind.QUEUE_APPLY_FAILED
        else:
            kind = IssueKind.EXTERNAL_SERVICE_UNAVAILABLE
        result.issues.append(
            report(
                logger,
                Issue(
                    kind,
                    Severity.FATAL,
                    stage,
                    f"aborting run: {error}",
                ),
            )
        )
        return result

    def _ensure_default(self, queue_names: set[str], result: PipelineResult) -> None:
        wanted = next((p for p in self.config.profiles if p.default_printer), None)
        if wanted is None:
            return
        name = wanted.logical_name
        if name not in queue_names:
            result.issues.append(
                report(
                    logger,
                    Issue(
                        IssueKind.DEVICE_NOT_FOUND,
                        Severity.INFO,
                        name,
                        "not available. No default printer set.",
                    ),
                )
            )
            return
        if self.queues.get_default() == name:
            return
        try:
            self.queues.set_default(name)
        except QueueApplyFailed as e:
            result.issues.append(
                report(
                    logger,
                    Issue(IssueKind.QUEUE_APPLY_FAILED, Severity.ERROR, name, str(e)),
                )
            )
            return
        logger.info("Default printer set to: %s", wanted.info)
        result.default_changed = True

    def run(self, *, dry_run: bool = False) -> PipelineResult:
        """One full pass; queues are read once before planning and once after apply."""
        result = PipelineResult(dry_run=dry_run)

        result.scan = self.scanner.scan()
        result.issues.extend(result.scan.issues)

        try:
            current = {q.name: q for q in self.queues.list_queues()}
            result.plan = self.reconciler.reconcile(
                self.config.profiles, result.scan.devices, current
            )
        except (ExternalServiceUnavailable, QueueApplyFailed) as e:
            return self._abort(result, "reconcile", e)

        if dry_run:
            result.issues.extend(result.plan.issues)
            return result

        result.applied = self.reconciler.apply(result.plan)
        result.issues.extend(result.applied.issues)
        if result.applied.aborted:
            logger.error("Skipping AirPrint sync after aborted apply")
            return result

        try:
            after = self.queues.list_queues()
            self._ensure_default({q.name for q in after}, result)
            result.sync = self.synchronizer.sync(after, self.config.by_name())
        except (ExternalServiceUnavailable, QueueApplyFailed) as e:
            return self._abort(result, "advertise", e)
        result.issues.extend(result.sync.issues)
        return result
