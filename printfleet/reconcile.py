"""
Queue reconciliation.

``reconcile`` compares declared profiles and attached devices against one
snapshot of the CUPS queues and returns a plan; it does not change anything.
``apply`` executes the plan step by step. A rejected step is recorded and the
next profile is still processed; an unreachable backend stops the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Mapping, Sequence, Union

from printfleet.backends import QueueService
from printfleet.drivers import DriverResolver
from printfleet.errors import (
    ExternalServiceUnavailable,
    Issue,
    IssueKind,
    NotConfirmed,
    QueueApplyFailed,
    RunOutcome,
    Severity,
    outcome_for,
    report,
)
from printfleet.models import DeviceDescriptor, DriverRef, PrinterProfile, QueueState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upsert:
    name: str
    desired: QueueState
    driver: DriverRef
    device: DeviceDescriptor
    replace: bool = False
    exists: bool = False
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class NoOp:
    name: str


@dataclass(frozen=True)
class Absent:
    name: str


Step = Union[Upsert, NoOp, Absent]


@dataclass(frozen=True)
class ReconcilePlan:
    steps: tuple[Step, ...] = ()
    issues: tuple[Issue, ...] = ()

    @property
    def upserts(self) -> tuple[Upsert, ...]:
        return tuple(s for s in self.steps if isinstance(s, Upsert))

    @property
    def absent(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.steps if isinstance(s, Absent))

    def step_for(self, name: str) -> Step | None:
        return next((s for s in self.steps if s.name == name), None)


@dataclass
class ReconcileResult:
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    aborted: bool = False

    @property
    def outcome(self) -> RunOutcome:
        return outcome_for(self.issues, changed=bool(self.applied))


def matches(profile: PrinterProfile, descriptor: DeviceDescriptor) -> bool:
    return profile.match_pattern.lower() in descriptor.raw_description.lower()


def driver_satisfied(installed: str, driver: DriverRef) -> bool:
    """Whether the driver a queue reports is acceptable for ``driver``.

    An unverified fallback never displaces a driver that is already installed.
    """
    if driver.matches(installed):
        return True
    return not driver.verified and bool(installed)


def desired_state(profile: PrinterProfile, device: DeviceDescriptor, driver: DriverRef) -> QueueState:
    return QueueState(
        name=profile.logical_name,
        device_uri=device.uri,
        driver_ref=driver.name,
        options=dict(profile.default_options),
        enabled=True,
        accepting=True,
        shared=profile.shared,
        location=profile.location,
        info=profile.info,
    )


def differences(current: QueueState, desired: QueueState, driver: DriverRef) -> tuple[str, ...]:
    reasons = []
    if current.device_uri != desired.device_uri:
        reasons.append("device-uri")
    if not driver_satisfied(current.driver_ref, driver):
        reasons.append("driver")
    for option, value in desired.options.items():
        if current.options.get(option) != value:
            reasons.append(f"option {option}")
    for attr in ("enabled", "accepting", "shared", "location", "info"):
        if getattr(current, attr) != getattr(desired, attr):
            reasons.append(attr)
    return tuple(reasons)


class QueueReconciler:
    def __init__(self, resolver: DriverResolver, queues: QueueService) -> None:
        self.resolver = resolver
        self.queues = queues

    def _match_device(
        self, profile: PrinterProfile, descriptors: Sequence[DeviceDescriptor], issues: list[Issue]
    ) -> DeviceDescriptor | None:
        candidates = [d for d in descriptors if matches(profile, d)]
        if not candidates:
            return None
        if len(candidates) > 1:
            issues.append(
                report(
                    logger,
                    Issue(
                        IssueKind.AMBIGUOUS_MATCH,
                        Severity.WARNING,
                        profile.logical_name,
                        f"{len(candidates)} devices match '{profile.match_pattern}', "
                        f"using {candidates[0].uri}",
                    ),
                )
            )
        return candidates[0]

    def reconcile(
        self,
        profiles: Sequence[PrinterProfile],
        descriptors: Sequence[DeviceDescriptor],
        current_queues: Mapping[str, QueueState],
    ) -> ReconcilePlan:
        """Compute the steps that bring ``current_queues`` in line with ``profiles``.

        Queues without a profile are not part of the plan and are never touched.
        """
        steps: list[Step] = []
        issues: list[Issue] = []

        for profile in profiles:
            name = profile.logical_name
            device = self._match_device(profile, descriptors, issues)
            if device is None:
                issues.append(
                    report(
                        logger,
                        Issue(
                            IssueKind.DEVICE_NOT_FOUND,
                            Severity.INFO,
                            name,
                            "printer not connected",
                        ),
                    )
                )
                steps.append(Absent(name))
                continue

            resolution = self.resolver.resolve(device, profile)
            issues.extend(resolution.issues)
            if resolution.driver is None:
                steps.append(NoOp(name))
                continue

            desired = desired_state(profile, device, resolution.driver)
            current = current_queues.get(name)
            if current is None:
                steps.append(
                    Upsert(name, desired, resolution.driver, device, reasons=("missing",))
                )
                continue

            reasons = differences(current, desired, resolution.driver)
            if not reasons:
                steps.append(NoOp(name))
                continue
            replace = "device-uri" in reasons or "driver" in reasons
            steps.append(
                Upsert(
                    name,
                    desired,
                    resolution.driver,
                    device,
                    replace=replace,
                    exists=True,
                    reasons=reasons,
                )
            )

        return ReconcilePlan(steps=tuple(steps), issues=tuple(issues))

    def _apply_upsert(self, step: Upsert) -> None:
        desired = step.desired
        if step.replace:
            logger.warning(
                "Queue '%s' exists with a different %s. Removing and re-adding...",
                step.name,
                " and ".join(r for r in step.reasons if r in ("device-uri", "driver")),
            )
            self.queues.remove_queue(step.name)

        # Re-sending the driver on option-only changes would reset PPD defaults
        driver = step.driver.name if step.replace or not step.exists else None
        logger.info("Adding printer: %s", desired.info)
        logger.info("  URI: %s", desired.device_uri)
        if driver:
            logger.info("  PPD: %s", driver)
        self.queues.upsert_queue(
            step.name,
            desired.device_uri,
            driver,
            desired.options,
            desired.location,
            desired.shared,
            info=desired.info,
        )
        self.queues.set_enabled(step.name, True)
        self.queues.set_accepting(step.name, True)
        logger.info("Printer '%s' configured", desired.info)

    def apply(self, plan: ReconcilePlan) -> ReconcileResult:
        """Execute the plan's Upsert steps in order."""
        result = ReconcileResult(issues=list(plan.issues))
        pending = list(plan.upserts)
        while pending:
            step = pending.pop(0)
            try:
                self._apply_upsert(step)
            except QueueApplyFailed as e:
                result.failed.append(step.name)
                result.issues.append(
                    report(
                        logger,
                        Issue(
                            IssueKind.QUEUE_APPLY_FAILED,
                            Severity.ERROR,
                            step.name,
                            f"failed to configure: {e}",
                        ),
                    )
                )
            except ExternalServiceUnavailable as e:
                result.aborted = True
                result.failed.append(step.name)
                result.skipped.extend(s.name for s in pending)
                result.issues.append(
                    report(
                        logger,
                        Issue(
                            IssueKind.EXTERNAL_SERVICE_UNAVAILABLE,
                            Severity.FATAL,
                            step.name,
                            f"aborting run: {e}",
                        ),
                    )
                )
                break
            else:
                result.applied.append(step.name)
        return result

    def remove_queue(self, name: str, *, confirmed: bool) -> int:
        """Delete a queue after cancelling its jobs. Returns the jobs cancelled."""
        if not confirmed:
            raise NotConfirmed(f"remove {name}")
        cancelled = self.queues.cancel_jobs(name)
        self.queues.remove_queue(name)
        logger.info("Removed printer: %s", name)
        return cancelled
