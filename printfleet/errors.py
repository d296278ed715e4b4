"""Error taxonomy and the issue records carried in results."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging


class PrintFleetError(Exception):
    """Base class for printfleet errors."""


class ExternalServiceUnavailable(PrintFleetError):
    """A backend (CUPS, Avahi, systemd) could not be reached."""


class QueueApplyFailed(PrintFleetError):
    """The print subsystem rejected a queue mutation."""

    def __init__(self, queue: str, message: str) -> None:
        super().__init__(f"{queue}: {message}")
        self.queue = queue


class ConfigError(PrintFleetError):
    """Invalid printer profile configuration."""


class NotConfirmed(PrintFleetError):
    """A mutating operation was called without confirmation."""


class IssueKind(enum.Enum):
    DEVICE_NOT_FOUND = "device-not-found"
    DRIVER_UNRESOLVED = "driver-unresolved"
    QUEUE_APPLY_FAILED = "queue-apply-failed"
    AMBIGUOUS_MATCH = "ambiguous-match"
    EXTERNAL_SERVICE_UNAVAILABLE = "external-service-unavailable"
    SCAN_FAILED = "scan-failed"


class Severity(enum.IntEnum):
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    FATAL = logging.CRITICAL


class RunOutcome(enum.Enum):
    """How a run ended, for callers that branch on it."""

    NOTHING_TO_DO = "nothing-to-do"
    CHANGED = "changed"
    DEGRADED = "degraded"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Issue:
    kind: IssueKind
    severity: Severity
    subject: str
    message: str

    def __str__(self) -> str:
        return f"{self.subject}: {self.message}"


def report(log: logging.Logger, issue: Issue) -> Issue:
    """Log ``issue`` at its severity and hand it back for collection."""
    log.log(int(issue.severity), "[%s] %s", issue.kind.value, issue)
    return issue


def outcome_for(issues, *, changed: bool) -> RunOutcome:
    """Collapse a run's issues into a single outcome."""
    severities = {issue.severity for issue in issues}
    if Severity.FATAL in severities:
        return RunOutcome.ABORTED
    if Severity.ERROR in severities or Severity.WARNING in severities:
        return RunOutcome.DEGRADED
    return RunOutcome.CHANGED if changed else RunOutcome.NOTHING_TO_DO
