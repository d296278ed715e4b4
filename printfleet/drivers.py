"""Pick a driver for a profile from the system driver catalog."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from printfleet.backends import DriverCatalog
from printfleet.errors import Issue, IssueKind, Severity, report
from printfleet.models import DeviceDescriptor, DriverRef, PrinterProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one profile; ``driver`` is None only without candidates."""

    driver: DriverRef | None
    issues: tuple[Issue, ...] = ()

    @property
    def found(self) -> bool:
        return self.driver is not None and self.driver.verified


class DriverResolver:
    def __init__(self, catalog: DriverCatalog) -> None:
        self.catalog = catalog

    def _probe(self, candidate: str, subject: str, issues: list[Issue]) -> DriverRef | None:
        if self.catalog.driver_exists(candidate):
            entry = next(
                (e for e in self.catalog.list_available_drivers() if e.name == candidate),
                None,
            )
            return DriverRef(
                name=candidate,
                make_and_model=entry.make_and_model if entry and entry.make_and_model else None,
            )

        matches = self.catalog.find_drivers(candidate)
        if not matches:
            return None
        first = matches[0]
        if len(matches) > 1:
            issues.append(
                report(
                    logger,
                    Issue(
                        IssueKind.AMBIGUOUS_MATCH,
                        Severity.WARNING,
                        subject,
                        f"driver pattern '{candidate}' matches {len(matches)} "
                        f"drivers, using {first.name}",
                    ),
                )
            )
        return DriverRef(name=first.name, make_and_model=first.make_and_model or None)

    def resolve(self, descriptor: DeviceDescriptor, profile: PrinterProfile) -> Resolution:
        """Walk ``profile.driver_candidates`` in order; first confirmed one wins.

        If no candidate is in the catalog the last one is returned unverified,
        with a warning, so setup can still proceed.
        """
        subject = profile.logical_name
        candidates = profile.driver_candidates
        if not candidates:
            issue = report(
                logger,
                Issue(
                    IssueKind.DRIVER_UNRESOLVED,
                    Severity.ERROR,
                    subject,
                    "no driver candidates declared",
                ),
            )
            return Resolution(driver=None, issues=(issue,))

        issues: list[Issue] = []
        for index, candidate in enumerate(candidates):
            driver = self._probe(candidate, subject, issues)
            if driver is None:
                logger.debug("%s: driver candidate '%s' not found", subject, candidate)
                continue
            if index > 0:
                issues.append(
                    report(
                        logger,
                        Issue(
                            IssueKind.DRIVER_UNRESOLVED,
                            Severity.WARNING,
                            subject,
                            f"'{candidates[0]}' not available, "
                            f"falling back to {driver.name}",
                        ),
                    )
                )
            logger.debug(
                "%s: using driver %s for %s", subject, driver.name, descriptor.uri
            )
            return Resolution(driver=driver, issues=tuple(issues))

        fallback = DriverRef(name=candidates[-1], verified=False)
        issues.append(
            report(
                logger,
                Issue(
                    IssueKind.DRIVER_UNRESOLVED,
                    Severity.WARNING,
                    subject,
                    f"no driver candidate found in the catalog, "
                    f"using default path {fallback.name}",
                ),
            )
        )
        return Resolution(driver=fallback, issues=tuple(issues))
