"""Records shared by the scanner, resolver, reconciler and advertiser."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

SERVICE_TYPE = "_ipp._tcp"


@dataclass(frozen=True)
class DeviceDescriptor:
    """One physically attached printer, as seen during a single scan."""

    vendor_id: str
    product_id: str
    serial_or_port: str
    raw_description: str
    uri: str


@dataclass(frozen=True)
class AirPrintTraits:
    """Capabilities announced in the AirPrint TXT records."""

    color: bool = False
    duplex: bool = False
    urf: str = "W8,CP1,PQ3-4-5,RS600"
    pdl: tuple[str, ...] = (
        "application/octet-stream",
        "application/pdf",
        "application/postscript",
        "image/jpeg",
        "image/png",
        "image/pwg-raster",
        "image/urf",
    )


@dataclass(frozen=True)
class PrinterProfile:
    """Declared target configuration for one printer model."""

    logical_name: str
    match_pattern: str
    driver_candidates: tuple[str, ...]
    default_options: Mapping[str, str] = field(default_factory=dict)
    location: str = ""
    shared: bool = True
    description: str = ""
    supported_media: tuple[str, ...] = ()
    airprint: AirPrintTraits = field(default_factory=AirPrintTraits)
    default_printer: bool = False

    @property
    def info(self) -> str:
        return self.description or self.logical_name


@dataclass(frozen=True)
class DriverRef:
    """A PPD/driver reference, optionally confirmed by the driver catalog."""

    name: str
    make_and_model: str | None = None
    verified: bool = True

    def matches(self, installed: str) -> bool:
        """Whether a queue reporting ``installed`` as its driver uses this one."""
        if not installed:
            return False
        if installed == self.name:
            return True
        return self.make_and_model is not None and installed == self.make_and_model


@dataclass
class QueueState:
    """Snapshot of one CUPS queue, or the desired shape of one."""

    name: str
    device_uri: str
    driver_ref: str
    options: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    accepting: bool = True
    shared: bool = True
    location: str = ""
    info: str = ""
    make_and_model: str = ""

    @property
    def advertisable(self) -> bool:
        return self.enabled and self.accepting and self.shared


@dataclass(frozen=True)
class ServiceAdvertisement:
    """One AirPrint descriptor for an advertisable queue."""

    queue_name: str
    service_type: str
    txt_records: tuple[tuple[str, str], ...]
    media_default: str
    media_supported: tuple[str, ...]
    title: str = ""


@dataclass(frozen=True)
class RawDevice:
    """A device as reported by the device catalog, before interpretation."""

    uri: str
    make_and_model: str = ""
    info: str = ""
    device_id: str = ""
    device_class: str = "direct"


@dataclass(frozen=True)
class DriverEntry:
    """One entry of the system driver catalog."""

    name: str
    make_and_model: str = ""


@dataclass(frozen=True)
class PrintJob:
    """An active job held by the print subsystem."""

    job_id: int
    queue: str
    title: str = ""
    user: str = ""
    size_kb: int = 0
    state: str = "pending"


@dataclass(frozen=True)
class SpoolArtifact:
    """A control (``c``) or data (``d``) file in the CUPS spool."""

    path: str
    job_id: int
    kind: str
    mtime: float
    size: int = 0


@dataclass(frozen=True)
class HealthReading:
    """Raw health telemetry, units in the field names."""

    temperature_c: float | None
    memory_available_mb: float
    disk_used_percent: float
    uptime_seconds: float
    hostname: str = ""
    address: str = ""
