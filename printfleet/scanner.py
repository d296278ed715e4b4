"""Device inventory: which USB printers are attached right now."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from urllib.parse import parse_qs, unquote, urlparse

from printfleet.backends import DeviceCatalog
from printfleet.errors import (
    ExternalServiceUnavailable,
    Issue,
    IssueKind,
    QueueApplyFailed,
    Severity,
    report,
)
from printfleet.models import DeviceDescriptor, RawDevice

logger = logging.getLogger(__name__)

# IEEE-1284 ids carry the manufacturer name, not the USB vendor id
KNOWN_VENDORS = {
    "hewlett-packard": "03f0",
    "hp": "03f0",
    "dymo": "0922",
    "brother": "04f9",
}


@dataclass(frozen=True)
class ScanResult:
    devices: tuple[DeviceDescriptor, ...] = ()
    issues: tuple[Issue, ...] = field(default_factory=tuple)


def parse_device_id(device_id: str) -> dict[str, str]:
    """Split an IEEE-1284 device id (``MFG:HP;MDL:...;``) into a dict."""
    fields = {}
    for part in device_id.split(";"):
        key, sep, value = part.partition(":")
        if sep:
            fields[key.strip().upper()] = value.strip()
    return fields


def describe(raw: RawDevice) -> DeviceDescriptor:
    """Turn a catalog entry into a DeviceDescriptor."""
    parsed = urlparse(raw.uri)
    uri_model = unquote(f"{parsed.netloc}/{parsed.path.lstrip('/')}").strip("/")
    serial = parse_qs(parsed.query).get("serial", [""])[0]

    ieee = parse_device_id(raw.device_id)
    manufacturer = ieee.get("MFG") or ieee.get("MANUFACTURER") or parsed.netloc
    model = ieee.get("MDL") or ieee.get("MODEL") or parsed.path.lstrip("/")

    parts = [raw.make_and_model, raw.info, uri_model.replace("/", " ")]
    description = " | ".join(dict.fromkeys(p for p in parts if p))

    return DeviceDescriptor(
        vendor_id=KNOWN_VENDORS.get(unquote(manufacturer).lower(), ""),
        product_id=unquote(model),
        serial_or_port=serial or raw.uri,
        raw_description=description,
        uri=raw.uri,
    )


class DeviceScanner:
    def __init__(self, catalog: DeviceCatalog) -> None:
        self.catalog = catalog

    def scan(self) -> ScanResult:
        """Enumerate attached USB printers in catalog order.

        An enumeration failure is reported as a warning with an empty device
        list so that the rest of the run can still proceed.
        """
        try:
            raw_devices = self.catalog.list_attached_printer_devices()
        except (ExternalServiceUnavailable, QueueApplyFailed) as e:
            issue = report(
                logger,
                Issue(IssueKind.SCAN_FAILED, Severity.WARNING, "scan", str(e)),
            )
            return ScanResult(issues=(issue,))

        devices = []
        seen = set()
        for raw in raw_devices:
            if not raw.uri.startswith("usb://") or raw.uri in seen:
                continue
            seen.add(raw.uri)
            descriptor = describe(raw)
            logger.debug("Found %s at %s", descriptor.raw_description, raw.uri)
            devices.append(descriptor)

        if not devices:
            logger.warning("No USB printer URIs detected")
        return ScanResult(devices=tuple(devices))
