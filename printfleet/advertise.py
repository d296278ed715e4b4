"""
Keep Avahi AirPrint service files in step with the CUPS queues.

Every enabled, accepting and shared queue gets one ``AirPrint-<queue>.service``
file; every other descriptor is removed. Output is rendered deterministically
and only written when the bytes change, so an unchanged fleet never triggers
an Avahi reload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import socket
from typing import Mapping, Sequence
from xml.etree import ElementTree as ET

from printfleet.backends import AdvertisementHost
from printfleet.errors import (
    ExternalServiceUnavailable,
    Issue,
    IssueKind,
    Severity,
    report,
)
from printfleet.models import (
    SERVICE_TYPE,
    AirPrintTraits,
    PrinterProfile,
    QueueState,
    ServiceAdvertisement,
)

logger = logging.getLogger(__name__)

IPP_PORT = 631
SUBTYPE = "_universal._sub._ipp._tcp"
XML_HEADER = (
    "<?xml version='1.0' encoding='UTF-8'?>\n"
    '<!DOCTYPE service-group SYSTEM "avahi-service.dtd">\n'
)


@dataclass
class SyncResult:
    advertisements: tuple[ServiceAdvertisement, ...] = ()
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    reloaded: bool = False
    issues: list[Issue] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.written or self.deleted)


def build_advertisement(
    queue: QueueState, profile: PrinterProfile | None, admin_host: str
) -> ServiceAdvertisement:
    """Describe ``queue`` as an AirPrint service."""
    traits = profile.airprint if profile else AirPrintTraits()
    info = profile.info if profile else (queue.info or queue.name)
    make_model = queue.make_and_model or info

    options = profile.default_options if profile else queue.options
    media_default = options.get("media", "") or queue.options.get("media", "")
    if profile and profile.supported_media:
        media_supported = tuple(profile.supported_media)
    else:
        media_supported = (media_default,) if media_default else ()

    # Order matters for some iOS versions
    txt_records = [
        ("txtvers", "1"),
        ("qtotal", "1"),
        ("rp", f"printers/{queue.name}"),
        ("ty", make_model),
        ("adminurl", f"https://{admin_host}:{IPP_PORT}/printers/{queue.name}"),
        ("note", queue.location or info),
        ("priority", "0"),
        ("product", f"({make_model})"),
        ("pdl", ",".join(traits.pdl)),
        ("Color", "T" if traits.color else "F"),
        ("Duplex", "T" if traits.duplex else "F"),
        ("URF", traits.urf),
        ("printer-state", "3"),
        ("printer-type", "0x801044" if traits.color else "0x1044"),
    ]
    if media_default:
        txt_records.append(("media-default", media_default))
    if media_supported:
        txt_records.append(("media-supported", ",".join(media_supported)))

    return ServiceAdvertisement(
        queue_name=queue.name,
        service_type=SERVICE_TYPE,
        txt_records=tuple(txt_records),
        media_default=media_default,
        media_supported=media_supported,
        title=f"AirPrint {info} @ %h",
    )


def render(ad: ServiceAdvertisement) -> bytes:
    """Avahi service-group XML for ``ad``."""
    root = ET.Element("service-group")

    name_elem = ET.SubElement(root, "name")
    name_elem.set("replace-wildcards", "yes")
    name_elem.text = ad.title or f"AirPrint {ad.queue_name} @ %h"

    service = ET.SubElement(root, "service")
    ET.SubElement(service, "type").text = ad.service_type
    ET.SubElement(service, "subtype").text = SUBTYPE
    ET.SubElement(service, "port").text = str(IPP_PORT)

    for key, value in ad.txt_records:
        ET.SubElement(service, "txt-record").text = f"{key}={value}"

    ET.indent(root, space="  ")
    return (XML_HEADER + ET.tostring(root, encoding="unicode") + "\n").encode("utf-8")


def default_admin_host() -> str:
    return f"{socket.gethostname()}.local"


class AdvertisementSynchronizer:
    def __init__(self, host: AdvertisementHost, admin_host: str | None = None) -> None:
        self.host = host
        self.admin_host = admin_host or default_admin_host()

    def advertisements(
        self,
        queue_states: Sequence[QueueState],
        profiles: Mapping[str, PrinterProfile],
    ) -> tuple[ServiceAdvertisement, ...]:
        ads = []
        for queue in sorted(queue_states, key=lambda q: q.name):
            if not queue.advertisable:
                logger.debug("Skipping %s - not enabled, accepting and shared", queue.name)
                continue
            ads.append(build_advertisement(queue, profiles.get(queue.name), self.admin_host))
        return tuple(ads)

    def remove_orphans(self, queue_states: Sequence[QueueState]) -> list[str]:
        """Delete descriptors whose queue is gone or no longer advertisable.

        Does not reload Avahi; callers do that once they are done.
        """
        keep = {q.name for q in queue_states if q.advertisable}
        deleted = []
        for name in self.host.list_descriptors():
            if name not in keep:
                self.host.delete_descriptor(name)
                deleted.append(name)
        return deleted

    def sync(
        self,
        queue_states: Sequence[QueueState],
        profiles: Mapping[str, PrinterProfile] | None = None,
    ) -> SyncResult:
        """Rewrite the full descriptor set, touching only files whose content changed."""
        ads = self.advertisements(queue_states, profiles or {})
        result = SyncResult(advertisements=ads)

        for ad in ads:
            content = render(ad)
            if self.host.read_descriptor(ad.queue_name) == content:
                result.unchanged.append(ad.queue_name)
                continue
            self.host.write_descriptor(ad.queue_name, content)
            result.written.append(ad.queue_name)

        result.deleted = self.remove_orphans(queue_states)

        if result.changed:
            try:
                self.host.reload_advertisement_service()
            except ExternalServiceUnavailable as e:
                result.issues.append(
                    report(
                        logger,
                        Issue(
                            IssueKind.EXTERNAL_SERVICE_UNAVAILABLE,
                            Severity.ERROR,
                            "avahi",
                            f"descriptors updated but reload failed: {e}",
                        ),
                    )
                )
            else:
                result.reloaded = True
        else:
            logger.info("AirPrint descriptors already up to date")
        return result
