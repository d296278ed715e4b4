"""Tests for AirPrint descriptor generation and synchronization."""

from __future__ import annotations

from dataclasses import replace
from xml.etree import ElementTree as ET

import pytest

from printfleet.advertise import (
    AdvertisementSynchronizer,
    build_advertisement,
    render,
)
from printfleet.errors import ExternalServiceUnavailable, IssueKind, Severity
from printfleet.models import AirPrintTraits, QueueState


@pytest.fixture
def synchronizer(adv_host) -> AdvertisementSynchronizer:
    return AdvertisementSynchronizer(adv_host, admin_host="printserver.local")


@pytest.fixture
def hp_queue() -> QueueState:
    return QueueState(
        name="HP-LaserJet-1320",
        device_uri="usb://HP/LaserJet%201320?serial=00CNBF123456",
        driver_ref="exact-1320-ppd",
        options={"media": "na_letter_8.5x11in"},
        location="Office",
        info="HP LaserJet 1320",
        make_and_model="HP LaserJet 1320 Series Postscript",
    )


def _body(content: bytes) -> ET.Element:
    # Skip the XML declaration and DOCTYPE lines
    return ET.fromstring(content.split(b"\n", 2)[2])


class TestBuildAdvertisement:
    def test_txt_record_order(self, hp_queue, profiles):
        ad = build_advertisement(hp_queue, profiles[0], "printserver.local")
        assert [k for k, _ in ad.txt_records] == [
            "txtvers",
            "qtotal",
            "rp",
            "ty",
            "adminurl",
            "note",
            "priority",
            "product",
            "pdl",
            "Color",
            "Duplex",
            "URF",
            "printer-state",
            "printer-type",
            "media-default",
            "media-supported",
        ]

    def test_txt_record_values(self, hp_queue, profiles):
        records = dict(build_advertisement(hp_queue, profiles[0], "printserver.local").txt_records)
        assert records["rp"] == "printers/HP-LaserJet-1320"
        assert records["ty"] == "HP LaserJet 1320 Series Postscript"
        assert records["product"] == "(HP LaserJet 1320 Series Postscript)"
        assert records["adminurl"] == "https://printserver.local:631/printers/HP-LaserJet-1320"
        assert records["note"] == "Office"
        assert records["Color"] == "F"
        assert records["printer-type"] == "0x1044"

    def test_media_from_profile(self, hp_queue, profiles):
        ad = build_advertisement(hp_queue, profiles[0], "h.local")
        assert ad.media_default == "na_letter_8.5x11in"
        assert ad.media_supported == ("na_letter_8.5x11in", "na_legal_8.5x14in")
        assert dict(ad.txt_records)["media-supported"] == "na_letter_8.5x11in,na_legal_8.5x14in"

    def test_unmanaged_queue_uses_its_own_options(self, hp_queue):
        queue = replace(hp_queue, name="Office-Inkjet", options={"media": "iso_a4_210x297mm"})
        ad = build_advertisement(queue, None, "h.local")
        assert ad.media_default == "iso_a4_210x297mm"
        assert ad.media_supported == ("iso_a4_210x297mm",)
        assert ad.title == "AirPrint HP LaserJet 1320 @ %h"

    def test_no_media_records_without_media(self, hp_queue):
        queue = replace(hp_queue, options={})
        keys = [k for k, _ in build_advertisement(queue, None, "h.local").txt_records]
        assert "media-default" not in keys
        assert "media-supported" not in keys

    def test_color_printer_type(self, hp_queue, profiles):
        profile = replace(profiles[0], airprint=AirPrintTraits(color=True, duplex=True))
        records = dict(build_advertisement(hp_queue, profile, "h.local").txt_records)
        assert records["Color"] == "T"
        assert records["Duplex"] == "T"
        assert records["printer-type"] == "0x801044"


class TestRender:
    def test_service_group_structure(self, hp_queue, profiles):
        content = render(build_advertisement(hp_queue, profiles[0], "h.local"))

        assert content.startswith(b"<?xml version='1.0' encoding='UTF-8'?>\n<!DOCTYPE")
        root = _body(content)
        assert root.tag == "service-group"
        assert root.find("name").get("replace-wildcards") == "yes"
        assert root.find("name").text == "AirPrint HP LaserJet 1320 @ %h"
        service = root.find("service")
        assert service.find("type").text == "_ipp._tcp"
        assert service.find("subtype").text == "_universal._sub._ipp._tcp"
        assert service.find("port").text == "631"
        txt = [e.text for e in service.findall("txt-record")]
        assert txt[0] == "txtvers=1"
        assert "rp=printers/HP-LaserJet-1320" in txt

    def test_render_is_stable(self, hp_queue, profiles):
        ad = build_advertisement(hp_queue, profiles[0], "h.local")
        assert render(ad) == render(ad)


class TestSync:
    def test_descriptor_exists_only_for_advertisable_queues(
        self, synchronizer, adv_host, hp_queue
    ):
        adv_host.files["Removed-Printer"] = b"stale"
        queues = [
            hp_queue,
            replace(hp_queue, name="Disabled", enabled=False),
            replace(hp_queue, name="Rejecting", accepting=False),
            replace(hp_queue, name="Private", shared=False),
        ]

        result = synchronizer.sync(queues)

        assert sorted(adv_host.files) == ["HP-LaserJet-1320"]
        assert result.written == ["HP-LaserJet-1320"]
        assert result.deleted == ["Removed-Printer"]
        assert result.reloaded
        assert adv_host.reloads == 1

    def test_second_sync_changes_nothing(self, synchronizer, adv_host, hp_queue, profiles):
        by_name = {p.logical_name: p for p in profiles}
        synchronizer.sync([hp_queue], by_name)
        first = dict(adv_host.files)

        result = synchronizer.sync([hp_queue], by_name)

        assert adv_host.files == first
        assert result.written == []
        assert result.unchanged == ["HP-LaserJet-1320"]
        assert not result.changed
        assert not result.reloaded
        assert adv_host.reloads == 1
        assert adv_host.writes == ["HP-LaserJet-1320"]

    def test_changed_queue_is_rewritten(self, synchronizer, adv_host, hp_queue):
        synchronizer.sync([hp_queue])
        result = synchronizer.sync([replace(hp_queue, location="Front desk")])

        assert result.written == ["HP-LaserJet-1320"]
        assert b"note=Front desk" in adv_host.files["HP-LaserJet-1320"]
        assert adv_host.reloads == 2

    def test_disabling_queue_removes_descriptor(self, synchronizer, adv_host, hp_queue):
        synchronizer.sync([hp_queue])
        result = synchronizer.sync([replace(hp_queue, enabled=False)])

        assert result.deleted == ["HP-LaserJet-1320"]
        assert adv_host.files == {}

    def test_advertisements_are_sorted_by_queue(self, synchronizer, hp_queue):
        queues = [replace(hp_queue, name="Zebra"), hp_queue, replace(hp_queue, name="Brother")]
        ads = synchronizer.advertisements(queues, {})
        assert [a.queue_name for a in ads] == ["Brother", "HP-LaserJet-1320", "Zebra"]

    def test_reload_failure_is_reported(self, synchronizer, adv_host, hp_queue):
        adv_host.reload_error = ExternalServiceUnavailable("avahi-daemon failed")

        result = synchronizer.sync([hp_queue])

        assert not result.reloaded
        assert adv_host.files
        assert [(i.kind, i.severity) for i in result.issues] == [
            (IssueKind.EXTERNAL_SERVICE_UNAVAILABLE, Severity.ERROR)
        ]

    def test_remove_orphans_does_not_reload(self, synchronizer, adv_host, hp_queue):
        adv_host.files["Gone"] = b"x"
        adv_host.files["HP-LaserJet-1320"] = b"y"

        assert synchronizer.remove_orphans([hp_queue]) == ["Gone"]
        assert adv_host.reloads == 0
        assert list(adv_host.files) == ["HP-LaserJet-1320"]
