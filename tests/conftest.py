"""In-memory collaborators shared by the printfleet tests."""

from __future__ import annotations

from dataclasses import replace
import re

import pytest

from printfleet.errors import ExternalServiceUnavailable, QueueApplyFailed
from printfleet.models import (
    DriverEntry,
    HealthReading,
    PrinterProfile,
    PrintJob,
    QueueState,
    RawDevice,
    SpoolArtifact,
)

HP_URI = "usb://HP/LaserJet%201320?serial=00CNBF123456"
DYMO_4XL_URI = "usb://DYMO/LabelWriter%204XL?serial=17032316350866"
DYMO_450_URI = "usb://DYMO/LabelWriter%20450%20Turbo?serial=01010112345600"


class FakeDeviceCatalog:
    def __init__(self, devices=()):
        self.devices = list(devices)
        self.error: Exception | None = None

    def list_attached_printer_devices(self):
        if self.error is not None:
            raise self.error
        return list(self.devices)


class FakeDriverCatalog:
    def __init__(self, entries=()):
        self.entries = list(entries)

    def list_available_drivers(self):
        return list(self.entries)

    def driver_exists(self, ref):
        return any(e.name == ref for e in self.entries)

    def find_drivers(self, pattern):
        try:
            rx = re.compile(pattern, re.IGNORECASE)
        except re.error:
            rx = re.compile(re.escape(pattern), re.IGNORECASE)
        return [
            e for e in self.entries if rx.search(e.name) or rx.search(e.make_and_model)
        ]


class FakeQueueService:
    """Queues kept in a dict. ``failures`` maps a queue name to the error its mutations raise."""

    def __init__(self):
        self.queues: dict[str, QueueState] = {}
        self.jobs: list[PrintJob] = []
        self.default: str | None = None
        self.failures: dict[str, Exception] = {}
        self.unavailable = False
        self.calls: list[tuple] = []
        self._next_job = 100

    def _check(self, name=None):
        if self.unavailable:
            raise ExternalServiceUnavailable("CUPS is not running")
        if name in self.failures:
            raise self.failures[name]

    def add_job(self, queue, job_id=None, state="pending"):
        if job_id is None:
            self._next_job += 1
            job_id = self._next_job
        job = PrintJob(job_id=job_id, queue=queue, title=f"job {job_id}", state=state)
        self.jobs.append(job)
        return job

    def list_queues(self):
        self._check()
        return [
            replace(q, options=dict(q.options))
            for _, q in sorted(self.queues.items())
        ]

    def upsert_queue(self, name, uri, driver, options, location, shared, info=""):
        self._check(name)
        self.calls.append(("upsert", name, driver))
        state = self.queues.get(name)
        if state is None:
            if not driver:
                raise QueueApplyFailed(name, "a driver is required for a new queue")
            state = QueueState(
                name=name,
                device_uri=uri,
                driver_ref=driver,
                enabled=False,
                accepting=False,
            )
        state.device_uri = uri
        if driver:
            state.driver_ref = driver
            state.make_and_model = driver
        state.options.update(options)
        state.location = location
        state.shared = shared
        state.info = info or name
        self.queues[name] = state

    def remove_queue(self, name):
        self._check(name)
        self.calls.append(("remove", name))
        if self.queues.pop(name, None) is None:
            raise QueueApplyFailed(name, "no such printer")

    def set_enabled(self, name, enabled):
        self._check(name)
        self.queues[name].enabled = enabled

    def set_accepting(self, name, accepting):
        self._check(name)
        self.queues[name].accepting = accepting

    def list_jobs(self, name=None):
        self._check()
        return [j for j in self.jobs if name is None or j.queue == name]

    def cancel_jobs(self, name):
        self._check()
        mine = [j for j in self.jobs if j.queue == name]
        self.jobs = [j for j in self.jobs if j.queue != name]
        return len(mine)

    def cancel_job(self, job_id):
        self._check()
        if not any(j.job_id == job_id for j in self.jobs):
            raise QueueApplyFailed(f"job {job_id}", "no such job")
        self.jobs = [j for j in self.jobs if j.job_id != job_id]

    def print_test_page(self, name, path=None):
        self._check(name)
        self.calls.append(("test-page", name, path))
        return self.add_job(name).job_id

    def set_default(self, name):
        self._check(name)
        self.calls.append(("default", name))
        self.default = name

    def get_default(self):
        self._check()
        return self.default


class FakeAdvertisementHost:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.writes: list[str] = []
        self.reloads = 0
        self.reload_error: Exception | None = None

    def write_descriptor(self, queue_name, content):
        self.writes.append(queue_name)
        self.files[queue_name] = content

    def read_descriptor(self, queue_name):
        return self.files.get(queue_name)

    def delete_descriptor(self, queue_name):
        self.files.pop(queue_name, None)

    def list_descriptors(self):
        return sorted(self.files)

    def reload_advertisement_service(self):
        if self.reload_error is not None:
            raise self.reload_error
        self.reloads += 1


class FakeServiceManager:
    def __init__(self):
        self.active = {"cups": True, "avahi-daemon": True}
        self.restarts: list[str] = []
        self.reloads: list[str] = []
        self.broken: set[str] = set()

    def is_active(self, unit):
        return self.active.get(unit, False)

    def restart(self, unit):
        if unit in self.broken:
            self.active[unit] = False
            raise ExternalServiceUnavailable(f"{unit} failed to start")
        self.restarts.append(unit)
        self.active[unit] = True

    def reload(self, unit):
        self.reloads.append(unit)


class FakeTelemetry:
    def __init__(self, reading=None):
        self.reading = reading or HealthReading(
            temperature_c=45.0,
            memory_available_mb=512.0,
            disk_used_percent=40.0,
            uptime_seconds=3600.0,
            hostname="printserver",
            address="192.168.1.20",
        )

    def read(self):
        return self.reading


class FakeSpool:
    def __init__(self, artifacts=()):
        self.artifacts = list(artifacts)

    def list_artifacts(self):
        return list(self.artifacts)

    def delete(self, artifact: SpoolArtifact):
        self.artifacts.remove(artifact)

    def size(self):
        return sum(a.size for a in self.artifacts)


class FakeCupsd:
    def __init__(self, level="warn"):
        self.level = level
        self.writes: list[str] = []

    def read_log_level(self):
        return self.level

    def write_log_level(self, level):
        self.writes.append(level)
        self.level = level


class FakeLogs:
    def __init__(self, lines=None):
        self.lines = lines or {"error": [], "access": []}

    def tail(self, which, lines):
        if which not in self.lines:
            raise ValueError(f"Unknown log '{which}'")
        return self.lines[which][-lines:]


@pytest.fixture
def hp_raw() -> RawDevice:
    return RawDevice(
        uri=HP_URI,
        make_and_model="HP LaserJet 1320 series",
        info="HP LaserJet 1320 series",
        device_id="MFG:Hewlett-Packard;MDL:HP LaserJet 1320 series;CMD:PJL,PCL,POSTSCRIPT;",
    )


@pytest.fixture
def dymo_4xl_raw() -> RawDevice:
    return RawDevice(
        uri=DYMO_4XL_URI,
        make_and_model="DYMO LabelWriter 4XL",
        info="DYMO LabelWriter 4XL",
        device_id="MFG:DYMO;MDL:LabelWriter 4XL;",
    )


@pytest.fixture
def dymo_450_raw() -> RawDevice:
    return RawDevice(
        uri=DYMO_450_URI,
        make_and_model="DYMO LabelWriter 450 Turbo",
        info="DYMO LabelWriter 450 Turbo",
        device_id="MFG:DYMO;MDL:LabelWriter 450 Turbo;",
    )


@pytest.fixture
def profiles() -> tuple[PrinterProfile, ...]:
    """The three printers of a typical label and office setup."""
    return (
        PrinterProfile(
            logical_name="HP-LaserJet-1320",
            match_pattern="LaserJet 1320",
            driver_candidates=("exact-1320-ppd", "generic-pcl"),
            default_options={"media": "na_letter_8.5x11in", "sides": "one-sided"},
            location="Office",
            description="HP LaserJet 1320",
            supported_media=("na_letter_8.5x11in", "na_legal_8.5x14in"),
            default_printer=True,
        ),
        PrinterProfile(
            logical_name="Dymo-4XL",
            match_pattern="LabelWriter 4XL",
            driver_candidates=("lw4xl.ppd",),
            default_options={"media": "w432h288"},
            location="Office",
            description="Dymo LabelWriter 4XL",
        ),
        PrinterProfile(
            logical_name="Dymo-450",
            match_pattern="LabelWriter 450",
            driver_candidates=("lw450t.ppd",),
            default_options={"media": "w162h252"},
            location="Office",
        ),
    )


@pytest.fixture
def driver_catalog() -> FakeDriverCatalog:
    return FakeDriverCatalog(
        [
            DriverEntry("exact-1320-ppd", "HP LaserJet 1320 Series Postscript"),
            DriverEntry("generic-pcl", "Generic PCL Laser Printer"),
            DriverEntry("lw4xl.ppd", "DYMO LabelWriter 4XL"),
            DriverEntry("lw450t.ppd", "DYMO LabelWriter 450 Turbo"),
        ]
    )


@pytest.fixture
def device_catalog(hp_raw, dymo_4xl_raw) -> FakeDeviceCatalog:
    return FakeDeviceCatalog([hp_raw, dymo_4xl_raw])


@pytest.fixture
def queue_service() -> FakeQueueService:
    return FakeQueueService()


@pytest.fixture
def adv_host() -> FakeAdvertisementHost:
    return FakeAdvertisementHost()


@pytest.fixture
def service_manager() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def telemetry() -> FakeTelemetry:
    return FakeTelemetry()


@pytest.fixture
def spool() -> FakeSpool:
    return FakeSpool()


@pytest.fixture
def cupsd() -> FakeCupsd:
    return FakeCupsd()


@pytest.fixture
def logs() -> FakeLogs:
    return FakeLogs(
        {
            "error": [f"E [18/Oct/2026:10:00:{i:02d}] line {i}" for i in range(10)],
            "access": ["localhost - - POST / HTTP/1.1 200"],
        }
    )
