"""
CUPS-backed device catalog, driver catalog and queue service.

Talks to cupsd through pycups. Connection failures become
ExternalServiceUnavailable; rejected IPP operations become QueueApplyFailed.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
from urllib.parse import urlparse

import cups

from printfleet.errors import ExternalServiceUnavailable, QueueApplyFailed
from printfleet.models import DriverEntry, PrintJob, QueueState, RawDevice

logger = logging.getLogger(__name__)

JOB_STATES = {
    3: "pending",
    4: "held",
    5: "processing",
    6: "stopped",
    7: "canceled",
    8: "aborted",
    9: "completed",
}

JOB_ATTRIBUTES = [
    "job-id",
    "job-name",
    "job-printer-uri",
    "job-originating-user-name",
    "job-k-octets",
    "job-state",
]

# Attributes that end in -default but are not queue options
NON_OPTION_DEFAULTS = {
    "document-format",
    "notify-lease-duration",
    "notify-events",
    "ipp-attribute-fidelity",
    "job-hold-until",
    "job-priority",
    "job-sheets",
    "printer-error-policy",
    "printer-op-policy",
}


@contextlib.contextmanager
def translate_errors(subject: str):
    """Map pycups exceptions raised inside the block onto printfleet errors."""
    try:
        yield
    except cups.IPPError as e:
        status, message = (e.args + (None, ""))[:2]
        if status == cups.IPP_SERVICE_UNAVAILABLE:
            raise ExternalServiceUnavailable(f"CUPS unavailable: {message}") from e
        raise QueueApplyFailed(subject, f"{message} (IPP status {status})") from e
    except cups.HTTPError as e:
        raise ExternalServiceUnavailable(f"CUPS HTTP error {e.args[0]}") from e
    except RuntimeError as e:
        raise ExternalServiceUnavailable(f"Error connecting to CUPS: {e}") from e


class CupsClient:
    """Lazily opened connection shared by the CUPS adapters."""

    def __init__(self, host: str = "", port: int = 631) -> None:
        self.host = host
        self.port = port
        self._conn = None

    @property
    def conn(self):
        if self._conn is None:
            if self.host:
                cups.setServer(self.host)
                cups.setPort(self.port)
            with translate_errors("cups"):
                self._conn = cups.Connection()
        return self._conn


def _stringify(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v) for v in value)
    return str(value)


class CupsDeviceCatalog:
    """USB devices CUPS can see (``lpinfo -v``)."""

    def __init__(self, client: CupsClient, timeout: int = 10) -> None:
        self.client = client
        self.timeout = timeout

    def list_attached_printer_devices(self) -> list[RawDevice]:
        with translate_errors("devices"):
            devices = self.client.conn.getDevices(
                include_schemes=["usb"], timeout=self.timeout
            )
        return [
            RawDevice(
                uri=uri,
                make_and_model=attrs.get("device-make-and-model", ""),
                info=attrs.get("device-info", ""),
                device_id=attrs.get("device-id", ""),
                device_class=attrs.get("device-class", "direct"),
            )
            for uri, attrs in devices.items()
        ]


class CupsDriverCatalog:
    """Installed PPDs and drivers (``lpinfo -m``), fetched once per instance."""

    def __init__(self, client: CupsClient) -> None:
        self.client = client
        self._entries: list[DriverEntry] | None = None

    def list_available_drivers(self) -> list[DriverEntry]:
        if self._entries is None:
            with translate_errors("drivers"):
                ppds = self.client.conn.getPPDs()
            self._entries = [
                DriverEntry(name=name, make_and_model=attrs.get("ppd-make-and-model", ""))
                for name, attrs in sorted(ppds.items())
            ]
        return self._entries

    def driver_exists(self, ref: str) -> bool:
        return any(entry.name == ref for entry in self.list_available_drivers())

    def find_drivers(self, pattern: str) -> list[DriverEntry]:
        try:
            rx = re.compile(pattern, re.IGNORECASE)
        except re.error:
            rx = re.compile(re.escape(pattern), re.IGNORECASE)
        return [
            entry
            for entry in self.list_available_drivers()
            if rx.search(entry.name) or rx.search(entry.make_and_model)
        ]


class CupsQueueService:
    """Queue administration (``lpadmin``, ``cupsenable``, ``cancel``...)."""

    def __init__(self, client: CupsClient) -> None:
        self.client = client

    @property
    def conn(self):
        return self.client.conn

    def _ppd_defaults(self, name: str) -> dict[str, str]:
        try:
            ppd_path = self.conn.getPPD(name)
        except cups.IPPError:
            # Driverless and raw queues have no PPD
            return {}
        defaults = {}
        try:
            ppd = cups.PPD(ppd_path)
            ppd.markDefaults()
            for group in ppd.optionGroups:
                for option in group.options:
                    defaults[option.keyword] = option.defchoice
        except RuntimeError as e:
            logger.warning("Could not read PPD for %s: %s", name, e)
        finally:
            with contextlib.suppress(OSError):
                os.unlink(ppd_path)
        return defaults

    def _queue_state(self, name: str, attrs: dict) -> QueueState:
        options = self._ppd_defaults(name)
        for key, value in attrs.items():
            if key.endswith("-default"):
                option = key[: -len("-default")]
                if option not in NON_OPTION_DEFAULTS:
                    options[option] = _stringify(value)
        return QueueState(
            name=name,
            device_uri=attrs.get("device-uri", ""),
            driver_ref=attrs.get("printer-make-and-model", ""),
            options=options,
            enabled=attrs.get("printer-state") != cups.IPP_PRINTER_STOPPED,
            accepting=bool(attrs.get("printer-is-accepting-jobs", True)),
            shared=bool(attrs.get("printer-is-shared", False)),
            location=attrs.get("printer-location", ""),
            info=attrs.get("printer-info", name),
            make_and_model=attrs.get("printer-make-and-model", ""),
        )

    def list_queues(self) -> list[QueueState]:
        with translate_errors("queues"):
            printers = self.conn.getPrinters()
            queues = []
            for name in sorted(printers):
                attrs = self.conn.getPrinterAttributes(name)
                queues.append(self._queue_state(name, attrs))
        return queues

    def upsert_queue(self, name, uri, driver, options, location, shared, info=""):
        kwargs = {"info": info or name, "location": location, "device": uri}
        if driver:
            kwargs["ppdname"] = driver
        with translate_errors(name):
            self.conn.addPrinter(name, **kwargs)
            for option, value in options.items():
                self.conn.addPrinterOptionDefault(name, option, value)
            self.conn.setPrinterShared(name, shared)

    def remove_queue(self, name: str) -> None:
        with translate_errors(name):
            self.conn.deletePrinter(name)

    def set_enabled(self, name: str, enabled: bool) -> None:
        with translate_errors(name):
            if enabled:
                self.conn.enablePrinter(name)
            else:
                self.conn.disablePrinter(name)

    def set_accepting(self, name: str, accepting: bool) -> None:
        with translate_errors(name):
            if accepting:
                self.conn.acceptJobs(name)
            else:
                self.conn.rejectJobs(name)

    def list_jobs(self, name: str | None = None) -> list[PrintJob]:
        with translate_errors(name or "jobs"):
            jobs = self.conn.getJobs(
                which_jobs="not-completed", requested_attributes=JOB_ATTRIBUTES
            )
        result = []
        for job_id, attrs in sorted(jobs.items()):
            queue = urlparse(attrs.get("job-printer-uri", "")).path.rsplit("/", 1)[-1]
            if name is not None and queue != name:
                continue
            result.append(
                PrintJob(
                    job_id=int(job_id),
                    queue=queue,
                    title=attrs.get("job-name", ""),
                    user=attrs.get("job-originating-user-name", ""),
                    size_kb=int(attrs.get("job-k-octets", 0)),
                    state=JOB_STATES.get(attrs.get("job-state"), "unknown"),
                )
            )
        return result

    def cancel_jobs(self, name: str) -> int:
        count = len(self.list_jobs(name))
        if count:
            with translate_errors(name):
                self.conn.cancelAllJobs(name=name)
        return count

    def cancel_job(self, job_id: int) -> None:
        with translate_errors(f"job {job_id}"):
            self.conn.cancelJob(job_id)

    def print_test_page(self, name: str, path: str | None = None) -> int:
        with translate_errors(name):
            if path:
                return self.conn.printTestPage(name, file=path)
            return self.conn.printTestPage(name)

    def set_default(self, name: str) -> None:
        with translate_errors(name):
            self.conn.setDefault(name)

    def get_default(self) -> str | None:
        with translate_errors("default"):
            return self.conn.getDefault()
