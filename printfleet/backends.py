"""
Collaborator interfaces and the host-side implementations.

The CUPS-backed catalogs and queue service live in ``printfleet.cups_backend``;
this module covers the Avahi services directory, systemd, health telemetry,
the spool directory, ``cupsd.conf`` and the CUPS log files.
"""

from __future__ import annotations

from collections import deque
import logging
import os
from pathlib import Path
import re
import shutil
import socket
import subprocess
import time
from typing import Protocol

import psutil

from printfleet.errors import ExternalServiceUnavailable
from printfleet.models import (
    DriverEntry,
    HealthReading,
    PrintJob,
    QueueState,
    RawDevice,
    SpoolArtifact,
)

logger = logging.getLogger(__name__)

CUPS_UNIT = "cups"
AVAHI_UNIT = "avahi-daemon"
DESCRIPTOR_PREFIX = "AirPrint-"
DESCRIPTOR_SUFFIX = ".service"
THERMAL_ZONE = Path("/sys/class/thermal/thermal_zone0/temp")
SPOOL_ARTIFACT_RE = re.compile(r"^([cd])(\d+)(?:-\d+)?$")
LOG_LEVEL_RE = re.compile(r"^[ \t]*LogLevel[ \t]+(\S+)", re.MULTILINE)


class DeviceCatalog(Protocol):
    def list_attached_printer_devices(self) -> list[RawDevice]: ...


class DriverCatalog(Protocol):
    def driver_exists(self, ref: str) -> bool: ...

    def list_available_drivers(self) -> list[DriverEntry]: ...

    def find_drivers(self, pattern: str) -> list[DriverEntry]: ...


class QueueService(Protocol):
    def list_queues(self) -> list[QueueState]: ...

    def upsert_queue(
        self,
        name: str,
        uri: str,
        driver: str | None,
        options: dict[str, str],
        location: str,
        shared: bool,
        info: str = "",
    ) -> None: ...

    def remove_queue(self, name: str) -> None: ...

    def set_enabled(self, name: str, enabled: bool) -> None: ...

    def set_accepting(self, name: str, accepting: bool) -> None: ...

    def cancel_jobs(self, name: str) -> int: ...

    def cancel_job(self, job_id: int) -> None: ...

    def list_jobs(self, name: str | None = None) -> list[PrintJob]: ...

    def print_test_page(self, name: str, path: str | None = None) -> int: ...

    def set_default(self, name: str) -> None: ...

    def get_default(self) -> str | None: ...


class AdvertisementHost(Protocol):
    def write_descriptor(self, queue_name: str, content: bytes) -> None: ...

    def read_descriptor(self, queue_name: str) -> bytes | None: ...

    def delete_descriptor(self, queue_name: str) -> None: ...

    def list_descriptors(self) -> list[str]: ...

    def reload_advertisement_service(self) -> None: ...


class ServiceManager(Protocol):
    def is_active(self, unit: str) -> bool: ...

    def restart(self, unit: str) -> None: ...

    def reload(self, unit: str) -> None: ...


class HealthTelemetry(Protocol):
    def read(self) -> HealthReading: ...


class SpoolArea(Protocol):
    def list_artifacts(self) -> list[SpoolArtifact]: ...

    def delete(self, artifact: SpoolArtifact) -> None: ...

    def size(self) -> int: ...


class CupsdConfig(Protocol):
    def read_log_level(self) -> str: ...

    def write_log_level(self, level: str) -> None: ...


class LogFiles(Protocol):
    def tail(self, which: str, lines: int) -> list[str]: ...


class SystemdServiceManager:
    """Controls units through ``systemctl``."""

    def __init__(self, systemctl: str | None = None, timeout: int = 30) -> None:
        self.systemctl = systemctl or shutil.which("systemctl") or "systemctl"
        self.timeout = timeout

    def _run(self, *args: str, check: bool) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.systemctl, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=check,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise ExternalServiceUnavailable(
                f"systemctl {' '.join(args)} failed: {stderr or e.returncode}"
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ExternalServiceUnavailable(
                f"systemctl {' '.join(args)} failed: {e}"
            ) from e

    def is_active(self, unit: str) -> bool:
        try:
            r = self._run("is-active", "--quiet", unit, check=False)
        except ExternalServiceUnavailable:
            logger.debug("Could not query %s", unit, exc_info=True)
            return False
        return r.returncode == 0

    def restart(self, unit: str) -> None:
        logger.info("Restarting %s", unit)
        self._run("restart", unit, check=True)

    def reload(self, unit: str) -> None:
        logger.info("Reloading %s", unit)
        self._run("reload-or-restart", unit, check=True)


class AvahiServiceDirectory:
    """AirPrint descriptors stored as Avahi static service files."""

    def __init__(self, service_dir: Path, services: ServiceManager) -> None:
        self.service_dir = Path(service_dir)
        self.services = services

    def path_for(self, queue_name: str) -> Path:
        return self.service_dir / f"{DESCRIPTOR_PREFIX}{queue_name}{DESCRIPTOR_SUFFIX}"

    def write_descriptor(self, queue_name: str, content: bytes) -> None:
        self.service_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(queue_name)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(content)
        os.replace(tmp, path)
        logger.info("Generated %s", path)

    def read_descriptor(self, queue_name: str) -> bytes | None:
        try:
            return self.path_for(queue_name).read_bytes()
        except FileNotFoundError:
            return None

    def delete_descriptor(self, queue_name: str) -> None:
        path = self.path_for(queue_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        logger.info("Removed %s", path)

    def list_descriptors(self) -> list[str]:
        if not self.service_dir.is_dir():
            return []
        names = []
        for path in sorted(self.service_dir.glob(f"{DESCRIPTOR_PREFIX}*{DESCRIPTOR_SUFFIX}")):
            names.append(path.name[len(DESCRIPTOR_PREFIX) : -len(DESCRIPTOR_SUFFIX)])
        return names

    def reload_advertisement_service(self) -> None:
        self.services.reload(AVAHI_UNIT)


def _primary_address() -> str:
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return ""


class PsutilTelemetry:
    """Reads host health with psutil, falling back to sysfs for temperature."""

    def __init__(self, disk_path: str = "/", thermal_zone: Path = THERMAL_ZONE) -> None:
        self.disk_path = disk_path
        self.thermal_zone = thermal_zone

    def _temperature(self) -> float | None:
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is not None:
            readings = sensors() or {}
            for entries in readings.values():
                for entry in entries:
                    if entry.current:
                        return float(entry.current)
        try:
            return int(self.thermal_zone.read_text().strip()) / 1000
        except (OSError, ValueError):
            return None

    def read(self) -> HealthReading:
        vm = psutil.virtual_memory()
        disk = psutil.disk_usage(self.disk_path)
        return HealthReading(
            temperature_c=self._temperature(),
            memory_available_mb=vm.available / (1024 * 1024),
            disk_used_percent=float(disk.percent),
            uptime_seconds=max(time.time() - psutil.boot_time(), 0.0),
            hostname=socket.gethostname(),
            address=_primary_address(),
        )


class CupsSpoolDirectory:
    """Job control and data files under the CUPS spool directory."""

    def __init__(self, spool_dir: Path) -> None:
        self.spool_dir = Path(spool_dir)

    def list_artifacts(self) -> list[SpoolArtifact]:
        if not self.spool_dir.is_dir():
            return []
        artifacts = []
        for path in sorted(self.spool_dir.iterdir()):
            m = SPOOL_ARTIFACT_RE.match(path.name)
            if not m or not path.is_file():
                continue
            st = path.stat()
            artifacts.append(
                SpoolArtifact(
                    path=str(path),
                    job_id=int(m.group(2)),
                    kind=m.group(1),
                    mtime=st.st_mtime,
                    size=st.st_size,
                )
            )
        return artifacts

    def delete(self, artifact: SpoolArtifact) -> None:
        try:
            os.unlink(artifact.path)
        except FileNotFoundError:
            pass

    def size(self) -> int:
        if not self.spool_dir.is_dir():
            return 0
        total = 0
        for root, _, files in os.walk(self.spool_dir):
            for name in files:
                try:
                    total += os.path.getsize(os.path.join(root, name))
                except OSError:
                    continue
        return total


class CupsdConfFile:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read_log_level(self) -> str:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ExternalServiceUnavailable(f"Could not read {self.path}: {e}") from e
        m = LOG_LEVEL_RE.search(text)
        return m.group(1) if m else "warn"

    def write_log_level(self, level: str) -> None:
        text = self.path.read_text(encoding="utf-8")
        if LOG_LEVEL_RE.search(text):
            text = LOG_LEVEL_RE.sub(f"LogLevel {level}", text, count=1)
        else:
            text = f"LogLevel {level}\n{text}"
        self.path.write_text(text, encoding="utf-8")
        logger.info("Set LogLevel %s in %s", level, self.path)


class CupsLogFiles:
    NAMES = {"error": "error_log", "access": "access_log", "page": "page_log"}

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)

    def tail(self, which: str, lines: int) -> list[str]:
        try:
            path = self.log_dir / self.NAMES[which]
        except KeyError:
            raise ValueError(f"Unknown log '{which}'") from None
        if not path.exists():
            logger.warning("CUPS %s log not found at %s", which, path)
            return []
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
