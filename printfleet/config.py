"""
Settings and printer profile declarations.

Profiles are read from a YAML file. When none is present the built-in
profiles for the HP LaserJet 1320 and the two Dymo LabelWriters are used.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path

import yaml

from printfleet.errors import ConfigError
from printfleet.models import AirPrintTraits, PrinterProfile

logger = logging.getLogger(__name__)

ENV_PREFIX = "PRINTFLEET_"
DEFAULT_LOCATION = "Print Server"

DEFAULT_PROFILES_DOC = {
    "location": DEFAULT_LOCATION,
    "printers": [
        {
            "name": "HP-LaserJet-1320",
            "description": "HP LaserJet 1320",
            "match": "LaserJet 1320",
            "drivers": [
                "HP LaserJet 1320",
                "laserjet.*1320",
                "drv:///hp/hplip.drv/hp-laserjet_1320-pcl3.ppd",
            ],
            "options": {
                "media": "na_letter_8.5x11in",
                "sides": "one-sided",
                "print-quality": "4",
            },
            "media_supported": ["na_letter_8.5x11in", "na_legal_8.5x14in"],
            "airprint": {
                "color": False,
                "duplex": True,
                "urf": "CP1,PQ3-4-5,RS300-600,SRGB24,W8,DM1",
            },
            "default": True,
        },
        {
            "name": "Dymo-LabelWriter-4XL",
            "description": "Dymo LabelWriter 4XL",
            "match": "LabelWriter 4XL",
            "drivers": ["4xl", "lw4xl", "dymo:0/ppd/lw4xl.ppd"],
            "options": {
                "media": "w432h288",
                "DymoPrintQuality": "Graphics",
                "DymoPrintDensity": "Normal",
            },
            "media_supported": ["w432h288"],
        },
        {
            "name": "Dymo-LabelWriter-450-Turbo",
            "description": "Dymo LabelWriter 450 Turbo",
            "match": "LabelWriter 450",
            "drivers": ["450.*turbo", "lw450t", "dymo:0/ppd/lw450t.ppd"],
            "options": {
                "media": "w162h252",
                "DymoPrintQuality": "Graphics",
                "DymoPrintDensity": "Normal",
            },
            "media_supported": ["w162h252"],
        },
    ],
}


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


@dataclass
class Settings:
    """Where the collaborators live on this host."""

    cups_host: str = ""
    cups_port: int = 631
    services_dir: Path = Path("/etc/avahi/services")
    spool_dir: Path = Path("/var/spool/cups")
    cupsd_conf: Path = Path("/etc/cups/cupsd.conf")
    cups_log_dir: Path = Path("/var/log/cups")
    test_page: Path = Path("/usr/share/cups/data/testprint")
    profiles_path: Path = Path("/etc/printfleet/printers.yaml")
    adminurl_host: str = ""

    @classmethod
    def from_env(cls) -> Settings:
        defaults = cls()
        try:
            port = int(_env("CUPS_PORT", str(defaults.cups_port)))
        except ValueError as e:
            raise ConfigError(f"{ENV_PREFIX}CUPS_PORT must be an integer: {e}") from e
        return cls(
            cups_host=_env("CUPS_HOST", defaults.cups_host),
            cups_port=port,
            services_dir=Path(_env("SERVICES_DIR", str(defaults.services_dir))),
            spool_dir=Path(_env("SPOOL_DIR", str(defaults.spool_dir))),
            cupsd_conf=Path(_env("CUPSD_CONF", str(defaults.cupsd_conf))),
            cups_log_dir=Path(_env("CUPS_LOG_DIR", str(defaults.cups_log_dir))),
            test_page=Path(_env("TEST_PAGE", str(defaults.test_page))),
            profiles_path=Path(_env("PROFILES", str(defaults.profiles_path))),
            adminurl_host=_env("ADMINURL_HOST", defaults.adminurl_host),
        )


@dataclass(frozen=True)
class FleetConfig:
    profiles: tuple[PrinterProfile, ...]
    adminurl_host: str = ""

    def by_name(self) -> dict[str, PrinterProfile]:
        return {p.logical_name: p for p in self.profiles}


def _as_str_tuple(value, what: str, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ConfigError(f"{name}: '{what}' must be a list")
    return tuple(str(v) for v in value)


def _parse_airprint(raw, name: str) -> AirPrintTraits:
    if raw is None:
        return AirPrintTraits()
    if not isinstance(raw, dict):
        raise ConfigError(f"{name}: 'airprint' must be a mapping")
    traits = AirPrintTraits()
    return AirPrintTraits(
        color=bool(raw.get("color", traits.color)),
        duplex=bool(raw.get("duplex", traits.duplex)),
        urf=str(raw.get("urf", traits.urf)),
        pdl=_as_str_tuple(raw.get("pdl"), "pdl", name) or traits.pdl,
    )


def _parse_profile(raw, location: str) -> PrinterProfile:
    if not isinstance(raw, dict):
        raise ConfigError(f"printer entries must be mappings, got {raw!r}")
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError(f"printer entry without a name: {raw!r}")
    if any(c.isspace() or c in "/#" for c in name):
        raise ConfigError(f"{name}: queue names may not contain spaces, '/' or '#'")
    match = raw.get("match")
    if not match:
        raise ConfigError(f"{name}: 'match' is required")

    options = raw.get("options") or {}
    if not isinstance(options, dict):
        raise ConfigError(f"{name}: 'options' must be a mapping")

    return PrinterProfile(
        logical_name=name,
        match_pattern=str(match),
        driver_candidates=_as_str_tuple(raw.get("drivers"), "drivers", name),
        default_options={str(k): str(v) for k, v in options.items()},
        location=str(raw.get("location", location)),
        shared=bool(raw.get("shared", True)),
        description=str(raw.get("description", "")),
        supported_media=_as_str_tuple(
            raw.get("media_supported"), "media_supported", name
        ),
        airprint=_parse_airprint(raw.get("airprint"), name),
        default_printer=bool(raw.get("default", False)),
    )


def parse_config(doc) -> FleetConfig:
    """Build a FleetConfig from an already-parsed YAML document."""
    if not isinstance(doc, dict):
        raise ConfigError("configuration root must be a mapping")
    location = str(doc.get("location", DEFAULT_LOCATION))
    raw_printers = doc.get("printers") or []
    if not isinstance(raw_printers, list):
        raise ConfigError("'printers' must be a list")

    profiles = [_parse_profile(raw, location) for raw in raw_printers]

    seen = set()
    for profile in profiles:
        if profile.logical_name in seen:
            raise ConfigError(f"{profile.logical_name}: duplicate printer name")
        seen.add(profile.logical_name)

    defaults = [p.logical_name for p in profiles if p.default_printer]
    if len(defaults) > 1:
        raise ConfigError(f"more than one default printer: {', '.join(defaults)}")

    return FleetConfig(
        profiles=tuple(profiles),
        adminurl_host=str(doc.get("adminurl_host", "")),
    )


def load_config(path: Path | None = None) -> FleetConfig:
    """Load profiles from ``path``, or the built-in set if it does not exist."""
    if path is None or not path.exists():
        logger.debug("No profile file at %s, using built-in printers", path)
        return parse_config(DEFAULT_PROFILES_DOC)
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    logger.debug("Loaded printer profiles from %s", path)
    return parse_config(doc or {})
