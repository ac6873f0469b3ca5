"""Baseboard, BIOS, system, and chassis identification with an internal cache."""

from __future__ import annotations

import json
import subprocess
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

from pmon_core.sources import SourceAdapter, SourceTransient, SourceUnavailable

from .models import BiosInfo, BoardInfo, ChassisInfo, HealthSummary, MotherboardReading, SystemInfo


RawInfo = dict[str, dict[str, str]]

_DMI_ROOT = Path("/sys/class/dmi/id")

_DMI_FIELDS = {
    "board": {
        "manufacturer": "board_vendor",
        "model": "board_name",
        "version": "board_version",
        "serial": "board_serial",
        "asset_tag": "board_asset_tag",
    },
    "bios": {"vendor": "bios_vendor", "version": "bios_version", "release_date": "bios_date"},
    "system": {
        "manufacturer": "sys_vendor",
        "model": "product_name",
        "version": "product_version",
        "serial": "product_serial",
        "uuid": "product_uuid",
        "sku": "product_sku",
    },
    "chassis": {
        "manufacturer": "chassis_vendor",
        "type": "chassis_type",
        "version": "chassis_version",
        "serial": "chassis_serial",
        "asset_tag": "chassis_asset_tag",
    },
}

# SMBIOS chassis type codes.
CHASSIS_TYPES = {
    "1": "Other",
    "2": "Unknown",
    "3": "Desktop",
    "4": "Low Profile Desktop",
    "5": "Pizza Box",
    "6": "Mini Tower",
    "7": "Tower",
    "8": "Portable",
    "9": "Laptop",
    "10": "Notebook",
    "11": "Hand Held",
    "13": "All in One",
    "14": "Sub Notebook",
    "17": "Main Server Chassis",
    "23": "Rack Mount Chassis",
    "30": "Tablet",
    "31": "Convertible",
    "32": "Detachable",
    "35": "Mini PC",
    "36": "Stick PC",
}

_PLACEHOLDERS = {"", "to be filled by o.e.m.", "default string", "not specified", "none", "system serial number"}

_WINDOWS_QUERY = (
    "$o = @{"
    "board = Get-CimInstance Win32_BaseBoard | Select-Object Manufacturer,Product,Version,SerialNumber,Tag;"
    "bios = Get-CimInstance Win32_BIOS | Select-Object Manufacturer,SMBIOSBIOSVersion,ReleaseDate;"
    "system = Get-CimInstance Win32_ComputerSystemProduct | Select-Object Vendor,Name,Version,IdentifyingNumber,UUID,SKUNumber;"
    "chassis = Get-CimInstance Win32_SystemEnclosure | Select-Object Manufacturer,ChassisTypes,Version,SerialNumber,SMBIOSAssetTag"
    "}; $o | ConvertTo-Json -Depth 3 -Compress"
)


def _clean(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    return "" if text.lower() in _PLACEHOLDERS else text


def _read_linux_dmi(root: Path = _DMI_ROOT) -> RawInfo:
    if not root.is_dir():
        model_file = Path("/proc/device-tree/model")
        if model_file.exists():
            model = model_file.read_text(encoding="utf-8", errors="replace").strip("\x00\n ")
            return {"board": {"model": model}, "system": {"model": model}}
        raise SourceUnavailable("no DMI or device-tree firmware tables")

    raw: RawInfo = {}
    for section, fields in _DMI_FIELDS.items():
        values: dict[str, str] = {}
        for key, filename in fields.items():
            try:
                values[key] = (root / filename).read_text(encoding="utf-8", errors="replace").strip()
            except OSError:
                # Serial and UUID files are root-only on most distributions.
                continue
        raw[section] = values
    return raw


def _read_windows(timeout_s: float) -> RawInfo:
    proc = subprocess.run(
        ["powershell", "-NoProfile", "-Command", _WINDOWS_QUERY],
        capture_output=True,
        text=True,
        timeout=timeout_s,
        check=False,
    )
    if proc.returncode != 0 or not proc.stdout.strip():
        raise SourceTransient(f"WMI query failed: {proc.stderr.strip()[:200]}")
    data = json.loads(proc.stdout)
    board = data.get("board") or {}
    bios = data.get("bios") or {}
    system = data.get("system") or {}
    chassis = data.get("chassis") or {}
    types = chassis.get("ChassisTypes") or []
    return {
        "board": {
            "manufacturer": board.get("Manufacturer"),
            "model": board.get("Product"),
            "version": board.get("Version"),
            "serial": board.get("SerialNumber"),
            "asset_tag": board.get("Tag"),
        },
        "bios": {
            "vendor": bios.get("Manufacturer"),
            "version": bios.get("SMBIOSBIOSVersion"),
            "release_date": bios.get("ReleaseDate"),
        },
        "system": {
            "manufacturer": system.get("Vendor"),
            "model": system.get("Name"),
            "version": system.get("Version"),
            "serial": system.get("IdentifyingNumber"),
            "uuid": system.get("UUID"),
            "sku": system.get("SKUNumber"),
        },
        "chassis": {
            "manufacturer": chassis.get("Manufacturer"),
            "type": str(types[0]) if types else "",
            "version": chassis.get("Version"),
            "serial": chassis.get("SerialNumber"),
            "asset_tag": chassis.get("SMBIOSAssetTag"),
        },
    }


def _read_macos(timeout_s: float) -> RawInfo:
    proc = subprocess.run(
        ["system_profiler", "SPHardwareDataType", "-json"],
        capture_output=True,
        text=True,
        timeout=timeout_s,
        check=False,
    )
    if proc.returncode != 0:
        raise SourceTransient(f"system_profiler failed: {proc.stderr.strip()[:200]}")
    items = json.loads(proc.stdout).get("SPHardwareDataType") or [{}]
    hw = items[0]
    return {
        "board": {"manufacturer": "Apple Inc.", "model": hw.get("machine_model", "")},
        "bios": {"vendor": "Apple Inc.", "version": hw.get("boot_rom_version", "")},
        "system": {
            "manufacturer": "Apple Inc.",
            "model": hw.get("machine_name", ""),
            "version": hw.get("machine_model", ""),
            "serial": hw.get("serial_number", ""),
            "uuid": hw.get("platform_UUID", ""),
        },
        "chassis": {"manufacturer": "Apple Inc."},
    }


def read_firmware_info(timeout_s: float) -> RawInfo:
    if sys.platform.startswith("linux"):
        return _read_linux_dmi()
    if sys.platform == "win32":
        return _read_windows(timeout_s)
    if sys.platform == "darwin":
        return _read_macos(timeout_s)
    raise SourceUnavailable(f"firmware tables not supported on {sys.platform}")


def parse_bios_date(value: str | None) -> date | None:
    text = _clean(value)
    if not text:
        return None
    # WMI dates look like 20230115000000.000000+000.
    candidates = (text, text[:8], text[:10])
    for candidate in candidates:
        for fmt in ("%m/%d/%Y", "%Y-%m-%d", "%Y%m%d", "%d/%m/%Y"):
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
    return None


def bios_age_days(release_date: str | None, today: date | None = None) -> int | None:
    released = parse_bios_date(release_date)
    if released is None:
        return None
    return abs(((today or date.today()) - released).days)


def health_summary(board: BoardInfo, bios_age: int | None) -> HealthSummary:
    issues: list[str] = []
    recommendations: list[str] = []
    score = 100

    if bios_age is not None and bios_age > 730:
        issues.append("BIOS is quite old, consider updating")
        score -= 10
    if bios_age is not None and bios_age > 365:
        recommendations.append("Check for BIOS updates to improve compatibility and security")
    if board.manufacturer == "Unknown":
        issues.append("Motherboard manufacturer not detected")
        score -= 15

    if score >= 80:
        status = "good"
    elif score >= 60:
        status = "warning"
    else:
        status = "critical"
    return HealthSummary(status=status, score=score, issues=tuple(issues), recommendations=tuple(recommendations))


def _section(cls, raw: dict[str, Any] | None):
    defaults = cls()
    values = {}
    for key, value in (raw or {}).items():
        if hasattr(defaults, key):
            cleaned = _clean(value)
            if cleaned:
                values[key] = cleaned
    return cls(**values)


def build_reading(raw: RawInfo, today: date | None = None) -> MotherboardReading:
    board = _section(BoardInfo, raw.get("board"))
    bios = _section(BiosInfo, raw.get("bios"))
    system = _section(SystemInfo, raw.get("system"))
    chassis_raw = dict(raw.get("chassis") or {})
    if "type" in chassis_raw:
        chassis_raw["type"] = CHASSIS_TYPES.get(str(chassis_raw["type"]).strip(), chassis_raw["type"])
    chassis = _section(ChassisInfo, chassis_raw)

    age = bios_age_days(bios.release_date, today)
    return MotherboardReading(
        board=board,
        bios=bios,
        system=system,
        chassis=chassis,
        bios_age_days=age,
        health=health_summary(board, age),
    )


class MotherboardAdapter(SourceAdapter):
    """Firmware tables barely change, so readings are reused for ``cache_s``."""

    domain = "motherboard"

    def __init__(
        self,
        cache_s: float = 10.0,
        reader: Callable[[float], RawInfo] = read_firmware_info,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache_s = float(cache_s)
        self._reader = reader
        self._clock = clock
        self._cached: MotherboardReading | None = None
        self._cached_at: float | None = None
        self.reads = 0

    def collect(self, timeout_s: float) -> MotherboardReading:
        now = self._clock()
        if self._cached is not None and self._cached_at is not None and now - self._cached_at < self.cache_s:
            return self._cached
        try:
            raw = self._reader(timeout_s)
        except (subprocess.TimeoutExpired, json.JSONDecodeError) as exc:
            raise SourceTransient(f"firmware query failed: {exc}") from exc
        self.reads += 1
        self._cached = build_reading(raw)
        self._cached_at = now
        return self._cached
