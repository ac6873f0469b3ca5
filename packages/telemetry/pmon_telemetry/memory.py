"""Physical memory and swap usage, plus the installed module layout."""

from __future__ import annotations

import logging
import re
import subprocess
import sys
import threading
from typing import Any, Callable

import psutil

from pmon_core.formatting import scaled_dict
from pmon_core.sources import SourceAdapter

from ._shell import powershell_rows, run_text, system_profiler, to_int
from .models import MemoryModule, MemoryPoint, MemoryReading


_log = logging.getLogger("pmon.telemetry.memory")

# SMBIOS type 17 memory type and form factor codes as WMI reports them.
SMBIOS_MEMORY_TYPES = {20: "DDR", 21: "DDR2", 24: "DDR3", 26: "DDR4", 34: "DDR5", 35: "LPDDR5"}
FORM_FACTORS = {8: "DIMM", 12: "SODIMM", 13: "SRIMM", 15: "FB-DIMM"}

_UNITS = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "TB": 1024**4}
_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([KMGT]B)", re.IGNORECASE)

_WINDOWS_QUERY = (
    "Get-CimInstance Win32_PhysicalMemory | Select-Object Capacity,BankLabel,DeviceLocator,"
    "SMBIOSMemoryType,ConfiguredClockSpeed,Speed,FormFactor,Manufacturer,PartNumber,ConfiguredVoltage"
)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100.0, 2) if whole > 0 else 0.0


def size_bytes(text: Any) -> int:
    match = _SIZE_RE.search(str(text or ""))
    if match is None:
        return 0
    return int(float(match.group(1)) * _UNITS[match.group(2).upper()])


def _first_number(text: str) -> float | None:
    match = re.search(r"\d+(?:\.\d+)?", text or "")
    return float(match.group(0)) if match else None


def parse_dmidecode_memory(text: str) -> tuple[MemoryModule, ...]:
    modules = []
    for block in text.split("\n\n"):
        lines = [line.strip() for line in block.splitlines()]
        if "Memory Device" not in lines:
            continue
        fields = dict(line.split(": ", 1) for line in lines if ": " in line)
        size = size_bytes(fields.get("Size"))
        if size == 0:
            # Empty slots report "No Module Installed".
            continue
        clock = _first_number(fields.get("Configured Memory Speed", "")) or _first_number(fields.get("Speed", ""))
        voltage = _first_number(fields.get("Configured Voltage", ""))
        modules.append(
            MemoryModule(
                size=size,
                bank=" ".join(v for v in (fields.get("Bank Locator"), fields.get("Locator")) if v),
                type=fields.get("Type", "Unknown"),
                clock_mhz=(int(clock) if clock else None),
                form_factor=fields.get("Form Factor", ""),
                manufacturer=fields.get("Manufacturer", ""),
                part_number=fields.get("Part Number", "").strip(),
                voltage_configured=voltage,
            )
        )
    return tuple(modules)


def parse_windows_memory(items: list[dict[str, Any]]) -> tuple[MemoryModule, ...]:
    modules = []
    for row in items:
        size = to_int(row.get("Capacity")) or 0
        if size == 0:
            continue
        millivolts = to_int(row.get("ConfiguredVoltage"))
        modules.append(
            MemoryModule(
                size=size,
                bank=str(row.get("BankLabel") or row.get("DeviceLocator") or ""),
                type=SMBIOS_MEMORY_TYPES.get(to_int(row.get("SMBIOSMemoryType")), "Unknown"),
                clock_mhz=to_int(row.get("ConfiguredClockSpeed")) or to_int(row.get("Speed")),
                form_factor=FORM_FACTORS.get(to_int(row.get("FormFactor")), ""),
                manufacturer=str(row.get("Manufacturer") or "").strip(),
                part_number=str(row.get("PartNumber") or "").strip(),
                voltage_configured=(millivolts / 1000.0 if millivolts else None),
            )
        )
    return tuple(modules)


def parse_sp_memory(items: list[dict[str, Any]]) -> tuple[MemoryModule, ...]:
    modules = []
    for item in items:
        if "_items" not in item:
            # Apple Silicon reports unified memory as one entry with no slots.
            if item.get("SPMemoryDataType"):
                modules.append(
                    MemoryModule(
                        size=size_bytes(item.get("SPMemoryDataType")),
                        bank="unified",
                        type=str(item.get("dimm_type") or "Unknown"),
                        manufacturer=str(item.get("dimm_manufacturer") or ""),
                    )
                )
            continue
        for slot in item["_items"]:
            size = size_bytes(slot.get("dimm_size"))
            if size == 0:
                continue
            clock = _first_number(str(slot.get("dimm_speed") or ""))
            modules.append(
                MemoryModule(
                    size=size,
                    bank=str(slot.get("_name") or ""),
                    type=str(slot.get("dimm_type") or "Unknown"),
                    clock_mhz=(int(clock) if clock else None),
                    manufacturer=str(slot.get("dimm_manufacturer") or ""),
                    part_number=str(slot.get("dimm_part_number") or ""),
                )
            )
    return tuple(modules)


def read_memory_layout(timeout_s: float) -> tuple[MemoryModule, ...]:
    if sys.platform.startswith("linux"):
        # dmidecode needs root; without it the layout stays empty.
        return parse_dmidecode_memory(run_text(["dmidecode", "-t", "17"], timeout_s))
    if sys.platform == "win32":
        return parse_windows_memory(powershell_rows(_WINDOWS_QUERY, timeout_s))
    if sys.platform == "darwin":
        return parse_sp_memory(system_profiler("SPMemoryDataType", timeout_s))
    return ()


class MemoryAdapter(SourceAdapter):
    """Usage comes from psutil each collect; the module layout is read once."""

    domain = "memory"

    def __init__(self, layout_reader: Callable[[float], tuple[MemoryModule, ...]] = read_memory_layout) -> None:
        self._layout_reader = layout_reader
        self._layout: tuple[MemoryModule, ...] | None = None
        self._layout_lock = threading.Lock()

    def _modules(self, timeout_s: float) -> tuple[MemoryModule, ...]:
        with self._layout_lock:
            if self._layout is None:
                try:
                    self._layout = tuple(self._layout_reader(timeout_s))
                except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
                    _log.debug("memory layout unavailable: %s", exc)
                    self._layout = ()
            return self._layout

    def collect(self, timeout_s: float) -> MemoryReading:
        vm = psutil.virtual_memory()
        try:
            swap = psutil.swap_memory()
            swap_total, swap_used, swap_free = int(swap.total), int(swap.used), int(swap.free)
        except (OSError, RuntimeError):
            swap_total = swap_used = swap_free = 0

        total = int(vm.total)
        used = int(vm.used)
        available = int(vm.available)
        free = int(vm.free)
        active = getattr(vm, "active", None)
        buffers, cached = getattr(vm, "buffers", None), getattr(vm, "cached", None)
        return MemoryReading(
            total=total,
            used=used,
            free=free,
            available=available,
            usage_percent=_percent(used, total),
            available_percent=_percent(available, total),
            swap_total=swap_total,
            swap_used=swap_used,
            swap_free=swap_free,
            active=(int(active) if active is not None else None),
            buffcache=(int(buffers or 0) + int(cached or 0) if buffers is not None or cached is not None else None),
            layout=self._modules(timeout_s),
            formatted={
                "total": scaled_dict(total),
                "used": scaled_dict(used),
                "free": scaled_dict(free),
                "available": scaled_dict(available),
                "swap_used": scaled_dict(swap_used),
            },
        )

    def history_point(self, reading: MemoryReading, rates: dict[str, float]) -> MemoryPoint:
        return MemoryPoint(usage_percent=reading.usage_percent, used=reading.used, available=reading.available)
