"""Neural processing unit presence detection.

No vendor exposes NPU utilization through a portable API yet, so a detected
NPU is reported as present with ``metrics_available=False``. Hosts with no
NPU at all report Unavailable, which is a different state.
"""

from __future__ import annotations

import platform
import re
import subprocess
import sys
from pathlib import Path
from typing import Callable

from pmon_core.sources import SourceAdapter, SourceTransient, SourceUnavailable

from ._shell import run_text
from .models import NpuDevice, NpuPoint, NpuReading


_NPU_NAME_RE = re.compile(r"(neural|npu|ai boost|vpu|processing accelerator)", re.IGNORECASE)

_WINDOWS_QUERY = (
    "Get-CimInstance Win32_PnPEntity | "
    "Where-Object { $_.Name -match 'Neural|NPU|AI Boost' } | "
    "Select-Object -ExpandProperty Name"
)


def _vendor_for(name: str) -> str:
    lowered = name.lower()
    if "intel" in lowered:
        return "intel"
    if "amd" in lowered or "xdna" in lowered:
        return "amd"
    if "qualcomm" in lowered or "hexagon" in lowered:
        return "qualcomm"
    return "unknown"


def _linux_accel(accel_root: Path = Path("/sys/class/accel")) -> list[NpuDevice]:
    devices = []
    if accel_root.is_dir():
        for node in sorted(accel_root.iterdir()):
            driver = node / "device" / "driver"
            driver_name = driver.resolve().name if driver.exists() else node.name
            devices.append(NpuDevice(vendor=_vendor_for(driver_name), name=driver_name))
    return devices


def parse_lspci(output: str) -> list[NpuDevice]:
    devices = []
    for line in output.splitlines():
        if _NPU_NAME_RE.search(line):
            name = line.split(": ", 1)[-1].strip()
            devices.append(NpuDevice(vendor=_vendor_for(name), name=name))
    return devices


def detect_npus(timeout_s: float) -> tuple[NpuDevice, ...]:
    if sys.platform.startswith("linux"):
        found = _linux_accel()
        if not found:
            found = parse_lspci(run_text(["lspci"], timeout_s))
        return tuple(found)
    if sys.platform == "win32":
        names = run_text(["powershell", "-NoProfile", "-Command", _WINDOWS_QUERY], timeout_s)
        return tuple(NpuDevice(vendor=_vendor_for(n), name=n.strip()) for n in names.splitlines() if n.strip())
    if sys.platform == "darwin" and platform.machine() == "arm64":
        return (NpuDevice(vendor="apple", name="Apple Neural Engine"),)
    return ()


class NpuAdapter(SourceAdapter):
    """Detection runs once per adapter instance; later collects reuse it."""

    domain = "npu"

    def __init__(self, detector: Callable[[float], tuple[NpuDevice, ...]] = detect_npus) -> None:
        self._detector = detector
        self._devices: tuple[NpuDevice, ...] | None = None

    def collect(self, timeout_s: float) -> NpuReading:
        if self._devices is None:
            try:
                self._devices = tuple(self._detector(timeout_s))
            except subprocess.TimeoutExpired as exc:
                raise SourceTransient(f"NPU detection timed out: {exc}") from exc
        if not self._devices:
            raise SourceUnavailable("no NPU detected")
        return NpuReading(devices=self._devices)

    def history_point(self, reading: NpuReading, rates: dict[str, float]) -> NpuPoint | None:
        primary = next((d for d in reading.devices if d.metrics_available), None)
        if primary is None:
            return None
        return NpuPoint(
            utilization=primary.utilization or 0.0,
            power_w=primary.power_w or 0.0,
            temperature_c=primary.temperature_c or 0.0,
        )
