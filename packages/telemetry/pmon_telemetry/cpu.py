"""CPU usage, per-core load, and static processor identification."""

from __future__ import annotations

import platform
from pathlib import Path

import psutil

from pmon_core.sources import SourceAdapter

from .models import CpuCore, CpuInfo, CpuPoint, CpuReading


def _cpu_temp_c() -> float | None:
    try:
        temps = psutil.sensors_temperatures()
    except Exception:
        return None
    if not temps:
        return None

    for name in ("coretemp", "cpu_thermal", "k10temp", "zenpower", "acpitz"):
        entries = temps.get(name)
        if entries:
            val = entries[0].current
            return float(val) if val is not None else None

    for _name, entries in temps.items():
        if entries and entries[0].current is not None:
            return float(entries[0].current)
    return None


def _cpu_brand() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.exists():
        try:
            for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
                if line.lower().startswith(("model name", "hardware", "cpu model")):
                    return line.split(":", 1)[1].strip()
        except OSError:
            pass
    return platform.processor() or platform.machine() or "Unknown"


def _round(value: float) -> float:
    return round(float(value), 2)


class CpuAdapter(SourceAdapter):
    domain = "cpu"

    def __init__(self) -> None:
        self._info: CpuInfo | None = None
        # psutil reports usage since the previous call; prime so the first reading is real.
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)
        psutil.cpu_times_percent(interval=None, percpu=True)

    def _identify(self) -> CpuInfo:
        if self._info is None:
            freq = psutil.cpu_freq()
            self._info = CpuInfo(
                brand=_cpu_brand(),
                architecture=platform.machine() or "Unknown",
                cores=psutil.cpu_count(logical=True) or 0,
                physical_cores=psutil.cpu_count(logical=False),
                speed_mhz=(float(freq.current) if freq else None),
                speed_min_mhz=(float(freq.min) if freq and freq.min else None),
                speed_max_mhz=(float(freq.max) if freq and freq.max else None),
            )
        return self._info

    def collect(self, timeout_s: float) -> CpuReading:
        info = self._identify()
        usage = _round(psutil.cpu_percent(interval=None))
        per_core = psutil.cpu_percent(interval=None, percpu=True)
        try:
            split = psutil.cpu_times_percent(interval=None, percpu=True)
        except Exception:
            split = []

        cores = []
        for idx, core_usage in enumerate(per_core):
            times = split[idx] if idx < len(split) else None
            cores.append(
                CpuCore(
                    usage=_round(core_usage),
                    load_user=(_round(times.user) if times is not None else None),
                    load_system=(_round(times.system) if times is not None else None),
                )
            )

        freq = psutil.cpu_freq()
        return CpuReading(
            usage=usage,
            usage_idle=_round(max(100.0 - usage, 0.0)),
            cores=tuple(cores),
            info=info,
            temp_c=_cpu_temp_c(),
            freq_mhz=(float(freq.current) if freq else None),
        )

    def history_point(self, reading: CpuReading, rates: dict[str, float]) -> CpuPoint:
        return CpuPoint(usage=reading.usage, cores=tuple(c.usage for c in reading.cores))
