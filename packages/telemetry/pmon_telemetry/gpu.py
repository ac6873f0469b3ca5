"""Graphics controllers and displays, with live NVIDIA metrics through NVML.

Every controller the OS lists is reported whatever its vendor. When NVML is
present its devices are merged onto the NVIDIA controllers in order, adding
utilization, memory, temperature, power and fan readings. A host is only
Unavailable when neither source finds a GPU.
"""

from __future__ import annotations

import logging
import re
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from pmon_core.sources import SourceAdapter, SourceTransient, SourceUnavailable

from ._shell import powershell_json, read_sysfs, rows, system_profiler, to_int
from .models import Display, GpuDevice, GpuPoint, GpuReading


_log = logging.getLogger("pmon.telemetry.gpu")

Inventory = tuple[tuple[GpuDevice, ...], tuple[Display, ...]]

_DRM_ROOT = Path("/sys/class/drm")

PCI_VENDORS = {
    0x10DE: "nvidia",
    0x1002: "amd",
    0x8086: "intel",
    0x106B: "apple",
    0x15AD: "vmware",
    0x1234: "qemu",
    0x1AF4: "virtio",
}

_VENDOR_WORDS = (
    ("nvidia", "nvidia"),
    ("advanced micro devices", "amd"),
    ("amd", "amd"),
    ("ati", "amd"),
    ("intel", "intel"),
    ("apple", "apple"),
    ("vmware", "vmware"),
    ("microsoft", "microsoft"),
)

_RESOLUTION_RE = re.compile(r"(\d+)\s*x\s*(\d+)(?:.*?@\s*([\d.]+)\s*Hz)?", re.IGNORECASE)
_VRAM_RE = re.compile(r"(\d+)\s*(GB|MB)", re.IGNORECASE)

_WINDOWS_QUERY = (
    "$o = @{"
    "controllers = @(Get-CimInstance Win32_VideoController | "
    "Select-Object Name,AdapterCompatibility,AdapterRAM,DriverVersion,PNPDeviceID);"
    "displays = @(Get-CimInstance Win32_DesktopMonitor | "
    "Select-Object Name,MonitorManufacturer,ScreenWidth,ScreenHeight)"
    "}; $o | ConvertTo-Json -Depth 3 -Compress"
)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _optional(fn, *args) -> Any:
    try:
        return fn(*args)
    except Exception:
        return None


def vendor_key(text: str | None) -> str:
    lowered = (text or "").lower()
    for word, key in _VENDOR_WORDS:
        if re.search(rf"\b{word}\b", lowered):
            return key
    return lowered.strip() or "unknown"


def parse_resolution(text: str | None) -> tuple[int | None, int | None, float | None]:
    match = _RESOLUTION_RE.search(text or "")
    if match is None:
        return None, None, None
    refresh = float(match.group(3)) if match.group(3) else None
    return int(match.group(1)), int(match.group(2)), refresh


def _uevent(device: Path) -> dict[str, str]:
    out = {}
    for line in read_sysfs(device / "uevent").splitlines():
        key, _, value = line.partition("=")
        out[key] = value
    return out


def _card_number(path: Path) -> int:
    return to_int(path.name[4:]) or 0


def read_drm_controllers(root: Path = _DRM_ROOT) -> tuple[GpuDevice, ...]:
    devices = []
    cards = [p for p in root.glob("card*") if "-" not in p.name and (p / "device").is_dir()]
    for card in sorted(cards, key=_card_number):
        dev = card / "device"
        uevent = _uevent(dev)
        vendor_id = to_int(read_sysfs(dev / "vendor"))
        vendor = PCI_VENDORS.get(vendor_id, f"0x{vendor_id:04x}" if vendor_id is not None else "unknown")
        device_id = read_sysfs(dev / "device")
        total = to_int(read_sysfs(dev / "mem_info_vram_total"))
        used = to_int(read_sysfs(dev / "mem_info_vram_used"))
        busy = to_int(read_sysfs(dev / "gpu_busy_percent"))
        temp_file = next(iter(sorted(dev.glob("hwmon/hwmon*/temp1_input"))), None)
        milli_c = to_int(read_sysfs(temp_file)) if temp_file is not None else None

        devices.append(
            GpuDevice(
                index=len(devices),
                name=read_sysfs(dev / "product_name") or f"{vendor.upper()} GPU [{device_id or card.name}]",
                vendor=vendor,
                utilization=(float(busy) if busy is not None else None),
                memory_total=total,
                memory_used=used,
                memory_free=(total - used if total is not None and used is not None else None),
                memory_usage_percent=(round(used / total * 100.0, 2) if total and used is not None else None),
                temperature_c=(milli_c / 1000.0 if milli_c is not None else None),
                power_draw_w=None,
                power_limit_w=None,
                fan_percent=None,
                driver_version=uevent.get("DRIVER"),
                bus=uevent.get("PCI_SLOT_NAME"),
                source="sysfs",
            )
        )
    return tuple(devices)


def read_drm_displays(root: Path = _DRM_ROOT) -> tuple[Display, ...]:
    displays = []
    for connector in sorted(root.glob("card*-*")):
        if read_sysfs(connector / "status") != "connected":
            continue
        modes = read_sysfs(connector / "modes").splitlines()
        width, height, _ = parse_resolution(modes[0] if modes else "")
        name = connector.name.split("-", 1)[1]
        displays.append(
            Display(
                name=name,
                connection=name.rsplit("-", 1)[0],
                resolution_x=width,
                resolution_y=height,
            )
        )
    return tuple(displays)


def _windows_inventory(timeout_s: float) -> Inventory:
    data = powershell_json(_WINDOWS_QUERY, timeout_s)
    if not isinstance(data, dict):
        data = {}
    controllers = []
    for row in rows(data.get("controllers")):
        ram = to_int(row.get("AdapterRAM"))
        controllers.append(
            GpuDevice(
                index=len(controllers),
                name=str(row.get("Name") or "Unknown GPU"),
                vendor=vendor_key(row.get("AdapterCompatibility") or row.get("Name")),
                utilization=None,
                # AdapterRAM is a uint32 and saturates at 4 GiB.
                memory_total=(ram if ram else None),
                memory_used=None,
                memory_free=None,
                memory_usage_percent=None,
                temperature_c=None,
                power_draw_w=None,
                power_limit_w=None,
                fan_percent=None,
                driver_version=row.get("DriverVersion"),
                bus=row.get("PNPDeviceID"),
                source="wmi",
            )
        )
    displays = tuple(
        Display(
            name=str(row.get("Name") or "Display"),
            vendor=str(row.get("MonitorManufacturer") or ""),
            resolution_x=to_int(row.get("ScreenWidth")),
            resolution_y=to_int(row.get("ScreenHeight")),
        )
        for row in rows(data.get("displays"))
    )
    return tuple(controllers), displays


def _vram_bytes(text: Any) -> int | None:
    match = _VRAM_RE.search(str(text or ""))
    if match is None:
        return None
    return int(match.group(1)) * (1024**3 if match.group(2).upper() == "GB" else 1024**2)


def parse_sp_displays(items: list[dict[str, Any]]) -> Inventory:
    controllers = []
    displays = []
    for item in items:
        vendor_text = str(item.get("spdisplays_vendor") or item.get("sppci_model") or "")
        controllers.append(
            GpuDevice(
                index=len(controllers),
                name=str(item.get("sppci_model") or item.get("_name") or "Unknown GPU"),
                vendor=vendor_key(vendor_text.replace("sppci_vendor_", "")),
                utilization=None,
                memory_total=_vram_bytes(item.get("spdisplays_vram") or item.get("sppci_vram")),
                memory_used=None,
                memory_free=None,
                memory_usage_percent=None,
                temperature_c=None,
                power_draw_w=None,
                power_limit_w=None,
                fan_percent=None,
                bus=item.get("sppci_bus"),
                source="system_profiler",
            )
        )
        for screen in item.get("spdisplays_ndrvs") or ():
            width, height, refresh = parse_resolution(
                screen.get("_spdisplays_resolution") or screen.get("_spdisplays_pixels")
            )
            displays.append(
                Display(
                    name=str(screen.get("_name") or "Display"),
                    vendor=str(screen.get("_spdisplays_display-vendor-id") or ""),
                    connection=str(screen.get("spdisplays_connection_type") or ""),
                    main=screen.get("spdisplays_main") == "spdisplays_yes",
                    resolution_x=width,
                    resolution_y=height,
                    refresh_hz=refresh,
                )
            )
    return tuple(controllers), tuple(displays)


def read_gpu_inventory(timeout_s: float) -> Inventory:
    if sys.platform.startswith("linux"):
        return read_drm_controllers(), read_drm_displays()
    if sys.platform == "win32":
        return _windows_inventory(timeout_s)
    if sys.platform == "darwin":
        return parse_sp_displays(system_profiler("SPDisplaysDataType", timeout_s))
    return (), ()


def merge_devices(controllers: tuple[GpuDevice, ...], nvml_devices: list[GpuDevice]) -> tuple[GpuDevice, ...]:
    """Lay NVML devices over the NVIDIA controllers in order; extras are appended."""
    pending = list(nvml_devices)
    merged = []
    for controller in controllers:
        if controller.vendor == "nvidia" and pending:
            live = pending.pop(0)
            merged.append(replace(live, bus=live.bus or controller.bus))
        else:
            merged.append(controller)
    merged.extend(pending)
    return tuple(replace(device, index=i) for i, device in enumerate(merged))


class GpuAdapter(SourceAdapter):
    """OS inventory plus NVML; NVML failing to load only drops the live metrics."""

    domain = "gpu"

    def __init__(
        self,
        nvml: Any | None = None,
        inventory: Callable[[float], Inventory] = read_gpu_inventory,
        refresh_inventory: bool | None = None,
    ) -> None:
        self._nvml = nvml
        self._ready = False
        self._nvml_missing = False
        self._driver: str | None = None
        self._inventory = inventory
        # sysfs reads are cheap and carry live busy/VRAM values; WMI and system_profiler are not.
        self._refresh = sys.platform.startswith("linux") if refresh_inventory is None else refresh_inventory
        self._cached_inventory: Inventory | None = None

    def _init(self) -> Any | None:
        if self._ready:
            return self._nvml
        if self._nvml_missing:
            return None
        try:
            if self._nvml is None:
                import pynvml  # type: ignore

                self._nvml = pynvml
            self._nvml.nvmlInit()
        except Exception as exc:
            _log.debug("NVML not usable: %s", exc)
            self._nvml_missing = True
            return None
        self._driver = _optional(lambda: _text(self._nvml.nvmlSystemGetDriverVersion()))
        self._ready = True
        return self._nvml

    def _read_inventory(self, timeout_s: float) -> Inventory:
        if self._cached_inventory is not None and not self._refresh:
            return self._cached_inventory
        try:
            found = self._inventory(timeout_s)
        except subprocess.TimeoutExpired as exc:
            raise SourceTransient(f"GPU inventory timed out: {exc}") from exc
        except (OSError, ValueError) as exc:
            _log.debug("GPU inventory unreadable: %s", exc)
            found = ((), ())
        self._cached_inventory = found
        return found

    def _nvml_devices(self) -> list[GpuDevice]:
        nvml = self._init()
        if nvml is None:
            return []
        try:
            count = int(nvml.nvmlDeviceGetCount())
        except Exception as exc:
            raise SourceTransient(f"NVML device count failed: {exc}") from exc
        devices = []
        for index in range(count):
            try:
                devices.append(self._device(nvml, index))
            except Exception as exc:
                raise SourceTransient(f"NVML query for GPU {index} failed: {exc}") from exc
        return devices

    def collect(self, timeout_s: float) -> GpuReading:
        controllers, displays = self._read_inventory(timeout_s)
        devices = merge_devices(controllers, self._nvml_devices())
        if not devices:
            raise SourceUnavailable("no graphics controller found")
        return GpuReading(devices=devices, displays=displays)

    def _device(self, nvml: Any, index: int) -> GpuDevice:
        h = nvml.nvmlDeviceGetHandleByIndex(index)
        util = nvml.nvmlDeviceGetUtilizationRates(h)
        mem = _optional(nvml.nvmlDeviceGetMemoryInfo, h)
        temp = _optional(nvml.nvmlDeviceGetTemperature, h, nvml.NVML_TEMPERATURE_GPU)
        power_mw = _optional(nvml.nvmlDeviceGetPowerUsage, h)
        limit_mw = _optional(nvml.nvmlDeviceGetEnforcedPowerLimit, h)
        fan = _optional(nvml.nvmlDeviceGetFanSpeed, h)
        pci = _optional(nvml.nvmlDeviceGetPciInfo, h)

        total = int(mem.total) if mem is not None else None
        used = int(mem.used) if mem is not None else None
        return GpuDevice(
            index=index,
            name=_text(_optional(nvml.nvmlDeviceGetName, h) or "NVIDIA GPU"),
            vendor="nvidia",
            utilization=float(util.gpu),
            memory_total=total,
            memory_used=used,
            memory_free=(int(mem.free) if mem is not None else None),
            memory_usage_percent=(round(used / total * 100.0, 2) if total and used is not None else None),
            temperature_c=(float(temp) if temp is not None else None),
            power_draw_w=(power_mw / 1000.0 if power_mw is not None else None),
            power_limit_w=(limit_mw / 1000.0 if limit_mw is not None else None),
            fan_percent=(float(fan) if fan is not None else None),
            driver_version=self._driver,
            bus=(_text(pci.busId) if pci is not None and getattr(pci, "busId", None) else None),
        )

    def history_point(self, reading: GpuReading, rates: dict[str, float]) -> GpuPoint | None:
        gpu = reading.primary
        if gpu is None:
            return None
        return GpuPoint(
            utilization=gpu.utilization or 0.0,
            memory_usage_percent=gpu.memory_usage_percent or 0.0,
            temperature_c=gpu.temperature_c or 0.0,
        )

    def close(self) -> None:
        if self._ready and self._nvml is not None:
            _optional(self._nvml.nvmlShutdown)
            self._ready = False
