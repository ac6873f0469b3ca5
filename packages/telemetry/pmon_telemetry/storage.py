"""Filesystem capacity, disk I/O counters, physical disks and block devices."""

from __future__ import annotations

import logging
import re
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

import psutil

from pmon_core.formatting import scaled_dict
from pmon_core.sources import SourceAdapter, SourceTransient

from ._shell import powershell_rows, read_sysfs, system_profiler, to_int
from .models import BlockDevice, DiskCounters, Filesystem, PhysicalDisk, StoragePoint, StorageReading


_log = logging.getLogger("pmon.telemetry.storage")

_SKIP_FSTYPES = {"squashfs", "tmpfs", "devtmpfs", "overlay", "iso9660"}
_SKIP_BLOCK = ("loop", "ram", "zram")

_SYS_BLOCK = Path("/sys/block")
_BSD_DISK_RE = re.compile(r"(disk\d+)")
_DEV_DISK = Path("/dev/disk")

# MSFT_PhysicalDisk enums; ConvertTo-Json emits the numeric codes.
BUS_TYPES = {1: "SCSI", 3: "ATA", 7: "USB", 8: "RAID", 10: "SAS", 11: "SATA", 12: "SD", 17: "NVMe"}
MEDIA_TYPES = {3: "HDD", 4: "SSD", 5: "SCM"}
HEALTH = {0: "Ok", 1: "Predicted Failure", 2: "Predicted Failure", "Healthy": "Ok"}

_WINDOWS_QUERY = (
    "Get-PhysicalDisk | Select-Object DeviceId,FriendlyName,Manufacturer,Model,MediaType,BusType,"
    "Size,SerialNumber,FirmwareVersion,HealthStatus"
)


def _counters(raw) -> DiskCounters:
    return DiskCounters(
        read_bytes=int(raw.read_bytes),
        write_bytes=int(raw.write_bytes),
        read_count=int(raw.read_count),
        write_count=int(raw.write_count),
        read_time_ms=int(getattr(raw, "read_time", 0) or 0),
        write_time_ms=int(getattr(raw, "write_time", 0) or 0),
    )


def _block_entries(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if not p.name.startswith(_SKIP_BLOCK))


def _interface(name: str, device: Path) -> str:
    if name.startswith("nvme"):
        return "NVMe"
    if name.startswith("mmcblk"):
        return "MMC"
    if name.startswith("vd"):
        return "Virtio"
    if "/usb" in str(device.resolve()):
        return "USB"
    return "SATA" if read_sysfs(device / "vendor") == "ATA" else "SCSI"


def _hwmon_temp(device: Path) -> float | None:
    for pattern in ("hwmon/hwmon*/temp1_input", "hwmon*/temp1_input"):
        found = sorted(device.glob(pattern))
        if found:
            milli_c = to_int(read_sysfs(found[0]))
            return milli_c / 1000.0 if milli_c is not None else None
    return None


def read_sys_block_disks(root: Path = _SYS_BLOCK) -> tuple[PhysicalDisk, ...]:
    disks = []
    for entry in _block_entries(root):
        device = entry / "device"
        if not device.is_dir():
            # Device-mapper and md arrays have no backing hardware entry.
            continue
        name = entry.name
        rotational = read_sysfs(entry / "queue" / "rotational")
        if name.startswith("nvme") or rotational == "0":
            kind = "SSD"
        elif rotational == "1":
            kind = "HDD"
        else:
            kind = "Unknown"
        vendor = read_sysfs(device / "vendor")
        disks.append(
            PhysicalDisk(
                device=f"/dev/{name}",
                name=read_sysfs(device / "model") or name,
                type=kind,
                vendor=("" if vendor == "ATA" else vendor),
                size=(to_int(read_sysfs(entry / "size")) or 0) * 512,
                interface=_interface(name, device),
                serial=read_sysfs(device / "serial"),
                firmware=read_sysfs(device / "firmware_rev") or read_sysfs(device / "rev"),
                temperature_c=_hwmon_temp(device),
            )
        )
    return tuple(disks)


def _code(table: dict, value: Any, default: str) -> str:
    if value in table:
        return table[value]
    return str(value) if isinstance(value, str) and value else default


def parse_windows_disks(items: list[dict[str, Any]]) -> tuple[PhysicalDisk, ...]:
    return tuple(
        PhysicalDisk(
            device=f"\\\\.\\PHYSICALDRIVE{row.get('DeviceId')}",
            name=str(row.get("FriendlyName") or row.get("Model") or "Disk"),
            type=_code(MEDIA_TYPES, row.get("MediaType"), "Unknown"),
            vendor=str(row.get("Manufacturer") or "").strip(),
            size=to_int(row.get("Size")) or 0,
            interface=_code(BUS_TYPES, row.get("BusType"), ""),
            serial=str(row.get("SerialNumber") or "").strip(),
            firmware=str(row.get("FirmwareVersion") or "").strip(),
            smart_status=_code(HEALTH, row.get("HealthStatus"), "unknown"),
        )
        for row in items
    )


def parse_sp_storage(items: list[dict[str, Any]]) -> tuple[PhysicalDisk, ...]:
    disks: dict[str, PhysicalDisk] = {}
    for volume in items:
        drive = volume.get("physical_drive") or {}
        # Volumes disk3s1 and disk3s5 live on the same physical disk3.
        match = _BSD_DISK_RE.match(str(volume.get("bsd_name") or ""))
        root_name = match.group(1) if match else ""
        if not root_name or root_name in disks:
            continue
        medium = str(drive.get("medium_type") or "").lower()
        disks[root_name] = PhysicalDisk(
            device=f"/dev/{root_name}",
            name=str(drive.get("device_name") or volume.get("_name") or root_name),
            type={"ssd": "SSD", "rotational": "HDD"}.get(medium, "Unknown"),
            size=to_int(volume.get("size_in_bytes")) or 0,
            interface=str(drive.get("protocol") or ""),
            smart_status=str(drive.get("smart_status") or "unknown"),
        )
    return tuple(disks.values())


def read_disk_layout(timeout_s: float) -> tuple[PhysicalDisk, ...]:
    if sys.platform.startswith("linux"):
        return read_sys_block_disks()
    if sys.platform == "win32":
        return parse_windows_disks(powershell_rows(_WINDOWS_QUERY, timeout_s))
    if sys.platform == "darwin":
        return parse_sp_storage(system_profiler("SPStorageDataType", timeout_s))
    return ()


def _links(directory: Path) -> dict[str, str]:
    """Map kernel device names to the label or uuid symlinks pointing at them."""
    out: dict[str, str] = {}
    if directory.is_dir():
        for link in directory.iterdir():
            out[link.resolve().name] = link.name
    return out


def read_sys_block_devices(
    partitions: Iterable[Any],
    root: Path = _SYS_BLOCK,
    dev_disk: Path = _DEV_DISK,
) -> tuple[BlockDevice, ...]:
    mounted = {Path(p.device).name: p for p in partitions}
    labels = _links(dev_disk / "by-label")
    uuids = _links(dev_disk / "by-uuid")

    def _node(entry: Path, kind: str, model: str, removable: bool) -> BlockDevice:
        part = mounted.get(entry.name)
        return BlockDevice(
            name=entry.name,
            type=kind,
            size=(to_int(read_sysfs(entry / "size")) or 0) * 512,
            fs_type=(part.fstype if part else ""),
            mount=(part.mountpoint if part else ""),
            label=labels.get(entry.name, ""),
            uuid=uuids.get(entry.name, ""),
            model=model,
            removable=removable,
        )

    out = []
    for entry in _block_entries(root):
        model = read_sysfs(entry / "device" / "model")
        removable = read_sysfs(entry / "removable") == "1"
        out.append(_node(entry, "disk", model, removable))
        for child in sorted(entry.iterdir()):
            if (child / "partition").is_file():
                out.append(_node(child, "part", model, removable))
    return tuple(out)


def read_block_devices(partitions: Iterable[Any]) -> tuple[BlockDevice, ...]:
    if sys.platform.startswith("linux"):
        return read_sys_block_devices(partitions)
    return tuple(BlockDevice(name=p.device, type="part", fs_type=p.fstype, mount=p.mountpoint) for p in partitions)


class StorageAdapter(SourceAdapter):
    """Physical disks are enumerated once; filesystems and block devices every collect."""

    domain = "storage"

    def __init__(
        self,
        layout_reader: Callable[[float], tuple[PhysicalDisk, ...]] = read_disk_layout,
        block_reader: Callable[[list], tuple[BlockDevice, ...]] = read_block_devices,
    ) -> None:
        self._layout_reader = layout_reader
        self._block_reader = block_reader
        self._layout: tuple[PhysicalDisk, ...] | None = None
        self._layout_lock = threading.Lock()

    def _disks(self, timeout_s: float) -> tuple[PhysicalDisk, ...]:
        with self._layout_lock:
            if self._layout is None:
                try:
                    self._layout = tuple(self._layout_reader(timeout_s))
                except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
                    _log.debug("disk layout unavailable: %s", exc)
                    self._layout = ()
            return self._layout

    def _filesystems(self, partitions: list) -> tuple[Filesystem, ...]:
        out = []
        seen: set[str] = set()
        for part in partitions:
            if part.fstype.lower() in _SKIP_FSTYPES or part.device in seen:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                # Empty card readers and locked volumes raise here.
                continue
            seen.add(part.device)
            out.append(
                Filesystem(
                    device=part.device,
                    mount=part.mountpoint,
                    fs_type=part.fstype,
                    size=int(usage.total),
                    used=int(usage.used),
                    free=int(usage.free),
                    usage_percent=(round(usage.used / usage.total * 100.0, 2) if usage.total > 0 else 0.0),
                    formatted={
                        "size": scaled_dict(usage.total),
                        "used": scaled_dict(usage.used),
                        "free": scaled_dict(usage.free),
                    },
                )
            )
        return tuple(out)

    def collect(self, timeout_s: float) -> StorageReading:
        try:
            partitions = list(psutil.disk_partitions(all=False))
            filesystems = self._filesystems(partitions)
        except OSError as exc:
            raise SourceTransient(f"partition scan failed: {exc}") from exc

        try:
            total = psutil.disk_io_counters(perdisk=False)
            per_disk = psutil.disk_io_counters(perdisk=True) or {}
        except (OSError, RuntimeError):
            # Some containers and VMs expose no block device statistics.
            total, per_disk = None, {}

        try:
            block_devices = tuple(self._block_reader(partitions))
        except OSError as exc:
            _log.debug("block device scan failed: %s", exc)
            block_devices = ()

        return StorageReading(
            filesystems=filesystems,
            io_total=(_counters(total) if total is not None else None),
            io_per_disk={name: _counters(raw) for name, raw in per_disk.items()},
            layout=self._disks(timeout_s),
            block_devices=block_devices,
        )

    def counters(self, reading: StorageReading) -> dict[str, int]:
        out: dict[str, int] = {}
        if reading.io_total is not None:
            out["read_bytes"] = reading.io_total.read_bytes
            out["write_bytes"] = reading.io_total.write_bytes
            out["read_count"] = reading.io_total.read_count
            out["write_count"] = reading.io_total.write_count
        for name, disk in reading.io_per_disk.items():
            out[f"read_bytes:{name}"] = disk.read_bytes
            out[f"write_bytes:{name}"] = disk.write_bytes
        return out

    def history_point(self, reading: StorageReading, rates: dict[str, float]) -> StoragePoint:
        return StoragePoint(
            read_rate=rates.get("read_bytes", 0.0),
            write_rate=rates.get("write_bytes", 0.0),
            read_iops=rates.get("read_count", 0.0),
            write_iops=rates.get("write_count", 0.0),
            total_usage=round(reading.mean_usage_percent, 2),
        )
