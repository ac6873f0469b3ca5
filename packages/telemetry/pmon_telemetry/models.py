"""Typed per-domain readings returned by source adapters."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CpuCore:
    usage: float
    load_user: float | None = None
    load_system: float | None = None


@dataclass(frozen=True)
class CpuInfo:
    brand: str
    architecture: str
    cores: int
    physical_cores: int | None
    speed_mhz: float | None
    speed_min_mhz: float | None
    speed_max_mhz: float | None


@dataclass(frozen=True)
class CpuReading:
    usage: float
    usage_idle: float
    cores: tuple[CpuCore, ...]
    info: CpuInfo
    temp_c: float | None = None
    freq_mhz: float | None = None


@dataclass(frozen=True)
class CpuPoint:
    usage: float
    cores: tuple[float, ...]


@dataclass(frozen=True)
class MemoryModule:
    size: int
    bank: str = ""
    type: str = "Unknown"
    clock_mhz: int | None = None
    form_factor: str = ""
    manufacturer: str = ""
    part_number: str = ""
    voltage_configured: float | None = None


@dataclass(frozen=True)
class MemoryReading:
    total: int
    used: int
    free: int
    available: int
    usage_percent: float
    available_percent: float
    swap_total: int
    swap_used: int
    swap_free: int
    active: int | None = None
    buffcache: int | None = None
    layout: tuple[MemoryModule, ...] = ()
    formatted: dict[str, dict[str, float | str]] = field(default_factory=dict)


@dataclass(frozen=True)
class MemoryPoint:
    usage_percent: float
    used: int
    available: int


@dataclass(frozen=True)
class GpuDevice:
    index: int
    name: str
    vendor: str
    utilization: float | None
    memory_total: int | None
    memory_used: int | None
    memory_free: int | None
    memory_usage_percent: float | None
    temperature_c: float | None
    power_draw_w: float | None
    power_limit_w: float | None
    fan_percent: float | None
    driver_version: str | None = None
    bus: str | None = None
    # "nvml" when live metrics came from the NVIDIA driver, else the OS inventory tool.
    source: str = "nvml"

    @property
    def has_metrics(self) -> bool:
        return self.utilization is not None


@dataclass(frozen=True)
class Display:
    name: str
    vendor: str = ""
    connection: str = ""
    main: bool = False
    resolution_x: int | None = None
    resolution_y: int | None = None
    refresh_hz: float | None = None


@dataclass(frozen=True)
class GpuReading:
    devices: tuple[GpuDevice, ...]
    displays: tuple[Display, ...] = ()

    @property
    def primary(self) -> GpuDevice | None:
        return next((d for d in self.devices if d.has_metrics), None) or (self.devices[0] if self.devices else None)


@dataclass(frozen=True)
class GpuPoint:
    utilization: float
    memory_usage_percent: float
    temperature_c: float


@dataclass(frozen=True)
class Filesystem:
    device: str
    mount: str
    fs_type: str
    size: int
    used: int
    free: int
    usage_percent: float
    formatted: dict[str, dict[str, float | str]] = field(default_factory=dict)


@dataclass(frozen=True)
class DiskCounters:
    read_bytes: int
    write_bytes: int
    read_count: int
    write_count: int
    read_time_ms: int = 0
    write_time_ms: int = 0


@dataclass(frozen=True)
class PhysicalDisk:
    device: str
    name: str
    type: str = "Unknown"
    vendor: str = ""
    size: int = 0
    interface: str = ""
    serial: str = ""
    firmware: str = ""
    smart_status: str = "unknown"
    temperature_c: float | None = None


@dataclass(frozen=True)
class BlockDevice:
    name: str
    type: str
    size: int = 0
    fs_type: str = ""
    mount: str = ""
    label: str = ""
    uuid: str = ""
    model: str = ""
    removable: bool = False


@dataclass(frozen=True)
class StorageReading:
    filesystems: tuple[Filesystem, ...]
    io_total: DiskCounters | None
    io_per_disk: dict[str, DiskCounters] = field(default_factory=dict)
    layout: tuple[PhysicalDisk, ...] = ()
    block_devices: tuple[BlockDevice, ...] = ()

    @property
    def mean_usage_percent(self) -> float:
        if not self.filesystems:
            return 0.0
        return sum(fs.usage_percent for fs in self.filesystems) / len(self.filesystems)


@dataclass(frozen=True)
class StoragePoint:
    read_rate: float
    write_rate: float
    read_iops: float
    write_iops: float
    total_usage: float


@dataclass(frozen=True)
class InterfaceType:
    category: str
    label: str
    description: str


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    is_up: bool
    is_default: bool
    kind: InterfaceType
    manufacturer: str
    mac: str | None
    ip4: str | None
    ip6: str | None
    netmask: str | None
    mtu: int | None
    speed_mbps: int | None
    bytes_sent: int
    bytes_recv: int
    packets_sent: int
    packets_recv: int
    errin: int
    errout: int
    dropin: int
    dropout: int


@dataclass(frozen=True)
class Addressing:
    local_ip: str | None
    gateway: str | None
    subnet: str | None
    dns: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConnectionDetail:
    protocol: str
    local_address: str
    local_port: int | None
    peer_address: str
    peer_port: int | None
    state: str
    pid: int | None = None
    process: str = ""


@dataclass(frozen=True)
class Connections:
    active: int
    total: int
    by_state: dict[str, int] = field(default_factory=dict)
    details: tuple[ConnectionDetail, ...] = ()


@dataclass(frozen=True)
class NetworkReading:
    interfaces: tuple[NetworkInterface, ...]
    connections: Connections
    addressing: Addressing

    @property
    def bytes_sent(self) -> int:
        return sum(i.bytes_sent for i in self.interfaces)

    @property
    def bytes_recv(self) -> int:
        return sum(i.bytes_recv for i in self.interfaces)


@dataclass(frozen=True)
class NetworkPoint:
    rx_rate: float
    tx_rate: float
    connections: int


@dataclass(frozen=True)
class NpuDevice:
    vendor: str
    name: str
    metrics_available: bool = False
    utilization: float | None = None
    power_w: float | None = None
    temperature_c: float | None = None


@dataclass(frozen=True)
class NpuReading:
    devices: tuple[NpuDevice, ...]

    @property
    def metrics_available(self) -> bool:
        return any(d.metrics_available for d in self.devices)


@dataclass(frozen=True)
class NpuPoint:
    utilization: float
    power_w: float
    temperature_c: float


@dataclass(frozen=True)
class BoardInfo:
    manufacturer: str = "Unknown"
    model: str = "Unknown"
    version: str = "Unknown"
    serial: str = "Not Available"
    asset_tag: str = "Not Available"


@dataclass(frozen=True)
class BiosInfo:
    vendor: str = "Unknown"
    version: str = "Unknown"
    release_date: str = "Unknown"


@dataclass(frozen=True)
class SystemInfo:
    manufacturer: str = "Unknown"
    model: str = "Unknown"
    version: str = "Unknown"
    serial: str = "Not Available"
    uuid: str = "Not Available"
    sku: str = "Not Available"


@dataclass(frozen=True)
class ChassisInfo:
    manufacturer: str = "Unknown"
    type: str = "Unknown"
    version: str = "Unknown"
    serial: str = "Not Available"
    asset_tag: str = "Not Available"


@dataclass(frozen=True)
class HealthSummary:
    status: str
    score: int
    issues: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class MotherboardReading:
    board: BoardInfo
    bios: BiosInfo
    system: SystemInfo
    chassis: ChassisInfo
    bios_age_days: int | None
    health: HealthSummary
    memory_slots: int | None = None
    memory_max: int | None = None
