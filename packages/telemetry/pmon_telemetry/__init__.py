"""Host telemetry source adapters for PMon."""

from .cpu import CpuAdapter
from .factory import build_adapter, build_samplers, build_scheduler
from .gpu import GpuAdapter
from .memory import MemoryAdapter
from .motherboard import MotherboardAdapter
from .network import NetworkAdapter
from .npu import NpuAdapter
from .storage import StorageAdapter

__all__ = [
    "CpuAdapter",
    "GpuAdapter",
    "MemoryAdapter",
    "MotherboardAdapter",
    "NetworkAdapter",
    "NpuAdapter",
    "StorageAdapter",
    "build_adapter",
    "build_samplers",
    "build_scheduler",
]
