"""Build the default adapter and sampler set from app config."""

from __future__ import annotations

from pmon_core.config import AppConfig
from pmon_core.publisher import Publisher
from pmon_core.sampler import Sampler
from pmon_core.scheduler import Scheduler
from pmon_core.sources import SourceAdapter

from .cpu import CpuAdapter
from .gpu import GpuAdapter
from .memory import MemoryAdapter
from .motherboard import MotherboardAdapter
from .network import NetworkAdapter
from .npu import NpuAdapter
from .storage import StorageAdapter


def build_adapter(domain: str, cfg: AppConfig) -> SourceAdapter:
    if domain == "cpu":
        return CpuAdapter()
    if domain == "memory":
        return MemoryAdapter()
    if domain == "gpu":
        return GpuAdapter()
    if domain == "storage":
        return StorageAdapter()
    if domain == "network":
        return NetworkAdapter()
    if domain == "npu":
        return NpuAdapter()
    if domain == "motherboard":
        return MotherboardAdapter(cache_s=cfg.motherboard.cache_ms / 1000.0)
    raise ValueError(f"unknown domain {domain!r}")


def build_samplers(cfg: AppConfig, domains: list[str] | None = None) -> list[Sampler]:
    wanted = domains or cfg.enabled_domains()
    samplers = []
    for domain in wanted:
        samplers.append(
            Sampler(
                build_adapter(domain, cfg),
                cadence_s=cfg.cadence_ms(domain) / 1000.0,
                timeout_s=cfg.timeout_ms(domain) / 1000.0,
                history_size=cfg.history.size,
            )
        )
    return samplers


def build_scheduler(
    cfg: AppConfig,
    publisher: Publisher | None = None,
    domains: list[str] | None = None,
) -> Scheduler:
    return Scheduler(
        build_samplers(cfg, domains),
        publisher=publisher,
        tick_s=cfg.sampling.tick_ms / 1000.0,
    )
