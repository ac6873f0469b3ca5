"""Persistent sampling settings schema and load/save helpers."""

from __future__ import annotations

import json
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .models import DOMAINS


CONFIG_VERSION = 1

FAST_DOMAINS = ("cpu", "memory", "network")
MEDIUM_DOMAINS = ("gpu", "storage", "npu")
SLOW_DOMAINS = ("motherboard",)


@dataclass
class SamplingConfig:
    tick_ms: int = 1000
    fast_ms: int = 1000
    medium_ms: int = 3000
    slow_ms: int = 30000
    timeout_ratio: float = 0.8


@dataclass
class DomainsConfig:
    cpu: bool = True
    memory: bool = True
    gpu: bool = True
    storage: bool = True
    network: bool = True
    npu: bool = True
    motherboard: bool = True
    cadence_ms: dict[str, int] = field(default_factory=dict)


@dataclass
class HistoryConfig:
    size: int = 60


@dataclass
class MotherboardConfig:
    cache_ms: int = 10000


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    domains: DomainsConfig = field(default_factory=DomainsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    motherboard: MotherboardConfig = field(default_factory=MotherboardConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)

    def enabled_domains(self) -> list[str]:
        return [name for name in DOMAINS if getattr(self.domains, name)]

    def cadence_ms(self, domain: str) -> int:
        override = self.domains.cadence_ms.get(domain)
        if override:
            return int(override)
        if domain in FAST_DOMAINS:
            return self.sampling.fast_ms
        if domain in MEDIUM_DOMAINS:
            return self.sampling.medium_ms
        return self.sampling.slow_ms

    def timeout_ms(self, domain: str) -> int:
        cadence = self.cadence_ms(domain)
        return max(1, min(cadence - 1, int(cadence * self.sampling.timeout_ratio)))


DEFAULT_CONFIG = AppConfig()


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "PMon"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "PMon"
    return Path.home() / ".config" / "pmon"


def config_path() -> Path:
    return config_root() / "config.json"


def _merge(dataclass_type, raw: dict[str, Any]):
    defaults = dataclass_type()  # type: ignore[misc]
    if not isinstance(raw, dict):
        return defaults
    for k, v in raw.items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _normalize_sampling(cfg: AppConfig) -> None:
    s = cfg.sampling
    s.tick_ms = max(100, min(10000, int(s.tick_ms)))
    s.fast_ms = max(s.tick_ms, int(s.fast_ms))
    s.medium_ms = max(s.tick_ms, int(s.medium_ms))
    s.slow_ms = max(s.tick_ms, int(s.slow_ms))
    s.timeout_ratio = float(min(0.95, max(0.1, float(s.timeout_ratio))))


def _normalize_domains(cfg: AppConfig) -> None:
    for name in DOMAINS:
        setattr(cfg.domains, name, bool(getattr(cfg.domains, name)))
    overrides = cfg.domains.cadence_ms if isinstance(cfg.domains.cadence_ms, dict) else {}
    cfg.domains.cadence_ms = {
        name: max(cfg.sampling.tick_ms, int(ms)) for name, ms in overrides.items() if name in DOMAINS and ms
    }


def _normalize_history(cfg: AppConfig) -> None:
    cfg.history.size = max(1, min(3600, int(cfg.history.size)))
    cfg.motherboard.cache_ms = max(0, int(cfg.motherboard.cache_ms))
    cfg.diagnostics.keep_log_files = max(2, int(cfg.diagnostics.keep_log_files))


def normalize(cfg: AppConfig) -> AppConfig:
    _normalize_sampling(cfg)
    _normalize_domains(cfg)
    _normalize_history(cfg)
    return cfg


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()

    cfg = AppConfig(
        config_version=CONFIG_VERSION,
        sampling=_merge(SamplingConfig, raw.get("sampling", {})),
        domains=_merge(DomainsConfig, raw.get("domains", {})),
        history=_merge(HistoryConfig, raw.get("history", {})),
        motherboard=_merge(MotherboardConfig, raw.get("motherboard", {})),
        diagnostics=_merge(DiagnosticsConfig, raw.get("diagnostics", {})),
    )
    try:
        return normalize(cfg)
    except (TypeError, ValueError):
        return AppConfig()


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
    return path
