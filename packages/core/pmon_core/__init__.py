"""Sampling engine: rate tracking, history, samplers, scheduling, and publishing."""

from .config import AppConfig, load_config, save_config
from .diagnostics import DiagnosticsExporter, build_doctor_payload
from .formatting import format_bytes, format_rate, scale, scale_rate
from .history import HistoryBuffer
from .models import (
    DOMAINS,
    CompositeSnapshot,
    CounterPair,
    DomainError,
    DomainSnapshot,
    ErrorKind,
    RateResult,
    Sample,
    SamplerState,
    snapshot_to_dict,
)
from .publisher import Publisher
from .rates import RateTracker
from .sampler import Sampler, SamplerStats
from .scheduler import Scheduler
from .sources import SourceAdapter, SourceError, SourceTransient, SourceUnavailable, classify

__all__ = [
    "DOMAINS",
    "AppConfig",
    "CompositeSnapshot",
    "CounterPair",
    "DiagnosticsExporter",
    "DomainError",
    "DomainSnapshot",
    "ErrorKind",
    "HistoryBuffer",
    "Publisher",
    "RateResult",
    "RateTracker",
    "Sample",
    "Sampler",
    "SamplerState",
    "SamplerStats",
    "Scheduler",
    "SourceAdapter",
    "SourceError",
    "SourceTransient",
    "SourceUnavailable",
    "build_doctor_payload",
    "classify",
    "format_bytes",
    "format_rate",
    "load_config",
    "save_config",
    "scale",
    "scale_rate",
    "snapshot_to_dict",
]
