"""Typed snapshot models shared by samplers, the aggregator, and subscribers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Mapping, TypeVar


T = TypeVar("T")

DOMAINS = ("cpu", "memory", "gpu", "storage", "network", "npu", "motherboard")


class ErrorKind(str, Enum):
    UNAVAILABLE = "Unavailable"
    TRANSIENT = "Transient"
    UNKNOWN = "Unknown"


class SamplerState(str, Enum):
    IDLE = "Idle"
    COLLECTING = "Collecting"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class Sample(Generic[T]):
    value: T
    timestamp: datetime


@dataclass(frozen=True)
class CounterPair:
    cumulative_value: int
    timestamp: float


@dataclass(frozen=True)
class RateResult:
    rate_per_second: float = 0.0


@dataclass(frozen=True)
class DomainError:
    kind: ErrorKind
    message: str
    consecutive_failures: int = 1
    since: datetime | None = None


@dataclass(frozen=True)
class DomainSnapshot:
    """Readings for one domain plus derived rates, bounded history, and error marker.

    ``available=False`` means the hardware or feature is absent on this host;
    that is a steady state, not an error. ``error`` is set only when the last
    collection failed and ``data`` is the last-known-good reading.
    """

    domain: str
    data: Any
    timestamp: datetime
    rates: Mapping[str, float] = field(default_factory=dict)
    history: tuple[Sample[Any], ...] = ()
    available: bool = True
    reason: str | None = None
    error: DomainError | None = None

    @property
    def stale(self) -> bool:
        return self.error is not None

    def rate(self, key: str) -> float:
        return float(self.rates.get(key, 0.0))


@dataclass(frozen=True)
class CompositeSnapshot:
    timestamp: datetime
    cpu: DomainSnapshot | None = None
    memory: DomainSnapshot | None = None
    gpu: DomainSnapshot | None = None
    storage: DomainSnapshot | None = None
    network: DomainSnapshot | None = None
    npu: DomainSnapshot | None = None
    motherboard: DomainSnapshot | None = None

    def domains(self) -> dict[str, DomainSnapshot | None]:
        return {name: getattr(self, name) for name in DOMAINS}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return _plain(asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _error_dict(snap: DomainSnapshot) -> dict[str, Any]:
    if snap.error is not None:
        return {
            "present": True,
            "kind": snap.error.kind.value,
            "message": snap.error.message,
            "consecutive_failures": snap.error.consecutive_failures,
            "since": snap.error.since.isoformat() if snap.error.since else None,
        }
    if not snap.available:
        # Absent hardware carries no DomainError; only the wire form marks it.
        return {"present": True, "kind": ErrorKind.UNAVAILABLE.value, "message": snap.reason}
    return {"present": False, "kind": None, "message": None}


def domain_to_dict(snap: DomainSnapshot | None) -> dict[str, Any] | None:
    if snap is None:
        return None
    return {
        "domain": snap.domain,
        "timestamp": snap.timestamp.isoformat(),
        "available": snap.available,
        "reason": snap.reason,
        "data": _plain(snap.data),
        "rates": dict(snap.rates),
        "history": [{"timestamp": s.timestamp.isoformat(), "value": _plain(s.value)} for s in snap.history],
        "error": _error_dict(snap),
    }


def snapshot_to_dict(snap: CompositeSnapshot) -> dict[str, Any]:
    """JSON-ready view of a composite snapshot for IPC or CLI output."""
    payload: dict[str, Any] = {"timestamp": snap.timestamp.isoformat()}
    for name, domain in snap.domains().items():
        payload[name] = domain_to_dict(domain)
    return payload
