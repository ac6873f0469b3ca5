"""Source adapter contract and error classification."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from typing import Any

from .models import ErrorKind


class SourceError(Exception):
    kind = ErrorKind.UNKNOWN


class SourceUnavailable(SourceError):
    """Feature or hardware is not present on this host."""

    kind = ErrorKind.UNAVAILABLE


class SourceTransient(SourceError):
    """Retryable OS, driver, or timeout hiccup."""

    kind = ErrorKind.TRANSIENT


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, SourceError):
        return exc.kind
    if isinstance(exc, (TimeoutError, subprocess.TimeoutExpired, OSError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


class SourceAdapter(ABC):
    """One data source per domain.

    ``collect`` returns a frozen reading for the domain or raises. It must
    honor ``timeout_s`` for anything it shells out to; the owning sampler
    abandons calls that overrun regardless.
    """

    domain: str = ""

    @abstractmethod
    def collect(self, timeout_s: float) -> Any:
        raise NotImplementedError

    def counters(self, reading: Any) -> dict[str, int]:
        return {}

    def history_point(self, reading: Any, rates: dict[str, float]) -> Any | None:
        return None

    def close(self) -> None:
        return None
