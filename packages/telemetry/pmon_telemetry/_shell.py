"""Helpers for the OS inventory tools the adapters shell out to."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any


def run_text(cmd: list[str], timeout_s: float) -> str:
    """Stdout of ``cmd``, or an empty string when the tool is missing or fails.

    ``subprocess.TimeoutExpired`` propagates so callers can report a transient.
    """
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s, check=False)
    except (FileNotFoundError, PermissionError):
        return ""
    return proc.stdout if proc.returncode == 0 else ""


def rows(value: Any) -> list[dict[str, Any]]:
    # ConvertTo-Json emits a bare object when a query returns one row.
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [row for row in value if isinstance(row, dict)]
    return []


def powershell_json(script: str, timeout_s: float) -> Any:
    text = run_text(["powershell", "-NoProfile", "-Command", script], timeout_s)
    return json.loads(text) if text.strip() else None


def powershell_rows(query: str, timeout_s: float) -> list[dict[str, Any]]:
    return rows(powershell_json(f"{query} | ConvertTo-Json -Depth 3 -Compress", timeout_s))


def system_profiler(data_type: str, timeout_s: float) -> list[dict[str, Any]]:
    text = run_text(["system_profiler", data_type, "-json"], timeout_s)
    if not text.strip():
        return []
    return rows(json.loads(text).get(data_type))


def read_sysfs(path: Path, default: str = "") -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return default


def to_int(value: Any) -> int | None:
    text = str(value).strip() if value is not None else ""
    if text.lower().startswith("0x"):
        try:
            return int(text, 16)
        except ValueError:
            return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return None
