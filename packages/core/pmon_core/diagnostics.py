"""Diagnostics export helpers for local support bundles."""

from __future__ import annotations

import json
import platform
import re
import tempfile
import zipfile
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import AppConfig, config_path
from .logging_setup import log_dir
from .models import CompositeSnapshot, snapshot_to_dict


# Serial numbers and UUIDs from DMI are treated like secrets in exported bundles.
_SECRET_RE = re.compile(r"(token|secret|password|apikey|api_key|auth|serial|uuid|asset_tag)", re.IGNORECASE)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, (Path, datetime)):
        return str(value)
    return value


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if _SECRET_RE.search(str(k)):
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def domain_status(snapshot: CompositeSnapshot | None) -> dict[str, dict[str, Any]]:
    if snapshot is None:
        return {}
    out: dict[str, dict[str, Any]] = {}
    for name, snap in snapshot.domains().items():
        if snap is None:
            out[name] = {"collected": False}
            continue
        out[name] = {
            "collected": True,
            "available": snap.available,
            "reason": snap.reason,
            "stale": snap.stale,
            "error_kind": snap.error.kind.value if snap.error else None,
            "error": snap.error.message if snap.error else None,
            "history_len": len(snap.history),
            "updated_utc": snap.timestamp.isoformat(),
        }
    return out


def build_doctor_payload(
    cfg: AppConfig,
    snapshot: CompositeSnapshot | None = None,
    scheduler_status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "config": redact(asdict(cfg)),
        "domains": domain_status(snapshot),
        "scheduler": scheduler_status or {},
    }


class DiagnosticsExporter:
    def __init__(self, app_name: str = "PMon") -> None:
        self.app_name = app_name

    def bundle(
        self,
        cfg: AppConfig,
        doctor_payload: dict[str, Any],
        snapshot: CompositeSnapshot | None = None,
        output_dir: Path | None = None,
    ) -> Path:
        output_base = output_dir or Path(tempfile.gettempdir())
        output_base.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        zip_path = output_base / f"pmon-diagnostics-{stamp}.zip"

        logs = sorted(log_dir().glob("*.log*"))

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            manifest = {
                "app": self.app_name,
                "created_utc": datetime.now(timezone.utc).isoformat(),
                "host": platform.platform(),
                "python": platform.python_version(),
                "config_path": str(config_path()),
                "log_dir": str(log_dir()),
            }
            zf.writestr("manifest.json", json.dumps(manifest, indent=2, sort_keys=True))
            zf.writestr("doctor.json", json.dumps(redact(doctor_payload), indent=2, sort_keys=True, default=_jsonable))
            zf.writestr("config.redacted.json", json.dumps(redact(asdict(cfg)), indent=2, sort_keys=True))
            if snapshot is not None:
                zf.writestr(
                    "snapshot.json",
                    json.dumps(redact(snapshot_to_dict(snapshot)), indent=2, sort_keys=True, default=_jsonable),
                )

            for item in logs:
                zf.write(item, arcname=f"logs/{item.name}")

        return zip_path
