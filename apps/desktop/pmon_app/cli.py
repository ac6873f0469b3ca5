"""CLI entrypoints for PMon sampling, one-shot snapshots, diagnostics, and config."""

from __future__ import annotations

import argparse
import json
import threading
import time
from dataclasses import asdict
from pathlib import Path

from pmon_core import (
    DOMAINS,
    AppConfig,
    CompositeSnapshot,
    DiagnosticsExporter,
    build_doctor_payload,
    load_config,
    save_config,
    snapshot_to_dict,
)
from pmon_core.config import config_path
from pmon_core.logging_setup import configure_logging, get_logger, install_crash_hooks
from pmon_telemetry import build_scheduler


def _print_json(data: object, compact: bool = False) -> None:
    if compact:
        print(json.dumps(data, sort_keys=True, default=str), flush=True)
    else:
        print(json.dumps(data, indent=2, sort_keys=True, default=str), flush=True)


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config()
    install_crash_hooks()
    scheduler = build_scheduler(cfg, domains=args.domain)
    every = max(1, int(args.every))
    done = threading.Event()
    counter = {"ticks": 0}

    def _emit(snap: CompositeSnapshot) -> None:
        counter["ticks"] += 1
        if counter["ticks"] % every == 0:
            _print_json(snapshot_to_dict(snap), compact=args.compact)

    scheduler.publisher.subscribe(_emit)
    scheduler.start()
    get_logger("cli").info("run started", extra={"event": "cli_run"})
    try:
        if args.seconds:
            done.wait(args.seconds)
        else:
            while not done.wait(3600):
                pass
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.close()
    return 0


def cmd_snapshot(args: argparse.Namespace) -> int:
    cfg = load_config()
    scheduler = build_scheduler(cfg, domains=args.domain)
    if args.warmup > 0:
        # CPU usage is measured between calls; give the primed counters time to move.
        time.sleep(args.warmup)
    try:
        snap = scheduler.collect_once()
    finally:
        scheduler.close()
    _print_json(snapshot_to_dict(snap), compact=args.compact)
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = load_config()
    scheduler = build_scheduler(cfg)
    try:
        snap = scheduler.collect_once()
        payload = build_doctor_payload(cfg, snap, scheduler.status())
    finally:
        scheduler.close()

    if args.export:
        exporter = DiagnosticsExporter()
        out_dir = Path(args.out_dir).expanduser().resolve() if args.out_dir else None
        bundle = exporter.bundle(cfg=cfg, doctor_payload=payload, snapshot=snap, output_dir=out_dir)
        payload["diagnostics_bundle"] = str(bundle)

    _print_json(payload)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.reset:
        path = save_config(AppConfig())
        _print_json({"reset": True, "path": str(path)})
        return 0
    cfg = load_config()
    _print_json({"path": str(config_path()), "config": asdict(cfg)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pmon", description="PMon hardware telemetry sampler")
    sub = parser.add_subparsers(dest="command", required=True)

    run_cmd = sub.add_parser("run", help="Sample continuously and print composite snapshots")
    run_cmd.add_argument("--seconds", type=float, default=0.0, help="Stop after N seconds (default: until Ctrl+C)")
    run_cmd.add_argument("--every", type=int, default=1, help="Print every Nth published snapshot")
    run_cmd.add_argument("--domain", action="append", choices=list(DOMAINS), default=None)
    run_cmd.add_argument("--compact", action="store_true", help="One JSON document per line")
    run_cmd.set_defaults(func=cmd_run)

    snap_cmd = sub.add_parser("snapshot", help="Collect every domain once and print the result")
    snap_cmd.add_argument("--domain", action="append", choices=list(DOMAINS), default=None)
    snap_cmd.add_argument("--warmup", type=float, default=0.5, help="Seconds to wait before collecting")
    snap_cmd.add_argument("--compact", action="store_true")
    snap_cmd.set_defaults(func=cmd_snapshot)

    doctor_cmd = sub.add_parser("doctor", help="Print diagnostics and per-domain status")
    doctor_cmd.add_argument("--export", action="store_true", help="Export offline diagnostics bundle")
    doctor_cmd.add_argument("--out-dir", default=None, help="Optional output directory for diagnostics bundle")
    doctor_cmd.set_defaults(func=cmd_doctor)

    config_cmd = sub.add_parser("config", help="Show or reset persisted settings")
    group = config_cmd.add_mutually_exclusive_group()
    group.add_argument("--show", action="store_true", default=True)
    group.add_argument("--reset", action="store_true")
    config_cmd.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    cfg = load_config()
    configure_logging(keep_files=cfg.diagnostics.keep_log_files, console=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
