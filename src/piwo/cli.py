#!/usr/bin/env python3
"""piwo.cli

Command line entrypoint for the PIWO covariate pipeline.

Subcommands:
- dates → list the periods of the configured (or given) date series
- plan  → validate the config and print the steps it would run
- run   → execute the pipeline (tables, image exports)
- map   → execute without exporting and write an HTML web map

Design goals:
- Config-driven defaults via YAML (config/pipeline.yaml, config/sources.yaml)
- One level of subcommands
- --dry-run prints the plan without touching a backend

Examples:
  python -m piwo dates --start 2010-01-01 --end 2012-01-01 --interval 12
  python -m piwo --config config/pipeline.yaml plan
  python -m piwo --config config/pipeline.yaml run
  python -m piwo --config config/pipeline.yaml map --out data/processed/map.html --hide "s2 NDVI 2020"
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from piwo.config import DEFAULT_PIPELINE_YAML, DEFAULT_SOURCES_YAML, PipelineConfig, load_pipeline
from piwo.dates import date_windows
from piwo.errors import PiwoError
from piwo.logging_config import configure_logging

logger = logging.getLogger("piwo.cli")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="piwo", description="Spatial covariates for PIWO survey points")

    # Global args (available for all subcommands)
    ap.add_argument("--config", type=Path, default=DEFAULT_PIPELINE_YAML, help=f"Pipeline YAML (default: {DEFAULT_PIPELINE_YAML})")
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML, help=f"Source registry YAML (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--dry-run", action="store_true", help="Print the plan without running a backend")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- dates ---
    dates = sub.add_parser("dates", help="List the periods of a date series")
    dates.add_argument("--start", default=None, help="Start date (default: from config)")
    dates.add_argument("--end", default=None, help="End date (default: from config)")
    dates.add_argument("--interval", type=int, default=None, help="Interval length (default: from config)")
    dates.add_argument("--unit", default="months", choices=["days", "weeks", "months", "years"])
    dates.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    # --- plan ---
    sub.add_parser("plan", help="Validate the config and print the plan")

    # --- run ---
    run = sub.add_parser("run", help="Run the pipeline")
    run.add_argument("--no-export", action="store_true", help="Compute but don't write or start exports")

    # --- map ---
    mp = sub.add_parser("map", help="Write an HTML web map of the configured map layers")
    mp.add_argument("--out", type=Path, default=None, help="Output HTML (default: <output.dir>/map.html)")
    mp.add_argument("--hide", nargs="+", default=[], help="Layer titles to start hidden")
    mp.add_argument("--show", nargs="+", default=[], help="Layer titles to start visible")

    return ap


def _load(args: argparse.Namespace) -> PipelineConfig:
    return load_pipeline(args.config, args.sources_yaml)


def _cmd_dates(args: argparse.Namespace) -> int:
    if args.start and args.end and args.interval:
        periods = date_windows(args.start, args.end, args.interval, args.unit)
    else:
        cfg = _load(args)
        periods = date_windows(
            args.start or cfg.start,
            args.end or cfg.end,
            args.interval or cfg.interval.count,
            args.unit if args.interval else cfg.interval.unit,
        )
    if args.json:
        print(json.dumps([p.properties() for p in periods], indent=2))
    else:
        for p in periods:
            print(f"{p.date}  [{p.start.date()}, {p.end.date()})")
        print(f"{len(periods)} periods")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    from piwo.pipeline import build_plan

    print(build_plan(_load(args)).describe())
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    from piwo.backends import get_backend
    from piwo.pipeline import build_plan

    cfg = _load(args)
    plan = build_plan(cfg)
    if args.dry_run:
        print(plan.describe())
        print("(dry run: nothing executed)")
        return 0
    result = plan.execute(get_backend(cfg), export=not args.no_export)
    for name, table in result.tables.items():
        size = f" ({len(table)} rows)" if hasattr(table, "__len__") else ""
        print(f"[table] {name}{size}")
    print(f"Done: {len(result.tables)} table(s), {len(result.exports)} export(s)")
    return 0


def _cmd_map(args: argparse.Namespace) -> int:
    from piwo.backends import get_backend
    from piwo.pipeline import build_plan
    from piwo.webmap import LayerState, build_map

    cfg = _load(args)
    if not cfg.map_layers:
        raise SystemExit(f"No 'map:' layers configured in {args.config}")
    out = args.out or cfg.output.dir / "map.html"
    plan = build_plan(cfg)
    if args.dry_run:
        print(plan.describe())
        print(f"(dry run: would write {out})")
        return 0

    backend = get_backend(cfg)
    result = plan.execute(backend, export=False)
    state = LayerState.from_specs(cfg.map_layers, points=result.points is not None)
    for name in args.hide:
        state = state.hide(name)
    for name in args.show:
        state = state.show(name)

    out.parent.mkdir(parents=True, exist_ok=True)
    build_map(backend, result, cfg, state).save(str(out))
    logger.info(f"Wrote map -> {out}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    configure_logging(args.verbose)

    commands = {"dates": _cmd_dates, "plan": _cmd_plan, "run": _cmd_run, "map": _cmd_map}
    try:
        return commands[args.command](args)
    except PiwoError as e:
        raise SystemExit(f"piwo {args.command}: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
