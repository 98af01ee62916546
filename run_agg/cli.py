import argparse
import asyncio
import json
import logging
import sys

from .config import ConsolidationConfig, DEFAULT_CONFIG, load_history_config
from .io import read_json, read_run_payload, write_layout, write_run_detail, write_stats
from .layout import layout_branches, layout_steps
from .loader import RunSourceError, load_run_detail
from .rules import pick_label
from .runner import build_run_detail
from .stats import compute_stats


def _load_consolidation_config(path) -> ConsolidationConfig:
    if not path:
        return DEFAULT_CONFIG
    with open(path) as f:
        config_data = json.load(f)
    return ConsolidationConfig(**config_data)


def _pipeline_steps(data) -> list:
    # Pipeline files are either a bare step list or {"steps": [...]}
    if isinstance(data, dict):
        return data.get("steps", [])
    return data


def _label_summary(detail, rules_path) -> None:
    if not rules_path:
        return
    rules = read_json(rules_path)
    label = pick_label(rules, detail.run.overall_score or 0.0)
    print(f"Overall score {detail.run.overall_score}: {label or 'no matching rule'}")


def _write_outputs(detail, out_dir: str, cfg: ConsolidationConfig) -> None:
    write_run_detail(out_dir, detail)
    write_stats(out_dir, compute_stats(detail, cfg.min_confidence))


def cmd_consolidate(args):
    cfg = _load_consolidation_config(args.config)
    payload = read_run_payload(args.input)
    detail = build_run_detail(payload, cfg)
    _write_outputs(detail, args.out, cfg)
    _label_summary(detail, args.rules)
    print(f"Consolidation complete. Output: {args.out}")


def cmd_layout(args):
    steps = _pipeline_steps(read_json(args.pipeline))
    if args.branches:
        rows = layout_branches(steps)
        name = "branch_layout"
    else:
        rows = layout_steps(steps)
        name = "layout"

    if args.out:
        write_layout(args.out, rows, name=name)
        print(f"Layout complete. Output: {args.out}")
        return

    for row in rows:
        indent = "  " * row.depth
        if args.branches:
            marker = f"[{row.branch_key}]" if row.is_branch_header else row.step.id
            print(f"{row.row_label:>8} {indent}{marker}")
        else:
            suffix = f"  ! {', '.join(row.warnings)}" if row.warnings else ""
            print(f"{row.row_label:>8} {indent}{row.step.id} ({row.step.type}){suffix}")


def cmd_fetch(args):
    cfg = _load_consolidation_config(args.config)
    history = load_history_config(
        base_url=args.base_url, timeout_s=args.timeout, cache_dir=args.cache_dir,
    )
    try:
        detail = asyncio.run(load_run_detail(args.run_id, history, consolidation=cfg))
    except RunSourceError as e:
        print(f"Fetch failed: {e}", file=sys.stderr)
        sys.exit(1)
    _write_outputs(detail, args.out, cfg)
    _label_summary(detail, args.rules)
    print(f"Fetch complete. Output: {args.out}")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="run_agg")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    cons_parser = subparsers.add_parser("consolidate", help="Consolidate a run log or run detail")
    cons_parser.add_argument("--input", required=True, help="Run JSON or JSONL log file")
    cons_parser.add_argument("--out", required=True, help="Output directory")
    cons_parser.add_argument("--config", help="Consolidation config JSON file")
    cons_parser.add_argument("--rules", help="Label rules JSON file ([{\"if\": ..., \"label\": ...}])")
    cons_parser.set_defaults(func=cmd_consolidate)

    layout_parser = subparsers.add_parser("layout", help="Lay out a pipeline definition")
    layout_parser.add_argument("--pipeline", required=True, help="Pipeline JSON file")
    layout_parser.add_argument("--out", help="Output directory (prints rows when omitted)")
    layout_parser.add_argument("--branches", action="store_true", help="Follow decision targets")
    layout_parser.set_defaults(func=cmd_layout)

    fetch_parser = subparsers.add_parser("fetch", help="Load a run from the history service")
    fetch_parser.add_argument("--run-id", required=True, help="Run id")
    fetch_parser.add_argument("--out", required=True, help="Output directory")
    fetch_parser.add_argument("--base-url", help="History service base URL")
    fetch_parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    fetch_parser.add_argument("--cache-dir", help="Directory for last-seen copies")
    fetch_parser.add_argument("--config", help="Consolidation config JSON file")
    fetch_parser.add_argument("--rules", help="Label rules JSON file")
    fetch_parser.set_defaults(func=cmd_fetch)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
