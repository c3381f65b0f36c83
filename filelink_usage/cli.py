"""Command-line administration for the file link usage tracker.

Usage:
    filelink-usage scan [--now TS]        # run a scheduled pass (honours frequency)
    filelink-usage rescan                 # mark everything stale and scan all owners
    filelink-usage purge --yes            # drop match rows and scan status
    filelink-usage usage FILE_ID          # usage records and links for a file
    filelink-usage stats                  # match/scan statistics
    filelink-usage serve                  # run the admin API

Common options: ``--config PATH``, ``--db PATH``, ``-v/--verbose``.
A scan pass in which any owner failed exits with status 1.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import load_config
from .engine import FileLinkUsageEngine, open_engine
from .interfaces import ScanPassError, ScanReport

logger = logging.getLogger("filelink_usage.cli")


def _print_report(report: ScanReport) -> None:
    if not report.due:
        print("Scan not due yet; nothing to do.")
        return
    print(f"  Full scan:       {'yes' if report.full_scan else 'no'}")
    print(f"  Owners scanned:  {report.owners_scanned}")
    print(f"  Links detected:  {report.links_detected}")
    print(f"  Files changed:   {len(report.changed_file_ids)}")
    if report.failures:
        print(f"  Failures:        {len(report.failures)}")
        for owner_type, owner_id, error in report.failures[:20]:
            print(f"    {owner_type}:{owner_id}  {error}")


def _run_scan(engine: FileLinkUsageEngine, args: argparse.Namespace) -> int:
    try:
        if args.command == "rescan":
            report = engine.force_full_rescan(now=args.now)
        else:
            report = engine.run_scheduled_scan(now=args.now)
    except ScanPassError as exc:
        print("Scan pass FAILED")
        _print_report(exc.report)
        return 1
    print("Scan pass complete")
    _print_report(report)
    return 0


def _cmd_purge(engine: FileLinkUsageEngine, args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to purge without --yes", file=sys.stderr)
        return 2
    engine.purge_derived_state()
    print("Derived state purged; the next scan starts from scratch.")
    return 0


def _cmd_usage(engine: FileLinkUsageEngine, args: argparse.Namespace) -> int:
    data = engine.usage_for_file(args.file_id)
    if data["uri"] is None and not data["usage"]:
        print(f"Unknown file {args.file_id}", file=sys.stderr)
        return 1
    print(json.dumps(data, indent=2, sort_keys=True))
    return 0


def _cmd_stats(engine: FileLinkUsageEngine, args: argparse.Namespace) -> int:
    print(json.dumps(engine.stats(), indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filelink-usage",
        description="Track usage of managed files linked from content",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--db", help="Override database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("scan", "Run a scheduled scan pass"),
        ("rescan", "Mark every owner stale and scan all of them"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--now", type=float, default=None, help="Scan time as a unix timestamp")

    p = sub.add_parser("purge", help="Drop match rows, scan status and the last-scan marker")
    p.add_argument("--yes", action="store_true", help="Confirm the purge")

    p = sub.add_parser("usage", help="Show usage records and links for a file")
    p.add_argument("file_id", type=int)

    sub.add_parser("stats", help="Show match and scan statistics")
    sub.add_parser("serve", help="Run the admin API")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if args.command == "serve":
        from .api import main as serve

        serve()
        return 0

    cfg = load_config(args.config)
    if args.db:
        cfg.db_path = args.db
    errors = cfg.validate()
    if errors:
        for err in errors:
            print(f"Config error: {err}", file=sys.stderr)
        return 2

    engine = open_engine(cfg)
    try:
        if args.command in ("scan", "rescan"):
            return _run_scan(engine, args)
        handlers = {"purge": _cmd_purge, "usage": _cmd_usage, "stats": _cmd_stats}
        return handlers[args.command](engine, args)
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
