"""Command-line entry point for a sync run (cron / manual backfill).

    filing-sync                         # 13F + 13D/G, incremental from the watermark
    filing-sync --forms=345 --current   # Form 3/4/5, current quarter only
    filing-sync --from=2024-Q1 --force  # re-walk quarters since 2024-Q1
    filing-sync --quarter=2023-Q4       # backfill one quarter, ignoring the watermark
    filing-sync --dry-run --json        # report what would be inserted; write nothing
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from datetime import date
from typing import Any, Callable, List, Optional

from filing_sync.config import Config, load_config
from filing_sync.db import connect, init_db
from filing_sync.errors import FatalConfigError
from filing_sync.models import FAMILIES, parse_families
from filing_sync.sec.client import FormIndexClient
from filing_sync.sync.orchestrator import SyncOptions, SyncOrchestrator, SyncRunSummary
from filing_sync.sync.quarters import parse_quarter
from filing_sync.util.redact import redact

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _quarter_arg(s: str):
    try:
        return parse_quarter(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="filing-sync", description="Sync SEC filing metadata from EDGAR form indexes.")
    ap.add_argument("--forms", default=None, help=f"comma-separated families ({', '.join(FAMILIES)})")
    ap.add_argument("--force", action="store_true", help="run even if already synced today")
    ap.add_argument("--dry-run", action="store_true", help="report what would be inserted; write nothing")
    group = ap.add_mutually_exclusive_group()
    group.add_argument("--from", dest="start", type=_quarter_arg, default=None, help="plan from this quarter (YYYY-QN)")
    group.add_argument("--quarter", type=_quarter_arg, default=None, help="backfill exactly this quarter (YYYY-QN)")
    group.add_argument("--current", action="store_true", help="current quarter only")
    ap.add_argument("--deadline", type=float, default=None, help="seconds before the run stops taking new work")
    ap.add_argument("--json", action="store_true", help="print the run summary as JSON")
    return ap


def _print_summary(summary: SyncRunSummary) -> None:
    print("")
    print("=" * 60)
    print(f"Sync {'(dry run) ' if summary.dry_run else ''}finished at {summary.completed_at}")
    print("=" * 60)
    for key, r in summary.families.items():
        flag = "SKIPPED" if r.skipped else r.status.upper()
        print(f"  {FAMILIES[key].label:12s} [{flag}] {r.message or ''}")
        for q in r.quarters:
            extra = f" ({q.error})" if q.error else ""
            print(
                f"      {q.quarter}: {q.status:11s} entries={q.entries} new={q.new} "
                f"inserted={q.inserted} dup={q.duplicates} failed={q.failed}{extra}"
            )
        for d in r.datasets:
            extra = f" ({d.error})" if d.error else ""
            print(f"      {d.quarter} data set: {d.status:14s} new rows={d.total_new_rows} failed={d.failed}{extra}")
        print(f"      watermark: {r.watermark_before or '-'} -> {r.watermark_after or '-'}")
    if summary.pruned is not None:
        print(f"  pruned: {summary.pruned['total_deleted']} rows older than {summary.pruned['cutoff_date']}")
    if summary.prune_error:
        print(f"  prune failed: {summary.prune_error}")
    if summary.fetch_errors:
        print(f"  SEC fetch errors: {summary.fetch_errors} (run reported as failed)")


def main(
    argv: Optional[List[str]] = None,
    *,
    cfg: Optional[Config] = None,
    fetcher: Any = None,
    today: Callable[[], date] = date.today,
) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = (cfg or load_config()).validate()
    except FatalConfigError as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG

    families = parse_families(args.forms, default=cfg.SYNC_DEFAULT_FORMS)
    if not families:
        print(f"No valid form families in {args.forms!r}. Valid values: {', '.join(FAMILIES)}")
        return EXIT_CONFIG

    cancel = threading.Event()
    options = SyncOptions(
        forms=families,
        force=args.force,
        dry_run=args.dry_run,
        start=args.start,
        quarter=args.quarter,
        current_only=args.current,
        deadline_seconds=args.deadline if args.deadline is not None else cfg.SYNC_DEADLINE_SECONDS,
        cancel_event=cancel,
    )

    if not args.json:
        print("=" * 60)
        print("SEC filing sync")
        print("=" * 60)
        print(f"  forms:   {', '.join(f.key for f in families)}")
        print(f"  force:   {args.force}")
        print(f"  dry run: {args.dry_run}")
        if args.quarter or args.start or args.current:
            print(f"  range:   {args.quarter or (f'from {args.start}' if args.start else 'current quarter')}")

    # Ctrl-C stops the run at the next batch boundary instead of mid-transaction.
    on_main = threading.current_thread() is threading.main_thread()
    if on_main:
        prev_handler = signal.signal(signal.SIGINT, lambda *_: cancel.set())

    try:
        init_db(cfg.DB_DSN)
        orch = SyncOrchestrator(cfg, fetcher=fetcher or FormIndexClient.from_config(cfg), today=today)
        with connect(cfg.DB_DSN) as conn:
            summary = orch.run(conn, options)
    except Exception as e:
        print(f"Sync failed: {redact(e, [cfg.CRON_SECRET])}")
        return EXIT_FAILED
    finally:
        if on_main:
            signal.signal(signal.SIGINT, prev_handler)

    if args.json:
        print(json.dumps(summary.as_dict(), indent=2))
    else:
        _print_summary(summary)
    return EXIT_OK if summary.success else EXIT_FAILED


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
