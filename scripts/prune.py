#!/usr/bin/env python3
"""Delete filings older than the retention window (RETENTION_YEARS, default 3)."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from filing_sync.config import load_config
from filing_sync.db import connect, init_db
from filing_sync.sync.prune import prune_old_filings


def main() -> None:
    cfg = load_config().validate()
    ap = argparse.ArgumentParser()
    ap.add_argument("--years", type=int, default=cfg.RETENTION_YEARS)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    init_db(cfg.DB_DSN)
    with connect(cfg.DB_DSN) as conn:
        res = prune_old_filings(conn, years=args.years, dry_run=args.dry_run)

    print(f"{'Would delete' if args.dry_run else 'Deleted'} {res['total_deleted']} rows older than {res['cutoff_date']}")
    for table, n in res["deleted_by_table"].items():
        print(f"  {table:28s} {n}")


if __name__ == "__main__":
    main()
