#!/usr/bin/env python3
"""Daily cron entry point; same flags as the `filing-sync` console script.

    python scripts/daily_sync.py --forms=13F,13DG
    python scripts/daily_sync.py --forms=345 --dry-run
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from filing_sync.cli import main


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
