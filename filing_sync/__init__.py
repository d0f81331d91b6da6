"""SEC filing-index sync service.

Keeps a local filing store current with EDGAR's quarterly form indexes:

- Quarters are planned from the last watermark through the current quarter.
- Index entries are filtered to the tracked form families (13F, 13D/G, Form 3/4/5).
- New accessions are merged in batches; already-present accessions are no-ops.
- Records older than the retention window are pruned after a successful run.

The FastAPI app in `filing_sync.api.server` exposes the sync triggers behind a
token-bucket rate limiter. `scripts/daily_sync.py` is the cron entry point.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
