from __future__ import annotations

from datetime import date
from typing import Any, Dict

from filing_sync.schema import CHILD_TABLES, FILING_TABLES
from filing_sync.util.time import years_before

RETENTION_YEARS = 3


def _debug(msg: str) -> None:
    print(f"[prune] {msg}")


def prune_old_filings(
    conn: Any,
    *,
    years: int = RETENTION_YEARS,
    today: date | None = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Delete filings with filing_date older than `today - years`.

    Line items go first (selected through their parent's accession number), then
    the submissions themselves. Running it twice deletes nothing the second time.
    With dry_run the counts are computed but nothing is deleted.
    """
    cutoff = years_before(today or date.today(), int(years)).isoformat()
    deleted: Dict[str, int] = {}

    for child, parent in CHILD_TABLES.items():
        where = f"accession_number IN (SELECT accession_number FROM {parent} WHERE filing_date < ?)"
        if dry_run:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {child} WHERE {where}", (cutoff,)).fetchone()
            deleted[child] = int(row["n"] or 0)
        else:
            cur = conn.execute(f"DELETE FROM {child} WHERE {where}", (cutoff,))
            deleted[child] = int(cur.rowcount or 0)

    for table in FILING_TABLES:
        if dry_run:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {table} WHERE filing_date < ?", (cutoff,)).fetchone()
            deleted[table] = int(row["n"] or 0)
        else:
            cur = conn.execute(f"DELETE FROM {table} WHERE filing_date < ?", (cutoff,))
            deleted[table] = int(cur.rowcount or 0)

    if not dry_run:
        conn.commit()

    total = sum(deleted.values())
    _debug(f"cutoff={cutoff} total={total}{' (dry run)' if dry_run else ''} by_table={deleted}")
    return {"total_deleted": total, "deleted_by_table": deleted, "cutoff_date": cutoff}
