from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence

from filing_sync.db import batch_transaction, savepoint
from filing_sync.errors import RecordInsertError
from filing_sync.models import FilingRecord
from filing_sync.schema import FAMILY_TABLES, assert_filing_table
from filing_sync.util.redact import redact
from filing_sync.util.time import utcnow_iso

# Batches are bounded so a transaction stays small and progress is visible.
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 500
DEFAULT_BATCH_SIZE = 100

# Errors kept in a MergeResult; counts are always exact.
_MAX_ERRORS_KEPT = 20


def _debug(msg: str) -> None:
    print(f"[merge] {redact(msg)}")


@dataclass
class MergeResult:
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    batches: int = 0
    latest_inserted_date: Optional[str] = None
    stopped_early: bool = False
    # Earliest filing date among records lost to a rolled-back batch.
    earliest_rolled_back_date: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Records that reached the store (new or already present)."""
        return self.inserted + self.duplicates

    def _note_error(self, msg: str) -> None:
        self.failed += 1
        if len(self.errors) < _MAX_ERRORS_KEPT:
            self.errors.append(msg)

    def _note_inserted(self, filing_date: str) -> None:
        self.inserted += 1
        if self.latest_inserted_date is None or filing_date > self.latest_inserted_date:
            self.latest_inserted_date = filing_date

    def absorb(self, other: "MergeResult") -> None:
        self.inserted += other.inserted
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.batches += other.batches
        self.stopped_early = self.stopped_early or other.stopped_early
        if other.earliest_rolled_back_date and (
            self.earliest_rolled_back_date is None
            or other.earliest_rolled_back_date < self.earliest_rolled_back_date
        ):
            self.earliest_rolled_back_date = other.earliest_rolled_back_date
        if other.latest_inserted_date and (
            self.latest_inserted_date is None or other.latest_inserted_date > self.latest_inserted_date
        ):
            self.latest_inserted_date = other.latest_inserted_date
        for e in other.errors:
            if len(self.errors) < _MAX_ERRORS_KEPT:
                self.errors.append(e)


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def clamp_batch_size(batch_size: int | None) -> int:
    n = int(batch_size or DEFAULT_BATCH_SIZE)
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, n))


def _check_record(rec: FilingRecord) -> None:
    problems = rec.problems()
    if problems:
        raise RecordInsertError("; ".join(problems), accession_number=rec.accession_number)


def insert_if_absent(conn: Any, table: str, rec: FilingRecord, *, inserted_at: str) -> bool:
    """Insert one filing unless its accession number is already stored.

    Returns True when a row was written, False when it was already present.
    A single statement, so concurrent writers cannot both insert the same key.
    """
    cur = conn.execute(
        f"""
        INSERT INTO {table} (
            accession_number, form_type, filing_date,
            issuer_cik, issuer_name, filed_by_cik, filed_by_name, inserted_at
        ) VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(accession_number) DO NOTHING
        """,
        (
            rec.accession_number.strip(),
            rec.form_type.strip().upper(),
            rec.filing_date,
            rec.issuer_cik.strip(),
            rec.issuer_name,
            rec.filed_by_cik.strip(),
            rec.filed_by_name,
            inserted_at,
        ),
    )
    return int(cur.rowcount or 0) > 0


def existing_accessions(conn: Any, table: str, accessions: Sequence[str]) -> set[str]:
    if not accessions:
        return set()
    placeholders = ",".join(["?"] * len(accessions))
    rows = conn.execute(
        f"SELECT accession_number FROM {table} WHERE accession_number IN ({placeholders})",
        tuple(accessions),
    ).fetchall()
    return {str(r["accession_number"]) for r in rows}


def _merge_batch(conn: Any, table: str, batch: Sequence[FilingRecord]) -> MergeResult:
    res = MergeResult(batches=1)
    now = utcnow_iso()
    pending_dates: List[str] = []
    try:
        with batch_transaction(conn):
            for rec in batch:
                try:
                    _check_record(rec)
                    with savepoint(conn, "merge_record"):
                        if insert_if_absent(conn, table, rec, inserted_at=now):
                            pending_dates.append(rec.filing_date)
                        else:
                            res.duplicates += 1
                except Exception as e:
                    res._note_error(f"{rec.accession_number}: {e}")
    except Exception as e:
        # Commit failed: nothing from this batch is stored. Earlier batches stay committed.
        _debug(f"{table}: batch of {len(batch)} rolled back: {e}")
        return MergeResult(
            batches=1,
            failed=len(batch),
            errors=[f"batch rolled back: {e}"],
            earliest_rolled_back_date=min((str(r.filing_date) for r in batch), default=None),
        )

    for d in pending_dates:
        res._note_inserted(d)
    return res


def _dry_run_batch(conn: Any, table: str, batch: Sequence[FilingRecord]) -> MergeResult:
    res = MergeResult(batches=1)
    valid: List[FilingRecord] = []
    for rec in batch:
        try:
            _check_record(rec)
            valid.append(rec)
        except RecordInsertError as e:
            res._note_error(f"{rec.accession_number}: {e}")

    present = existing_accessions(conn, table, [r.accession_number.strip() for r in valid])
    seen: set[str] = set()
    for rec in valid:
        acc = rec.accession_number.strip()
        if acc in present or acc in seen:
            res.duplicates += 1
        else:
            seen.add(acc)
            res._note_inserted(rec.filing_date)
    return res


def merge_filings(
    conn: Any,
    table: str,
    records: Sequence[FilingRecord],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    dry_run: bool = False,
    should_continue: Optional[Callable[[], bool]] = None,
) -> MergeResult:
    """Insert the records whose accession number is not yet in `table`.

    - One transaction per batch; a failed batch does not undo earlier ones.
    - Each record runs inside a savepoint, so one bad record is counted as
      failed without aborting its batch.
    - Re-running with the same records inserts nothing (duplicates are no-ops).
    - `should_continue` is polled before every batch, never mid-transaction.
    - dry_run only reads: it reports what would be inserted.
    """
    if table not in FAMILY_TABLES.values():
        assert_filing_table(table)
        raise ValueError(f"{table} is a line-item table; merge targets submission tables")

    size = clamp_batch_size(batch_size)
    total = MergeResult()
    for batch in chunked(list(records), size):
        if should_continue is not None and not should_continue():
            total.stopped_early = True
            _debug(f"{table}: stopping before next batch ({total.batches} batches done)")
            break
        if dry_run:
            total.absorb(_dry_run_batch(conn, table, batch))
        else:
            total.absorb(_merge_batch(conn, table, batch))

    _debug(
        f"{table}: inserted={total.inserted} duplicates={total.duplicates} "
        f"failed={total.failed} batches={total.batches}{' (dry run)' if dry_run else ''}"
    )
    return total
