from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from filing_sync.db import batch_transaction, get_app_config, table_count, upsert_app_config
from filing_sync.models import FORM_345, FilingRecord
from filing_sync.sec.datasets import LINE_ITEM_FILES, SUBMISSION_FILE, Form345Dataset
from filing_sync.sync.merge import chunked, clamp_batch_size
from filing_sync.sync.quarters import Quarter
from filing_sync.util.redact import redact
from filing_sync.util.time import utcnow_iso

PROGRESS_KEY_PREFIX = "form345_dataset:"


def _debug(msg: str) -> None:
    print(f"[form345] {redact(msg)}")


@dataclass
class DatasetOutcome:
    quarter: str
    status: str = "pending"  # loaded|already_loaded|skipped|failed|planned|not_started
    new_rows: Dict[str, int] = field(default_factory=dict)
    failed: int = 0
    error: Optional[str] = None

    @property
    def total_new_rows(self) -> int:
        return sum(self.new_rows.values())

    def as_dict(self) -> Dict[str, Any]:
        d = dict(self.__dict__)
        d["total_new_rows"] = self.total_new_rows
        return d


def progress_key(q: Quarter) -> str:
    return f"{PROGRESS_KEY_PREFIX}{q}"


def dataset_progress(conn: Any, q: Quarter) -> Optional[Dict[str, Any]]:
    """What an earlier run recorded for this quarter's data set, or None."""
    raw = get_app_config(conn, progress_key(q))
    return json.loads(raw) if raw else None


def loaded_dataset_quarters(conn: Any) -> List[str]:
    rows = conn.execute(
        "SELECT key FROM app_config WHERE key LIKE ? ORDER BY key",
        (f"{PROGRESS_KEY_PREFIX}%",),
    ).fetchall()
    return [str(r["key"])[len(PROGRESS_KEY_PREFIX):] for r in rows]


def _upsert_submissions(conn: Any, records: Sequence[FilingRecord], inserted_at: str) -> None:
    # Index-derived rows carry one party for both roles; the data set knows the issuer.
    conn.executemany(
        f"""
        INSERT INTO {FORM_345.table} (
            accession_number, form_type, filing_date,
            issuer_cik, issuer_name, filed_by_cik, filed_by_name, inserted_at
        ) VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(accession_number) DO UPDATE SET
            issuer_cik=excluded.issuer_cik, issuer_name=excluded.issuer_name,
            filed_by_cik=excluded.filed_by_cik, filed_by_name=excluded.filed_by_name
        """,
        [
            (
                r.accession_number.strip(),
                r.form_type.strip().upper(),
                r.filing_date,
                r.issuer_cik.strip(),
                r.issuer_name,
                r.filed_by_cik.strip(),
                r.filed_by_name,
                inserted_at,
            )
            for r in records
        ],
    )


def _insert_line_items(conn: Any, table: str, rows: Sequence[Sequence[Any]]) -> None:
    _, columns = LINE_ITEM_FILES[table]
    names = ", ".join(c for c, _, _ in columns)
    marks = ",".join(["?"] * len(columns))
    conn.executemany(
        f"INSERT INTO {table} ({names}) VALUES ({marks}) "
        f"ON CONFLICT(accession_number, {columns[1][0]}) DO NOTHING",
        rows,
    )


def load_form345_dataset(
    conn: Any,
    data: bytes,
    *,
    quarter: Quarter,
    batch_size: int = 500,
) -> DatasetOutcome:
    """Load one quarter's data set into the Form 3/4/5 tables and record its progress.

    Submissions are upserted (the data set's issuer and reporting owner replace the
    single party an index row carries). Line items are inserted once per key and
    only for submissions in the same data set. Each batch is its own transaction;
    invalid submissions are counted in `failed` and their line items dropped.
    Raises on a malformed ZIP or a missing SUBMISSION.tsv.
    """
    out = DatasetOutcome(quarter=str(quarter))
    ds = Form345Dataset(data)
    if not ds.has(SUBMISSION_FILE):
        raise ValueError(f"{quarter}: {SUBMISSION_FILE} missing from data set")

    size = clamp_batch_size(batch_size)
    now = utcnow_iso()

    records, skipped = ds.submissions()
    valid = [r for r in records if not r.problems()]
    out.failed = skipped + len(records) - len(valid)
    accessions = {r.accession_number.strip() for r in valid}

    before = table_count(conn, FORM_345.table)
    for batch in chunked(valid, size):
        with batch_transaction(conn):
            _upsert_submissions(conn, batch, now)
    out.new_rows[FORM_345.table] = table_count(conn, FORM_345.table) - before

    for table in LINE_ITEM_FILES:
        rows = [r for r in ds.line_items(table) if r[0] in accessions]
        before = table_count(conn, table)
        for batch in chunked(rows, size):
            with batch_transaction(conn):
                _insert_line_items(conn, table, batch)
        out.new_rows[table] = table_count(conn, table) - before

    upsert_app_config(
        conn,
        progress_key(quarter),
        json.dumps({"loaded_at": now, "new_rows": out.new_rows, "failed": out.failed}),
    )
    conn.commit()
    out.status = "loaded"
    _debug(f"{quarter}: new_rows={out.new_rows} failed={out.failed}")
    return out


def dataset_quarters(planned: List[Quarter], current: Quarter, *, only: Optional[Quarter] = None) -> List[Quarter]:
    """Ended quarters whose data set a run should load, ascending.

    A single-quarter backfill loads just that quarter. Otherwise the ended quarters
    of the plan plus the previous quarter, whose data set appears some days after
    it ends and may have been missing on earlier runs.
    """
    if only is not None:
        return [only] if only < current else []
    return sorted({q for q in planned if q < current} | {current.previous()})
