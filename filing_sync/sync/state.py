from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from filing_sync.util.redact import redact
from filing_sync.util.time import utcnow, utcnow_iso


def _debug(msg: str) -> None:
    print(f"[state] {msg}")


@dataclass(frozen=True)
class SyncState:
    family: str
    last_processed_date: Optional[str]
    last_accession_number: Optional[str]
    last_run_at: Optional[str]
    last_success_at: Optional[str]
    status: str
    error_message: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "last_processed_date": self.last_processed_date,
            "last_accession_number": self.last_accession_number,
            "last_run_at": self.last_run_at,
            "last_success_at": self.last_success_at,
            "status": self.status,
            "error_message": self.error_message,
        }


class SyncStateStore:
    """Per-family watermark and run log, persisted in `sync_state`.

    The watermark (`last_processed_date`) only moves forward: `mark_complete`
    keeps the larger of the stored and the new date.
    """

    def __init__(self, conn: Any):
        self.conn = conn

    def _ensure_row(self, family: str) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_state (family, status, updated_at) VALUES (?, 'pending', ?)
            ON CONFLICT(family) DO NOTHING
            """,
            (family, utcnow_iso()),
        )

    def get(self, family: str) -> Optional[SyncState]:
        row = self.conn.execute(
            """
            SELECT family, last_processed_date, last_accession_number, last_run_at,
                   last_success_at, status, error_message
            FROM sync_state WHERE family=?
            """,
            (family,),
        ).fetchone()
        if row is None:
            return None
        return SyncState(
            family=str(row["family"]),
            last_processed_date=row["last_processed_date"],
            last_accession_number=row["last_accession_number"],
            last_run_at=row["last_run_at"],
            last_success_at=row["last_success_at"],
            status=str(row["status"]),
            error_message=row["error_message"],
        )

    def all(self) -> Dict[str, SyncState]:
        rows = self.conn.execute("SELECT family FROM sync_state ORDER BY family").fetchall()
        out: Dict[str, SyncState] = {}
        for r in rows:
            st = self.get(str(r["family"]))
            if st is not None:
                out[st.family] = st
        return out

    def watermark(self, family: str) -> Optional[str]:
        st = self.get(family)
        return st.last_processed_date if st else None

    def has_run_today(self, family: str, *, today: date | None = None) -> bool:
        """True if a run for `family` succeeded on today's (UTC) date."""
        st = self.get(family)
        if st is None or not st.last_success_at:
            return False
        d = today or utcnow().date()
        return str(st.last_success_at)[:10] == d.isoformat()

    def record_run(self, family: str, ts: str | None = None) -> None:
        now = ts or utcnow_iso()
        self._ensure_row(family)
        self.conn.execute(
            "UPDATE sync_state SET last_run_at=?, updated_at=? WHERE family=?",
            (now, utcnow_iso(), family),
        )

    def mark_started(self, family: str) -> None:
        self.record_run(family)
        self.conn.execute(
            "UPDATE sync_state SET status='running', error_message=NULL WHERE family=?",
            (family,),
        )
        self.conn.commit()

    def mark_complete(
        self,
        family: str,
        *,
        last_processed_date: Optional[str],
        last_accession_number: Optional[str] = None,
    ) -> Optional[str]:
        """Record success and advance the watermark; returns the stored watermark."""
        now = utcnow_iso()
        self._ensure_row(family)
        current = self.watermark(family)
        new = current
        if last_processed_date and (current is None or last_processed_date > current):
            new = last_processed_date
        self.conn.execute(
            """
            UPDATE sync_state
            SET status='success',
                last_processed_date=?,
                last_accession_number=COALESCE(?, last_accession_number),
                last_success_at=?,
                error_message=NULL,
                updated_at=?
            WHERE family=?
            """,
            (new, last_accession_number, now, now, family),
        )
        self.conn.commit()
        if new != current:
            _debug(f"{family}: watermark {current} -> {new}")
        return new

    def mark_failed(self, family: str, error: BaseException | str) -> None:
        self._ensure_row(family)
        self.conn.execute(
            "UPDATE sync_state SET status='failed', error_message=?, updated_at=? WHERE family=?",
            (redact(error)[:2000], utcnow_iso(), family),
        )
        self.conn.commit()
