"""Reader for SEC's quarterly Form 3/4/5 data sets.

Each quarter is one ZIP of tab-separated files with a header row. Dates are
DD-MON-YYYY (e.g. 31-MAR-2024); numbers may be blank. Only the columns the store
keeps are read.
"""

from __future__ import annotations

import csv
import io
import zipfile
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from filing_sync.models import FilingRecord

SUBMISSION_FILE = "SUBMISSION.tsv"
OWNER_FILE = "REPORTINGOWNER.tsv"

# TSV fields can exceed csv's default 128 KiB limit (REMARKS, footnotes).
csv.field_size_limit(16 * 1024 * 1024)


def parse_dataset_date(raw: str | None) -> Optional[str]:
    """31-MAR-2024 -> 2024-03-31; ISO input passes through; None when unparseable."""
    s = (raw or "").strip()
    if not s:
        return None
    for fmt in ("%d-%b-%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _number(raw: str | None) -> Optional[float]:
    s = (raw or "").strip().replace(",", "")
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None


def _text(raw: str | None) -> Optional[str]:
    s = (raw or "").strip()
    return s or None


# Store table -> (TSV member, ((store column, TSV column, converter), ...)).
# The first two columns of each table are its key.
LINE_ITEM_FILES: Dict[str, Tuple[str, Tuple[Tuple[str, str, Callable[[Optional[str]], object]], ...]]] = {
    "form345_reporting_owners": (
        OWNER_FILE,
        (
            ("accession_number", "ACCESSION_NUMBER", _text),
            ("owner_cik", "RPTOWNERCIK", _text),
            ("owner_name", "RPTOWNERNAME", _text),
            ("relationship", "RPTOWNER_RELATIONSHIP", _text),
            ("title", "RPTOWNER_TITLE", _text),
        ),
    ),
    "form345_nonderiv_trans": (
        "NONDERIV_TRANS.tsv",
        (
            ("accession_number", "ACCESSION_NUMBER", _text),
            ("trans_sk", "NONDERIV_TRANS_SK", _text),
            ("security_title", "SECURITY_TITLE", _text),
            ("trans_date", "TRANS_DATE", parse_dataset_date),
            ("trans_code", "TRANS_CODE", _text),
            ("shares", "TRANS_SHARES", _number),
            ("price_per_share", "TRANS_PRICEPERSHARE", _number),
            ("acquired_disposed", "TRANS_ACQUIRED_DISP_CD", _text),
            ("shares_owned_after", "SHRS_OWND_FOLWNG_TRANS", _number),
            ("direct_indirect", "DIRECT_INDIRECT_OWNERSHIP", _text),
        ),
    ),
    "form345_deriv_trans": (
        "DERIV_TRANS.tsv",
        (
            ("accession_number", "ACCESSION_NUMBER", _text),
            ("trans_sk", "DERIV_TRANS_SK", _text),
            ("security_title", "SECURITY_TITLE", _text),
            ("conversion_price", "CONV_EXERCISE_PRICE", _number),
            ("trans_date", "TRANS_DATE", parse_dataset_date),
            ("trans_code", "TRANS_CODE", _text),
            ("shares", "TRANS_SHARES", _number),
            ("price_per_share", "TRANS_PRICEPERSHARE", _number),
            ("acquired_disposed", "TRANS_ACQUIRED_DISP_CD", _text),
            ("underlying_title", "UNDERLYING_SECURITY_TITLE", _text),
            ("underlying_shares", "UNDERLYING_SECURITY_SHARES", _number),
            ("shares_owned_after", "SHRS_OWND_FOLWNG_TRANS", _number),
            ("direct_indirect", "DIRECT_INDIRECT_OWNERSHIP", _text),
        ),
    ),
}


class Form345Dataset:
    """One quarter's data-set ZIP, read from memory."""

    def __init__(self, data: bytes):
        # zipfile.BadZipFile propagates for truncated or non-ZIP payloads.
        self._zip = zipfile.ZipFile(io.BytesIO(data))
        # Members sit at the root or under a quarter folder depending on the release.
        self._members = {name.rsplit("/", 1)[-1].upper(): name for name in self._zip.namelist()}

    def has(self, member: str) -> bool:
        return member.upper() in self._members

    def rows(self, member: str) -> Iterator[Dict[str, str]]:
        name = self._members.get(member.upper())
        if name is None:
            raise KeyError(f"{member} not in data set")
        with self._zip.open(name) as raw:
            text = io.TextIOWrapper(raw, encoding="utf-8", errors="replace", newline="")
            yield from csv.DictReader(text, delimiter="\t", quoting=csv.QUOTE_NONE)

    def submissions(self) -> Tuple[List[FilingRecord], int]:
        """Submission records with the first reporting owner as filer.

        Returns (records, rows skipped for a missing accession number or date).
        """
        owners: Dict[str, Tuple[str, Optional[str]]] = {}
        if self.has(OWNER_FILE):
            for row in self.rows(OWNER_FILE):
                acc = _text(row.get("ACCESSION_NUMBER"))
                cik = _text(row.get("RPTOWNERCIK"))
                if acc and cik and acc not in owners:
                    owners[acc] = (cik, _text(row.get("RPTOWNERNAME")))

        records: List[FilingRecord] = []
        skipped = 0
        for row in self.rows(SUBMISSION_FILE):
            acc = _text(row.get("ACCESSION_NUMBER"))
            filing_date = parse_dataset_date(row.get("FILING_DATE"))
            if not acc or not filing_date:
                skipped += 1
                continue
            issuer_cik = _text(row.get("ISSUERCIK")) or ""
            issuer_name = _text(row.get("ISSUERNAME"))
            filer_cik, filer_name = owners.get(acc, (issuer_cik, issuer_name))
            records.append(
                FilingRecord(
                    accession_number=acc,
                    form_type=_text(row.get("DOCUMENT_TYPE")) or "",
                    filing_date=filing_date,
                    issuer_cik=issuer_cik,
                    issuer_name=issuer_name,
                    filed_by_cik=filer_cik,
                    filed_by_name=filer_name,
                )
            )
        return records, skipped

    def line_items(self, table: str) -> Iterator[Tuple[object, ...]]:
        """Rows for a line-item table as tuples in its column order; rows missing a key are dropped."""
        member, columns = LINE_ITEM_FILES[table]
        if not self.has(member):
            return
        for row in self.rows(member):
            values = tuple(conv(row.get(src)) for _, src, conv in columns)
            if values[0] and values[1]:
                yield values
