from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from filing_sync.util.time import parse_iso_date

_ACCESSION_RE = re.compile(r"^\d{10}-\d{2}-\d{6}$")


@dataclass(frozen=True)
class FilingRecord:
    """One filing moved through the pipeline; `accession_number` is the natural key."""

    accession_number: str
    form_type: str
    filing_date: str
    issuer_cik: str
    issuer_name: str | None
    filed_by_cik: str
    filed_by_name: str | None

    def problems(self) -> list[str]:
        """Reasons this record cannot be stored (empty when it is valid)."""
        out: list[str] = []
        if not _ACCESSION_RE.match(str(self.accession_number or "")):
            out.append(f"bad accession_number {self.accession_number!r}")
        if not (self.form_type or "").strip():
            out.append("missing form_type")
        if parse_iso_date(self.filing_date) is None or len(str(self.filing_date)) != 10:
            out.append(f"bad filing_date {self.filing_date!r}")
        if not (self.issuer_cik or "").strip():
            out.append("missing issuer_cik")
        if not (self.filed_by_cik or "").strip():
            out.append("missing filed_by_cik")
        return out


@dataclass(frozen=True)
class FormFamily:
    """A group of form types synced together under one watermark into one table."""

    key: str
    label: str
    table: str
    form_types: FrozenSet[str]
    # form.idx lists these filings once per party; issuer and filer come from the submission header.
    parties_from_header: bool = False
    # SEC publishes quarterly data sets (owners, transactions) for this family.
    has_datasets: bool = False

    def matches(self, form_type: str | None) -> bool:
        return (form_type or "").strip().upper() in self.form_types


FORM_13F = FormFamily(
    key="13F",
    label="13F",
    table="submissions_13f",
    form_types=frozenset({"13F-HR", "13F-HR/A", "13F-NT", "13F-NT/A"}),
)

# The form index uses both the legacy "SC" prefix and the full "SCHEDULE" spelling.
FORM_13DG = FormFamily(
    key="13DG",
    label="13D/13G",
    table="filings_13dg",
    form_types=frozenset(
        {
            "SC 13D", "SC 13D/A", "SC 13G", "SC 13G/A",
            "SCHEDULE 13D", "SCHEDULE 13D/A", "SCHEDULE 13G", "SCHEDULE 13G/A",
        }
    ),
    parties_from_header=True,
)

FORM_345 = FormFamily(
    key="345",
    label="Form 3/4/5",
    table="form345_submissions",
    form_types=frozenset({"3", "3/A", "4", "4/A", "5", "5/A"}),
    has_datasets=True,
)

FAMILIES: Dict[str, FormFamily] = {f.key: f for f in (FORM_13F, FORM_13DG, FORM_345)}


def parse_families(raw: str | None, default: Tuple[str, ...] = ("13F", "13DG")) -> Tuple[FormFamily, ...]:
    """Parse a comma-separated family list ("13F,13DG"); unknown names are dropped.

    "13D/G", "13D", "13G" all mean the 13DG family; "FORM345" / "3/4/5" mean 345.
    """
    aliases = {"13D/G": "13DG", "13D": "13DG", "13G": "13DG", "FORM345": "345", "3/4/5": "345"}
    names = default if raw is None else tuple(p.strip().upper() for p in raw.split(",") if p.strip())
    out: list[FormFamily] = []
    for name in names:
        fam = FAMILIES.get(aliases.get(name, name))
        if fam is not None and fam not in out:
            out.append(fam)
    return tuple(out)
