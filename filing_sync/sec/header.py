from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional

_HEADER_RE = re.compile(r"<SEC-HEADER>(.*?)</SEC-HEADER>", re.DOTALL | re.IGNORECASE)
_KV_RE = re.compile(r"^([A-Z][A-Z0-9 \-]*?):\s*(.*)$")

# Section lines that open a party block; the keys below them belong to that party.
_SECTIONS = {
    "SUBJECT COMPANY:": "subject",
    "FILED BY:": "filer",
}


@dataclass(frozen=True)
class FilingParties:
    """Subject company and filer of one submission, read from its SEC-HEADER."""

    form_type: str
    filing_date: Optional[str]
    issuer_cik: str
    issuer_name: Optional[str]
    filed_by_cik: str
    filed_by_name: Optional[str]


def _normalize_cik(raw: str | None) -> str:
    # Headers zero-pad CIKs to 10 digits; form.idx does not.
    s = (raw or "").strip()
    if s.isdigit():
        return s.lstrip("0") or "0"
    return s


def _header_fields(text: str) -> Dict[str, str]:
    m = _HEADER_RE.search(text or "")
    if not m:
        return {}
    fields: Dict[str, str] = {}
    section = ""
    for line in m.group(1).splitlines():
        s = line.strip()
        if not s:
            continue
        if s.upper() in _SECTIONS:
            section = _SECTIONS[s.upper()]
            continue
        kv = _KV_RE.match(s)
        if not kv:
            continue
        key = kv.group(1).strip().upper()
        value = kv.group(2).strip()
        if not value:
            # A bare "COMPANY DATA:" style line opens a sub-block; keep the current party.
            continue
        # First occurrence wins: a second FILED BY block is a co-filer.
        fields.setdefault(f"{section}.{key}" if section else key, value)
    return fields


def parse_filing_parties(text: str) -> Optional[FilingParties]:
    """Issuer and filer from the SEC-HEADER of a full submission (.txt).

    Returns None when there is no header, or when it lacks the subject company or
    filer CIK. FILED AS OF DATE (YYYYMMDD) comes back as YYYY-MM-DD.
    """
    f = _header_fields(text)
    if not f:
        return None
    issuer_cik = _normalize_cik(f.get("subject.CENTRAL INDEX KEY"))
    filer_cik = _normalize_cik(f.get("filer.CENTRAL INDEX KEY"))
    if not issuer_cik or not filer_cik:
        return None

    raw_date = f.get("FILED AS OF DATE", "")
    filing_date = None
    if len(raw_date) == 8 and raw_date.isdigit():
        filing_date = f"{raw_date[:4]}-{raw_date[4:6]}-{raw_date[6:]}"

    return FilingParties(
        form_type=f.get("CONFORMED SUBMISSION TYPE", ""),
        filing_date=filing_date,
        issuer_cik=issuer_cik,
        issuer_name=f.get("subject.COMPANY CONFORMED NAME"),
        filed_by_cik=filer_cik,
        filed_by_name=f.get("filer.COMPANY CONFORMED NAME"),
    )
