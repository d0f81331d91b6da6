"""Database schema for the filing sync store.

Timestamps and filing dates are ISO-8601 TEXT (UTC, with 'Z' for timestamps) so the
same DDL works on SQLite and Postgres and comparisons like `filing_date < cutoff`
sort correctly as strings.

Submission-level tables are keyed by accession number. Line-item tables (the
Form 3/4/5 data sets) point at their parent submission's accession number.

The Postgres DDL is derived from the SQLite DDL (pragmas dropped, REAL rewritten).
"""

from __future__ import annotations

import re
from typing import Dict, List


SCHEMA_SQLITE = r"""
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);

-- 13F: one row per submission (from the form index).
CREATE TABLE IF NOT EXISTS submissions_13f (
    accession_number TEXT PRIMARY KEY,
    form_type TEXT NOT NULL,
    filing_date TEXT NOT NULL,
    issuer_cik TEXT NOT NULL,
    issuer_name TEXT,
    filed_by_cik TEXT NOT NULL,
    filed_by_name TEXT,
    inserted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sub13f_filing_date ON submissions_13f (filing_date);
CREATE INDEX IF NOT EXISTS idx_sub13f_filer ON submissions_13f (filed_by_cik);

-- Schedule 13D/13G
CREATE TABLE IF NOT EXISTS filings_13dg (
    accession_number TEXT PRIMARY KEY,
    form_type TEXT NOT NULL,
    filing_date TEXT NOT NULL,
    issuer_cik TEXT NOT NULL,
    issuer_name TEXT,
    filed_by_cik TEXT NOT NULL,
    filed_by_name TEXT,
    inserted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_13dg_filing_date ON filings_13dg (filing_date);
CREATE INDEX IF NOT EXISTS idx_13dg_issuer ON filings_13dg (issuer_cik);

-- Forms 3/4/5
CREATE TABLE IF NOT EXISTS form345_submissions (
    accession_number TEXT PRIMARY KEY,
    form_type TEXT NOT NULL,
    filing_date TEXT NOT NULL,
    issuer_cik TEXT NOT NULL,
    issuer_name TEXT,
    filed_by_cik TEXT NOT NULL,
    filed_by_name TEXT,
    inserted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_f345_filing_date ON form345_submissions (filing_date);
CREATE INDEX IF NOT EXISTS idx_f345_issuer ON form345_submissions (issuer_cik);

-- Line items from the quarterly Form 3/4/5 data sets, keyed as the data sets key them.
CREATE TABLE IF NOT EXISTS form345_reporting_owners (
    accession_number TEXT NOT NULL,
    owner_cik TEXT NOT NULL,
    owner_name TEXT,
    relationship TEXT,
    title TEXT,
    PRIMARY KEY (accession_number, owner_cik)
);
CREATE INDEX IF NOT EXISTS idx_f345_owner_cik ON form345_reporting_owners (owner_cik);

CREATE TABLE IF NOT EXISTS form345_nonderiv_trans (
    accession_number TEXT NOT NULL,
    trans_sk TEXT NOT NULL,
    security_title TEXT,
    trans_date TEXT,
    trans_code TEXT,
    shares REAL,
    price_per_share REAL,
    acquired_disposed TEXT,
    shares_owned_after REAL,
    direct_indirect TEXT,
    PRIMARY KEY (accession_number, trans_sk)
);

CREATE TABLE IF NOT EXISTS form345_deriv_trans (
    accession_number TEXT NOT NULL,
    trans_sk TEXT NOT NULL,
    security_title TEXT,
    conversion_price REAL,
    trans_date TEXT,
    trans_code TEXT,
    shares REAL,
    price_per_share REAL,
    acquired_disposed TEXT,
    underlying_title TEXT,
    underlying_shares REAL,
    shares_owned_after REAL,
    direct_indirect TEXT,
    PRIMARY KEY (accession_number, trans_sk)
);

-- Per-family sync watermark + run log
CREATE TABLE IF NOT EXISTS sync_state (
    family TEXT PRIMARY KEY,
    last_processed_date TEXT,
    last_accession_number TEXT,
    last_run_at TEXT,
    last_success_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','running','success','failed')),
    error_message TEXT,
    updated_at TEXT NOT NULL
);

-- Run-level mutual exclusion across processes (lease with expiry)
CREATE TABLE IF NOT EXISTS sync_locks (
    family TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


# Submission tables merged by accession number, per form family.
FAMILY_TABLES: Dict[str, str] = {
    "13F": "submissions_13f",
    "13DG": "filings_13dg",
    "345": "form345_submissions",
}

# Line-item tables and the submission table that owns them.
CHILD_TABLES: Dict[str, str] = {
    "form345_reporting_owners": "form345_submissions",
    "form345_nonderiv_trans": "form345_submissions",
    "form345_deriv_trans": "form345_submissions",
}

FILING_TABLES: List[str] = list(FAMILY_TABLES.values())


_POSTGRES_REWRITES = (
    (re.compile(r"\bREAL\b"), "DOUBLE PRECISION"),
)


def _sqlite_to_postgres(ddl: str) -> str:
    out = "\n".join(ln for ln in ddl.splitlines() if not ln.lstrip().upper().startswith("PRAGMA"))
    for pattern, repl in _POSTGRES_REWRITES:
        out = pattern.sub(repl, out)
    return out


SCHEMA_POSTGRES = _sqlite_to_postgres(SCHEMA_SQLITE)


def get_schema_sql(dialect: str) -> str:
    return SCHEMA_POSTGRES if dialect == "postgres" else SCHEMA_SQLITE


def assert_filing_table(table: str) -> str:
    """Table names are interpolated into SQL; only known filing tables pass."""
    if table not in FILING_TABLES and table not in CHILD_TABLES:
        raise ValueError(f"unknown filing table: {table!r}")
    return table
