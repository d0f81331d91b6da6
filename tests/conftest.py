from __future__ import annotations

import io
import zipfile
from datetime import date
from typing import Dict, List, Tuple, Union

import pytest

from filing_sync.config import Config
from filing_sync.db import connect, init_db
from filing_sync.errors import QuarterNotYetPublished
from filing_sync.sec.client import FormIndexEntry
from filing_sync.sec.header import FilingParties

TODAY = date(2024, 5, 15)  # 2024-Q2


def make_entry(n: int, form_type: str = "13F-HR", date_filed: str = "2024-05-01", cik: str = "1067983") -> FormIndexEntry:
    """Index row whose accession number is derived from `n`."""
    acc = f"{int(cik):010d}-24-{n:06d}"
    return FormIndexEntry(
        form_type=form_type,
        company_name=f"FILER {cik}",
        cik=cik,
        date_filed=date_filed,
        file_name=f"edgar/data/{cik}/{acc}.txt",
    )


class FakeFetcher:
    """Serves canned form-index entries, submission parties and data sets (or raises canned errors).

    Without canned parties a submission's issuer and filer are the index row's CIK.
    Without a canned data set the quarter's data set is not published.
    """

    def __init__(
        self,
        quarters: Dict[Tuple[int, int], Union[List[FormIndexEntry], Exception]] | None = None,
        *,
        parties: Dict[str, Union[FilingParties, Exception]] | None = None,
        datasets: Dict[Tuple[int, int], Union[bytes, Exception]] | None = None,
    ):
        self.quarters = dict(quarters or {})
        self.parties = dict(parties or {})
        self.datasets = dict(datasets or {})
        self.calls: List[Tuple[int, int]] = []
        self.header_calls: List[str] = []
        self.dataset_calls: List[Tuple[int, int]] = []

    def fetch_form_index(self, year: int, quarter: int) -> List[FormIndexEntry]:
        self.calls.append((year, quarter))
        got = self.quarters.get((year, quarter), [])
        if isinstance(got, Exception):
            raise got
        return list(got)

    def fetch_filing_parties(self, entry: FormIndexEntry) -> FilingParties:
        self.header_calls.append(entry.accession_number)
        got = self.parties.get(entry.accession_number)
        if isinstance(got, Exception):
            raise got
        if got is None:
            got = FilingParties(
                form_type=entry.form_type,
                filing_date=entry.date_filed,
                issuer_cik=entry.cik,
                issuer_name=entry.company_name,
                filed_by_cik=entry.cik,
                filed_by_name=entry.company_name,
            )
        return got

    def fetch_form345_dataset(self, year: int, quarter: int) -> bytes:
        self.dataset_calls.append((year, quarter))
        got = self.datasets.get((year, quarter))
        if isinstance(got, Exception):
            raise got
        if got is None:
            raise QuarterNotYetPublished(f"{year}-Q{quarter} data set not published", status=404)
        return got


def tsv(header: str, *rows: str) -> str:
    return "\n".join([header, *rows]) + "\n"


def make_dataset(files: Dict[str, str], folder: str = "") -> bytes:
    """In-memory Form 3/4/5 data-set ZIP from {member name: TSV text}."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(f"{folder}{name}", text)
    return buf.getvalue()


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(
        DB_DSN=str(tmp_path / "sync.sqlite"),
        SEC_USER_AGENT="filing-sync tests test@example.com",
        SEC_MIN_INTERVAL_SECONDS=0,
        SYNC_DEFAULT_FORMS=("13F", "13DG"),
        SYNC_BATCH_SIZE=100,
        SYNC_DEFAULT_LOOKBACK_DAYS=7,
        SYNC_DEADLINE_SECONDS=300,
        RETENTION_YEARS=3,
        CRON_SECRET="test-cron-secret",
        TRUST_SCHEDULER_HEADER=False,
        TRUST_PROXY_HEADERS=False,
        CORS_ALLOW_ORIGINS="",
    )


@pytest.fixture
def db(cfg):
    init_db(cfg.DB_DSN)
    with connect(cfg.DB_DSN) as conn:
        yield conn


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()
