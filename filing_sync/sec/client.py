from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, List, Optional

import requests

from filing_sync.config import Config
from filing_sync.errors import QuarterNotYetPublished, SubmissionUnavailable, TransientFetchError
from filing_sync.models import FilingRecord
from filing_sync.sec.header import FilingParties, parse_filing_parties
from filing_sync.sync.quarters import Quarter, quarter_of


@dataclass(frozen=True)
class FormIndexEntry:
    """One row of EDGAR's quarterly form.idx."""

    form_type: str
    company_name: str
    cik: str
    date_filed: str
    file_name: str

    @property
    def accession_number(self) -> str:
        return accession_from_filename(self.file_name)

    def to_record(self) -> FilingRecord:
        # The form index carries one entity per row; it is both subject and filer here.
        return FilingRecord(
            accession_number=self.accession_number,
            form_type=self.form_type,
            filing_date=self.date_filed,
            issuer_cik=self.cik,
            issuer_name=self.company_name,
            filed_by_cik=self.cik,
            filed_by_name=self.company_name,
        )


def _debug(msg: str) -> None:
    print(f"[sec] {msg}")


def accession_from_filename(file_name: str) -> str:
    """edgar/data/1234/0001234567-24-000001.txt -> 0001234567-24-000001"""
    base = str(file_name or "").strip().split("/")[-1]
    if base.lower().endswith(".txt"):
        base = base[: -len(".txt")]
    return base


# Right-anchored: CIK, date and file name never contain spaces; company names may.
_ROW_RE = re.compile(r"^(?P<left>.+?)\s+(?P<cik>\d+)\s+(?P<date>\d{4}-\d{2}-\d{2})\s+(?P<file>\S+)$")


def parse_form_index(text: str) -> List[FormIndexEntry]:
    """Parse form.idx text.

    The header ends at a line of dashes. Data rows are nominally fixed-width
    (form 12, company 62, CIK 12, date 12, file name) but long company names
    overflow their column, so CIK, date and file name are matched from the
    right and form type / company are split on the first run of 2+ spaces.
    Rows that do not fit that shape are skipped.
    """
    lines = (text or "").splitlines()
    start = 0
    for i, line in enumerate(lines):
        if line.startswith("---"):
            start = i + 1
            break

    out: List[FormIndexEntry] = []
    for line in lines[start:]:
        m = _ROW_RE.match(line.strip())
        if not m:
            continue
        left = re.split(r"\s{2,}", m.group("left").strip(), maxsplit=1)
        if len(left) != 2:
            continue
        out.append(
            FormIndexEntry(
                form_type=left[0].strip(),
                company_name=left[1].strip(),
                cik=m.group("cik"),
                date_filed=m.group("date"),
                file_name=m.group("file"),
            )
        )
    return out


def _retry_after_seconds(resp: Any, default: float) -> float:
    raw = (getattr(resp, "headers", None) or {}).get("Retry-After")
    try:
        return float(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default


class FormIndexClient:
    """Fetches EDGAR quarterly form indexes, submission headers and Form 3/4/5 data sets.

    Failures are typed: a quarter whose index does not exist yet raises
    QuarterNotYetPublished, a missing submission raises SubmissionUnavailable,
    and anything else that stops the fetch raises TransientFetchError so the
    caller can report it instead of skipping silently.
    """

    # EDGAR answers 403 as well as 404 for index paths that do not exist yet.
    NOT_PUBLISHED_STATUSES = (403, 404)
    THROTTLED_STATUSES = (429, 503)

    def __init__(
        self,
        *,
        user_agent: str,
        base_url: str = "https://www.sec.gov",
        min_interval_seconds: float | None = 0.12,
        timeout_seconds: float = 60,
        max_retries: int = 2,
        max_retry_wait_seconds: float = 30,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.user_agent = user_agent
        self.base_url = base_url.rstrip("/")
        self.min_interval_seconds = min_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))
        self.max_retry_wait_seconds = max_retry_wait_seconds
        self._session = session or requests.Session()
        self._sleep = sleep
        self._today = today
        # Per-client polite throttling for SEC endpoints.
        self._last_request_mono = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> "FormIndexClient":
        return cls(
            user_agent=cfg.SEC_USER_AGENT,
            base_url=cfg.SEC_BASE_URL,
            min_interval_seconds=cfg.SEC_MIN_INTERVAL_SECONDS,
            timeout_seconds=cfg.SEC_TIMEOUT_SECONDS,
            max_retries=cfg.SEC_MAX_RETRIES,
            max_retry_wait_seconds=cfg.SEC_MAX_RETRY_WAIT_SECONDS,
        )

    def form_index_url(self, year: int, quarter: int) -> str:
        return f"{self.base_url}/Archives/edgar/full-index/{int(year)}/QTR{int(quarter)}/form.idx"

    def submission_url(self, file_name: str) -> str:
        """Full submission text; form.idx rows carry its path under /Archives."""
        return f"{self.base_url}/Archives/{str(file_name).lstrip('/')}"

    def form345_dataset_url(self, year: int, quarter: int) -> str:
        return f"{self.base_url}/files/structureddata/data/form-345-data-sets/{int(year)}q{int(quarter)}_form345.zip"

    def _throttle(self) -> None:
        if not self.min_interval_seconds or self.min_interval_seconds <= 0:
            return
        with self._lock:
            now = time.monotonic()
            dt = now - self._last_request_mono
            if dt < self.min_interval_seconds:
                self._sleep(self.min_interval_seconds - dt)
            self._last_request_mono = time.monotonic()

    def _get(self, url: str, *, accept: str = "text/plain, */*", missing: type = QuarterNotYetPublished) -> Any:
        """GET with throttling and bounded retries on 429/503; typed errors otherwise."""
        attempt = 0
        while True:
            _debug(f"GET {url}")
            self._throttle()
            try:
                r = self._session.get(
                    url,
                    headers={"User-Agent": self.user_agent, "Accept": accept},
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as e:
                raise TransientFetchError(f"SEC request failed: {e}", url=url) from e

            if r.status_code == 200:
                return r
            if r.status_code in self.NOT_PUBLISHED_STATUSES:
                raise missing(f"not found ({r.status_code}): {url}", url=url, status=r.status_code)
            if r.status_code in self.THROTTLED_STATUSES and attempt < self.max_retries:
                wait = min(self.max_retry_wait_seconds, _retry_after_seconds(r, 2.0 ** attempt))
                attempt += 1
                _debug(f"SEC throttled ({r.status_code}); retry {attempt}/{self.max_retries} in {wait:.1f}s")
                self._sleep(wait)
                continue
            raise TransientFetchError(
                f"SEC request failed {r.status_code}: {(r.text or '')[:200]}",
                url=url,
                status=r.status_code,
            )

    def get_text(self, url: str) -> str:
        return self._get(url).text

    def fetch_form_index(self, year: int, quarter: int) -> List[FormIndexEntry]:
        q = Quarter(int(year), int(quarter))
        if q > quarter_of(self._today()):
            raise QuarterNotYetPublished(f"{q} has not started yet")
        entries = parse_form_index(self.get_text(self.form_index_url(q.year, q.quarter)))
        _debug(f"{q}: {len(entries)} index entries")
        return entries

    def fetch_filing_parties(self, entry: FormIndexEntry) -> FilingParties:
        """Subject company and filer of one submission, from its SEC-HEADER.

        SubmissionUnavailable when the document is missing or has no usable header.
        """
        url = self.submission_url(entry.file_name)
        parties = parse_filing_parties(self._get(url, missing=SubmissionUnavailable).text)
        if parties is None:
            raise SubmissionUnavailable(f"no subject/filer in SEC-HEADER: {url}", url=url)
        return parties

    def fetch_form345_dataset(self, year: int, quarter: int) -> bytes:
        """Raw ZIP of one quarter's Form 3/4/5 data set.

        SEC publishes it some days after the quarter ends; until then (and for the
        running quarter) QuarterNotYetPublished is raised.
        """
        q = Quarter(int(year), int(quarter))
        if q >= quarter_of(self._today()):
            raise QuarterNotYetPublished(f"{q} data set is published after the quarter ends")
        r = self._get(self.form345_dataset_url(q.year, q.quarter), accept="application/zip, */*")
        _debug(f"{q}: form 3/4/5 data set {len(r.content)} bytes")
        return r.content
