from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from filing_sync.config import Config
from filing_sync.db import upsert_app_config
from filing_sync.errors import (
    QuarterNotYetPublished,
    SubmissionUnavailable,
    SyncAlreadyRunning,
    TransientFetchError,
)
from filing_sync.models import FORM_13DG, FORM_13F, FilingRecord, FormFamily
from filing_sync.sec.header import FilingParties
from filing_sync.sync.form345 import DatasetOutcome, dataset_progress, dataset_quarters, load_form345_dataset
from filing_sync.sync.locks import SyncLockManager
from filing_sync.sync.merge import MergeResult, chunked, existing_accessions, merge_filings
from filing_sync.sync.prune import prune_old_filings
from filing_sync.sync.quarters import Quarter, plan_quarters, plan_since, quarter_of
from filing_sync.sync.state import SyncStateStore
from filing_sync.util.redact import redact
from filing_sync.util.time import parse_iso_date, utcnow_iso


def _debug(msg: str) -> None:
    print(f"[sync] {redact(msg)}")


class IndexEntry(Protocol):
    form_type: str
    date_filed: str
    file_name: str

    @property
    def accession_number(self) -> str: ...

    def to_record(self) -> FilingRecord: ...


class FormIndexFetcher(Protocol):
    def fetch_form_index(self, year: int, quarter: int) -> Sequence[IndexEntry]: ...

    def fetch_filing_parties(self, entry: Any) -> FilingParties: ...

    def fetch_form345_dataset(self, year: int, quarter: int) -> bytes: ...


class SyncPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    FETCHING_QUARTER = "fetching_quarter"
    SKIPPED_QUARTER = "skipped_quarter"
    FILTERING_RECORDS = "filtering_records"
    RESOLVING_PARTIES = "resolving_parties"
    MERGING_BATCH = "merging_batch"
    ADVANCING_WATERMARK = "advancing_watermark"
    LOADING_DATASETS = "loading_datasets"
    PRUNING = "pruning"
    COMPLETED = "completed"
    FAILED = "failed"


LAST_RUN_KEY = "last_sync_summary"

_P = SyncPhase

# FAILED is reachable from every phase and is not listed.
TRANSITIONS: Dict[SyncPhase, Tuple[SyncPhase, ...]] = {
    _P.IDLE: (_P.PLANNING, _P.COMPLETED),
    _P.PLANNING: (_P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.FETCHING_QUARTER: (_P.FILTERING_RECORDS, _P.SKIPPED_QUARTER, _P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.SKIPPED_QUARTER: (_P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.FILTERING_RECORDS: (_P.RESOLVING_PARTIES, _P.MERGING_BATCH, _P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.RESOLVING_PARTIES: (_P.MERGING_BATCH, _P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.MERGING_BATCH: (_P.FETCHING_QUARTER, _P.ADVANCING_WATERMARK),
    _P.ADVANCING_WATERMARK: (_P.LOADING_DATASETS, _P.COMPLETED),
    _P.LOADING_DATASETS: (_P.COMPLETED,),
    _P.COMPLETED: (),
    _P.FAILED: (),
}


@dataclass
class SyncOptions:
    forms: Tuple[FormFamily, ...] = (FORM_13F, FORM_13DG)
    force: bool = False
    dry_run: bool = False
    # Plan from this quarter instead of the watermark's quarter.
    start: Optional[Quarter] = None
    # Re-sync exactly this quarter; the watermark filter is not applied (backfill).
    quarter: Optional[Quarter] = None
    current_only: bool = False
    deadline_seconds: Optional[float] = None
    cancel_event: Optional[threading.Event] = None


@dataclass
class QuarterOutcome:
    quarter: str
    status: str = "pending"  # synced|skipped|failed|not_started
    entries: int = 0
    matched: int = 0
    new: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class FamilyResult:
    family: str
    processed: int = 0
    failed: int = 0
    skipped: bool = False
    message: Optional[str] = None
    inserted: int = 0
    duplicates: int = 0
    # SEC requests that failed transiently (index, submission header, data set); retried next run.
    fetch_errors: int = 0
    latest_date: Optional[str] = None
    watermark_before: Optional[str] = None
    watermark_after: Optional[str] = None
    status: str = SyncPhase.IDLE.value
    partial: bool = False
    quarters: List[QuarterOutcome] = field(default_factory=list)
    datasets: List[DatasetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == SyncPhase.COMPLETED.value and not self.skipped

    def as_dict(self) -> Dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k not in ("quarters", "datasets")}
        d["quarters"] = [q.as_dict() for q in self.quarters]
        d["datasets"] = [ds.as_dict() for ds in self.datasets]
        return d


@dataclass
class SyncRunSummary:
    started_at: str
    completed_at: Optional[str] = None
    dry_run: bool = False
    force: bool = False
    families: Dict[str, FamilyResult] = field(default_factory=dict)
    pruned: Optional[Dict[str, Any]] = None
    prune_error: Optional[str] = None

    @property
    def fetch_errors(self) -> int:
        return sum(r.fetch_errors for r in self.families.values())

    @property
    def success(self) -> bool:
        """False when a family failed or any SEC fetch failed."""
        if self.fetch_errors:
            return False
        return all(r.status != SyncPhase.FAILED.value for r in self.families.values())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "force": self.force,
            "fetch_errors": self.fetch_errors,
            "families": {k: v.as_dict() for k, v in self.families.items()},
            "pruned": self.pruned,
            "prune_error": self.prune_error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class _PartyLookup:
    records: List[FilingRecord] = field(default_factory=list)
    resolved: int = 0
    failed: int = 0
    transient: int = 0
    stopped: bool = False
    # Highest date the watermark may take after this lookup.
    cap: Optional[str] = None


class _FamilyRun:
    """Phase bookkeeping for one family within a run."""

    def __init__(self, family: FormFamily):
        self.family = family
        self.phase = SyncPhase.IDLE

    def enter(self, phase: SyncPhase, detail: str = "") -> None:
        if phase is not SyncPhase.FAILED and phase not in TRANSITIONS[self.phase]:
            raise RuntimeError(f"illegal sync transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        _debug(f"{self.family.key}: {phase.value}{' ' + detail if detail else ''}")


class SyncOrchestrator:
    """Quarter-bounded incremental sync of form-index filings into the store.

    Per family: plan quarters -> fetch each quarter's index -> keep allowlisted
    forms filed after the watermark -> (13D/G) read issuer and filer from each new
    submission's header -> merge in batches -> advance the watermark -> (Form 3/4/5)
    load ended quarters' data sets. After all families, prune old filings if
    anything succeeded and it is not a dry run.

    Quarters run sequentially in ascending order. The watermark never moves past
    a quarter that failed to fetch, a quarter the plan did not cover, or a filing
    that was not merged, so the next run picks those filings up again.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        fetcher: FormIndexFetcher,
        locks: Optional[SyncLockManager] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ):
        self.cfg = cfg
        self.fetcher = fetcher
        self.locks = locks or SyncLockManager(ttl_seconds=cfg.SYNC_LOCK_TTL_SECONDS)
        self._clock = clock
        self._today = today

    # -----------------------------
    # Planning
    # -----------------------------

    def plan(self, options: SyncOptions, watermark: Optional[str]) -> Tuple[List[Quarter], Optional[str]]:
        """Return (quarters to fetch, filter-after date). Filings must be filed after the date."""
        today = self._today()
        if options.quarter is not None:
            return [options.quarter], None
        if options.current_only:
            return [quarter_of(today)], watermark
        if options.start is not None:
            return plan_quarters(options.start.year, options.start.quarter, today=today), watermark
        wm = parse_iso_date(watermark)
        if wm is not None:
            return plan_since(wm, today=today), watermark
        lookback = (today - timedelta(days=int(self.cfg.SYNC_DEFAULT_LOOKBACK_DAYS))).isoformat()
        return [quarter_of(today)], lookback

    # -----------------------------
    # Run
    # -----------------------------

    def run(self, conn: Any, options: SyncOptions) -> SyncRunSummary:
        summary = SyncRunSummary(started_at=utcnow_iso(), dry_run=options.dry_run, force=options.force)
        deadline = None
        if options.deadline_seconds is not None:
            deadline = self._clock() + float(options.deadline_seconds)

        def should_continue() -> bool:
            if options.cancel_event is not None and options.cancel_event.is_set():
                return False
            return deadline is None or self._clock() < deadline

        _debug(
            f"run start forms={[f.key for f in options.forms]} force={options.force} dry_run={options.dry_run}"
        )
        for family in options.forms:
            summary.families[family.key] = self._sync_family(conn, family, options, should_continue)

        if not options.dry_run and any(r.succeeded for r in summary.families.values()):
            _debug(f"run: {SyncPhase.PRUNING.value}")
            try:
                summary.pruned = prune_old_filings(
                    conn, years=int(self.cfg.RETENTION_YEARS), today=self._today()
                )
            except Exception as e:
                conn.rollback()
                summary.prune_error = redact(e)
                _debug(f"Warning: failed to prune old data: {e}")

        summary.completed_at = utcnow_iso()
        if not options.dry_run:
            try:
                upsert_app_config(conn, LAST_RUN_KEY, json.dumps(summary.as_dict()))
                conn.commit()
            except Exception as e:
                conn.rollback()
                _debug(f"Warning: could not store run summary: {e}")
        _debug(f"run {SyncPhase.COMPLETED.value} success={summary.success} fetch_errors={summary.fetch_errors}")
        return summary

    def _sync_family(
        self,
        conn: Any,
        family: FormFamily,
        options: SyncOptions,
        should_continue: Callable[[], bool],
    ) -> FamilyResult:
        state = SyncStateStore(conn)
        run = _FamilyRun(family)
        result = FamilyResult(family=family.key)
        result.watermark_before = result.watermark_after = state.watermark(family.key)

        if not options.force and state.has_run_today(family.key):
            result.skipped = True
            result.message = "Already synced today"
            run.enter(SyncPhase.COMPLETED, "(already synced today)")
            result.status = run.phase.value
            return result

        if options.dry_run:
            # Read-only: no lock, no state writes.
            return self._execute(conn, run, result, state, options, should_continue)

        try:
            with self.locks.hold(conn, family.key):
                state.mark_started(family.key)
                self._execute(conn, run, result, state, options, should_continue)
        except SyncAlreadyRunning as e:
            result.skipped = True
            result.message = str(e)
            run.enter(SyncPhase.COMPLETED, "(busy)")
            result.status = run.phase.value
        return result

    def _execute(
        self,
        conn: Any,
        run: _FamilyRun,
        result: FamilyResult,
        state: SyncStateStore,
        options: SyncOptions,
        should_continue: Callable[[], bool],
    ) -> FamilyResult:
        family = run.family
        try:
            run.enter(SyncPhase.PLANNING)
            quarters, filter_after = self.plan(options, result.watermark_before)
            result.quarters = [QuarterOutcome(quarter=str(q)) for q in quarters]
            _debug(f"{family.key}: quarters={[str(q) for q in quarters]} filter_after={filter_after}")

            total = MergeResult()
            # Highest date the watermark may take; lowered by fetch failures / early stops.
            cap: Optional[str] = None

            # A plan starting after the day following the watermark leaves quarters
            # this run never fetches; the watermark holds until a run covers them.
            wm = parse_iso_date(result.watermark_before)
            if wm is not None and quarters and quarters[0].bounds()[0] > wm + timedelta(days=1):
                cap = result.watermark_before
                _debug(f"{family.key}: plan starts at {quarters[0]}, after watermark {wm}; watermark held")

            for q, outcome in zip(quarters, result.quarters):
                if not should_continue():
                    result.partial = True
                    break

                run.enter(SyncPhase.FETCHING_QUARTER, str(q))
                try:
                    entries = self.fetcher.fetch_form_index(q.year, q.quarter)
                except QuarterNotYetPublished as e:
                    outcome.status = "skipped"
                    outcome.error = redact(e)
                    run.enter(SyncPhase.SKIPPED_QUARTER, str(q))
                    continue
                except TransientFetchError as e:
                    outcome.status = "failed"
                    outcome.error = redact(e)
                    result.fetch_errors += 1
                    _debug(f"{family.key}: fetch failed for {q}: {e}")
                    cap = _min_date(cap, _day_before(q.bounds()[0]))
                    continue

                run.enter(SyncPhase.FILTERING_RECORDS, str(q))
                outcome.entries = len(entries)
                matched = [e for e in entries if family.matches(e.form_type)]
                fresh = [e for e in matched if filter_after is None or str(e.date_filed) > filter_after]
                outcome.matched = len(matched)
                outcome.new = len(fresh)
                if not fresh:
                    outcome.status = "synced"
                    continue

                stopped = False
                if family.parties_from_header and self.cfg.SYNC_13DG_RESOLVE_PARTIES and not options.dry_run:
                    run.enter(SyncPhase.RESOLVING_PARTIES, f"{len(fresh)} index rows")
                    lookup = self._resolve_parties(conn, family, fresh, should_continue)
                    records = lookup.records
                    total.failed += lookup.failed
                    outcome.failed += lookup.failed
                    result.fetch_errors += lookup.transient
                    cap = _min_date(cap, lookup.cap)
                    stopped = lookup.stopped
                else:
                    records = sorted((e.to_record() for e in fresh), key=lambda r: str(r.filing_date))
                outcome.status = "synced"

                if records:
                    run.enter(SyncPhase.MERGING_BATCH, f"{len(records)} records")
                    res = merge_filings(
                        conn,
                        family.table,
                        records,
                        batch_size=self.cfg.SYNC_BATCH_SIZE,
                        dry_run=options.dry_run,
                        should_continue=should_continue,
                    )
                    total.absorb(res)
                    outcome.inserted = res.inserted
                    outcome.duplicates = res.duplicates
                    outcome.failed += res.failed
                    if res.earliest_rolled_back_date:
                        cap = _min_date(cap, _day_before(parse_iso_date(res.earliest_rolled_back_date)))
                    if res.stopped_early:
                        stopped = True
                        done = res.processed + res.failed
                        if done < len(records):
                            cap = _min_date(cap, _day_before(parse_iso_date(records[done].filing_date)))
                if stopped:
                    result.partial = True
                    break

            for outcome in result.quarters:
                if outcome.status == "pending":
                    outcome.status = "not_started"

            run.enter(SyncPhase.ADVANCING_WATERMARK)
            result.processed = total.processed
            result.failed = total.failed
            result.inserted = total.inserted
            result.duplicates = total.duplicates
            result.latest_date = total.latest_inserted_date

            candidate = total.latest_inserted_date
            if candidate and cap is not None and candidate > cap:
                candidate = cap
            if not options.dry_run:
                result.watermark_after = state.mark_complete(family.key, last_processed_date=candidate)

            if family.has_datasets and self.cfg.SYNC_FORM345_DATASETS:
                run.enter(SyncPhase.LOADING_DATASETS)
                self._load_datasets(conn, quarters, result, options, should_continue)

            result.message = _family_message(result, options.dry_run)
            run.enter(SyncPhase.COMPLETED)
        except Exception as e:
            conn.rollback()
            run.enter(SyncPhase.FAILED, str(e))
            result.message = f"Sync failed: {redact(e)}"
            result.watermark_after = result.watermark_before
            if not options.dry_run:
                state.mark_failed(family.key, e)

        result.status = run.phase.value
        return result

    # -----------------------------
    # 13D/G parties
    # -----------------------------

    def _resolve_parties(
        self,
        conn: Any,
        family: FormFamily,
        entries: Sequence[IndexEntry],
        should_continue: Callable[[], bool],
    ) -> _PartyLookup:
        """Records with issuer and filer taken from each new submission's SEC-HEADER.

        form.idx lists the filing under every party, so rows are first collapsed
        to one per accession number. Accessions already stored keep their index
        record (the merge counts them as duplicates) and cost no request.
        A missing submission or unusable header fails just that filing; a transient
        failure also holds the watermark below the filing so the next run retries it.
        """
        out = _PartyLookup()
        by_accession: Dict[str, IndexEntry] = {}
        for e in sorted(entries, key=lambda e: str(e.date_filed)):
            by_accession.setdefault(e.accession_number, e)

        present: set[str] = set()
        for chunk in chunked(list(by_accession), 500):
            present |= existing_accessions(conn, family.table, chunk)

        for acc, entry in by_accession.items():
            if acc in present:
                out.records.append(entry.to_record())
                continue
            if not should_continue():
                out.stopped = True
                out.cap = _min_date(out.cap, _day_before(parse_iso_date(entry.date_filed)))
                _debug(f"{family.key}: stopping party lookup before {acc}")
                break
            try:
                parties = self.fetcher.fetch_filing_parties(entry)
            except SubmissionUnavailable as e:
                out.failed += 1
                _debug(f"{family.key}: {acc}: {e}")
                continue
            except TransientFetchError as e:
                out.failed += 1
                out.transient += 1
                out.cap = _min_date(out.cap, _day_before(parse_iso_date(entry.date_filed)))
                _debug(f"{family.key}: {acc}: header fetch failed: {e}")
                continue
            out.resolved += 1
            out.records.append(
                replace(
                    entry.to_record(),
                    issuer_cik=parties.issuer_cik,
                    issuer_name=parties.issuer_name,
                    filed_by_cik=parties.filed_by_cik,
                    filed_by_name=parties.filed_by_name,
                )
            )
        _debug(
            f"{family.key}: parties resolved={out.resolved} already_stored={len(present)} "
            f"failed={out.failed} (transient {out.transient})"
        )
        return out

    # -----------------------------
    # Form 3/4/5 data sets
    # -----------------------------

    def _load_datasets(
        self,
        conn: Any,
        planned: List[Quarter],
        result: FamilyResult,
        options: SyncOptions,
        should_continue: Callable[[], bool],
    ) -> None:
        """Load each ended quarter's data set once; progress is kept per quarter.

        A quarter already loaded is not downloaded again unless the run is forced.
        Failures are recorded on the quarter and never undo the index sync.
        """
        current = quarter_of(self._today())
        for q in dataset_quarters(planned, current, only=options.quarter):
            outcome = DatasetOutcome(quarter=str(q))
            result.datasets.append(outcome)

            if not options.force and dataset_progress(conn, q) is not None:
                outcome.status = "already_loaded"
                continue
            if options.dry_run:
                outcome.status = "planned"
                continue
            if not should_continue():
                outcome.status = "not_started"
                result.partial = True
                continue

            try:
                data = self.fetcher.fetch_form345_dataset(q.year, q.quarter)
            except QuarterNotYetPublished as e:
                outcome.status = "skipped"
                outcome.error = redact(e)
                continue
            except TransientFetchError as e:
                outcome.status = "failed"
                outcome.error = redact(e)
                result.fetch_errors += 1
                _debug(f"{result.family}: data set fetch failed for {q}: {e}")
                continue

            try:
                loaded = load_form345_dataset(conn, data, quarter=q, batch_size=self.cfg.SYNC_BATCH_SIZE)
            except Exception as e:
                conn.rollback()
                outcome.status = "failed"
                outcome.error = redact(e)
                _debug(f"{result.family}: data set load failed for {q}: {e}")
                continue
            outcome.status = loaded.status
            outcome.new_rows = loaded.new_rows
            outcome.failed = loaded.failed


def _day_before(d: date | None) -> Optional[str]:
    if d is None:
        return None
    return (d - timedelta(days=1)).isoformat()


def _min_date(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _family_message(r: FamilyResult, dry_run: bool) -> str:
    if dry_run:
        msg = f"Dry run: would process {r.inserted} new filings ({r.duplicates} already present, {r.failed} invalid)"
    elif r.processed == 0 and r.failed == 0:
        msg = "No new filings to process"
    else:
        msg = (
            f"Processed {r.processed} (inserted {r.inserted}, already present {r.duplicates}), "
            f"failed {r.failed}, latest date: {r.latest_date or '-'}"
        )
    failed_q = [q.quarter for q in r.quarters if q.status == "failed"]
    if failed_q:
        msg += f"; index fetch failed for {', '.join(failed_q)}"
    loaded = [d for d in r.datasets if d.status == "loaded"]
    if loaded:
        rows = sum(d.total_new_rows for d in loaded)
        msg += f"; data sets loaded for {', '.join(d.quarter for d in loaded)} (+{rows} rows)"
    failed_ds = [d.quarter for d in r.datasets if d.status == "failed"]
    if failed_ds:
        msg += f"; data set failed for {', '.join(failed_ds)}"
    if r.fetch_errors:
        msg += f"; {r.fetch_errors} SEC fetch error(s), retried next run"
    if r.partial:
        msg += "; stopped early (deadline or cancellation), remaining filings picked up next run"
    return msg
