"""Tests for the sync run: planning, watermarks, guards, deadlines and pruning."""

import itertools
import json
import threading
from dataclasses import replace

import pytest

from conftest import TODAY, FakeFetcher, make_entry
from filing_sync.db import get_app_config, table_count
from filing_sync.errors import QuarterNotYetPublished, SubmissionUnavailable, TransientFetchError
from filing_sync.models import FORM_13DG, FORM_13F, FORM_345
from filing_sync.sec.client import FormIndexEntry
from filing_sync.sec.header import FilingParties
from filing_sync.sync.orchestrator import (
    LAST_RUN_KEY,
    SyncOptions,
    SyncOrchestrator,
    SyncPhase,
    _FamilyRun,
)
from filing_sync.sync.quarters import Quarter
from filing_sync.sync.state import SyncStateStore


def _orch(cfg, fetcher, **kw):
    return SyncOrchestrator(cfg, fetcher=fetcher, today=lambda: TODAY, **kw)


def _only_13f(**kw):
    return SyncOptions(forms=(FORM_13F,), **kw)


class TestPlanning:
    def test_no_watermark_is_current_quarter_with_lookback(self, cfg, fetcher):
        quarters, after = _orch(cfg, fetcher).plan(SyncOptions(), None)
        assert quarters == [Quarter(2024, 2)]
        assert after == "2024-05-08"

    def test_watermark_plans_from_its_quarter(self, cfg, fetcher):
        quarters, after = _orch(cfg, fetcher).plan(SyncOptions(), "2023-11-30")
        assert quarters == [Quarter(2023, 4), Quarter(2024, 1), Quarter(2024, 2)]
        assert after == "2023-11-30"

    def test_single_quarter_backfill_ignores_watermark(self, cfg, fetcher):
        quarters, after = _orch(cfg, fetcher).plan(SyncOptions(quarter=Quarter(2022, 3)), "2024-05-01")
        assert quarters == [Quarter(2022, 3)]
        assert after is None

    def test_current_and_start_overrides(self, cfg, fetcher):
        orch = _orch(cfg, fetcher)
        assert orch.plan(SyncOptions(current_only=True), "2023-01-01")[0] == [Quarter(2024, 2)]
        assert orch.plan(SyncOptions(start=Quarter(2024, 1)), None)[0] == [Quarter(2024, 1), Quarter(2024, 2)]

    def test_future_start_plans_nothing(self, cfg, db, fetcher):
        summary = _orch(cfg, fetcher).run(db, _only_13f(start=Quarter(2025, 1)))
        r = summary.families["13F"]
        assert r.status == "completed"
        assert r.quarters == []
        assert fetcher.calls == []


class TestFirstRun:
    def test_lookback_filters_old_filings_and_allowlist(self, cfg, db):
        fetcher = FakeFetcher(
            {
                (2024, 2): [
                    make_entry(1, "13F-HR", "2024-05-01"),  # before the lookback window
                    make_entry(2, "13F-HR", "2024-05-10"),
                    make_entry(3, "13F-HR/A", "2024-05-14"),
                    make_entry(4, "10-K", "2024-05-14"),
                    make_entry(5, "SC 13G", "2024-05-12"),
                ]
            }
        )
        summary = _orch(cfg, fetcher).run(db, SyncOptions(forms=(FORM_13F, FORM_13DG)))

        f13 = summary.families["13F"]
        assert f13.inserted == 2
        assert f13.processed == 2
        assert f13.latest_date == "2024-05-14"
        assert f13.watermark_after == "2024-05-14"
        assert f13.quarters[0].entries == 5
        assert f13.quarters[0].matched == 3
        assert f13.quarters[0].new == 2

        dg = summary.families["13DG"]
        assert dg.inserted == 1
        assert table_count(db, "submissions_13f") == 2
        assert table_count(db, "filings_13dg") == 1
        assert fetcher.calls == [(2024, 2), (2024, 2)]
        assert summary.success


class TestIncremental:
    def test_watermark_filters_and_advances(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-03-30")
        fetcher = FakeFetcher(
            {
                (2024, 1): [make_entry(1, date_filed="2024-03-29"), make_entry(2, date_filed="2024-03-31")],
                (2024, 2): [make_entry(3, date_filed="2024-04-02")],
            }
        )
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True)).families["13F"]
        assert fetcher.calls == [(2024, 1), (2024, 2)]
        assert r.inserted == 2
        assert r.watermark_before == "2024-03-30"
        assert r.watermark_after == "2024-04-02"

    def test_backfill_older_quarter_never_moves_watermark_back(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-05-01")
        fetcher = FakeFetcher({(2023, 1): [make_entry(1, date_filed="2023-02-01")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True, quarter=Quarter(2023, 1))).families["13F"]
        assert r.inserted == 1
        assert r.watermark_after == "2024-05-01"

    def test_rerun_inserts_nothing(self, cfg, db):
        fetcher = FakeFetcher({(2024, 2): [make_entry(i, date_filed="2024-04-10") for i in range(1, 6)]})
        orch = _orch(cfg, fetcher)
        first = orch.run(db, _only_13f(force=True, quarter=Quarter(2024, 2))).families["13F"]
        second = orch.run(db, _only_13f(force=True, quarter=Quarter(2024, 2))).families["13F"]
        assert first.inserted == 5
        assert second.inserted == 0
        assert second.duplicates == 5
        assert second.message.startswith("Processed 5")
        assert table_count(db, "submissions_13f") == 5

    def test_current_quarter_run_after_a_gap_holds_watermark(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-03-20")
        fetcher = FakeFetcher(
            {
                (2024, 1): [make_entry(1, date_filed="2024-03-25")],
                (2024, 2): [make_entry(2, date_filed="2024-05-01")],
            }
        )
        orch = _orch(cfg, fetcher)

        current = orch.run(db, _only_13f(force=True, current_only=True)).families["13F"]
        assert fetcher.calls == [(2024, 2)]
        assert current.inserted == 1
        # Q1 after 2024-03-20 was never fetched.
        assert current.watermark_after == "2024-03-20"

        incremental = orch.run(db, _only_13f(force=True)).families["13F"]
        assert fetcher.calls == [(2024, 2), (2024, 1), (2024, 2)]
        assert incremental.inserted == 1
        assert incremental.duplicates == 1
        assert incremental.watermark_after == "2024-03-25"
        assert table_count(db, "submissions_13f") == 2

    def test_start_after_the_watermark_quarter_holds_watermark(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2023-12-10")
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-04-03")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True, start=Quarter(2024, 2))).families["13F"]
        assert r.inserted == 1
        assert r.watermark_after == "2023-12-10"

    def test_single_quarter_backfill_past_a_gap_holds_watermark(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-03-20")
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-04-03")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True, quarter=Quarter(2024, 2))).families["13F"]
        assert r.inserted == 1
        assert r.watermark_after == "2024-03-20"

    def test_current_quarter_run_without_a_gap_advances(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-04-10")
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-04-20")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True, current_only=True)).families["13F"]
        assert r.watermark_after == "2024-04-20"

    def test_watermark_on_the_last_day_of_a_quarter_is_not_a_gap(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-03-31")
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-04-20")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True, current_only=True)).families["13F"]
        assert r.watermark_after == "2024-04-20"

    def test_nothing_new_keeps_watermark(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-05-01")
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-04-10")]})
        r = _orch(cfg, fetcher).run(db, _only_13f(force=True)).families["13F"]
        assert r.inserted == 0
        assert r.message == "No new filings to process"
        assert r.watermark_after == "2024-05-01"


class TestDryRun:
    def test_dry_run_writes_nothing(self, cfg, db):
        fetcher = FakeFetcher({(2024, 2): [make_entry(i, date_filed="2024-05-10") for i in range(1, 4)]})
        summary = _orch(cfg, fetcher).run(db, _only_13f(dry_run=True))
        r = summary.families["13F"]

        assert r.inserted == 3
        assert r.message.startswith("Dry run: would process 3")
        assert r.watermark_after is None
        assert table_count(db, "submissions_13f") == 0
        assert SyncStateStore(db).get("13F") is None
        assert summary.pruned is None
        assert get_app_config(db, LAST_RUN_KEY) is None

    def test_summary_shape_matches_real_run(self, cfg, db):
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-05-10")]})
        dry = _orch(cfg, fetcher).run(db, _only_13f(dry_run=True)).as_dict()
        real = _orch(cfg, fetcher).run(db, _only_13f()).as_dict()
        assert dry.keys() == real.keys()
        assert dry["families"]["13F"].keys() == real["families"]["13F"].keys()


class TestFetchFailures:
    def test_unpublished_quarter_is_skipped(self, cfg, db):
        fetcher = FakeFetcher(
            {
                (2024, 1): [make_entry(1, date_filed="2024-02-01")],
                (2024, 2): QuarterNotYetPublished("not found (404)", status=404),
            }
        )
        r = _orch(cfg, fetcher).run(db, _only_13f(start=Quarter(2024, 1))).families["13F"]
        assert r.status == "completed"
        assert [q.status for q in r.quarters] == ["synced", "skipped"]
        assert r.fetch_errors == 0
        assert r.watermark_after == "2024-02-01"

    def test_transient_failure_is_reported_and_holds_watermark(self, cfg, db):
        SyncStateStore(db).mark_complete("13F", last_processed_date="2024-01-05")
        fetcher = FakeFetcher(
            {
                (2024, 1): TransientFetchError("SEC request failed 500", status=500),
                (2024, 2): [make_entry(1, date_filed="2024-04-10")],
            }
        )
        summary = _orch(cfg, fetcher).run(db, _only_13f(force=True))
        r = summary.families["13F"]

        assert r.status == "completed"
        assert r.fetch_errors == 1
        assert not summary.success
        assert summary.as_dict()["fetch_errors"] == 1
        assert r.inserted == 1
        assert "index fetch failed for 2024-Q1" in r.message
        assert [q.status for q in r.quarters] == ["failed", "synced"]
        # Q1 must be retried next run, so the watermark cannot pass it.
        assert r.watermark_after == "2024-01-05"

    def test_unexpected_error_fails_family_only(self, cfg, db):
        class Boom(FakeFetcher):
            def fetch_form_index(self, year, quarter):
                raise RuntimeError("token=abc123 exploded")

        summary = _orch(cfg, Boom()).run(db, SyncOptions(forms=(FORM_13F, FORM_13DG)))
        assert summary.families["13F"].status == "failed"
        assert summary.families["13DG"].status == "failed"
        assert "abc123" not in summary.families["13F"].message
        assert SyncStateStore(db).get("13F").status == "failed"
        assert not summary.success
        assert summary.pruned is None


class TestGuards:
    def test_already_synced_today(self, cfg, db):
        fetcher = FakeFetcher({(2024, 2): [make_entry(1, date_filed="2024-05-10")]})
        orch = _orch(cfg, fetcher)
        orch.run(db, _only_13f())
        again = orch.run(db, _only_13f()).families["13F"]
        assert again.skipped
        assert again.message == "Already synced today"
        assert len(fetcher.calls) == 1

        forced = orch.run(db, _only_13f(force=True)).families["13F"]
        assert not forced.skipped
        assert len(fetcher.calls) == 2

    def test_busy_family_is_skipped(self, cfg, db, fetcher):
        orch = _orch(cfg, fetcher)
        with orch.locks.hold(db, "13F"):
            summary = orch.run(db, SyncOptions(forms=(FORM_13F, FORM_13DG)))
        assert summary.families["13F"].skipped
        assert "already running" in summary.families["13F"].message
        assert not summary.families["13DG"].skipped
        assert fetcher.calls == [(2024, 2)]


class TestDeadlineAndCancel:
    def test_expired_deadline_starts_no_quarter(self, cfg, db, fetcher):
        r = _orch(cfg, fetcher).run(db, _only_13f(deadline_seconds=0)).families["13F"]
        assert r.partial
        assert fetcher.calls == []
        assert [q.status for q in r.quarters] == ["not_started"]
        assert "stopped early" in r.message

    def test_cancel_event(self, cfg, db, fetcher):
        cancel = threading.Event()
        cancel.set()
        r = _orch(cfg, fetcher).run(db, _only_13f(cancel_event=cancel)).families["13F"]
        assert r.partial
        assert fetcher.calls == []

    def test_stop_between_batches_caps_watermark(self, cfg, db):
        dates = [f"2024-04-{d:02d}" for d in range(1, 20)] + ["2024-04-20"] * 2 + [
            f"2024-04-{d:02d}" for d in range(21, 29)
        ]
        fetcher = FakeFetcher({(2024, 2): [make_entry(i + 1, date_filed=d) for i, d in enumerate(dates)]})
        # One tick per clock read: start, quarter check, then one per batch.
        ticks = itertools.count()
        orch = SyncOrchestrator(
            replace(cfg, SYNC_BATCH_SIZE=10),
            fetcher=fetcher,
            today=lambda: TODAY,
            clock=lambda: float(next(ticks)),
        )
        r = orch.run(db, _only_13f(quarter=Quarter(2024, 2), deadline_seconds=3.5)).families["13F"]

        assert r.partial
        assert r.inserted == 20
        assert r.latest_date == "2024-04-20"
        # The 21st record shares 2024-04-20 and was not merged.
        assert r.watermark_after == "2024-04-19"


class TestPruneAfterSync:
    def _seed_old(self, db):
        db.execute(
            """
            INSERT INTO filings_13dg (accession_number, form_type, filing_date, issuer_cik, filed_by_cik, inserted_at)
            VALUES ('0000000001-19-000001', 'SC 13D', '2019-01-02', '1', '1', '2019-01-02T00:00:00Z')
            """
        )
        db.commit()

    def test_prunes_after_success(self, cfg, db, fetcher):
        self._seed_old(db)
        summary = _orch(cfg, fetcher).run(db, _only_13f())
        assert summary.pruned["deleted_by_table"]["filings_13dg"] == 1
        assert table_count(db, "filings_13dg") == 0

    def test_no_prune_when_everything_skipped(self, cfg, db, fetcher):
        self._seed_old(db)
        orch = _orch(cfg, fetcher)
        orch.run(db, _only_13f())
        self._seed_old(db)
        summary = orch.run(db, _only_13f())
        assert summary.families["13F"].skipped
        assert summary.pruned is None
        assert table_count(db, "filings_13dg") == 1

    def test_prune_failure_is_reported_not_raised(self, cfg, db, fetcher, monkeypatch):
        import filing_sync.sync.orchestrator as orch_mod

        def broken(*a, **kw):
            raise RuntimeError("prune exploded")

        monkeypatch.setattr(orch_mod, "prune_old_filings", broken)
        summary = _orch(cfg, fetcher).run(db, _only_13f())
        assert summary.success
        assert summary.pruned is None
        assert "prune exploded" in summary.prune_error


class TestRunSummary:
    def test_summary_is_stored(self, cfg, db, fetcher):
        _orch(cfg, fetcher).run(db, SyncOptions(forms=(FORM_345,)))
        stored = json.loads(get_app_config(db, LAST_RUN_KEY))
        assert "345" in stored["families"]
        assert stored["completed_at"]


class TestPhases:
    def test_illegal_transition_raises(self):
        run = _FamilyRun(FORM_13F)
        with pytest.raises(RuntimeError):
            run.enter(SyncPhase.MERGING_BATCH)

    def test_failed_is_always_reachable(self):
        run = _FamilyRun(FORM_13F)
        run.enter(SyncPhase.PLANNING)
        run.enter(SyncPhase.FAILED)
        assert run.phase is SyncPhase.FAILED


def _listed_under_both_parties(acc: str, date_filed: str, form_type: str = "SC 13D"):
    """form.idx lists a 13D/G once under the subject company and once under the filer."""
    return [
        FormIndexEntry(
            form_type=form_type,
            company_name=name,
            cik=cik,
            date_filed=date_filed,
            file_name=f"edgar/data/{cik}/{acc}.txt",
        )
        for cik, name in (("2222222", "TARGET CORP"), ("1111111", "ACTIVIST FUND LP"))
    ]


def _parties(filing_date: str = "2024-05-10") -> FilingParties:
    return FilingParties(
        form_type="SC 13D",
        filing_date=filing_date,
        issuer_cik="2222222",
        issuer_name="TARGET CORP",
        filed_by_cik="1111111",
        filed_by_name="ACTIVIST FUND LP",
    )


def _only_13dg(**kw):
    return SyncOptions(forms=(FORM_13DG,), **kw)


class TestScheduleParties:
    ACC = "0000921895-24-001234"

    @pytest.fixture
    def cfg13dg(self, cfg):
        return replace(cfg, SYNC_13DG_RESOLVE_PARTIES=True)

    def _stored(self, db):
        return [
            (r["accession_number"], r["issuer_cik"], r["filed_by_cik"])
            for r in db.execute(
                "SELECT accession_number, issuer_cik, filed_by_cik FROM filings_13dg ORDER BY accession_number"
            ).fetchall()
        ]

    def test_issuer_and_filer_come_from_the_header(self, cfg13dg, db):
        fetcher = FakeFetcher(
            {(2024, 2): _listed_under_both_parties(self.ACC, "2024-05-10")},
            parties={self.ACC: _parties()},
        )
        summary = _orch(cfg13dg, fetcher).run(db, _only_13dg())
        r = summary.families["13DG"]

        assert fetcher.header_calls == [self.ACC]
        assert r.inserted == 1
        assert r.duplicates == 0
        assert r.quarters[0].new == 2
        assert self._stored(db) == [(self.ACC, "2222222", "1111111")]
        assert summary.success

    def test_stored_filings_cost_no_request(self, cfg13dg, db):
        fetcher = FakeFetcher(
            {(2024, 2): _listed_under_both_parties(self.ACC, "2024-05-10")},
            parties={self.ACC: _parties()},
        )
        orch = _orch(cfg13dg, fetcher)
        orch.run(db, _only_13dg())
        again = orch.run(db, _only_13dg(force=True, quarter=Quarter(2024, 2))).families["13DG"]

        assert fetcher.header_calls == [self.ACC]
        assert again.inserted == 0
        assert again.duplicates == 1
        assert self._stored(db) == [(self.ACC, "2222222", "1111111")]

    def test_missing_submission_fails_that_filing_only(self, cfg13dg, db):
        gone = make_entry(7, "SC 13G", "2024-05-09", cik="3333333")
        ok = make_entry(8, "SC 13G", "2024-05-12", cik="4444444")
        fetcher = FakeFetcher(
            {(2024, 2): [gone, ok]},
            parties={gone.accession_number: SubmissionUnavailable("not found (404)", status=404)},
        )
        summary = _orch(cfg13dg, fetcher).run(db, _only_13dg())
        r = summary.families["13DG"]

        assert r.failed == 1
        assert r.quarters[0].failed == 1
        assert r.inserted == 1
        assert r.fetch_errors == 0
        assert r.watermark_after == "2024-05-12"
        assert summary.success

    def test_transient_header_failure_holds_watermark_and_is_retried(self, cfg13dg, db):
        flaky = make_entry(7, "SC 13G", "2024-05-10", cik="3333333")
        ok = make_entry(8, "SC 13G", "2024-05-12", cik="4444444")
        fetcher = FakeFetcher(
            {(2024, 2): [ok, flaky]},
            parties={flaky.accession_number: TransientFetchError("SEC request failed 500", status=500)},
        )
        orch = _orch(cfg13dg, fetcher)
        summary = orch.run(db, _only_13dg())
        r = summary.families["13DG"]

        assert fetcher.header_calls == [flaky.accession_number, ok.accession_number]
        assert r.inserted == 1
        assert r.failed == 1
        assert r.fetch_errors == 1
        assert r.watermark_after == "2024-05-09"
        assert "1 SEC fetch error(s)" in r.message
        assert not summary.success

        del fetcher.parties[flaky.accession_number]
        retry = orch.run(db, _only_13dg(force=True))
        r2 = retry.families["13DG"]
        assert fetcher.header_calls[2:] == [flaky.accession_number]
        assert r2.inserted == 1
        assert r2.duplicates == 1
        assert r2.watermark_after == "2024-05-10"
        assert retry.success
        assert table_count(db, "filings_13dg") == 2

    def test_dry_run_makes_no_header_requests(self, cfg13dg, db):
        fetcher = FakeFetcher({(2024, 2): _listed_under_both_parties(self.ACC, "2024-05-10")})
        r = _orch(cfg13dg, fetcher).run(db, _only_13dg(dry_run=True)).families["13DG"]
        assert fetcher.header_calls == []
        assert r.message.startswith("Dry run")
        assert table_count(db, "filings_13dg") == 0

    def test_disabled_lookup_stores_the_index_party(self, cfg13dg, db):
        entry = make_entry(9, "SC 13G", "2024-05-10", cik="3333333")
        fetcher = FakeFetcher({(2024, 2): [entry]})
        cfg = replace(cfg13dg, SYNC_13DG_RESOLVE_PARTIES=False)
        r = _orch(cfg, fetcher).run(db, _only_13dg()).families["13DG"]
        assert fetcher.header_calls == []
        assert r.inserted == 1
        assert self._stored(db) == [(entry.accession_number, "3333333", "3333333")]

    def test_cancel_during_lookup_stops_the_run(self, cfg13dg, db):
        cancel = threading.Event()

        class CancelAfterFirst(FakeFetcher):
            def fetch_filing_parties(self, entry):
                got = super().fetch_filing_parties(entry)
                cancel.set()
                return got

        first = make_entry(7, "SC 13G", "2024-05-10", cik="3333333")
        second = make_entry(8, "SC 13G", "2024-05-12", cik="4444444")
        fetcher = CancelAfterFirst({(2024, 2): [first, second]})
        r = _orch(cfg13dg, fetcher).run(db, _only_13dg(cancel_event=cancel)).families["13DG"]

        assert fetcher.header_calls == [first.accession_number]
        assert r.partial
        assert r.inserted == 0
        assert r.watermark_after is None
        assert "stopped early" in r.message
