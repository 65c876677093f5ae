import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.models.base import init_db
from app.models.scan import ScanJob, ScanJobState
from app.services.errors import PersistenceError
from app.services.normalizer import normalize
from app.services.scan_state import ScanState, ScanStatus
from app.services.scan_store import STALE_JOB_REASON, ScanStore
from app.services.scanner.extraction import CanonicalExtractor
from app.services.scanner.models import RenderedPage
from app.services.scoring import ScoringEngine
from app.services.wcag.types import RawFinding, Severity

URL = "https://example.com/"


class _FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def session_maker():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def clock():
    return _FakeClock()


@pytest.fixture
def store(session_maker, clock):
    return ScanStore(session_maker, Settings(persistence_retry_backoff_seconds=0), clock=clock)


def _findings(scan_id):
    raw = [
        RawFinding(rule_id="image-alt", severity=Severity.critical, page_url=URL, selector="img"),
        RawFinding(rule_id="label", severity=Severity.serious, page_url=URL, selector="#email"),
        RawFinding(rule_id="heading-order", severity=Severity.minor, page_url=URL, selector="h3"),
    ]
    return normalize(raw, [], scan_id)


def _state(scan_id, **changes):
    values = {
        "scan_id": scan_id,
        "status": ScanStatus.generating_report,
        "progress": 95,
        "current_step": "Generating report",
        "pages_discovered": 1,
        "pages_crawled": 1,
    }
    values.update(changes)
    return ScanState(**values)


def _save(store, spec, previous=None):
    findings = _findings(spec.scan_id)
    engine = ScoringEngine()
    score = engine.score(findings, previous)
    page = CanonicalExtractor(clock=lambda: datetime(2024, 1, 1)).extract(
        RenderedPage(url=URL, html='<html lang="en"><body><h1>Home</h1></body></html>')
    )
    store.save_results(
        _state(spec.scan_id),
        findings,
        score,
        quick_wins=engine.quick_wins(findings),
        top_issues=engine.top_issues(findings),
        pages=[page],
        processing_time_ms=1200,
    )
    return findings, score, page


def test_enqueue_creates_queued_scan_and_job(store):
    spec = store.enqueue_scan(URL, max_pages=3, max_duration_seconds=120)

    scan = store.get_scan(spec.scan_id)
    assert scan.status == ScanStatus.queued
    assert scan.progress_message == "Scan queued for processing"
    assert (scan.max_pages, scan.max_duration_seconds) == (3, 120)
    assert (spec.url, spec.max_pages, spec.max_duration_seconds) == (URL, 3, 120)
    assert spec.job_id is not None


def test_enqueue_uses_configured_defaults(store):
    spec = store.enqueue_scan(URL)

    assert (spec.max_pages, spec.max_duration_seconds) == (5, 300)


def test_claim_order_is_lowest_priority_number_then_fifo(store, session_maker):
    background = store.enqueue_scan(URL + "background", priority=20)
    first = store.enqueue_scan(URL + "first")
    second = store.enqueue_scan(URL + "second")
    urgent = store.enqueue_scan(URL + "urgent", priority=1)

    claimed = [store.claim_next_job("worker-1").scan_id for _ in range(4)]
    assert claimed == [urgent.scan_id, first.scan_id, second.scan_id, background.scan_id]
    assert store.claim_next_job("worker-1") is None

    db = session_maker()
    try:
        job = db.get(ScanJob, urgent.job_id)
        assert job.state == ScanJobState.claimed
        assert job.worker_id == "worker-1"
        assert job.attempts == 1
        assert db.get(ScanJob, first.job_id).priority == 5
    finally:
        db.close()


def test_progress_is_mirrored_until_terminal(store):
    spec = store.enqueue_scan(URL)
    listener = store.progress_listener()

    listener(_state(spec.scan_id, status=ScanStatus.crawling, progress=50, current_step="Crawling", current_page=URL))
    store.flush_progress()
    scan = store.get_scan(spec.scan_id)
    assert (scan.status, scan.progress, scan.current_page) == (ScanStatus.crawling, 50, URL)

    store.mark_failed(spec.scan_id, "Browser crashed")
    listener(_state(spec.scan_id, status=ScanStatus.analyzing, progress=85))
    store.flush_progress()
    assert store.get_scan(spec.scan_id).status == ScanStatus.failed


def test_progress_listener_hands_writes_to_a_background_thread(store, monkeypatch):
    spec = store.enqueue_scan(URL)
    release = threading.Event()
    writer_threads = []
    record = store.record_progress

    def slow_record(state):
        release.wait(5)
        writer_threads.append(threading.get_ident())
        record(state)

    monkeypatch.setattr(store, "record_progress", slow_record)
    listener = store.progress_listener()
    listener(_state(spec.scan_id, status=ScanStatus.crawling, progress=35))
    listener(_state(spec.scan_id, status=ScanStatus.crawling, progress=50))
    assert store.get_scan(spec.scan_id).status == ScanStatus.queued

    release.set()
    store.flush_progress()
    assert store.get_scan(spec.scan_id).progress == 50
    assert len(writer_threads) == 2
    assert threading.get_ident() not in writer_threads


def test_failed_progress_write_is_logged_and_later_writes_continue(store, monkeypatch, caplog):
    spec = store.enqueue_scan(URL)
    record = store.record_progress
    calls = []

    def flaky_record(state):
        calls.append(state.progress)
        if len(calls) == 1:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        record(state)

    monkeypatch.setattr(store, "record_progress", flaky_record)
    listener = store.progress_listener()
    with caplog.at_level("WARNING", logger="app.services.scan_store"):
        listener(_state(spec.scan_id, status=ScanStatus.crawling, progress=35))
        listener(_state(spec.scan_id, status=ScanStatus.crawling, progress=50))
        store.flush_progress()

    assert calls == [35, 50]
    assert store.get_scan(spec.scan_id).progress == 50
    assert "Could not mirror progress" in caplog.text


def test_save_results_round_trip(store, session_maker):
    store.enqueue_scan(URL)
    spec = store.claim_next_job("w")
    store.mark_started(spec)
    findings, score, page = _save(store, spec)

    scan = store.get_scan(spec.scan_id)
    assert scan.status == ScanStatus.completed
    assert scan.progress == 100
    assert scan.progress_message == "Scan completed successfully"
    assert (scan.total_violations, scan.critical_issues, scan.serious_issues, scan.minor_issues) == (3, 1, 1, 1)
    assert scan.processing_time_ms == 1200
    assert set(scan.report_json) == {"score", "quickWins", "topIssues"}

    assert store.load_score(spec.scan_id) == score
    assert store.load_findings(spec.scan_id) == findings
    assert store.load_pages(spec.scan_id) == [page]

    db = session_maker()
    try:
        job = db.get(ScanJob, spec.job_id)
        assert job.state == ScanJobState.done
        assert job.completed_at is not None
    finally:
        db.close()


def test_late_results_for_failed_scan_are_discarded(store):
    spec = store.enqueue_scan(URL)
    store.mark_failed(spec.scan_id, "Scan exceeded maximum duration of 300 seconds")

    _save(store, spec)
    scan = store.get_scan(spec.scan_id)
    assert scan.status == ScanStatus.failed
    assert scan.error_message == "Scan exceeded maximum duration of 300 seconds"
    assert store.load_findings(spec.scan_id) == []


def test_mark_failed_keeps_partial_findings(store):
    spec = store.enqueue_scan(URL)
    partial = _findings(spec.scan_id)[:1]

    store.mark_failed(spec.scan_id, "  ", findings=partial)
    scan = store.get_scan(spec.scan_id)
    assert scan.status == ScanStatus.failed
    assert scan.progress == 0
    assert scan.error_message == "Scan failed"
    assert scan.total_violations == 1
    assert [finding.rule_id for finding in store.load_findings(spec.scan_id)] == ["image-alt"]


def test_previous_overall_score_uses_latest_completed_scan(store, clock):
    assert store.previous_overall_score(URL) is None

    older = store.enqueue_scan(URL)
    _save(store, older)
    clock.advance(hours=1)
    newer = store.enqueue_scan(URL)
    _, score, _ = _save(store, newer, previous=store.previous_overall_score(URL, newer.scan_id))
    failed = store.enqueue_scan(URL)
    store.mark_failed(failed.scan_id, "No pages could be analyzed")

    assert score.direction == "stable"
    assert store.previous_overall_score(URL) == score.overall
    assert store.previous_overall_score(URL, exclude_scan_id=newer.scan_id) == score.overall
    assert store.previous_overall_score(URL + "other") is None


def test_false_positive_flag_is_persisted(store):
    spec = store.enqueue_scan(URL)
    findings, _, _ = _save(store, spec)

    assert store.mark_false_positive(findings[0].id) is True
    assert store.mark_false_positive("missing-id") is False
    flags = [finding.false_positive for finding in store.load_findings(spec.scan_id)]
    assert flags == [True, False, False]


def test_update_analysis_rewrites_scores_and_findings(store):
    spec = store.enqueue_scan(URL)
    findings, _, _ = _save(store, spec)
    remaining = findings[1:]
    engine = ScoringEngine()
    score = engine.score(remaining)

    store.update_analysis(spec.scan_id, remaining, score, quick_wins=engine.quick_wins(remaining))
    scan = store.get_scan(spec.scan_id)
    assert scan.overall_score == score.overall
    assert scan.total_violations == 2
    assert scan.report_json["score"] == score.to_dict()
    assert "topIssues" in scan.report_json
    assert [finding.id for finding in store.load_findings(spec.scan_id)] == [finding.id for finding in remaining]


def test_stale_jobs_fail_after_duration_plus_grace(store, clock):
    spec = store.enqueue_scan(URL, max_duration_seconds=300)
    store.claim_next_job("worker-1")

    clock.advance(seconds=419)
    assert store.fail_stale_jobs(grace_seconds=120) == 0
    clock.advance(seconds=1)
    assert store.fail_stale_jobs(grace_seconds=120) == 1

    scan = store.get_scan(spec.scan_id)
    assert scan.status == ScanStatus.failed
    assert scan.error_message == STALE_JOB_REASON
    assert store.fail_stale_jobs(grace_seconds=120) == 0


def test_cleanup_removes_only_old_finished_jobs(store, clock):
    store.enqueue_scan(URL)
    _save(store, store.claim_next_job("w"))
    store.enqueue_scan(URL + "waiting")

    assert store.cleanup_old_jobs(retention_days=30) == 0
    clock.advance(days=31)
    assert store.cleanup_old_jobs(retention_days=30) == 1
    assert store.claim_next_job("w").url == URL + "waiting"


class _LockedSession:
    def get(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


def test_writes_retry_then_raise_persistence_error():
    sleeps = []
    sessions = []

    def session_factory():
        sessions.append(_LockedSession())
        return sessions[-1]

    store = ScanStore(
        session_factory,
        Settings(persistence_retry_attempts=3, persistence_retry_backoff_seconds=0.5),
        sleep=sleeps.append,
    )

    with pytest.raises(PersistenceError) as excinfo:
        store.mark_false_positive("scan-1-label-0")
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, OperationalError)
    assert len(sessions) == 3
    assert sleeps == [0.5, 1.0]
