"""Durable scan records, findings and the scan job queue."""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, get_settings
from app.models.base import get_session_maker, utcnow
from app.models.scan import Scan, ScanFinding, ScanJob, ScanJobState
from app.services.errors import PersistenceError
from app.services.scan_state import ScanState, ScanStatus
from app.services.scanner.models import CanonicalPage
from app.services.scoring import QuickWinsAnalysis, ScanScore, TopIssuesReport
from app.services.wcag.types import ElementRef, Finding, Remediation, Severity

logger = logging.getLogger(__name__)

T = TypeVar("T")

STALE_JOB_REASON = "Worker stopped responding before the scan finished"
DEFAULT_PRIORITY = 5


@dataclass(frozen=True)
class ScanJobSpec:
    """Queue entry handed to the pipeline."""

    scan_id: str
    url: str
    max_pages: int = 5
    max_duration_seconds: int = 300
    job_id: Optional[int] = None


def _job_spec(job: ScanJob) -> ScanJobSpec:
    return ScanJobSpec(
        scan_id=job.scan_id,
        url=job.url,
        max_pages=int(job.max_pages),
        max_duration_seconds=int(job.max_duration_seconds),
        job_id=job.id,
    )


def _finding_row(scan_id: str, ordinal: int, finding: Finding) -> ScanFinding:
    return ScanFinding(
        id=finding.id,
        scan_id=scan_id,
        ordinal=ordinal,
        source=finding.source,
        rule_id=finding.rule_id,
        wcag_criterion=finding.wcag_criterion,
        wcag_level=finding.wcag_level,
        category=finding.category,
        severity=finding.severity,
        element_type=finding.element.element_type,
        selector=finding.element.selector,
        html=finding.element.html,
        page_url=finding.page_url,
        legal_risk=finding.legal_risk,
        quick_win=finding.quick_win,
        estimated_fix_minutes=finding.estimated_fix_minutes,
        estimated_fix_time=finding.estimated_fix_time,
        confidence=finding.confidence,
        remediation_description=finding.remediation.description,
        remediation_code=finding.remediation.code,
        remediation_effort=finding.remediation.effort,
        message=finding.message,
        business_impact=finding.business_impact,
        user_impact=finding.user_impact,
        false_positive=finding.false_positive,
    )


def _finding_from_row(row: ScanFinding) -> Finding:
    return Finding(
        id=row.id,
        source=row.source,
        rule_id=row.rule_id,
        wcag_criterion=row.wcag_criterion,
        wcag_level=row.wcag_level,
        category=row.category,
        severity=row.severity,
        element=ElementRef(
            element_type=row.element_type or "",
            selector=row.selector or "",
            html=row.html or "",
        ),
        page_url=row.page_url,
        legal_risk=row.legal_risk,
        quick_win=bool(row.quick_win),
        estimated_fix_minutes=int(row.estimated_fix_minutes or 0),
        estimated_fix_time=row.estimated_fix_time or "",
        confidence=float(row.confidence if row.confidence is not None else 1.0),
        remediation=Remediation(
            description=row.remediation_description or "",
            code=row.remediation_code or "",
            effort=row.remediation_effort,
        ),
        message=row.message or "",
        business_impact=row.business_impact or "",
        user_impact=row.user_impact or "",
        false_positive=bool(row.false_positive),
    )


def _apply_progress(scan: Scan, state: ScanState) -> None:
    scan.status = state.status
    scan.progress = state.progress
    scan.progress_message = state.current_step[:255]
    scan.current_page = state.current_page
    scan.pages_discovered = state.pages_discovered
    scan.pages_crawled = state.pages_crawled
    scan.errors_json = [entry.to_dict() for entry in state.errors]
    scan.estimated_completion = state.estimated_completion


def _apply_counters(scan: Scan, findings: List[Finding]) -> None:
    active = [finding for finding in findings if not finding.false_positive]
    by_severity = {severity: 0 for severity in Severity}
    for finding in active:
        by_severity[finding.severity] += 1
    scan.total_violations = len(active)
    scan.critical_issues = by_severity[Severity.critical]
    scan.serious_issues = by_severity[Severity.serious]
    scan.moderate_issues = by_severity[Severity.moderate]
    scan.minor_issues = by_severity[Severity.minor]
    scan.quick_wins = sum(1 for finding in active if finding.quick_win)


def _apply_score(scan: Scan, score: ScanScore) -> None:
    scan.overall_score = score.overall
    scan.perceivable_score = score.perceivable
    scan.operable_score = score.operable
    scan.understandable_score = score.understandable
    scan.robust_score = score.robust
    scan.wcag_a_compliant = score.wcag_a
    scan.wcag_aa_compliant = score.wcag_aa
    scan.wcag_aaa_compliant = score.wcag_aaa
    scan.score_improvement = score.improvement
    scan.score_direction = score.direction


def _replace_findings(db: Session, scan_id: str, findings: Iterable[Finding]) -> None:
    db.execute(delete(ScanFinding).where(ScanFinding.scan_id == scan_id))
    for ordinal, finding in enumerate(findings):
        db.add(_finding_row(scan_id, ordinal, finding))


class ScanStore:
    """Synchronous store used by workers; every write runs in its own session."""

    def __init__(
        self,
        session_maker: Optional[sessionmaker] = None,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_maker = session_maker
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._progress_writer: Optional[ThreadPoolExecutor] = None

    def _session(self) -> Session:
        if self._session_maker is None:
            self._session_maker = get_session_maker()
        return self._session_maker()

    def _write(self, operation: str, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` in a fresh transaction with bounded retries."""
        max_attempts = max(1, int(self.settings.persistence_retry_attempts))
        backoff = max(0.0, float(self.settings.persistence_retry_backoff_seconds))
        last_exc: Optional[SQLAlchemyError] = None
        for attempt in range(max_attempts):
            db = self._session()
            try:
                result = fn(db)
                db.commit()
                return result
            except SQLAlchemyError as exc:
                db.rollback()
                last_exc = exc
                logger.warning("Store %s failed (attempt %d/%d): %s", operation, attempt + 1, max_attempts, exc)
                if attempt < max_attempts - 1 and backoff > 0:
                    self._sleep(backoff * (attempt + 1))
            finally:
                db.close()
        raise PersistenceError(
            f"Could not {operation} after {max_attempts} attempts",
            attempts=max_attempts,
            cause=last_exc,
        )

    # -- queue --------------------------------------------------------

    def enqueue_scan(
        self,
        url: str,
        *,
        max_pages: Optional[int] = None,
        max_duration_seconds: Optional[int] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> ScanJobSpec:
        """Queue a scan; lower ``priority`` values are claimed first (1 is the most urgent)."""
        pages = int(max_pages or self.settings.scan_default_max_pages)
        duration = int(max_duration_seconds or self.settings.scan_default_max_duration_seconds)

        def op(db: Session) -> ScanJobSpec:
            scan = Scan(url=url, status=ScanStatus.queued, max_pages=pages, max_duration_seconds=duration)
            scan.progress_message = "Scan queued for processing"
            db.add(scan)
            db.flush()
            job = ScanJob(
                scan_id=scan.id,
                url=url,
                max_pages=pages,
                max_duration_seconds=duration,
                state=ScanJobState.queued,
                priority=priority,
            )
            db.add(job)
            db.flush()
            return _job_spec(job)

        spec = self._write("enqueue scan", op)
        logger.info("Queued scan %s for %s (max_pages=%d)", spec.scan_id, url, pages)
        return spec

    def claim_next_job(self, worker_id: str) -> Optional[ScanJobSpec]:
        def op(db: Session) -> Optional[ScanJobSpec]:
            job = db.execute(
                select(ScanJob)
                .where(ScanJob.state == ScanJobState.queued)
                .order_by(ScanJob.priority.asc(), ScanJob.created_at.asc(), ScanJob.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            ).scalar_one_or_none()
            if job is None:
                return None
            now = self._clock()
            job.state = ScanJobState.claimed
            job.worker_id = worker_id
            job.attempts = int(job.attempts or 0) + 1
            job.claimed_at = now
            job.heartbeat_at = now
            return _job_spec(job)

        return self._write("claim scan job", op)

    def mark_started(self, spec: ScanJobSpec) -> None:
        def op(db: Session) -> None:
            now = self._clock()
            scan = db.get(Scan, spec.scan_id)
            if scan is not None:
                scan.started_at = now
            if spec.job_id is not None:
                job = db.get(ScanJob, spec.job_id)
                if job is not None:
                    job.state = ScanJobState.processing
                    job.heartbeat_at = now

        self._write("mark scan started", op)

    def _finish_job(self, db: Session, scan_id: str, state: ScanJobState, error: Optional[str] = None) -> None:
        jobs = db.execute(
            select(ScanJob).where(
                ScanJob.scan_id == scan_id,
                ScanJob.state.in_([ScanJobState.queued, ScanJobState.claimed, ScanJobState.processing]),
            )
        ).scalars().all()
        for job in jobs:
            job.state = state
            job.completed_at = self._clock()
            if error:
                job.last_error = error[:2000]

    # -- progress -----------------------------------------------------

    def record_progress(self, state: ScanState) -> None:
        db = self._session()
        try:
            scan = db.get(Scan, state.scan_id)
            if scan is None or (scan.status is not None and scan.status.terminal):
                return
            _apply_progress(scan, state)
            db.execute(
                ScanJob.__table__.update()
                .where(ScanJob.scan_id == state.scan_id, ScanJob.state == ScanJobState.processing)
                .values(heartbeat_at=self._clock())
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def progress_listener(self) -> Callable[[ScanState], None]:
        """Broadcaster subscriber mirroring non-terminal progress into the scan row.

        The listener only queues the write. A single background thread applies
        queued writes in publish order, so publishers running on an event loop
        never wait on the database.
        """

        def listener(state: ScanState) -> None:
            if state.status.terminal:
                # Terminal rows are written by save_results / mark_failed
                return
            if self._progress_writer is None:
                self._progress_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan-progress")
            self._progress_writer.submit(self._mirror_progress, state)

        return listener

    def _mirror_progress(self, state: ScanState) -> None:
        try:
            self.record_progress(state)
        except SQLAlchemyError as exc:
            logger.warning("Could not mirror progress of scan %s: %s", state.scan_id, exc)

    def flush_progress(self) -> None:
        """Block until every queued progress write has been applied."""
        if self._progress_writer is not None:
            self._progress_writer.submit(lambda: None).result()

    # -- results ------------------------------------------------------

    def save_results(
        self,
        state: ScanState,
        findings: List[Finding],
        score: ScanScore,
        *,
        quick_wins: Optional[QuickWinsAnalysis] = None,
        top_issues: Optional[TopIssuesReport] = None,
        pages: Iterable[CanonicalPage] = (),
        processing_time_ms: Optional[int] = None,
    ) -> None:
        self.flush_progress()
        page_payload = [page.to_dict() for page in pages]
        report: Dict[str, Any] = {"score": score.to_dict()}
        if quick_wins is not None:
            report["quickWins"] = quick_wins.to_dict()
        if top_issues is not None:
            report["topIssues"] = top_issues.to_dict()

        def op(db: Session) -> None:
            scan = db.get(Scan, state.scan_id)
            if scan is None:
                raise PersistenceError(f"Scan {state.scan_id} does not exist")
            if scan.status == ScanStatus.failed:
                logger.info("Discarding late results for failed scan %s", state.scan_id)
                return
            _apply_progress(scan, state)
            # Written before the in-memory transition so a failed write can still fail the scan
            scan.status = ScanStatus.completed
            scan.progress = 100
            scan.progress_message = "Scan completed successfully"
            scan.estimated_completion = None
            _apply_score(scan, score)
            _apply_counters(scan, findings)
            scan.canonical_pages_json = page_payload
            scan.report_json = report
            scan.error_message = None
            scan.processing_time_ms = processing_time_ms
            scan.completed_at = self._clock()
            _replace_findings(db, state.scan_id, findings)
            self._finish_job(db, state.scan_id, ScanJobState.done)

        self._write("save scan results", op)
        logger.info("Saved scan %s: %d findings, overall score %d", state.scan_id, len(findings), score.overall)

    def mark_failed(
        self,
        scan_id: str,
        reason: str,
        *,
        state: Optional[ScanState] = None,
        findings: Optional[List[Finding]] = None,
        pages: Iterable[CanonicalPage] = (),
        processing_time_ms: Optional[int] = None,
    ) -> None:
        self.flush_progress()
        message = str(reason or "").strip() or "Scan failed"
        page_payload = [page.to_dict() for page in pages]

        def op(db: Session) -> None:
            scan = db.get(Scan, scan_id)
            if scan is None:
                return
            if state is not None:
                _apply_progress(scan, state)
            scan.status = ScanStatus.failed
            scan.progress = 0
            scan.error_message = message
            scan.processing_time_ms = processing_time_ms
            scan.completed_at = self._clock()
            if findings:
                _apply_counters(scan, findings)
                _replace_findings(db, scan_id, findings)
            if page_payload:
                scan.canonical_pages_json = page_payload
            self._finish_job(db, scan_id, ScanJobState.failed, message)

        self._write("mark scan failed", op)
        logger.info("Marked scan %s failed: %s", scan_id, message)

    # -- reads --------------------------------------------------------

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        db = self._session()
        try:
            return db.get(Scan, scan_id)
        finally:
            db.close()

    def load_score(self, scan_id: str) -> Optional[ScanScore]:
        scan = self.get_scan(scan_id)
        if scan is None or scan.overall_score is None:
            return None
        return ScanScore(
            perceivable=scan.perceivable_score,
            operable=scan.operable_score,
            understandable=scan.understandable_score,
            robust=scan.robust_score,
            overall=scan.overall_score,
            wcag_a=bool(scan.wcag_a_compliant),
            wcag_aa=bool(scan.wcag_aa_compliant),
            wcag_aaa=bool(scan.wcag_aaa_compliant),
            improvement=int(scan.score_improvement or 0),
            direction=scan.score_direction or "stable",
        )

    def load_findings(self, scan_id: str) -> List[Finding]:
        db = self._session()
        try:
            rows = db.execute(
                select(ScanFinding).where(ScanFinding.scan_id == scan_id).order_by(ScanFinding.ordinal.asc())
            ).scalars().all()
            return [_finding_from_row(row) for row in rows]
        finally:
            db.close()

    def load_pages(self, scan_id: str) -> List[CanonicalPage]:
        scan = self.get_scan(scan_id)
        if scan is None:
            return []
        return [CanonicalPage.from_dict(payload) for payload in (scan.canonical_pages_json or [])]

    def previous_overall_score(self, url: str, exclude_scan_id: Optional[str] = None) -> Optional[int]:
        """Overall score of the latest completed scan of ``url``; None when there is none."""
        db = self._session()
        try:
            query = (
                select(Scan.overall_score)
                .where(
                    Scan.url == url,
                    Scan.status == ScanStatus.completed,
                    Scan.overall_score.is_not(None),
                )
                .order_by(Scan.completed_at.desc())
                .limit(1)
            )
            if exclude_scan_id:
                query = query.where(Scan.id != exclude_scan_id)
            value = db.execute(query).scalar_one_or_none()
            return int(value) if value is not None else None
        finally:
            db.close()

    def mark_false_positive(self, finding_id: str, value: bool = True) -> bool:
        def op(db: Session) -> bool:
            row = db.get(ScanFinding, finding_id)
            if row is None:
                return False
            row.false_positive = bool(value)
            return True

        return self._write("flag false positive", op)

    def update_analysis(
        self,
        scan_id: str,
        findings: List[Finding],
        score: ScanScore,
        *,
        quick_wins: Optional[QuickWinsAnalysis] = None,
        top_issues: Optional[TopIssuesReport] = None,
        replace_findings: bool = True,
    ) -> None:
        """Overwrite the scores (and optionally the findings) of an already finished scan."""

        def op(db: Session) -> None:
            scan = db.get(Scan, scan_id)
            if scan is None:
                raise PersistenceError(f"Scan {scan_id} does not exist")
            _apply_score(scan, score)
            _apply_counters(scan, findings)
            report = dict(scan.report_json or {})
            report["score"] = score.to_dict()
            if quick_wins is not None:
                report["quickWins"] = quick_wins.to_dict()
            if top_issues is not None:
                report["topIssues"] = top_issues.to_dict()
            scan.report_json = report
            if replace_findings:
                _replace_findings(db, scan_id, findings)

        self._write("update scan analysis", op)

    # -- maintenance --------------------------------------------------

    def fail_stale_jobs(self, grace_seconds: Optional[int] = None) -> int:
        """Fail claimed/processing jobs whose worker went silent past duration + grace."""
        grace = int(self.settings.stale_job_grace_seconds if grace_seconds is None else grace_seconds)
        now = self._clock()

        def op(db: Session) -> List[str]:
            jobs = db.execute(
                select(ScanJob).where(ScanJob.state.in_([ScanJobState.claimed, ScanJobState.processing]))
            ).scalars().all()
            stale = []
            for job in jobs:
                last_seen = job.heartbeat_at or job.claimed_at or job.created_at
                if last_seen is None:
                    continue
                deadline = last_seen + timedelta(seconds=int(job.max_duration_seconds) + grace)
                if deadline > now:
                    continue
                job.state = ScanJobState.failed
                job.last_error = STALE_JOB_REASON
                job.completed_at = now
                scan = db.get(Scan, job.scan_id)
                if scan is not None and not (scan.status is not None and scan.status.terminal):
                    scan.status = ScanStatus.failed
                    scan.progress = 0
                    scan.error_message = STALE_JOB_REASON
                    scan.completed_at = now
                stale.append(job.scan_id)
            return stale

        stale = self._write("fail stale jobs", op)
        for scan_id in stale:
            logger.warning("Failed stale scan job for scan %s", scan_id)
        return len(stale)

    def cleanup_old_jobs(self, retention_days: Optional[int] = None) -> int:
        days = int(self.settings.job_retention_days if retention_days is None else retention_days)
        cutoff = self._clock() - timedelta(days=days)

        def op(db: Session) -> int:
            result = db.execute(
                delete(ScanJob).where(
                    ScanJob.state.in_([ScanJobState.done, ScanJobState.failed]),
                    or_(ScanJob.completed_at < cutoff, ScanJob.completed_at.is_(None) & (ScanJob.created_at < cutoff)),
                )
            )
            return int(result.rowcount or 0)

        removed = self._write("clean up old jobs", op)
        if removed:
            logger.info("Removed %d finished scan jobs older than %d days", removed, days)
        return removed
