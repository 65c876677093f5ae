"""Scan lifecycle state machine and the progress record it publishes."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from app.services.errors import InvalidTransition


class ScanStatus(str, Enum):
    queued = "queued"
    starting = "starting"
    crawling = "crawling"
    analyzing = "analyzing"
    generating_report = "generating_report"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ScanStatus.completed, ScanStatus.failed)


ALLOWED_TRANSITIONS = {
    ScanStatus.queued: {ScanStatus.starting, ScanStatus.failed},
    ScanStatus.starting: {ScanStatus.crawling, ScanStatus.failed},
    ScanStatus.crawling: {ScanStatus.crawling, ScanStatus.analyzing, ScanStatus.failed},
    ScanStatus.analyzing: {ScanStatus.generating_report, ScanStatus.failed},
    ScanStatus.generating_report: {ScanStatus.completed, ScanStatus.failed},
    ScanStatus.completed: set(),
    ScanStatus.failed: set(),
}

STATUS_PROGRESS = {
    ScanStatus.queued: 0,
    ScanStatus.starting: 5,
    ScanStatus.analyzing: 85,
    ScanStatus.generating_report: 95,
    ScanStatus.completed: 100,
    ScanStatus.failed: 0,
}

# Per-page time estimate used for estimatedCompletion while crawling
QUICK_SCAN_PAGE_MS = 3000
DEEP_SCAN_PAGE_MS = 8000


def progress_for(status: ScanStatus, pages_discovered: int = 0, pages_crawled: int = 0) -> int:
    if status == ScanStatus.crawling:
        if pages_discovered > 0:
            return min(80, int(math.floor(20 + (pages_crawled / pages_discovered) * 60 + 0.5)))
        return 20
    return STATUS_PROGRESS[status]


@dataclass(frozen=True)
class PageErrorEntry:
    page: str
    error: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return {"page": self.page, "error": self.error, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ScanSummary:
    total_violations: int
    critical_issues: int
    quick_wins: int
    overall_score: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalViolations": self.total_violations,
            "criticalIssues": self.critical_issues,
            "quickWins": self.quick_wins,
            "overallScore": self.overall_score,
        }


@dataclass(frozen=True)
class ScanState:
    scan_id: str
    status: ScanStatus = ScanStatus.queued
    progress: int = 0
    current_step: str = "Scan queued for processing"
    pages_discovered: int = 0
    pages_crawled: int = 0
    current_page: Optional[str] = None
    errors: Tuple[PageErrorEntry, ...] = ()
    metadata: Optional[ScanSummary] = None
    start_time: Optional[str] = None
    estimated_completion: Optional[str] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scanId": self.scan_id,
            "status": self.status.value,
            "progress": self.progress,
            "currentStep": self.current_step,
            "pagesDiscovered": self.pages_discovered,
            "pagesCrawled": self.pages_crawled,
            "errors": [entry.to_dict() for entry in self.errors],
        }
        if self.current_page is not None:
            payload["currentPage"] = self.current_page
        if self.metadata is not None:
            payload["metadata"] = self.metadata.to_dict()
        if self.start_time is not None:
            payload["startTime"] = self.start_time
        if self.estimated_completion is not None:
            payload["estimatedCompletion"] = self.estimated_completion
        return payload


class ScanStateMachine:
    """Owns one scan's state; every mutation returns the new immutable snapshot."""

    def __init__(self, scan_id: str, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = ScanState(scan_id=scan_id, start_time=self._now())

    def _now(self) -> str:
        return self._clock().isoformat()

    @property
    def terminal(self) -> bool:
        return self.state.status.terminal

    def transition(self, target: ScanStatus, current_step: Optional[str] = None, **changes: Any) -> ScanState:
        current = self.state.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current.value, target.value)
        draft = replace(self.state, status=target, **changes)
        if current_step is not None:
            draft = replace(draft, current_step=current_step)
        computed = progress_for(target, draft.pages_discovered, draft.pages_crawled)
        # Monotonic except on failure
        progress = computed if target == ScanStatus.failed else max(self.state.progress, computed)
        self.state = replace(draft, progress=progress, estimated_completion=self._estimate(draft))
        return self.state

    def _estimate(self, state: ScanState) -> Optional[str]:
        if state.status != ScanStatus.crawling or state.pages_discovered <= 0:
            return state.estimated_completion if not state.status.terminal else None
        per_page = QUICK_SCAN_PAGE_MS if state.pages_discovered <= 5 else DEEP_SCAN_PAGE_MS
        remaining = max(0, state.pages_discovered - state.pages_crawled)
        return (self._clock() + timedelta(milliseconds=remaining * per_page)).isoformat()

    def start(self) -> ScanState:
        return self.transition(ScanStatus.starting, "Launching browser session")

    def begin_crawl(self, pages_discovered: int, first_page: str) -> ScanState:
        return self.transition(
            ScanStatus.crawling,
            f"Crawling {first_page}",
            pages_discovered=max(1, int(pages_discovered)),
            current_page=first_page,
        )

    def discovered(self, pages_discovered: int) -> ScanState:
        return self.transition(
            ScanStatus.crawling,
            pages_discovered=max(self.state.pages_discovered, int(pages_discovered)),
        )

    def page_done(self, page_url: str, error: Optional[str] = None) -> ScanState:
        errors = self.state.errors
        if error:
            errors = errors + (PageErrorEntry(page=page_url, error=error, timestamp=self._now()),)
        return self.transition(
            ScanStatus.crawling,
            f"Analyzing {page_url}",
            pages_crawled=self.state.pages_crawled + 1,
            current_page=page_url,
            errors=errors,
        )

    def analyzing(self) -> ScanState:
        return self.transition(ScanStatus.analyzing, "Analyzing findings")

    def generating_report(self) -> ScanState:
        return self.transition(ScanStatus.generating_report, "Generating report")

    def complete(self, summary: ScanSummary) -> ScanState:
        return self.transition(ScanStatus.completed, "Scan completed successfully", metadata=summary)

    def fail(self, reason: str) -> ScanState:
        message = str(reason or "").strip() or "Scan failed"
        errors = self.state.errors + (PageErrorEntry(page="system", error=message, timestamp=self._now()),)
        return self.transition(
            ScanStatus.failed,
            f"Scan failed: {message}",
            errors=errors,
            failure_reason=message,
        )
