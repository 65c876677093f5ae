"""End-to-end scan pipeline: crawl, extract, rule checks, AI pass, normalize, score, persist.

One ``ScanPipeline.run`` call drives a single scan through its state machine and
publishes every state change through the progress broadcaster. The pipeline
never raises for scan-level failures; the returned outcome carries the final
state (``completed`` or ``failed``) instead.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urldefrag, urlparse

from app.config import Settings, get_settings
from app.services.contextual_analyzer import ContextualAnalyzer
from app.services.errors import BrowserSessionError, PageLoadError, PersistenceError, ScanError, ScanTimeoutError
from app.services.normalizer import FindingNormalizer
from app.services.progress import ProgressBroadcaster, get_broadcaster
from app.services.scan_state import ScanState, ScanStateMachine, ScanSummary
from app.services.scan_store import ScanJobSpec, ScanStore
from app.services.scanner.browser import open_browser
from app.services.scanner.constants import SKIP_EXTENSIONS
from app.services.scanner.extraction import CanonicalExtractor
from app.services.scanner.models import CanonicalPage
from app.services.scanner.rules import RuleEngine
from app.services.scoring import QuickWinsAnalysis, ScanScore, ScoringEngine, TopIssuesReport
from app.services.wcag.types import Finding, RawFinding, Severity

logger = logging.getLogger(__name__)

__all__ = ["ScanJobSpec", "ScanOutcome", "ScanPipeline", "discover_pages"]


def _page_key(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{parsed.netloc.lower()}{path}{query}"


def discover_pages(page: CanonicalPage, start_url: str, limit: int) -> List[str]:
    """Internal document links of ``page`` in document order, up to ``limit``."""
    if limit <= 0:
        return []
    host = urlparse(start_url).netloc.lower()
    seen = {_page_key(start_url), _page_key(page.url)}
    pages: List[str] = []
    for link in page.layout.link_graph:
        if not link.internal:
            continue
        href, _fragment = urldefrag(link.href)
        parsed = urlparse(href)
        if parsed.scheme not in ("http", "https") or parsed.netloc.lower() != host:
            continue
        if any(parsed.path.lower().endswith(ext) for ext in SKIP_EXTENSIONS):
            continue
        key = _page_key(href)
        if key in seen:
            continue
        seen.add(key)
        pages.append(href)
        if len(pages) >= limit:
            break
    return pages


@dataclass
class _PageResult:
    url: str
    page: Optional[CanonicalPage] = None
    findings: List[RawFinding] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class _ScanCollector:
    results: List[_PageResult] = field(default_factory=list)

    @property
    def pages(self) -> List[CanonicalPage]:
        return [result.page for result in self.results if result.page is not None]

    @property
    def rule_findings(self) -> List[RawFinding]:
        findings: List[RawFinding] = []
        for result in self.results:
            findings.extend(result.findings)
        return findings


@dataclass(frozen=True)
class ScanOutcome:
    state: ScanState
    findings: List[Finding] = field(default_factory=list)
    score: Optional[ScanScore] = None
    quick_wins: Optional[QuickWinsAnalysis] = None
    top_issues: Optional[TopIssuesReport] = None
    pages: List[CanonicalPage] = field(default_factory=list)


class ScanPipeline:
    def __init__(
        self,
        *,
        store: Optional[ScanStore] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        settings: Optional[Settings] = None,
        browser_factory: Optional[Callable[[], Any]] = None,
        extractor: Optional[CanonicalExtractor] = None,
        rule_engine: Optional[RuleEngine] = None,
        analyzer: Optional[ContextualAnalyzer] = None,
        normalizer: Optional[FindingNormalizer] = None,
        scoring: Optional[ScoringEngine] = None,
        mirror_progress: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or ScanStore(settings=self.settings)
        self.broadcaster = broadcaster or get_broadcaster()
        self.browser_factory = browser_factory or (lambda: open_browser(self.settings))
        self.extractor = extractor or CanonicalExtractor()
        self.rule_engine = rule_engine or RuleEngine()
        self.analyzer = analyzer or ContextualAnalyzer(settings=self.settings)
        self.normalizer = normalizer or FindingNormalizer(
            suppress_ai_duplicates=self.settings.suppress_ai_duplicates,
        )
        self.scoring = scoring or ScoringEngine()
        self.mirror_progress = mirror_progress

    def _publish(self, machine: ScanStateMachine) -> ScanState:
        self.broadcaster.publish(machine.state.scan_id, machine.state)
        return machine.state

    async def run(self, spec: ScanJobSpec) -> ScanOutcome:
        machine = ScanStateMachine(spec.scan_id)
        collector = _ScanCollector()
        outcome: Dict[str, Any] = {}
        unsubscribe = None
        self.broadcaster.evict_expired()
        if self.mirror_progress:
            unsubscribe = self.broadcaster.subscribe(spec.scan_id, self.store.progress_listener())
        self._publish(machine)
        started = time.perf_counter()

        reason: Optional[str] = None
        try:
            await asyncio.wait_for(
                self._execute(spec, machine, collector, outcome, started),
                timeout=float(spec.max_duration_seconds),
            )
        except asyncio.TimeoutError:
            reason = str(ScanTimeoutError(spec.max_duration_seconds))
        except ScanError as exc:
            reason = str(exc)
        except Exception as exc:
            logger.exception("Scan %s crashed", spec.scan_id)
            reason = f"Unexpected error: {exc}"

        if reason is not None and not machine.terminal:
            logger.warning("Scan %s failed: %s", spec.scan_id, reason)
            machine.fail(reason)
            self._publish(machine)
            await self._persist_failure(spec, machine, collector, reason, started)

        if unsubscribe is not None:
            unsubscribe()
        self.broadcaster.schedule_eviction(spec.scan_id)
        return ScanOutcome(
            state=machine.state,
            findings=outcome.get("findings", []),
            score=outcome.get("score"),
            quick_wins=outcome.get("quick_wins"),
            top_issues=outcome.get("top_issues"),
            pages=collector.pages,
        )

    async def _execute(
        self,
        spec: ScanJobSpec,
        machine: ScanStateMachine,
        collector: _ScanCollector,
        outcome: Dict[str, Any],
        started: float,
    ) -> None:
        machine.start()
        self._publish(machine)
        await asyncio.to_thread(self.store.mark_started, spec)

        await self._crawl(spec, machine, collector)
        if not collector.pages:
            errors = "; ".join(f"{result.url}: {result.error}" for result in collector.results)
            raise ScanError(f"No pages could be analyzed ({errors})")

        machine.analyzing()
        self._publish(machine)
        # Later pages are only discovered from a loaded start page
        primary = collector.results[0]
        ai_findings = await self.analyzer.analyze(primary.page, primary.findings)
        findings = self.normalizer.normalize(collector.rule_findings, ai_findings, spec.scan_id)

        machine.generating_report()
        self._publish(machine)
        previous = await asyncio.to_thread(self.store.previous_overall_score, spec.url, spec.scan_id)
        score = self.scoring.score(findings, previous)
        quick_wins = self.scoring.quick_wins(findings)
        top_issues = self.scoring.top_issues(findings)
        outcome.update(findings=findings, score=score, quick_wins=quick_wins, top_issues=top_issues)

        await asyncio.to_thread(
            self.store.save_results,
            machine.state,
            findings,
            score,
            quick_wins=quick_wins,
            top_issues=top_issues,
            pages=collector.pages,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

        active = [finding for finding in findings if not finding.false_positive]
        machine.complete(ScanSummary(
            total_violations=len(active),
            critical_issues=sum(1 for finding in active if finding.severity == Severity.critical),
            quick_wins=quick_wins.total_quick_wins,
            overall_score=score.overall,
        ))
        self._publish(machine)
        logger.info(
            "Scan %s completed: %d pages, %d findings, score %d",
            spec.scan_id, len(collector.pages), len(findings), score.overall,
        )

    async def _crawl(self, spec: ScanJobSpec, machine: ScanStateMachine, collector: _ScanCollector) -> None:
        max_pages = max(1, int(spec.max_pages))
        async with self.browser_factory() as browser:
            machine.begin_crawl(1, spec.url)
            self._publish(machine)

            first = await self._load_page(browser, spec.url)
            collector.results.append(first)
            targets: List[str] = []
            if first.page is not None:
                targets = discover_pages(first.page, spec.url, max_pages - 1)
                if targets:
                    machine.discovered(1 + len(targets))
                    self._publish(machine)
            machine.page_done(spec.url, first.error)
            self._publish(machine)

            if not targets:
                return
            order = {url: index for index, url in enumerate(targets)}
            semaphore = asyncio.Semaphore(max(1, int(self.settings.scan_page_concurrency)))

            async def crawl_one(url: str) -> None:
                async with semaphore:
                    result = await self._load_page(browser, url)
                collector.results.append(result)
                machine.page_done(url, result.error)
                self._publish(machine)

            await asyncio.gather(*(crawl_one(url) for url in targets))
            # Document order, not completion order
            collector.results[1:] = sorted(collector.results[1:], key=lambda result: order[result.url])

    async def _load_page(self, browser: Any, url: str) -> _PageResult:
        try:
            rendered = await browser.render(url)
        except PageLoadError as exc:
            logger.warning("Page %s failed to load: %s", url, exc)
            return _PageResult(url=url, error=str(exc))
        except BrowserSessionError:
            raise
        except Exception as exc:
            logger.exception("Rendering %s failed", url)
            return _PageResult(url=url, error=f"Render failed: {exc}")

        try:
            page = self.extractor.extract(rendered)
            findings = self.rule_engine.analyze(page)
        except Exception as exc:
            logger.exception("Analyzing %s failed", url)
            return _PageResult(url=url, error=f"Analysis failed: {exc}")
        return _PageResult(url=url, page=page, findings=findings)

    async def _persist_failure(
        self,
        spec: ScanJobSpec,
        machine: ScanStateMachine,
        collector: _ScanCollector,
        reason: str,
        started: float,
    ) -> None:
        partial: List[Finding] = []
        try:
            partial = self.normalizer.normalize(collector.rule_findings, [], spec.scan_id)
        except Exception:
            logger.exception("Could not normalize partial findings for scan %s", spec.scan_id)
        try:
            await asyncio.to_thread(
                self.store.mark_failed,
                spec.scan_id,
                reason,
                state=machine.state,
                findings=partial,
                pages=collector.pages,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )
        except PersistenceError as exc:
            logger.error("Could not persist failure of scan %s: %s", spec.scan_id, exc)
        except Exception:
            logger.exception("Could not persist failure of scan %s", spec.scan_id)


def summarize_outcome(outcome: ScanOutcome) -> Dict[str, Any]:
    payload = outcome.state.to_dict()
    if outcome.score is not None:
        payload["score"] = outcome.score.to_dict()
    return payload


def run_scan(spec: ScanJobSpec, pipeline: Optional[ScanPipeline] = None) -> ScanOutcome:
    """Blocking entry point for worker processes."""
    # Celery workers are synchronous; each scan gets its own event loop
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete((pipeline or ScanPipeline()).run(spec))
    finally:
        loop.close()
        asyncio.set_event_loop(None)
