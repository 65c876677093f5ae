import json
import time
from datetime import datetime

from app.config import Settings
from app.services.contextual_analyzer import ContextualAnalyzer
from app.services.llm.types import LLMOrchestrationError, LLMResponse, LLMStage
from app.services.scanner.extraction import CanonicalExtractor
from app.services.scanner.models import RenderedPage
from app.services.wcag.types import FindingSource, FixEffort, LegalRisk, RawFinding, Severity

URL = "https://example.com/"


class _FakeOrchestrator:
    def __init__(self, text="", error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.requests = []

    def run_stage(self, request):
        self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LLMResponse(text=self.text, provider="openai", model="gpt-4.1-mini")


def _settings(**overrides):
    return Settings(**{"ai_enabled": True, "ai_timeout_seconds": 5, **overrides})


def _page(html='<html lang="en"><body><h1>Shop</h1><img src="hero.jpg" alt="image"></body></html>'):
    extractor = CanonicalExtractor(clock=lambda: datetime(2024, 1, 1))
    return extractor.extract(RenderedPage(url=URL, html=html))


def _entry(**overrides):
    entry = {
        "wcagCriterion": "1.1.1",
        "severity": "serious",
        "elementSelector": "img",
        "userImpact": "Alt text 'image' says nothing about the product",
        "legalRiskLevel": "high",
        "fixDescription": "Describe the product shown",
        "fixCode": '<img src="hero.jpg" alt="Red running shoe">',
        "fixEffort": "trivial",
        "estimatedFixTime": "5 minutes",
        "aiConfidence": 0.9,
    }
    entry.update(overrides)
    return entry


def test_parse_findings_maps_entries_to_raw_findings():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings())

    findings = analyzer.parse_findings(json.dumps({"findings": [_entry()]}), URL)
    assert len(findings) == 1
    finding = findings[0]
    assert finding.rule_id == "ai-1.1.1"
    assert finding.source == FindingSource.ai
    assert finding.severity == Severity.serious
    assert finding.wcag_criterion == "1.1.1"
    assert finding.selector == "img"
    assert finding.legal_risk == LegalRisk.high
    assert finding.fix_effort == FixEffort.trivial
    assert finding.estimated_fix_minutes == 5
    assert finding.confidence == 0.9
    assert finding.page_url == URL


def test_parse_findings_normalizes_loose_values():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings())
    text = "```json\n" + json.dumps([_entry(wcagCriterion="WCAG 2.4.7", severity="Critical", ruleId="Focus-Visible")]) + "\n```"

    findings = analyzer.parse_findings(text, URL)
    assert [(finding.rule_id, finding.wcag_criterion, finding.severity) for finding in findings] == [
        ("focus-visible", "2.4.7", Severity.critical),
    ]


def test_invalid_entries_are_dropped_individually():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings())
    entries = [
        _entry(wcagCriterion="not a criterion"),
        _entry(severity="catastrophic"),
        "just a string",
        _entry(aiConfidence=3),
        _entry(elementSelector="button.cta", wcagCriterion="2.1.1"),
    ]

    findings = analyzer.parse_findings(json.dumps({"findings": entries}), URL)
    assert [finding.selector for finding in findings] == ["button.cta"]


def test_malformed_response_yields_no_findings():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings())

    assert analyzer.parse_findings("I could not analyze this page.", URL) == []
    assert analyzer.parse_findings('{"findings": "none"}', URL) == []
    assert analyzer.parse_findings("", URL) == []


def test_findings_are_capped():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings(ai_max_findings=2))

    findings = analyzer.parse_findings(json.dumps([_entry(elementSelector=f"#i{n}") for n in range(5)]), URL)
    assert [finding.selector for finding in findings] == ["#i0", "#i1"]


async def test_analyze_returns_parsed_findings():
    orchestrator = _FakeOrchestrator(text=json.dumps({"findings": [_entry()]}))
    analyzer = ContextualAnalyzer(orchestrator=orchestrator, settings=_settings())
    known = [RawFinding(rule_id="html-has-lang", severity=Severity.serious, page_url=URL, selector="html")]

    findings = await analyzer.analyze(_page(), known)
    assert len(findings) == 1
    request = orchestrator.requests[0]
    assert request.stage == LLMStage.contextual_analysis
    assert request.expect_json is True
    assert "html-has-lang" in request.prompt
    assert "Rule-based checks already reported 1 violations" in request.prompt


async def test_analyze_is_skipped_when_disabled():
    orchestrator = _FakeOrchestrator(text=json.dumps([_entry()]))
    analyzer = ContextualAnalyzer(orchestrator=orchestrator, settings=_settings(ai_enabled=False))

    assert await analyzer.analyze(_page(), []) == []
    assert orchestrator.requests == []


async def test_analyze_degrades_to_empty_on_provider_failure():
    orchestrator = _FakeOrchestrator(error=LLMOrchestrationError("All model routes failed"))
    analyzer = ContextualAnalyzer(orchestrator=orchestrator, settings=_settings())

    assert await analyzer.analyze(_page(), []) == []


async def test_analyze_degrades_to_empty_on_unexpected_error():
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(error=ValueError("boom")), settings=_settings())

    assert await analyzer.analyze(_page(), []) == []


async def test_analyze_times_out_to_empty():
    orchestrator = _FakeOrchestrator(text=json.dumps([_entry()]), delay=0.5)
    analyzer = ContextualAnalyzer(orchestrator=orchestrator, settings=_settings(ai_timeout_seconds=0.05))

    started = time.perf_counter()
    assert await analyzer.analyze(_page(), []) == []
    assert time.perf_counter() - started < 0.45


def test_payload_respects_character_budget():
    links = "".join(f'<a href="/p{n}">Product number {n} with a long descriptive name</a>' for n in range(300))
    page = _page(f'<html lang="en"><body><h1>Catalog</h1><p>{"lorem ipsum " * 500}</p>{links}</body></html>')
    analyzer = ContextualAnalyzer(orchestrator=_FakeOrchestrator(), settings=_settings(ai_payload_max_chars=3000))

    payload = analyzer.build_payload(page, [])
    assert len(payload) <= 3000
    assert json.loads(payload)["url"] == URL
