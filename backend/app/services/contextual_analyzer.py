"""AI-assisted contextual analysis producing supplementary findings.

The analyzer is best-effort: any timeout, provider failure or malformed response
yields an empty list so the scan continues on rule-engine output alone.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.config import Settings, get_settings
from app.services.llm.orchestrator import LLMOrchestrator
from app.services.llm.types import LLMOrchestrationError, LLMRequest, LLMStage
from app.services.scanner.models import CanonicalPage
from app.services.wcag.catalog import leading_minutes, normalize_criterion
from app.services.wcag.types import (
    FindingSource,
    FixEffort,
    LegalRisk,
    RawFinding,
    Severity,
    truncate_html,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert accessibility auditor. Return only valid JSON."

# Per-section caps applied before the overall character budget
SECTION_LIMITS = {
    "headings": 40,
    "landmarks": 20,
    "links": 40,
    "images": 30,
    "forms": 10,
    "call_to_actions": 30,
    "tables": 10,
    "media": 10,
    "known_findings": 50,
}
VISIBLE_TEXT_LIMIT = 2000


class AIFindingPayload(BaseModel):
    """One entry of the provider's findings array."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    wcag_criterion: str = Field(alias="wcagCriterion")
    severity: Severity
    element_selector: str = Field(default="", alias="elementSelector")
    element_html: str = Field(default="", alias="elementHtml")
    rule_id: str = Field(default="", alias="ruleId")
    user_impact: str = Field(default="", alias="userImpact")
    legal_risk_level: Optional[LegalRisk] = Field(default=None, alias="legalRiskLevel")
    fix_description: str = Field(default="", alias="fixDescription")
    fix_code: str = Field(default="", alias="fixCode")
    fix_effort: Optional[FixEffort] = Field(default=None, alias="fixEffort")
    estimated_fix_time: str = Field(default="", alias="estimatedFixTime")
    ai_confidence: float = Field(default=0.8, ge=0.0, le=1.0, alias="aiConfidence")

    @field_validator("wcag_criterion", mode="before")
    @classmethod
    def _criterion(cls, value: Any) -> str:
        criterion = normalize_criterion(value)
        if not criterion:
            raise ValueError(f"not a WCAG success criterion: {value!r}")
        return criterion

    @field_validator("severity", "legal_risk_level", "fix_effort", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        if isinstance(value, str):
            token = value.strip().lower()
            return token or None
        return value


class ContextualAnalyzer:
    def __init__(
        self,
        orchestrator: Optional[LLMOrchestrator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> LLMOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = LLMOrchestrator(self.settings)
        return self._orchestrator

    async def analyze(self, page: CanonicalPage, known_findings: List[RawFinding]) -> List[RawFinding]:
        if not self.settings.ai_enabled:
            return []
        request = LLMRequest(
            stage=LLMStage.contextual_analysis,
            prompt=self.build_prompt(page, known_findings),
            system_prompt=SYSTEM_PROMPT,
            timeout_seconds=max(1, int(self.settings.ai_timeout_seconds)),
            expect_json=True,
        )
        try:
            # Abandoned threads may still finish; their result is simply dropped
            response = await asyncio.wait_for(
                asyncio.to_thread(self.orchestrator.run_stage, request),
                timeout=float(self.settings.ai_timeout_seconds),
            )
        except asyncio.TimeoutError:
            logger.warning("Contextual analysis timed out after %ss for %s", self.settings.ai_timeout_seconds, page.url)
            return []
        except LLMOrchestrationError as exc:
            logger.warning(
                "Contextual analysis unavailable for %s: %s (%d attempts, last: %s)",
                page.url, exc, len(exc.attempts), exc.last_error or "none",
            )
            return []
        except Exception:
            logger.exception("Contextual analysis failed for %s", page.url)
            return []
        return self.parse_findings(response.text, page.url)

    # -- prompt -------------------------------------------------------

    def build_payload(self, page: CanonicalPage, known_findings: List[RawFinding]) -> str:
        limits = dict(SECTION_LIMITS)
        text_limit = VISIBLE_TEXT_LIMIT
        budget = max(1000, int(self.settings.ai_payload_max_chars))
        while True:
            payload = json.dumps(self._snapshot(page, known_findings, limits, text_limit), ensure_ascii=False)
            if len(payload) <= budget:
                return payload
            if text_limit > 0:
                text_limit = 0
                continue
            if all(value <= 1 for value in limits.values()):
                return payload[:budget]
            limits = {key: max(1, value // 2) for key, value in limits.items()}

    def _snapshot(
        self,
        page: CanonicalPage,
        known_findings: List[RawFinding],
        limits: Dict[str, int],
        text_limit: int,
    ) -> Dict[str, Any]:
        return {
            "url": page.url,
            "meta": {
                "framework": page.meta.framework,
                "language": page.meta.language,
                "title": page.meta.title,
            },
            "headings": [
                {"level": h.level, "text": h.text[:120], "selector": h.selector}
                for h in page.layout.heading_tree[:limits["headings"]]
            ],
            "landmarks": [
                {"role": mark.role, "label": mark.label, "selector": mark.selector}
                for mark in page.layout.landmarks[:limits["landmarks"]]
            ],
            "links": [
                {"text": link.text[:80], "href": link.href, "internal": link.internal, "selector": link.selector}
                for link in page.layout.link_graph[:limits["links"]]
            ],
            "images": [
                {
                    "selector": i.selector,
                    "src": i.src[:200],
                    "alt": i.alt,
                    "aria_label": i.aria_label,
                    "decorative": i.decorative,
                    "context": i.surrounding_text[:120],
                }
                for i in page.content.image_contexts[:limits["images"]]
            ],
            "forms": [
                {
                    "selector": f.selector,
                    "inputs": [
                        {"selector": c.selector, "type": c.input_type, "label": c.label}
                        for c in f.inputs[:20]
                    ],
                }
                for f in page.flows.forms[:limits["forms"]]
            ],
            "call_to_actions": [
                {"selector": c.selector, "tag": c.tag, "name": c.accessible_name[:80], "native": c.is_native}
                for c in page.flows.call_to_actions[:limits["call_to_actions"]]
            ],
            "tables": [
                {"selector": t.selector, "headers": list(t.headers[:10]), "rows": t.row_count, "caption": t.caption}
                for t in page.content.tables[:limits["tables"]]
            ],
            "media": [
                {"selector": m.selector, "tag": m.tag, "captions": m.has_captions}
                for m in page.content.media[:limits["media"]]
            ],
            "visible_text": page.content.visible_text[:text_limit],
            "known_findings": [
                {"rule": f.rule_id, "selector": f.selector, "severity": f.severity.value}
                for f in known_findings[:limits["known_findings"]]
            ],
        }

    def build_prompt(self, page: CanonicalPage, known_findings: List[RawFinding]) -> str:
        payload = self.build_payload(page, known_findings)
        return f"""You are an ADA compliance expert analyzing a web page for accessibility violations.

Page structure (JSON):
{payload}

Rule-based checks already reported {len(known_findings)} violations (listed under known_findings).
Do NOT repeat them. Find additional contextual issues:
1. Decorative vs informative image detection (alt text that does not match the image purpose)
2. User journey blockers in forms and calls to action
3. Confusing UX patterns that impact accessibility
4. Patterns from recent ADA lawsuits

Return ONLY a JSON object of the form {{"findings": [...]}} where each finding is:
{{
  "wcagCriterion": "WCAG success criterion number, e.g. 1.1.1",
  "severity": "critical|serious|moderate|minor",
  "elementSelector": "CSS selector taken from the page structure",
  "userImpact": "How this affects users",
  "legalRiskLevel": "high|medium|low",
  "fixDescription": "How to fix",
  "fixCode": "Example code",
  "fixEffort": "trivial|easy|moderate|complex",
  "estimatedFixTime": "X minutes",
  "aiConfidence": 0.0-1.0
}}
Return {{"findings": []}} when nothing else is wrong."""

    # -- response -----------------------------------------------------

    def _load_entries(self, text: str) -> Optional[List[Any]]:
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", str(text or "").strip())
        if not cleaned:
            return None
        try:
            parsed: Any = json.loads(cleaned)
        except json.JSONDecodeError:
            start_idx = cleaned.find("[")
            end_idx = cleaned.rfind("]") + 1
            if start_idx == -1 or end_idx <= start_idx:
                return None
            try:
                parsed = json.loads(cleaned[start_idx:end_idx])
            except json.JSONDecodeError:
                return None
        if isinstance(parsed, dict):
            parsed = parsed.get("findings")
        return parsed if isinstance(parsed, list) else None

    def parse_findings(self, text: str, page_url: str) -> List[RawFinding]:
        entries = self._load_entries(text)
        if entries is None:
            logger.warning("Discarding malformed contextual analysis response for %s", page_url)
            return []

        findings: List[RawFinding] = []
        for index, entry in enumerate(entries):
            if len(findings) >= self.settings.ai_max_findings:
                logger.info("Contextual analysis capped at %d findings for %s", self.settings.ai_max_findings, page_url)
                break
            if not isinstance(entry, dict):
                logger.info("Dropping non-object AI finding #%d for %s", index, page_url)
                continue
            try:
                item = AIFindingPayload.model_validate(entry)
            except ValidationError as exc:
                logger.info("Dropping invalid AI finding #%d for %s: %s", index, page_url, exc.errors()[:1])
                continue
            findings.append(self._to_raw(item, page_url))
        return findings

    def _to_raw(self, item: AIFindingPayload, page_url: str) -> RawFinding:
        minutes = leading_minutes(item.estimated_fix_time, 0) if item.estimated_fix_time else 0
        return RawFinding(
            rule_id=(item.rule_id or f"ai-{item.wcag_criterion}").strip().lower(),
            severity=item.severity,
            page_url=page_url,
            selector=item.element_selector,
            element_type="",
            html=truncate_html(item.element_html),
            message=item.user_impact,
            source=FindingSource.ai,
            confidence=float(item.ai_confidence),
            wcag_criterion=item.wcag_criterion,
            legal_risk=item.legal_risk_level,
            fix_effort=item.fix_effort,
            user_impact=item.user_impact,
            fix_description=item.fix_description,
            fix_code=item.fix_code,
            estimated_fix_minutes=minutes or None,
        )
