"""Merge rule-engine and AI findings into the uniform Finding model."""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Set, Tuple

from app.services.wcag.catalog import WCAGCatalog
from app.services.wcag.types import (
    ElementRef,
    Finding,
    FindingSource,
    RawFinding,
    Remediation,
    truncate_html,
)

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"<\s*([a-zA-Z][\w-]*)")


def _element_type(raw: RawFinding) -> str:
    if raw.element_type:
        return raw.element_type
    match = _TAG_PATTERN.search(raw.html or "")
    return match.group(1).lower() if match else "unknown"


class FindingNormalizer:
    def __init__(self, catalog: Optional[WCAGCatalog] = None, *, suppress_ai_duplicates: bool = False) -> None:
        self.catalog = catalog or WCAGCatalog()
        self.suppress_ai_duplicates = suppress_ai_duplicates

    def normalize(
        self,
        rule_findings: Iterable[RawFinding],
        ai_findings: Iterable[RawFinding],
        scan_id: str,
    ) -> List[Finding]:
        """Rule findings first, then AI findings; ids are ``{scan_id}-{rule_id}-{ordinal}``."""
        rule_list = list(rule_findings)
        ai_list = list(ai_findings)
        if self.suppress_ai_duplicates:
            ai_list = self._drop_duplicates(rule_list, ai_list)

        findings: List[Finding] = []
        for ordinal, raw in enumerate(rule_list + ai_list):
            findings.append(self._build(raw, scan_id, ordinal))
        return findings

    def _key(self, raw: RawFinding) -> Tuple[str, str, str]:
        criterion = self.catalog.metadata(raw.rule_id, raw.wcag_criterion).wcag_criterion
        return raw.page_url, (raw.selector or "").strip(), criterion

    def _drop_duplicates(self, rule_list: List[RawFinding], ai_list: List[RawFinding]) -> List[RawFinding]:
        seen: Set[Tuple[str, str, str]] = {self._key(raw) for raw in rule_list}
        kept = []
        for raw in ai_list:
            if self._key(raw) in seen:
                logger.debug("Suppressing AI finding duplicating rule finding at %s", raw.selector)
                continue
            kept.append(raw)
        return kept

    def _remediation(self, raw: RawFinding) -> Remediation:
        template = self.catalog.remediation(raw.rule_id)
        if raw.source == FindingSource.ai and raw.fix_description:
            return Remediation(
                description=raw.fix_description,
                code=raw.fix_code or template.code,
                effort=raw.fix_effort or template.effort,
            )
        if raw.fix_effort is not None and raw.fix_effort != template.effort:
            return Remediation(description=template.description, code=template.code, effort=raw.fix_effort)
        return template

    def _build(self, raw: RawFinding, scan_id: str, ordinal: int) -> Finding:
        meta = self.catalog.metadata(raw.rule_id, raw.wcag_criterion)
        minutes = self.catalog.fix_minutes(raw.rule_id, meta.quick_win)
        fix_time = self.catalog.fix_time(raw.rule_id, meta.quick_win)
        if raw.estimated_fix_minutes:
            minutes = int(raw.estimated_fix_minutes)
            fix_time = f"{minutes} minutes"
        return Finding(
            id=f"{scan_id}-{raw.rule_id}-{ordinal}",
            source=raw.source,
            rule_id=raw.rule_id,
            wcag_criterion=meta.wcag_criterion,
            wcag_level=meta.level,
            category=meta.category,
            severity=raw.severity,
            element=ElementRef(
                element_type=_element_type(raw),
                selector=raw.selector,
                html=truncate_html(raw.html),
            ),
            page_url=raw.page_url,
            legal_risk=raw.legal_risk or meta.legal_risk,
            quick_win=meta.quick_win,
            estimated_fix_minutes=minutes,
            estimated_fix_time=fix_time,
            confidence=min(1.0, max(0.0, float(raw.confidence))),
            remediation=self._remediation(raw),
            message=raw.message,
            business_impact=meta.business_impact,
            user_impact=raw.user_impact or meta.user_impact,
        )


def normalize(
    rule_findings: Iterable[RawFinding],
    ai_findings: Iterable[RawFinding],
    scan_id: str,
    catalog: Optional[WCAGCatalog] = None,
) -> List[Finding]:
    return FindingNormalizer(catalog).normalize(rule_findings, ai_findings, scan_id)
