from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

HTML_SNIPPET_MAX_CHARS = 500


class Severity(str, Enum):
    critical = "critical"
    serious = "serious"
    moderate = "moderate"
    minor = "minor"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]


_SEVERITY_WEIGHT = {
    Severity.critical: 4,
    Severity.serious: 3,
    Severity.moderate: 2,
    Severity.minor: 1,
}


class WCAGLevel(str, Enum):
    A = "A"
    AA = "AA"
    AAA = "AAA"

    @property
    def rank(self) -> int:
        return {"A": 1, "AA": 2, "AAA": 3}[self.value]


class Category(str, Enum):
    perceivable = "perceivable"
    operable = "operable"
    understandable = "understandable"
    robust = "robust"


class LegalRisk(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class FindingSource(str, Enum):
    rule = "rule"
    ai = "ai"


class FixEffort(str, Enum):
    trivial = "trivial"
    easy = "easy"
    moderate = "moderate"
    complex = "complex"


@dataclass(frozen=True)
class RawFinding:
    """Candidate issue emitted by a rule or the contextual analyzer, before WCAG metadata is attached."""
    rule_id: str
    severity: Severity
    page_url: str
    selector: str
    element_type: str = ""
    html: str = ""
    message: str = ""
    source: FindingSource = FindingSource.rule
    confidence: float = 1.0
    wcag_criterion: Optional[str] = None
    legal_risk: Optional[LegalRisk] = None
    fix_effort: Optional[FixEffort] = None
    # AI-supplied overrides
    user_impact: str = ""
    fix_description: str = ""
    fix_code: str = ""
    estimated_fix_minutes: Optional[int] = None


@dataclass(frozen=True)
class Remediation:
    description: str
    code: str
    effort: FixEffort

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description, "code": self.code, "effort": self.effort.value}


@dataclass(frozen=True)
class ElementRef:
    element_type: str
    selector: str
    html: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.element_type, "selector": self.selector, "html": self.html}


@dataclass(frozen=True)
class Finding:
    id: str
    source: FindingSource
    rule_id: str
    wcag_criterion: str
    wcag_level: WCAGLevel
    category: Category
    severity: Severity
    element: ElementRef
    page_url: str
    legal_risk: LegalRisk
    quick_win: bool
    estimated_fix_minutes: int
    estimated_fix_time: str
    confidence: float
    remediation: Remediation
    message: str = ""
    business_impact: str = ""
    user_impact: str = ""
    false_positive: bool = False

    def mark_false_positive(self, value: bool = True) -> "Finding":
        return replace(self, false_positive=bool(value))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "rule_id": self.rule_id,
            "wcag_criterion": self.wcag_criterion,
            "wcag_level": self.wcag_level.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "severity_weight": self.severity.weight,
            "element": self.element.to_dict(),
            "page_url": self.page_url,
            "legal_risk": self.legal_risk.value,
            "quick_win": self.quick_win,
            "estimated_fix_minutes": self.estimated_fix_minutes,
            "estimated_fix_time": self.estimated_fix_time,
            "confidence": self.confidence,
            "remediation": self.remediation.to_dict(),
            "message": self.message,
            "business_impact": self.business_impact,
            "user_impact": self.user_impact,
            "false_positive": self.false_positive,
        }


def truncate_html(html: str, limit: int = HTML_SNIPPET_MAX_CHARS) -> str:
    text = str(html or "")
    return text if len(text) <= limit else text[:limit]
