"""POUR category scoring, compliance flags, quick-win and top-issue rankings.

Every output is a pure function of the finding list (plus an optional prior
overall score); findings flagged as false positives are ignored.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.services.wcag.types import Category, Finding, LegalRisk, WCAGLevel

QUICK_WIN_LIMIT = 5
TOP_ISSUE_LIMIT = 10
BLOCKING_SEVERITY = 3

JUSTIFICATION_TEMPLATES = {
    LegalRisk.high: "Critical legal risk: {count} instances could trigger ADA lawsuits. {impact}",
    LegalRisk.medium: "Moderate impact: {count} instances affecting user experience. {impact}",
    LegalRisk.low: "Quality improvement: {count} instances to enhance accessibility. {impact}",
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_minutes(total_minutes: int) -> str:
    if total_minutes < 60:
        return f"{total_minutes} minutes"
    hours = math.floor(total_minutes / 60 * 10 + 0.5) / 10
    return f"{hours:g} hours"


@dataclass(frozen=True)
class ScanScore:
    perceivable: int
    operable: int
    understandable: int
    robust: int
    overall: int
    wcag_a: bool
    wcag_aa: bool
    wcag_aaa: bool
    improvement: int = 0
    direction: str = "stable"

    def category(self, category: Category) -> int:
        return getattr(self, category.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "perceivable": self.perceivable,
            "operable": self.operable,
            "understandable": self.understandable,
            "robust": self.robust,
            "compliance": {"wcagA": self.wcag_a, "wcagAA": self.wcag_aa, "wcagAAA": self.wcag_aaa},
            "trends": {"improvement": self.improvement, "direction": self.direction},
        }


@dataclass(frozen=True)
class QuickWinGroup:
    rule_id: str
    count: int
    impact: str
    fix_minutes: int
    estimated_time: str
    score_gain: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule_id,
            "count": self.count,
            "impact": self.impact,
            "estimatedTime": self.estimated_time,
            "fixMinutes": self.fix_minutes,
            "scoreGain": self.score_gain,
        }


@dataclass(frozen=True)
class QuickWinsAnalysis:
    total_quick_wins: int
    estimated_time: str
    potential_score_gain: int
    priority_fixes: List[QuickWinGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalQuickWins": self.total_quick_wins,
            "estimatedTime": self.estimated_time,
            "potentialScoreGain": self.potential_score_gain,
            "priorityFixes": [group.to_dict() for group in self.priority_fixes],
        }


@dataclass(frozen=True)
class TopIssue:
    rule_id: str
    wcag_criterion: str
    count: int
    impact: str
    legal_risk: LegalRisk
    description: str
    business_justification: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule_id,
            "wcag": self.wcag_criterion,
            "count": self.count,
            "impact": self.impact,
            "legalRisk": self.legal_risk.value,
            "description": self.description,
            "businessJustification": self.business_justification,
        }


@dataclass(frozen=True)
class TopIssuesReport:
    issues: List[TopIssue]
    total_unique_issues: int
    critical_count: int
    high_legal_risk: int
    average_fix_time: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issues": [issue.to_dict() for issue in self.issues],
            "summary": {
                "totalUniqueIssues": self.total_unique_issues,
                "criticalCount": self.critical_count,
                "highLegalRisk": self.high_legal_risk,
                "averageFixTime": self.average_fix_time,
            },
        }


def _active(findings: List[Finding]) -> List[Finding]:
    return [finding for finding in findings if not finding.false_positive]


def _group_by_rule(findings: List[Finding]) -> Dict[str, List[Finding]]:
    groups: Dict[str, List[Finding]] = {}
    for finding in findings:
        groups.setdefault(finding.rule_id, []).append(finding)
    return groups


class ScoringEngine:
    def category_score(self, findings: List[Finding], category: Category) -> int:
        penalty = 0
        for finding in findings:
            if finding.category != category:
                continue
            penalty += finding.severity.weight * (2 if finding.legal_risk == LegalRisk.high else 1)
        return max(0, 100 - penalty)

    def score(self, findings: List[Finding], previous_overall: Optional[int] = None) -> ScanScore:
        active = _active(findings)
        categories = {category: self.category_score(active, category) for category in Category}
        overall = round_half_up(sum(categories.values()) / 4)

        def passes(max_level: WCAGLevel) -> bool:
            return not any(
                finding.wcag_level.rank <= max_level.rank and finding.severity.weight >= BLOCKING_SEVERITY
                for finding in active
            )

        improvement = 0
        direction = "stable"
        if previous_overall is not None:
            improvement = overall - int(previous_overall)
            if improvement > 0:
                direction = "improving"
            elif improvement < 0:
                direction = "declining"

        return ScanScore(
            perceivable=categories[Category.perceivable],
            operable=categories[Category.operable],
            understandable=categories[Category.understandable],
            robust=categories[Category.robust],
            overall=overall,
            wcag_a=passes(WCAGLevel.A),
            wcag_aa=passes(WCAGLevel.AA),
            wcag_aaa=passes(WCAGLevel.AAA),
            improvement=improvement,
            direction=direction,
        )

    def quick_wins(self, findings: List[Finding], limit: int = QUICK_WIN_LIMIT) -> QuickWinsAnalysis:
        quick = [finding for finding in _active(findings) if finding.quick_win]
        groups = []
        for rule_id, members in _group_by_rule(quick).items():
            minutes = sum(member.estimated_fix_minutes for member in members)
            groups.append(QuickWinGroup(
                rule_id=rule_id,
                count=len(members),
                impact=members[0].severity.value,
                fix_minutes=minutes,
                estimated_time=format_minutes(minutes),
                score_gain=sum(member.severity.weight * 2 for member in members),
            ))
        # sorted() is stable: equal gains keep first-appearance order
        ranked = sorted(groups, key=lambda group: group.score_gain, reverse=True)[:limit]
        return QuickWinsAnalysis(
            total_quick_wins=len(quick),
            estimated_time=format_minutes(sum(member.estimated_fix_minutes for member in quick)),
            potential_score_gain=sum(group.score_gain for group in ranked),
            priority_fixes=ranked,
        )

    def top_issues(self, findings: List[Finding], limit: int = TOP_ISSUE_LIMIT) -> TopIssuesReport:
        active = _active(findings)
        grouped = _group_by_rule(active)
        issues = []
        for rule_id, members in grouped.items():
            first = members[0]
            issues.append(TopIssue(
                rule_id=rule_id,
                wcag_criterion=first.wcag_criterion,
                count=len(members),
                impact=first.severity.value,
                legal_risk=first.legal_risk,
                description=first.message or first.user_impact,
                business_justification=JUSTIFICATION_TEMPLATES[first.legal_risk].format(
                    count=len(members),
                    impact=first.business_impact,
                ),
            ))
        issues.sort(key=lambda issue: (-issue.legal_risk.rank, -issue.count))

        average = 0
        if active:
            average = round_half_up(sum(finding.estimated_fix_minutes for finding in active) / len(active))
        return TopIssuesReport(
            issues=issues[:limit],
            total_unique_issues=len(grouped),
            critical_count=sum(1 for finding in active if finding.severity.weight == 4),
            high_legal_risk=sum(1 for finding in active if finding.legal_risk == LegalRisk.high),
            average_fix_time=f"{average} minutes per issue",
        )
