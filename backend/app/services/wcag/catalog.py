"""WCAG metadata catalog: rule ids, criteria, legal risk, remediation and fix-time tables."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from app.services.wcag.types import Category, FixEffort, LegalRisk, Remediation, WCAGLevel


class RuleId(str, Enum):
    image_alt = "image-alt"
    label = "label"
    link_name = "link-name"
    heading_order = "heading-order"
    empty_heading = "empty-heading"
    button_name = "button-name"
    keyboard = "keyboard"
    focus_order = "focus-order"
    color_contrast = "color-contrast"
    html_has_lang = "html-has-lang"
    video_caption = "video-caption"
    landmark_unique = "landmark-unique"
    skip_link = "skip-link"


@dataclass(frozen=True)
class RuleMetadata:
    rule_id: str
    wcag_criterion: str
    level: WCAGLevel
    category: Category
    legal_risk: LegalRisk
    quick_win: bool
    business_impact: str
    user_impact: str


P, O, U, R = Category.perceivable, Category.operable, Category.understandable, Category.robust
HIGH, MEDIUM, LOW = LegalRisk.high, LegalRisk.medium, LegalRisk.low
A, AA, AAA = WCAGLevel.A, WCAGLevel.AA, WCAGLevel.AAA

CATALOG: List[RuleMetadata] = [
    RuleMetadata(RuleId.image_alt.value, "1.1.1", A, P, HIGH, True, "Critical for SEO and legal compliance", "Screen reader users cannot understand images"),
    RuleMetadata(RuleId.color_contrast.value, "1.4.3", AA, P, HIGH, False, "Most common ADA lawsuit trigger", "Users with low vision cannot read text"),
    RuleMetadata(RuleId.label.value, "3.3.2", A, U, HIGH, True, "Blocks form submissions and conversions", "Screen reader users cannot fill forms"),
    RuleMetadata(RuleId.link_name.value, "2.4.4", A, O, MEDIUM, True, "Poor SEO and navigation UX", "Users cannot understand link purpose"),
    RuleMetadata(RuleId.button_name.value, "4.1.2", A, R, HIGH, True, "Breaks critical user interactions", "Screen reader users cannot use buttons"),
    RuleMetadata(RuleId.heading_order.value, "1.3.1", A, P, MEDIUM, True, "SEO penalties and poor navigation", "Confusing page structure for all users"),
    RuleMetadata(RuleId.empty_heading.value, "2.4.6", AA, O, MEDIUM, True, "Weakens page outline and search snippets", "Screen reader users land on headings that say nothing"),
    RuleMetadata(RuleId.landmark_unique.value, "1.3.6", AA, P, MEDIUM, True, "Moderate SEO impact", "Navigation confusion for screen readers"),
    RuleMetadata(RuleId.keyboard.value, "2.1.1", A, O, HIGH, False, "Excludes keyboard-only users entirely", "Complete inability to use interactive elements"),
    RuleMetadata(RuleId.focus_order.value, "2.4.3", A, O, MEDIUM, False, "Poor UX for keyboard navigation", "Confusing navigation flow"),
    RuleMetadata(RuleId.skip_link.value, "2.4.1", A, O, MEDIUM, True, "Minor UX improvement", "Slower navigation for keyboard users"),
    RuleMetadata(RuleId.html_has_lang.value, "3.1.1", A, U, MEDIUM, True, "Search engines and translators guess the page language", "Screen readers mispronounce page content"),
    RuleMetadata(RuleId.video_caption.value, "1.2.2", A, P, HIGH, False, "Frequent target of media accessibility complaints", "Deaf and hard-of-hearing users miss spoken content"),
]

DEFAULT_METADATA = RuleMetadata(
    rule_id="",
    wcag_criterion="4.1.2",
    level=A,
    category=R,
    legal_risk=MEDIUM,
    quick_win=False,
    business_impact="General accessibility improvement needed",
    user_impact="May impact users with disabilities",
)

# WCAG 2.1 success criteria -> conformance level
CRITERION_LEVELS: Dict[str, WCAGLevel] = {
    "1.1.1": A,
    "1.2.1": A, "1.2.2": A, "1.2.3": A, "1.2.4": AA, "1.2.5": AA,
    "1.2.6": AAA, "1.2.7": AAA, "1.2.8": AAA, "1.2.9": AAA,
    "1.3.1": A, "1.3.2": A, "1.3.3": A, "1.3.4": AA, "1.3.5": AA, "1.3.6": AAA,
    "1.4.1": A, "1.4.2": A, "1.4.3": AA, "1.4.4": AA, "1.4.5": AA, "1.4.6": AAA,
    "1.4.7": AAA, "1.4.8": AAA, "1.4.9": AAA, "1.4.10": AA, "1.4.11": AA,
    "1.4.12": AA, "1.4.13": AA,
    "2.1.1": A, "2.1.2": A, "2.1.3": AAA, "2.1.4": A,
    "2.2.1": A, "2.2.2": A, "2.2.3": AAA, "2.2.4": AAA, "2.2.5": AAA, "2.2.6": AAA,
    "2.3.1": A, "2.3.2": AAA, "2.3.3": AAA,
    "2.4.1": A, "2.4.2": A, "2.4.3": A, "2.4.4": A, "2.4.5": AA, "2.4.6": AA,
    "2.4.7": AA, "2.4.8": AAA, "2.4.9": AAA, "2.4.10": AAA,
    "2.5.1": A, "2.5.2": A, "2.5.3": A, "2.5.4": A, "2.5.5": AAA, "2.5.6": AAA,
    "3.1.1": A, "3.1.2": AA, "3.1.3": AAA, "3.1.4": AAA, "3.1.5": AAA, "3.1.6": AAA,
    "3.2.1": A, "3.2.2": A, "3.2.3": AA, "3.2.4": AA, "3.2.5": AAA,
    "3.3.1": A, "3.3.2": A, "3.3.3": AA, "3.3.4": AA, "3.3.5": AAA, "3.3.6": AAA,
    "4.1.1": A, "4.1.2": A, "4.1.3": AA,
}

PRINCIPLE_CATEGORY = {"1": P, "2": O, "3": U, "4": R}

FIX_TIME_BY_RULE: Dict[str, str] = {
    RuleId.image_alt.value: "2-5 minutes per image",
    RuleId.label.value: "1-3 minutes per form field",
    RuleId.link_name.value: "1-2 minutes per link",
    RuleId.button_name.value: "1-2 minutes per button",
    RuleId.color_contrast.value: "10-30 minutes per element",
    RuleId.keyboard.value: "30-60 minutes per interaction",
    RuleId.heading_order.value: "5-15 minutes per page",
}
QUICK_WIN_FIX_TIME = "5-10 minutes"
DEFAULT_FIX_TIME = "15-30 minutes"

REMEDIATION_BY_RULE: Dict[str, Remediation] = {
    RuleId.image_alt.value: Remediation(
        description="Add meaningful alt text that describes the image purpose and content",
        code='<img src="..." alt="Descriptive text about the image content" />',
        effort=FixEffort.trivial,
    ),
    RuleId.label.value: Remediation(
        description="Associate every form input with a descriptive label",
        code='<label for="input-id">Field Label</label>\n<input id="input-id" type="text" />',
        effort=FixEffort.easy,
    ),
    RuleId.link_name.value: Remediation(
        description="Give each link text that describes its destination out of context",
        code='<a href="/pricing">View pricing plans</a>',
        effort=FixEffort.trivial,
    ),
    RuleId.button_name.value: Remediation(
        description="Give every button a visible label or an aria-label",
        code='<button type="button" aria-label="Close dialog">\n  <svg aria-hidden="true">...</svg>\n</button>',
        effort=FixEffort.trivial,
    ),
    RuleId.heading_order.value: Remediation(
        description="Start the page with an h1 and never skip heading levels",
        code="<h1>Page title</h1>\n<h2>Section</h2>\n<h3>Subsection</h3>",
        effort=FixEffort.easy,
    ),
    RuleId.empty_heading.value: Remediation(
        description="Put descriptive text in every heading or remove the empty heading element",
        code="<h2>Our services</h2>",
        effort=FixEffort.trivial,
    ),
    RuleId.color_contrast.value: Remediation(
        description="Adjust colors to meet WCAG AA contrast ratio of 4.5:1",
        code="/* Ensure sufficient color contrast */\n.element {\n  color: #1a1a1a; /* Dark text */\n  background: #ffffff; /* Light background */\n}",
        effort=FixEffort.moderate,
    ),
    RuleId.keyboard.value: Remediation(
        description="Ensure all interactive elements are keyboard accessible",
        code="<button tabindex=\"0\" onKeyDown={handleKeyPress}>\n  Button Text\n</button>",
        effort=FixEffort.complex,
    ),
    RuleId.focus_order.value: Remediation(
        description="Remove positive tabindex values and order the DOM to match the visual order",
        code='<a href="/next" tabindex="0">Next</a>',
        effort=FixEffort.moderate,
    ),
    RuleId.html_has_lang.value: Remediation(
        description="Declare the document language on the html element",
        code='<html lang="en">',
        effort=FixEffort.trivial,
    ),
    RuleId.video_caption.value: Remediation(
        description="Provide synchronized captions for all prerecorded audio content",
        code='<video controls>\n  <source src="intro.mp4" type="video/mp4" />\n  <track kind="captions" src="intro.en.vtt" srclang="en" label="English" />\n</video>',
        effort=FixEffort.complex,
    ),
}

GENERIC_REMEDIATION = Remediation(
    description="Follow WCAG guidelines to fix this accessibility issue",
    code="// See WCAG guidance for specific remediation",
    effort=FixEffort.moderate,
)

_LEADING_MINUTES = re.compile(r"^\s*(\d+)")


def leading_minutes(fix_time: str, fallback: int) -> int:
    match = _LEADING_MINUTES.match(str(fix_time or ""))
    return int(match.group(1)) if match else fallback


def normalize_criterion(value: Any) -> Optional[str]:
    match = re.search(r"\b([1-4])\.(\d{1,2})\.(\d{1,2})\b", str(value or ""))
    if not match:
        return None
    return ".".join(match.groups())


class WCAGCatalog:
    """Lookup service over the rule catalog; every lookup resolves, unknown ids get the default entry."""

    def __init__(
        self,
        entries: Optional[List[RuleMetadata]] = None,
        *,
        remediations: Optional[Dict[str, Remediation]] = None,
        fix_times: Optional[Dict[str, str]] = None,
    ) -> None:
        rows = CATALOG if entries is None else entries
        self._by_rule = {row.rule_id: row for row in rows}
        self._remediations = dict(REMEDIATION_BY_RULE if remediations is None else remediations)
        self._fix_times = dict(FIX_TIME_BY_RULE if fix_times is None else fix_times)

    def metadata(self, rule_id: str, criterion: Optional[str] = None) -> RuleMetadata:
        row = self._by_rule.get(str(rule_id or "").strip().lower())
        if row is not None:
            return row
        normalized = normalize_criterion(criterion)
        if normalized and normalized in CRITERION_LEVELS:
            return RuleMetadata(
                rule_id=rule_id,
                wcag_criterion=normalized,
                level=CRITERION_LEVELS[normalized],
                category=PRINCIPLE_CATEGORY[normalized.split(".", 1)[0]],
                legal_risk=DEFAULT_METADATA.legal_risk,
                quick_win=DEFAULT_METADATA.quick_win,
                business_impact=DEFAULT_METADATA.business_impact,
                user_impact=DEFAULT_METADATA.user_impact,
            )
        return RuleMetadata(
            rule_id=rule_id,
            wcag_criterion=DEFAULT_METADATA.wcag_criterion,
            level=DEFAULT_METADATA.level,
            category=DEFAULT_METADATA.category,
            legal_risk=DEFAULT_METADATA.legal_risk,
            quick_win=DEFAULT_METADATA.quick_win,
            business_impact=DEFAULT_METADATA.business_impact,
            user_impact=DEFAULT_METADATA.user_impact,
        )

    def remediation(self, rule_id: str) -> Remediation:
        return self._remediations.get(str(rule_id or "").strip().lower(), GENERIC_REMEDIATION)

    def fix_time(self, rule_id: str, quick_win: bool) -> str:
        fallback = QUICK_WIN_FIX_TIME if quick_win else DEFAULT_FIX_TIME
        return self._fix_times.get(str(rule_id or "").strip().lower(), fallback)

    def fix_minutes(self, rule_id: str, quick_win: bool) -> int:
        return leading_minutes(self.fix_time(rule_id, quick_win), 5 if quick_win else 15)
