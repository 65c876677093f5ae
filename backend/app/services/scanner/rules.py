"""Deterministic WCAG rules over a CanonicalPage.

Every rule is a plain function ``rule(page) -> List[RawFinding]`` with no shared
state, so the engine output depends only on the snapshot and the rule tuple.
"""

import re
import string
from typing import Callable, List, Optional, Sequence, Tuple

from app.services.wcag.catalog import RuleId
from app.services.wcag.types import FixEffort, LegalRisk, RawFinding, Severity, truncate_html

from .constants import UNLABELED_INPUT_TYPES, VAGUE_LINK_PHRASES
from .models import CanonicalPage, ColorPair

Rule = Callable[[CanonicalPage], List[RawFinding]]

_TAG_PATTERN = re.compile(r"<\s*([a-zA-Z][\w-]*)")
_HEX_PATTERN = re.compile(r"^#([0-9a-f]{3,8})$", re.IGNORECASE)
_RGB_PATTERN = re.compile(r"rgba?\(\s*([\d.]+)[\s,]+([\d.]+)[\s,]+([\d.]+)(?:[\s,/]+([\d.]+%?))?\s*\)", re.IGNORECASE)
_NAMED_COLORS = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "red": (255, 0, 0),
    "green": (0, 128, 0),
    "blue": (0, 0, 255),
    "gray": (128, 128, 128),
    "grey": (128, 128, 128),
    "silver": (192, 192, 192),
    "yellow": (255, 255, 0),
    "orange": (255, 165, 0),
}


def _element_type(html: str, fallback: str) -> str:
    match = _TAG_PATTERN.search(html or "")
    return match.group(1).lower() if match else fallback


def _finding(
    rule_id: RuleId,
    page: CanonicalPage,
    *,
    severity: Severity,
    selector: str,
    message: str,
    html: str = "",
    element_type: str = "",
    legal_risk: Optional[LegalRisk] = None,
    fix_effort: Optional[FixEffort] = None,
) -> RawFinding:
    return RawFinding(
        rule_id=rule_id.value,
        severity=severity,
        page_url=page.url,
        selector=selector,
        element_type=element_type or _element_type(html, "unknown"),
        html=truncate_html(html),
        message=message,
        confidence=1.0,
        legal_risk=legal_risk,
        fix_effort=fix_effort,
    )


# -- required rules ------------------------------------------------------

def image_alt_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for image in page.content.image_contexts:
        if image.decorative:
            continue
        if (image.alt or "").strip() or image.aria_label or image.aria_labelledby or image.svg_title:
            continue
        findings.append(_finding(
            RuleId.image_alt, page,
            severity=Severity.critical,
            selector=image.selector,
            html=image.html,
            element_type=_element_type(image.html, "img"),
            message="Image has no alternative text",
            legal_risk=LegalRisk.high,
            fix_effort=FixEffort.trivial,
        ))
    return findings


def label_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for form in page.flows.forms:
        for control in form.inputs:
            if control.hidden or control.input_type in UNLABELED_INPUT_TYPES:
                continue
            if control.label:
                continue
            findings.append(_finding(
                RuleId.label, page,
                severity=Severity.serious,
                selector=control.selector,
                html=control.html,
                element_type=control.tag,
                message=f"Form control ({control.input_type}) has no associated label",
                legal_risk=LegalRisk.high,
            ))
    return findings


def _is_vague_link_text(text: str) -> bool:
    normalized = " ".join(text.lower().split()).strip(string.punctuation + " ")
    return normalized in VAGUE_LINK_PHRASES


def link_name_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for link in page.layout.link_graph:
        text = (link.text or "").strip()
        if text and not _is_vague_link_text(text):
            continue
        message = "Link has no accessible name" if not text else f'Link text "{text}" does not describe its destination'
        findings.append(_finding(
            RuleId.link_name, page,
            severity=Severity.moderate,
            selector=link.selector,
            html=link.html,
            element_type="a",
            message=message,
            legal_risk=LegalRisk.medium,
        ))
    return findings


def heading_order_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    last_level = 0
    for index, heading in enumerate(page.layout.heading_tree):
        if index == 0 and heading.level != 1:
            findings.append(_finding(
                RuleId.heading_order, page,
                severity=Severity.moderate,
                selector=heading.selector,
                element_type=f"h{heading.level}",
                message=f"First heading is h{heading.level}, expected h1",
            ))
        if heading.level - last_level > 1:
            findings.append(_finding(
                RuleId.heading_order, page,
                severity=Severity.minor,
                selector=heading.selector,
                element_type=f"h{heading.level}",
                message=f"Heading level jumps from h{last_level} to h{heading.level}" if last_level else f"Heading level starts at h{heading.level}",
            ))
        last_level = heading.level
    return findings


# -- supplementary rules -------------------------------------------------

def empty_heading_rule(page: CanonicalPage) -> List[RawFinding]:
    return [
        _finding(
            RuleId.empty_heading, page,
            severity=Severity.serious,
            selector=heading.selector,
            element_type=f"h{heading.level}",
            message="Heading has no text content",
        )
        for heading in page.layout.heading_tree
        if not (heading.text or "").strip()
    ]


def button_name_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for cta in page.flows.call_to_actions:
        if cta.tag not in ("button", "input") and cta.role != "button":
            continue
        if cta.accessible_name:
            continue
        findings.append(_finding(
            RuleId.button_name, page,
            severity=Severity.critical,
            selector=cta.selector,
            html=cta.html,
            element_type=cta.tag,
            message="Button has no accessible name",
        ))
    return findings


def keyboard_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for cta in page.flows.call_to_actions:
        if cta.is_native or not cta.has_click_handler:
            continue
        focusable = cta.tabindex is not None and cta.tabindex >= 0
        if focusable and cta.has_key_handler:
            continue
        reason = "is not keyboard focusable" if not focusable else "has no keyboard event handler"
        findings.append(_finding(
            RuleId.keyboard, page,
            severity=Severity.critical,
            selector=cta.selector,
            html=cta.html,
            element_type=cta.tag,
            message=f"Clickable <{cta.tag}> {reason}",
        ))
    return findings


def focus_order_rule(page: CanonicalPage) -> List[RawFinding]:
    return [
        _finding(
            RuleId.focus_order, page,
            severity=Severity.moderate,
            selector=stop.selector,
            html=stop.html,
            element_type=stop.tag,
            message=f"Positive tabindex ({stop.tabindex}) overrides the natural focus order",
        )
        for stop in page.accessibility_tree.focus_order
        if stop.tabindex is not None and stop.tabindex > 0
    ]


def parse_css_color(value: str) -> Optional[Tuple[float, float, float]]:
    token = (value or "").strip().lower()
    if not token:
        return None
    if token in _NAMED_COLORS:
        return tuple(float(channel) for channel in _NAMED_COLORS[token])
    match = _RGB_PATTERN.match(token)
    if match:
        alpha = match.group(4)
        if alpha is not None:
            alpha_value = float(alpha[:-1]) / 100 if alpha.endswith("%") else float(alpha)
            if alpha_value == 0:
                return None
        return tuple(min(255.0, float(match.group(index))) for index in (1, 2, 3))
    match = _HEX_PATTERN.match(token)
    if match:
        digits = match.group(1)
        if len(digits) in (3, 4):
            digits = "".join(ch * 2 for ch in digits[:3])
        elif len(digits) in (6, 8):
            digits = digits[:6]
        else:
            return None
        return tuple(float(int(digits[i:i + 2], 16)) for i in (0, 2, 4))
    return None


def relative_luminance(rgb: Sequence[float]) -> float:
    channels = []
    for value in rgb:
        value = value / 255
        channels.append(value / 12.92 if value <= 0.03928 else ((value + 0.055) / 1.055) ** 2.4)
    red, green, blue = channels
    return 0.2126 * red + 0.7152 * green + 0.0722 * blue


def contrast_ratio(foreground: Sequence[float], background: Sequence[float]) -> float:
    first = relative_luminance(foreground)
    second = relative_luminance(background)
    lighter, darker = max(first, second), min(first, second)
    return (lighter + 0.05) / (darker + 0.05)


def required_contrast(pair: ColorPair) -> float:
    large = pair.font_size_px >= 18 or (pair.font_size_px >= 14 and pair.font_weight >= 700)
    return 3.0 if large else 4.5


def color_contrast_rule(page: CanonicalPage) -> List[RawFinding]:
    findings = []
    for pair in page.accessibility_tree.color_pairs:
        foreground = parse_css_color(pair.foreground)
        background = parse_css_color(pair.background)
        if foreground is None or background is None:
            continue
        ratio = contrast_ratio(foreground, background)
        required = required_contrast(pair)
        if ratio >= required:
            continue
        findings.append(_finding(
            RuleId.color_contrast, page,
            severity=Severity.serious,
            selector=pair.selector,
            html=pair.html,
            element_type=_element_type(pair.html, "text"),
            message=f"Insufficient contrast ({ratio:.2f}:1; needs {required:g}:1)",
        ))
    return findings


def html_has_lang_rule(page: CanonicalPage) -> List[RawFinding]:
    if (page.meta.language or "").strip():
        return []
    return [_finding(
        RuleId.html_has_lang, page,
        severity=Severity.serious,
        selector="html",
        element_type="html",
        message="Document language is not declared on the <html> element",
    )]


def video_caption_rule(page: CanonicalPage) -> List[RawFinding]:
    return [
        _finding(
            RuleId.video_caption, page,
            severity=Severity.critical,
            selector=media.selector,
            html=media.html,
            element_type=media.tag,
            message=f"<{media.tag}> has no captions track",
        )
        for media in page.content.media
        if not media.has_captions and not media.aria_describedby
    ]


DEFAULT_RULES: Tuple[Rule, ...] = (
    image_alt_rule,
    label_rule,
    link_name_rule,
    heading_order_rule,
    empty_heading_rule,
    button_name_rule,
    keyboard_rule,
    focus_order_rule,
    color_contrast_rule,
    html_has_lang_rule,
    video_caption_rule,
)


class RuleEngine:
    """Runs independent rules in a fixed order; extend by passing a longer rule tuple."""

    def __init__(self, rules: Optional[Sequence[Rule]] = None):
        self.rules: Tuple[Rule, ...] = tuple(DEFAULT_RULES if rules is None else rules)

    def analyze(self, page: CanonicalPage) -> List[RawFinding]:
        findings: List[RawFinding] = []
        for rule in self.rules:
            findings.extend(rule(page))
        return findings
