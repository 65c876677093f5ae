"""Accessibility scanner package: browser capture, canonical extraction, rule engine."""

from .models import (
    CanonicalPage,
    RenderedPage,
    PageLayout,
    AccessibilityTree,
    PageContent,
    PageFlows,
    PageMeta,
)
from .extraction import CanonicalExtractor
from .rules import RuleEngine, DEFAULT_RULES
from .browser import PlaywrightBrowser, open_browser

__all__ = [
    # Entry points
    "CanonicalExtractor",
    "RuleEngine",
    "DEFAULT_RULES",
    "PlaywrightBrowser",
    "open_browser",

    # Data models
    "CanonicalPage",
    "RenderedPage",
    "PageLayout",
    "AccessibilityTree",
    "PageContent",
    "PageFlows",
    "PageMeta",
]
