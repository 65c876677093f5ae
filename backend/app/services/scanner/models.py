"""Data models for the canonical page snapshot."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Landmark:
    """Landmark region, explicit role or implied by the tag."""
    role: str
    selector: str
    label: str = ""


@dataclass(frozen=True)
class HeadingNode:
    level: int  # 1-6
    text: str
    selector: str


@dataclass(frozen=True)
class LinkEdge:
    text: str  # accessible name (aria-label, text, image alt, title)
    href: str
    internal: bool
    selector: str
    html: str = ""


@dataclass(frozen=True)
class RoleNode:
    role: str
    name: str
    selector: str


@dataclass(frozen=True)
class FocusStop:
    selector: str
    tag: str
    tabindex: Optional[int] = None
    html: str = ""


@dataclass(frozen=True)
class ColorPair:
    """Foreground/background sample taken from computed styles in the browser."""
    selector: str
    foreground: str
    background: str
    font_size_px: float = 16.0
    font_weight: int = 400
    text: str = ""
    html: str = ""


@dataclass(frozen=True)
class TableInfo:
    selector: str
    headers: Tuple[str, ...] = ()
    row_count: int = 0
    caption: str = ""


@dataclass(frozen=True)
class ImageContext:
    selector: str
    src: str = ""
    alt: Optional[str] = None  # None when the attribute is absent
    aria_label: str = ""
    aria_labelledby: str = ""
    svg_title: str = ""
    decorative: bool = False
    surrounding_text: str = ""
    html: str = ""


@dataclass(frozen=True)
class MediaElement:
    selector: str
    tag: str  # video | audio
    has_captions: bool = False
    aria_describedby: str = ""
    html: str = ""


@dataclass(frozen=True)
class FormInput:
    selector: str
    tag: str
    input_type: str
    name: str = ""
    label: str = ""  # resolved label text, empty when none is associated
    hidden: bool = False
    html: str = ""


@dataclass(frozen=True)
class FormFlow:
    selector: str
    action: str = ""
    method: str = ""
    inputs: Tuple[FormInput, ...] = ()


@dataclass(frozen=True)
class CallToAction:
    selector: str
    tag: str
    role: str = ""
    text: str = ""
    accessible_name: str = ""
    is_native: bool = True
    has_click_handler: bool = False
    has_key_handler: bool = False
    tabindex: Optional[int] = None
    html: str = ""


@dataclass(frozen=True)
class PageLayout:
    landmarks: Tuple[Landmark, ...] = ()
    heading_tree: Tuple[HeadingNode, ...] = ()
    link_graph: Tuple[LinkEdge, ...] = ()


@dataclass(frozen=True)
class AccessibilityTree:
    roles: Tuple[RoleNode, ...] = ()
    focus_order: Tuple[FocusStop, ...] = ()
    color_pairs: Tuple[ColorPair, ...] = ()


@dataclass(frozen=True)
class PageContent:
    visible_text: str = ""
    tables: Tuple[TableInfo, ...] = ()
    image_contexts: Tuple[ImageContext, ...] = ()
    media: Tuple[MediaElement, ...] = ()


@dataclass(frozen=True)
class PageFlows:
    forms: Tuple[FormFlow, ...] = ()
    call_to_actions: Tuple[CallToAction, ...] = ()


@dataclass(frozen=True)
class PageMeta:
    framework: str = "vanilla"
    language: str = ""
    canonical_url: str = ""
    title: str = ""


@dataclass(frozen=True)
class CanonicalPage:
    """Framework-agnostic structural snapshot of one rendered URL."""
    url: str
    captured_at: str
    layout: PageLayout = field(default_factory=PageLayout)
    accessibility_tree: AccessibilityTree = field(default_factory=AccessibilityTree)
    content: PageContent = field(default_factory=PageContent)
    flows: PageFlows = field(default_factory=PageFlows)
    meta: PageMeta = field(default_factory=PageMeta)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CanonicalPage":
        layout = payload.get("layout") or {}
        tree = payload.get("accessibility_tree") or {}
        content = payload.get("content") or {}
        flows = payload.get("flows") or {}
        meta = payload.get("meta") or {}
        return cls(
            url=str(payload.get("url") or ""),
            captured_at=str(payload.get("captured_at") or ""),
            layout=PageLayout(
                landmarks=_rows(Landmark, layout.get("landmarks")),
                heading_tree=_rows(HeadingNode, layout.get("heading_tree")),
                link_graph=_rows(LinkEdge, layout.get("link_graph")),
            ),
            accessibility_tree=AccessibilityTree(
                roles=_rows(RoleNode, tree.get("roles")),
                focus_order=_rows(FocusStop, tree.get("focus_order")),
                color_pairs=_rows(ColorPair, tree.get("color_pairs")),
            ),
            content=PageContent(
                visible_text=str(content.get("visible_text") or ""),
                tables=tuple(
                    TableInfo(**{**row, "headers": tuple(row.get("headers") or ())})
                    for row in content.get("tables") or []
                ),
                image_contexts=_rows(ImageContext, content.get("image_contexts")),
                media=_rows(MediaElement, content.get("media")),
            ),
            flows=PageFlows(
                forms=tuple(
                    FormFlow(**{**row, "inputs": _rows(FormInput, row.get("inputs"))})
                    for row in flows.get("forms") or []
                ),
                call_to_actions=_rows(CallToAction, flows.get("call_to_actions")),
            ),
            meta=PageMeta(**meta),
        )


def _rows(row_type, values: Optional[List[Dict[str, Any]]]) -> tuple:
    return tuple(row_type(**value) for value in values or [])


@dataclass(frozen=True)
class RenderedPage:
    """Read-only capture of a page after the browser finished rendering it."""
    url: str
    html: str
    final_url: str = ""
    framework: str = ""
    color_samples: Tuple[Dict[str, Any], ...] = ()
    status_code: Optional[int] = None
