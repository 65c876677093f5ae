"""Canonical extraction: rendered HTML -> framework-agnostic CanonicalPage snapshot."""

import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from .constants import (
    CAPTION_TRACK_KINDS,
    CLICK_HANDLER_ATTRS,
    FOCUSABLE_TAGS,
    FRAMEWORK_SIGNATURES,
    HEADING_TAGS,
    IMPLICIT_LANDMARKS,
    INTERACTIVE_ROLES,
    KEY_HANDLER_ATTRS,
    LANDMARK_ROLES,
    MAX_COLOR_SAMPLES,
    MAX_ELEMENT_HTML_CHARS,
    MAX_SURROUNDING_TEXT_CHARS,
    MAX_VISIBLE_TEXT_CHARS,
)
from .models import (
    AccessibilityTree,
    CallToAction,
    CanonicalPage,
    ColorPair,
    FocusStop,
    FormFlow,
    FormInput,
    HeadingNode,
    ImageContext,
    Landmark,
    LinkEdge,
    MediaElement,
    PageContent,
    PageFlows,
    PageLayout,
    PageMeta,
    RenderedPage,
    RoleNode,
    TableInfo,
)

_WHITESPACE = re.compile(r"\s+")
_BUTTON_INPUT_TYPES = {"submit", "button", "reset", "image"}
_DEFAULT_INPUT_NAMES = {"submit": "Submit", "reset": "Reset"}


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_float(value, default: float) -> float:
    match = re.search(r"-?\d+(?:\.\d+)?", str(value or ""))
    return float(match.group(0)) if match else default


class CanonicalExtractor:
    """Builds a CanonicalPage from a rendered page without touching the live document."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def extract(self, rendered: RenderedPage) -> CanonicalPage:
        html = rendered.html or ""
        base_url = rendered.final_url or rendered.url
        tree = HTMLParser(html)
        elements = self._walk(tree)
        ids = self._index_ids(elements)

        return CanonicalPage(
            url=rendered.url,
            captured_at=self.clock().isoformat(),
            layout=PageLayout(
                landmarks=tuple(self._extract_landmarks(elements, ids)),
                heading_tree=tuple(self._extract_headings(elements, ids)),
                link_graph=tuple(self._extract_links(elements, ids, base_url)),
            ),
            accessibility_tree=AccessibilityTree(
                roles=tuple(self._extract_roles(elements, ids)),
                focus_order=tuple(self._extract_focus_order(elements)),
                color_pairs=tuple(self._extract_color_pairs(rendered)),
            ),
            content=PageContent(
                visible_text=self._extract_visible_text(html),
                tables=tuple(self._extract_tables(elements)),
                image_contexts=tuple(self._extract_images(elements, ids)),
                media=tuple(self._extract_media(elements)),
            ),
            flows=PageFlows(
                forms=tuple(self._extract_forms(elements, ids)),
                call_to_actions=tuple(self._extract_ctas(elements, ids)),
            ),
            meta=self._extract_meta(tree, rendered, base_url),
        )

    # -- node helpers -------------------------------------------------

    def _safe_node_text(self, node: Optional[Node], strip: bool = True) -> str:
        """Safely extract text from selectolax node."""
        if node is None:
            return ""
        try:
            text = node.text(deep=True, separator=" ", strip=strip)
        except Exception:
            return ""
        if text is None:
            return ""
        return _collapse(str(text)) if strip else str(text)

    def _safe_attr_text(self, node: Node, key: str) -> str:
        """Safely extract attribute text and normalize it."""
        if node is None:
            return ""
        raw = node.attributes.get(key, "")
        if raw is None:
            return ""
        return str(raw).strip()

    def _has_attr(self, node: Node, key: str) -> bool:
        return key in node.attributes

    def _outer_html(self, node: Node) -> str:
        try:
            html = node.html or ""
        except Exception:
            return ""
        return html[:MAX_ELEMENT_HTML_CHARS]

    def _walk(self, tree: HTMLParser) -> List[Node]:
        """All element nodes in document order."""
        root = tree.root
        if root is None:
            return []
        return [node for node in root.traverse(include_text=False) if isinstance(node.tag, str) and not node.tag.startswith(("-", "_", "!"))]

    def _index_ids(self, elements: List[Node]) -> Dict[str, Node]:
        ids: Dict[str, Node] = {}
        for node in elements:
            node_id = self._safe_attr_text(node, "id")
            if node_id and node_id not in ids:
                ids[node_id] = node
        return ids

    def _labelledby_text(self, node: Node, ids: Dict[str, Node]) -> str:
        refs = self._safe_attr_text(node, "aria-labelledby").split()
        parts = [self._safe_node_text(ids.get(ref)) for ref in refs]
        return _collapse(" ".join(part for part in parts if part))

    def _accessible_name(self, node: Node, ids: Dict[str, Node]) -> str:
        name = self._safe_attr_text(node, "aria-label") or self._labelledby_text(node, ids)
        if name:
            return name
        text = self._safe_node_text(node)
        if text:
            return text
        for img in node.css("img[alt]"):
            alt = self._safe_attr_text(img, "alt")
            if alt:
                return alt
        for svg in node.css("svg"):
            title = self._safe_node_text(svg.css_first("title"))
            if title:
                return title
        return self._safe_attr_text(node, "title")

    def _get_selector(self, node: Node) -> str:
        """Generate a CSS selector for a node, anchored at the nearest ancestor id."""
        segments: List[str] = []
        current: Optional[Node] = node
        while current is not None and isinstance(current.tag, str) and len(segments) < 4:
            node_id = self._safe_attr_text(current, "id")
            if node_id:
                segments.append(f"#{node_id}")
                break
            if current.tag in ("html", "body"):
                if not segments:
                    segments.append(current.tag)
                break
            segments.append(self._segment(current))
            current = current.parent
        return " > ".join(reversed(segments)) or (node.tag or "unknown")

    def _segment(self, node: Node) -> str:
        tag = node.tag
        segment = tag
        classes = self._safe_attr_text(node, "class").split()[:2]
        if classes:
            segment = f"{tag}.{'.'.join(classes)}"
        parent = node.parent
        if parent is not None:
            same_tag = [child for child in parent.iter(include_text=False) if child.tag == tag]
            if len(same_tag) > 1:
                for index, sibling in enumerate(same_tag, start=1):
                    if sibling.mem_id == node.mem_id:
                        segment += f":nth-of-type({index})"
                        break
        return segment

    # -- layout -------------------------------------------------------

    def _extract_landmarks(self, elements: List[Node], ids: Dict[str, Node]) -> List[Landmark]:
        landmarks = []
        for node in elements:
            role = self._safe_attr_text(node, "role").lower()
            if role not in LANDMARK_ROLES:
                role = IMPLICIT_LANDMARKS.get(node.tag, "")
            if not role:
                continue
            label = self._safe_attr_text(node, "aria-label") or self._labelledby_text(node, ids)
            landmarks.append(Landmark(role=role, selector=self._get_selector(node), label=label))
        return landmarks

    def _extract_headings(self, elements: List[Node], ids: Dict[str, Node]) -> List[HeadingNode]:
        headings = []
        for node in elements:
            if node.tag not in HEADING_TAGS:
                continue
            headings.append(HeadingNode(
                level=int(node.tag[1]),
                text=self._accessible_name(node, ids),
                selector=self._get_selector(node),
            ))
        return headings

    def _extract_links(self, elements: List[Node], ids: Dict[str, Node], base_url: str) -> List[LinkEdge]:
        base_host = (urlparse(base_url).hostname or "").lower()
        links = []
        for node in elements:
            if node.tag != "a" or not self._has_attr(node, "href"):
                continue
            raw_href = self._safe_attr_text(node, "href")
            href = urljoin(base_url, raw_href) if raw_href else base_url
            parsed = urlparse(href)
            internal = parsed.scheme in ("http", "https") and (parsed.hostname or "").lower() == base_host
            links.append(LinkEdge(
                text=self._accessible_name(node, ids),
                href=href,
                internal=internal,
                selector=self._get_selector(node),
                html=self._outer_html(node),
            ))
        return links

    # -- accessibility tree -------------------------------------------

    def _extract_roles(self, elements: List[Node], ids: Dict[str, Node]) -> List[RoleNode]:
        roles = []
        for node in elements:
            role = self._safe_attr_text(node, "role").lower()
            if not role:
                continue
            name = self._accessible_name(node, ids) if role in INTERACTIVE_ROLES else (
                self._safe_attr_text(node, "aria-label") or self._labelledby_text(node, ids)
            )
            roles.append(RoleNode(role=role, name=name, selector=self._get_selector(node)))
        return roles

    def _is_focusable(self, node: Node) -> bool:
        if self._has_attr(node, "disabled"):
            return False
        if self._has_attr(node, "tabindex"):
            return True
        tag = node.tag
        if tag == "a":
            return self._has_attr(node, "href")
        if tag == "input":
            return self._safe_attr_text(node, "type").lower() != "hidden"
        if self._safe_attr_text(node, "contenteditable").lower() in ("", "true") and self._has_attr(node, "contenteditable"):
            return True
        return tag in FOCUSABLE_TAGS

    def _extract_focus_order(self, elements: List[Node]) -> List[FocusStop]:
        """Sequential focus order: positive tabindex ascending, then tabindex 0 / native in document order."""
        positive: List[Tuple[int, int, FocusStop]] = []
        natural: List[FocusStop] = []
        for position, node in enumerate(elements):
            if not self._is_focusable(node):
                continue
            tabindex = _parse_int(self._safe_attr_text(node, "tabindex")) if self._has_attr(node, "tabindex") else None
            if tabindex is not None and tabindex < 0:
                continue
            stop = FocusStop(
                selector=self._get_selector(node),
                tag=node.tag,
                tabindex=tabindex,
                html=self._outer_html(node),
            )
            if tabindex is not None and tabindex > 0:
                positive.append((tabindex, position, stop))
            else:
                natural.append(stop)
        positive.sort(key=lambda item: (item[0], item[1]))
        return [item[2] for item in positive] + natural

    def _extract_color_pairs(self, rendered: RenderedPage) -> List[ColorPair]:
        pairs = []
        for sample in list(rendered.color_samples or [])[:MAX_COLOR_SAMPLES]:
            if not isinstance(sample, dict):
                continue
            foreground = str(sample.get("color") or sample.get("foreground") or "").strip()
            background = str(sample.get("backgroundColor") or sample.get("background") or "").strip()
            if not foreground or not background:
                continue
            pairs.append(ColorPair(
                selector=str(sample.get("selector") or ""),
                foreground=foreground,
                background=background,
                font_size_px=_parse_float(sample.get("fontSize"), 16.0),
                font_weight=int(_parse_float(sample.get("fontWeight"), 400)),
                text=_collapse(str(sample.get("text") or ""))[:MAX_SURROUNDING_TEXT_CHARS],
                html=str(sample.get("html") or "")[:MAX_ELEMENT_HTML_CHARS],
            ))
        return pairs

    # -- content ------------------------------------------------------

    def _extract_visible_text(self, html: str) -> str:
        # Separate parse so stripping tags never affects the structural pass
        tree = HTMLParser(html)
        tree.strip_tags(["script", "style", "noscript", "template"])
        body = tree.body or tree.root
        return self._safe_node_text(body)[:MAX_VISIBLE_TEXT_CHARS]

    def _extract_tables(self, elements: List[Node]) -> List[TableInfo]:
        tables = []
        for node in elements:
            if node.tag != "table":
                continue
            headers = tuple(self._safe_node_text(th) for th in node.css("th"))
            tables.append(TableInfo(
                selector=self._get_selector(node),
                headers=headers,
                row_count=len(node.css("tr")),
                caption=self._safe_node_text(node.css_first("caption")),
            ))
        return tables

    def _is_image(self, node: Node) -> bool:
        if node.tag == "img":
            return True
        return self._safe_attr_text(node, "role").lower() == "img"

    def _extract_images(self, elements: List[Node], ids: Dict[str, Node]) -> List[ImageContext]:
        images = []
        for node in elements:
            if not self._is_image(node):
                continue
            alt: Optional[str] = None
            if self._has_attr(node, "alt"):
                alt = self._safe_attr_text(node, "alt")
            role = self._safe_attr_text(node, "role").lower()
            decorative = (
                role in ("presentation", "none")
                or alt == ""
                or self._safe_attr_text(node, "aria-hidden").lower() == "true"
            )
            svg_title = ""
            if node.tag == "svg":
                svg_title = self._safe_node_text(node.css_first("title"))
            images.append(ImageContext(
                selector=self._get_selector(node),
                src=self._safe_attr_text(node, "src"),
                alt=alt,
                aria_label=self._safe_attr_text(node, "aria-label"),
                aria_labelledby=self._labelledby_text(node, ids),
                svg_title=svg_title,
                decorative=decorative,
                surrounding_text=self._safe_node_text(node.parent)[:MAX_SURROUNDING_TEXT_CHARS],
                html=self._outer_html(node),
            ))
        return images

    def _extract_media(self, elements: List[Node]) -> List[MediaElement]:
        media = []
        for node in elements:
            if node.tag not in ("video", "audio"):
                continue
            has_captions = any(
                self._safe_attr_text(track, "kind").lower() in CAPTION_TRACK_KINDS
                for track in node.css("track")
            )
            media.append(MediaElement(
                selector=self._get_selector(node),
                tag=node.tag,
                has_captions=has_captions,
                aria_describedby=self._safe_attr_text(node, "aria-describedby"),
                html=self._outer_html(node),
            ))
        return media

    # -- flows --------------------------------------------------------

    def _label_index(self, elements: List[Node]) -> Dict[str, str]:
        labels: Dict[str, str] = {}
        for node in elements:
            if node.tag != "label":
                continue
            target = self._safe_attr_text(node, "for")
            if target and target not in labels:
                labels[target] = self._safe_node_text(node)
        return labels

    def _wrapping_label(self, node: Node) -> str:
        parent = node.parent
        while parent is not None and isinstance(parent.tag, str):
            if parent.tag == "label":
                return self._safe_node_text(parent)
            if parent.tag in ("form", "body"):
                break
            parent = parent.parent
        return ""

    def _enclosing_form(self, node: Node) -> Optional[Node]:
        parent = node.parent
        while parent is not None and isinstance(parent.tag, str):
            if parent.tag == "form":
                return parent
            parent = parent.parent
        return None

    def _form_input(self, node: Node, ids: Dict[str, Node], labels: Dict[str, str]) -> FormInput:
        input_type = node.tag
        if node.tag == "input":
            input_type = self._safe_attr_text(node, "type").lower() or "text"
        node_id = self._safe_attr_text(node, "id")
        label = (
            (labels.get(node_id, "") if node_id else "")
            or self._wrapping_label(node)
            or self._safe_attr_text(node, "aria-label")
            or self._labelledby_text(node, ids)
        )
        hidden = input_type == "hidden" or self._has_attr(node, "hidden")
        return FormInput(
            selector=self._get_selector(node),
            tag=node.tag,
            input_type=input_type,
            name=self._safe_attr_text(node, "name"),
            label=label,
            hidden=hidden,
            html=self._outer_html(node),
        )

    def _extract_forms(self, elements: List[Node], ids: Dict[str, Node]) -> List[FormFlow]:
        labels = self._label_index(elements)
        forms: List[Tuple[Node, List[FormInput]]] = []
        orphans: List[FormInput] = []
        for node in elements:
            if node.tag == "form":
                forms.append((node, []))
                continue
            if node.tag not in ("input", "select", "textarea"):
                continue
            form_input = self._form_input(node, ids, labels)
            owner = self._enclosing_form(node)
            for form_node, inputs in forms:
                if owner is not None and form_node.mem_id == owner.mem_id:
                    inputs.append(form_input)
                    break
            else:
                orphans.append(form_input)

        flows = [
            FormFlow(
                selector=self._get_selector(form_node),
                action=self._safe_attr_text(form_node, "action"),
                method=self._safe_attr_text(form_node, "method").lower(),
                inputs=tuple(inputs),
            )
            for form_node, inputs in forms
        ]
        if orphans:
            # Controls outside any <form> still need labels
            flows.append(FormFlow(selector="", inputs=tuple(orphans)))
        return flows

    def _is_cta(self, node: Node) -> bool:
        tag = node.tag
        if tag == "button":
            return True
        if tag == "input" and self._safe_attr_text(node, "type").lower() in _BUTTON_INPUT_TYPES:
            return True
        if self._safe_attr_text(node, "role").lower() == "button":
            return True
        return any(self._has_attr(node, attr) for attr in CLICK_HANDLER_ATTRS)

    def _extract_ctas(self, elements: List[Node], ids: Dict[str, Node]) -> List[CallToAction]:
        ctas = []
        for node in elements:
            if not self._is_cta(node):
                continue
            tag = node.tag
            input_type = self._safe_attr_text(node, "type").lower() if tag == "input" else ""
            if tag == "input":
                name = (
                    self._safe_attr_text(node, "aria-label")
                    or self._labelledby_text(node, ids)
                    or self._safe_attr_text(node, "value")
                    or (self._safe_attr_text(node, "alt") if input_type == "image" else "")
                    or _DEFAULT_INPUT_NAMES.get(input_type, "")
                    or self._safe_attr_text(node, "title")
                )
            else:
                name = self._accessible_name(node, ids)
            is_native = tag in ("button", "input", "select", "textarea") or (tag == "a" and self._has_attr(node, "href"))
            ctas.append(CallToAction(
                selector=self._get_selector(node),
                tag=tag,
                role=self._safe_attr_text(node, "role").lower(),
                text=self._safe_node_text(node)[:MAX_SURROUNDING_TEXT_CHARS],
                accessible_name=name,
                is_native=is_native,
                has_click_handler=any(self._has_attr(node, attr) for attr in CLICK_HANDLER_ATTRS),
                has_key_handler=any(self._has_attr(node, attr) for attr in KEY_HANDLER_ATTRS),
                tabindex=_parse_int(self._safe_attr_text(node, "tabindex")) if self._has_attr(node, "tabindex") else None,
                html=self._outer_html(node),
            ))
        return ctas

    # -- meta ---------------------------------------------------------

    def _detect_framework(self, html: str) -> str:
        lowered = html.lower()
        for framework, markers in FRAMEWORK_SIGNATURES:
            if any(marker in lowered for marker in markers):
                return framework
        return "vanilla"

    def _extract_meta(self, tree: HTMLParser, rendered: RenderedPage, base_url: str) -> PageMeta:
        html_node = tree.css_first("html")
        language = self._safe_attr_text(html_node, "lang") if html_node is not None else ""
        canonical = ""
        canonical_node = tree.css_first('link[rel="canonical"]')
        if canonical_node is not None:
            href = self._safe_attr_text(canonical_node, "href")
            if href:
                canonical = urljoin(base_url, href)
        return PageMeta(
            framework=(rendered.framework or "").strip().lower() or self._detect_framework(rendered.html or ""),
            language=language,
            canonical_url=canonical or base_url,
            title=self._safe_node_text(tree.css_first("title")),
        )
