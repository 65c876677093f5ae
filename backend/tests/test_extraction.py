from datetime import datetime, timezone

from app.models.base import utcnow
from app.services.scanner.extraction import CanonicalExtractor
from app.services.scanner.models import CanonicalPage, RenderedPage


def _extract(html: str, url: str = "https://example.com/shop/", **kwargs) -> CanonicalPage:
    extractor = CanonicalExtractor(clock=lambda: datetime(2024, 1, 1, 12, 0, 0))
    return extractor.extract(RenderedPage(url=url, html=html, **kwargs))


def test_image_without_alt_is_not_decorative():
    page = _extract('<html lang="en"><body><main><img src="hero.jpg"></main></body></html>')

    assert len(page.content.image_contexts) == 1
    image = page.content.image_contexts[0]
    assert image.alt is None
    assert image.decorative is False
    assert image.src == "hero.jpg"
    assert image.selector == "main > img"


def test_image_variants_resolve_names_and_decorative_flags():
    page = _extract(
        """<html><body>
        <img src="logo.png" alt="">
        <img src="team.png" alt="Team photo">
        <img src="spacer.gif" role="presentation">
        <span id="cap">Revenue chart</span><img src="chart.png" aria-labelledby="cap">
        <svg role="img"><title>Growth</title></svg>
        </body></html>"""
    )

    images = page.content.image_contexts
    assert [image.decorative for image in images] == [True, False, True, False, False]
    assert images[1].alt == "Team photo"
    assert images[3].aria_labelledby == "Revenue chart"
    assert images[4].svg_title == "Growth"


def test_landmarks_use_explicit_and_implicit_roles():
    page = _extract(
        """<html><body>
        <header>Top</header>
        <nav aria-label="Primary"><a href="/">Home</a></nav>
        <main><div role="search"><input type="search" aria-label="Search"></div></main>
        <footer>Bottom</footer>
        </body></html>"""
    )

    roles = [(mark.role, mark.label) for mark in page.layout.landmarks]
    assert roles == [
        ("banner", ""),
        ("navigation", "Primary"),
        ("main", ""),
        ("search", ""),
        ("contentinfo", ""),
    ]


def test_links_are_resolved_and_classified():
    page = _extract(
        """<html><body>
        <a href="/about">About us</a>
        <a href="https://partner.org/x">Partner</a>
        <a href="contact"><img src="i.png" alt="Contact"></a>
        <a href="mailto:hi@example.com"></a>
        </body></html>"""
    )

    links = page.layout.link_graph
    assert [link.href for link in links] == [
        "https://example.com/about",
        "https://partner.org/x",
        "https://example.com/shop/contact",
        "mailto:hi@example.com",
    ]
    assert [link.internal for link in links] == [True, False, True, False]
    assert links[2].text == "Contact"
    assert links[3].text == ""


def test_headings_keep_document_order_and_levels():
    page = _extract("<html><body><h1>Shop</h1><h2>Deals</h2><h3> </h3><h2>Help</h2></body></html>")

    assert [(heading.level, heading.text) for heading in page.layout.heading_tree] == [
        (1, "Shop"),
        (2, "Deals"),
        (3, ""),
        (2, "Help"),
    ]
    assert page.layout.heading_tree[1].selector == "h2:nth-of-type(1)"
    assert page.layout.heading_tree[3].selector == "h2:nth-of-type(2)"


def test_selector_anchors_at_nearest_id():
    page = _extract('<html><body><div id="promo"><p><a href="/sale">Sale</a></p></div></body></html>')

    assert page.layout.link_graph[0].selector == "#promo > p > a"


def test_focus_order_puts_positive_tabindex_first_and_skips_negative():
    page = _extract(
        """<html><body>
        <a href="/a" tabindex="2">A</a>
        <button tabindex="1">B</button>
        <button>C</button>
        <div tabindex="-1">D</div>
        <input type="hidden" name="token">
        <button disabled>E</button>
        </body></html>"""
    )

    order = page.accessibility_tree.focus_order
    assert [(stop.tag, stop.tabindex) for stop in order] == [
        ("button", 1),
        ("a", 2),
        ("button", None),
    ]


def test_forms_resolve_labels_and_collect_orphan_controls():
    page = _extract(
        """<html><body>
        <form id="signup" action="/join" method="POST">
          <label for="email">Email</label><input id="email" type="email" name="email">
          <label>Name <input type="text" name="name"></label>
          <input type="text" name="phone" aria-label="Phone">
          <input type="text" name="nickname">
          <input type="hidden" name="token" value="x">
          <input type="submit" value="Join">
        </form>
        <input type="search" name="q">
        </body></html>"""
    )

    forms = page.flows.forms
    assert len(forms) == 2
    signup = forms[0]
    assert signup.selector == "#signup"
    assert signup.action == "/join"
    assert signup.method == "post"
    assert [control.label for control in signup.inputs] == ["Email", "Name", "Phone", "", "", ""]
    assert [control.hidden for control in signup.inputs] == [False, False, False, False, True, False]

    orphan = forms[1]
    assert orphan.selector == ""
    assert [(control.input_type, control.name) for control in orphan.inputs] == [("search", "q")]


def test_calls_to_action_capture_names_and_handlers():
    page = _extract(
        """<html><body>
        <input type="submit">
        <button class="icon"><svg></svg></button>
        <div onclick="openMenu()">Menu</div>
        <span role="button" tabindex="0" onclick="go()" onkeydown="go()">Go</span>
        </body></html>"""
    )

    ctas = page.flows.call_to_actions
    assert [(cta.tag, cta.accessible_name) for cta in ctas] == [
        ("input", "Submit"),
        ("button", ""),
        ("div", "Menu"),
        ("span", "Go"),
    ]
    assert [cta.is_native for cta in ctas] == [True, True, False, False]
    assert ctas[2].has_click_handler is True
    assert ctas[2].tabindex is None
    assert ctas[3].has_key_handler is True
    assert ctas[3].tabindex == 0
    assert ctas[3].role == "button"


def test_visible_text_excludes_scripts_and_styles():
    page = _extract(
        "<html><head><style>p { color: red; }</style></head>"
        "<body><p>Hello</p><script>var hidden = 1;</script><p>World</p></body></html>"
    )

    assert page.content.visible_text == "Hello World"


def test_tables_and_media():
    page = _extract(
        """<html><body>
        <table><caption>Prices</caption>
          <tr><th>Plan</th><th>Cost</th></tr>
          <tr><td>Basic</td><td>10</td></tr>
        </table>
        <video src="intro.mp4"></video>
        <video src="demo.mp4"><track kind="captions" src="demo.vtt"></video>
        </body></html>"""
    )

    table = page.content.tables[0]
    assert table.headers == ("Plan", "Cost")
    assert table.row_count == 2
    assert table.caption == "Prices"
    assert [media.has_captions for media in page.content.media] == [False, True]


def test_meta_reads_language_title_canonical_and_framework():
    page = _extract(
        """<html lang="en"><head><title>Shop</title><link rel="canonical" href="/shop">
        <script id="__NEXT_DATA__" type="application/json">{}</script></head>
        <body><p>x</p></body></html>"""
    )

    assert page.meta.language == "en"
    assert page.meta.title == "Shop"
    assert page.meta.canonical_url == "https://example.com/shop"
    assert page.meta.framework == "nextjs"


def test_framework_hint_wins_and_plain_pages_are_vanilla():
    hinted = _extract("<html><body><p>x</p></body></html>", framework="React")
    plain = _extract("<html><body><p>x</p></body></html>")

    assert hinted.meta.framework == "react"
    assert plain.meta.framework == "vanilla"
    assert plain.meta.language == ""
    assert plain.meta.canonical_url == "https://example.com/shop/"


def test_color_pairs_come_from_rendered_samples():
    page = _extract(
        "<html><body><p class='muted'>Muted</p></body></html>",
        color_samples=(
            {
                "selector": "p.muted",
                "color": "rgb(170, 170, 170)",
                "backgroundColor": "rgb(255, 255, 255)",
                "fontSize": "14px",
                "fontWeight": "700",
                "text": "Muted",
            },
            {"selector": "p.broken", "color": "rgb(0, 0, 0)"},
        ),
    )

    pairs = page.accessibility_tree.color_pairs
    assert len(pairs) == 1
    assert pairs[0].font_size_px == 14.0
    assert pairs[0].font_weight == 700
    assert pairs[0].background == "rgb(255, 255, 255)"


def test_extraction_is_deterministic_and_serializable():
    html = (
        '<html lang="en"><body><h1>Title</h1><form><input name="q"></form>'
        '<a href="/next">Next</a><img src="a.png"></body></html>'
    )
    first = _extract(html)
    second = _extract(html)

    assert first == second
    assert first.captured_at == "2024-01-01T12:00:00"
    assert CanonicalPage.from_dict(first.to_dict()) == first


def test_default_clock_stamps_pages_in_utc():
    page = CanonicalExtractor().extract(RenderedPage(url="https://example.com/", html="<html><body></body></html>"))

    captured = datetime.fromisoformat(page.captured_at)
    assert captured.utcoffset() == timezone.utc.utcoffset(None)
    assert utcnow().tzinfo is None
    assert abs((captured.replace(tzinfo=None) - utcnow()).total_seconds()) < 60
