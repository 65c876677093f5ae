"""Playwright-backed browser session producing RenderedPage captures."""

import logging
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from app.config import Settings, get_settings
from app.services.errors import BrowserSessionError, PageLoadError

from .constants import MAX_COLOR_SAMPLES
from .models import RenderedPage

logger = logging.getLogger(__name__)

# Read-only probe: framework hint and computed text/background colors
PAGE_PROBE_SCRIPT = """
(limit) => {
  const framework = (() => {
    if (window.__NEXT_DATA__ || document.querySelector('#__next')) return 'nextjs';
    if (window.__NUXT__ || document.querySelector('#__nuxt')) return 'nuxt';
    if (document.querySelector('[ng-version]') || window.angular) return 'angular';
    if (window.__VUE__ || document.querySelector('[data-v-app]')) return 'vue';
    if (window.React || document.querySelector('[data-reactroot]')) return 'react';
    if (document.querySelector('[class*="svelte-"]')) return 'svelte';
    return '';
  })();

  const cssPath = (el) => {
    if (el.id) return '#' + el.id;
    const parts = [];
    let node = el;
    while (node && node.nodeType === 1 && parts.length < 4) {
      if (node.id) { parts.unshift('#' + node.id); break; }
      const tag = node.tagName.toLowerCase();
      if (tag === 'html' || tag === 'body') { if (!parts.length) parts.unshift(tag); break; }
      let part = tag;
      const classes = (node.getAttribute('class') || '').split(/\\s+/).filter(Boolean).slice(0, 2);
      if (classes.length) part += '.' + classes.join('.');
      const parent = node.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter((c) => c.tagName === node.tagName);
        if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(node) + 1) + ')';
      }
      parts.unshift(part);
      node = node.parentElement;
    }
    return parts.join(' > ');
  };

  const effectiveBackground = (el) => {
    let node = el;
    while (node) {
      const bg = getComputedStyle(node).backgroundColor;
      if (bg && !bg.startsWith('rgba(0, 0, 0, 0)') && bg !== 'transparent') return bg;
      node = node.parentElement;
    }
    return 'rgb(255, 255, 255)';
  };

  const samples = [];
  const nodes = document.querySelectorAll('p,span,a,button,label,h1,h2,h3,h4,h5,h6,li,td,th');
  for (const el of nodes) {
    if (samples.length >= limit) break;
    const direct = Array.from(el.childNodes).some((n) => n.nodeType === 3 && n.textContent.trim());
    if (!direct) continue;
    const style = getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') continue;
    samples.push({
      selector: cssPath(el),
      color: style.color,
      backgroundColor: effectiveBackground(el),
      fontSize: style.fontSize,
      fontWeight: style.fontWeight,
      text: el.textContent.trim().slice(0, 200),
      html: el.outerHTML.slice(0, 500),
    });
  }
  return { framework, colorSamples: samples };
}
"""


class PlaywrightBrowser:
    """One browser context per scan; local headless Chromium or a remote CDP endpoint."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._playwright = None
        self._browser = None
        self._context = None

    async def __aenter__(self) -> "PlaywrightBrowser":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            ws_url = (self.settings.browser_ws_url or "").strip()
            if ws_url:
                logger.info("Connecting to remote browser over CDP")
                self._browser = await self._playwright.chromium.connect_over_cdp(ws_url)
            else:
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=["--no-sandbox", "--disable-dev-shm-usage"],
                )
            self._context = await self._browser.new_context(
                viewport={
                    "width": self.settings.browser_viewport_width,
                    "height": self.settings.browser_viewport_height,
                },
                user_agent=self.settings.browser_user_agent,
            )
        except PlaywrightError as exc:
            await self.close()
            raise BrowserSessionError(f"Browser session could not be established: {exc}") from exc

    async def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except PlaywrightError as exc:
                logger.debug("Ignoring browser close error: %s", exc)
        self._context = None
        self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def render(self, url: str) -> RenderedPage:
        if self._context is None:
            raise BrowserSessionError("Browser session is not open")
        page = await self._context.new_page()
        try:
            try:
                response = await page.goto(
                    url,
                    wait_until="networkidle",
                    timeout=self.settings.navigation_timeout_ms,
                )
            except PlaywrightError as exc:
                raise PageLoadError(url, f"Navigation failed: {exc}") from exc

            status = response.status if response is not None else None
            if status is not None and status >= 400:
                raise PageLoadError(url, f"HTTP {status}")

            html = await page.content()
            probe = await self._probe(page, url)
            return RenderedPage(
                url=url,
                html=html,
                final_url=page.url or url,
                framework=str(probe.get("framework") or ""),
                color_samples=tuple(probe.get("colorSamples") or ()),
                status_code=status,
            )
        finally:
            await page.close()

    async def _probe(self, page, url: str) -> Dict[str, Any]:
        try:
            result = await page.evaluate(PAGE_PROBE_SCRIPT, MAX_COLOR_SAMPLES)
        except PlaywrightError as exc:
            logger.warning("Style probe failed for %s: %s", url, exc)
            return {}
        return result if isinstance(result, dict) else {}


def open_browser(settings: Optional[Settings] = None) -> PlaywrightBrowser:
    return PlaywrightBrowser(settings)
