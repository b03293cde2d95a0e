"""Playwright-powered browser handle implementation."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from playwright.sync_api import Error, sync_playwright

from ..config import BrowserConfig
from ..models import ActionDescriptor
from .base import BrowserActionError, BrowserHandle
from .resolver import InstructionResolver, PageElement

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_COLLECT_ELEMENTS_JS = """
(limit) => {
  const candidates = document.querySelectorAll(
    'a[href], button, input, select, textarea, summary, [role=button], [role=link], ' +
    '[role=checkbox], [role=tab], [role=menuitem], [onclick], [contenteditable=true]'
  );
  const visible = (el) => {
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    return style.display !== 'none' && style.visibility !== 'hidden' &&
      rect.width > 0 && rect.height > 0;
  };
  const cssPath = (el) => {
    if (el.id && document.querySelectorAll('#' + CSS.escape(el.id)).length === 1) {
      return '#' + CSS.escape(el.id);
    }
    const parts = [];
    let node = el;
    while (node && node.nodeType === Node.ELEMENT_NODE && node !== document.body) {
      let part = node.tagName.toLowerCase();
      const parent = node.parentElement;
      if (parent) {
        const siblings = Array.from(parent.children).filter((c) => c.tagName === node.tagName);
        if (siblings.length > 1) {
          part += ':nth-of-type(' + (siblings.indexOf(node) + 1) + ')';
        }
      }
      parts.unshift(part);
      node = parent;
    }
    return 'body > ' + parts.join(' > ');
  };
  const result = [];
  for (const el of candidates) {
    if (result.length >= limit) break;
    if (!visible(el)) continue;
    result.push({
      index: result.length,
      selector: cssPath(el),
      tag: el.tagName.toLowerCase(),
      text: (el.innerText || el.value || el.getAttribute('aria-label') || '').trim(),
      role: el.getAttribute('role'),
      input_type: el.getAttribute('type'),
      name: el.getAttribute('name'),
      placeholder: el.getAttribute('placeholder'),
    });
  }
  return result;
}
"""


class PlaywrightBrowserHandle(BrowserHandle):
    """Browser handle backed by Playwright.

    Playwright's sync API is bound to the thread that started it, so every
    call is funnelled through a dedicated single-worker executor owned by the
    handle. When ``connect_url_template`` is configured the handle attaches to
    the remote session over CDP; otherwise it launches a local Chromium.
    """

    def __init__(
        self,
        session_id: str,
        resolver: InstructionResolver,
        config: Optional[BrowserConfig] = None,
    ) -> None:
        self._session_id = session_id
        self._resolver = resolver
        self._config = config or BrowserConfig()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"browser-{session_id}")
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    def init(self) -> None:
        self._call(self._init)

    def goto(self, url: str, timeout_ms: int) -> None:
        self._call(lambda: self._require_page().goto(url, wait_until="commit", timeout=timeout_ms))

    def act(self, instruction: str, timeout_ms: int) -> None:
        candidates = self.observe(instruction)
        if not candidates:
            raise BrowserActionError(f"No element on the page matches: {instruction}")
        self.perform(candidates[0], timeout_ms)

    def perform(self, descriptor: ActionDescriptor, timeout_ms: int) -> None:
        self._call(self._perform, descriptor, timeout_ms)

    def extract(self, instruction: str, timeout_ms: int) -> Any:
        url, text = self._call(self._page_text, timeout_ms)
        return self._resolver.extract(instruction, url, text)

    def page_text(self, timeout_ms: int) -> str:
        _, text = self._call(self._page_text, timeout_ms)
        return text

    def observe(self, instruction: str) -> list[ActionDescriptor]:
        url, elements = self._call(self._collect_elements)
        return self._resolver.observe(instruction, url, elements)

    def go_back(self) -> None:
        self._call(lambda: self._require_page().go_back(wait_until="commit"))

    def current_url(self) -> str:
        return self._call(lambda: self._require_page().url)

    def screenshot(self) -> bytes:
        return self._call(lambda: self._require_page().screenshot(type="png"))

    def close(self) -> None:
        LOGGER.debug("Closing Playwright handle for session %s", self._session_id)
        try:
            self._call(self._close)
        finally:
            self._worker.shutdown(wait=False)

    # Worker-thread helpers ---------------------------------------------------

    def _call(self, func: Callable[..., T], *args: Any) -> T:
        future = self._worker.submit(func, *args)
        try:
            return future.result()
        except Error as exc:
            raise BrowserActionError(str(exc)) from exc

    def _init(self) -> None:
        LOGGER.debug("Starting Playwright for session %s", self._session_id)
        self._playwright = sync_playwright().start()
        viewport = {"width": self._config.viewport_width, "height": self._config.viewport_height}
        if self._config.connect_url_template:
            endpoint = self._config.connect_url_template.format(
                session_id=self._session_id,
                api_key=self._config.api_key or "",
            )
            self._browser = self._playwright.chromium.connect_over_cdp(endpoint)
            contexts = self._browser.contexts
            self._context = contexts[0] if contexts else self._browser.new_context(viewport=viewport)
            pages = self._context.pages
            self._page = pages[0] if pages else self._context.new_page()
        else:
            self._browser = self._playwright.chromium.launch(
                headless=self._config.headless,
                args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
            )
            self._context = self._browser.new_context(viewport=viewport)
            self._page = self._context.new_page()

    def _close(self) -> None:
        try:
            if self._context and not self._config.connect_url_template:
                self._context.close()
        finally:
            if self._browser:
                self._browser.close()
            if self._playwright:
                self._playwright.stop()
        self._context = None
        self._browser = None
        self._playwright = None
        self._page = None

    def _perform(self, descriptor: ActionDescriptor, timeout_ms: int) -> None:
        locator = self._require_page().locator(descriptor.selector).first
        method = descriptor.method.replace("_", "").lower()
        argument = descriptor.arguments[0] if descriptor.arguments else ""
        LOGGER.info("Performing %s on %s", descriptor.method, descriptor.selector)
        if method == "click":
            locator.click(timeout=timeout_ms)
        elif method == "fill":
            locator.fill(argument, timeout=timeout_ms)
        elif method == "type":
            locator.press_sequentially(argument, timeout=timeout_ms)
        elif method == "press":
            locator.press(argument, timeout=timeout_ms)
        elif method == "selectoption":
            locator.select_option(argument, timeout=timeout_ms)
        elif method == "hover":
            locator.hover(timeout=timeout_ms)
        elif method == "check":
            locator.check(timeout=timeout_ms)
        elif method == "uncheck":
            locator.uncheck(timeout=timeout_ms)
        elif method == "scrollintoview":
            locator.scroll_into_view_if_needed(timeout=timeout_ms)
        else:
            raise BrowserActionError(f"Unsupported action method: {descriptor.method}")

    def _collect_elements(self) -> tuple[str, list[PageElement]]:
        page = self._require_page()
        raw = page.evaluate(_COLLECT_ELEMENTS_JS, self._config.max_observed_elements)
        return page.url, [PageElement.model_validate(item) for item in raw]

    def _page_text(self, timeout_ms: int) -> tuple[str, str]:
        page = self._require_page()
        text = page.inner_text("body", timeout=timeout_ms)
        return page.url, text[: self._config.max_page_text_chars]

    def _require_page(self):
        if not self._page:
            raise BrowserActionError("Browser session is not started")
        return self._page
