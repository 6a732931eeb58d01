"""Automation sessions for agent-mode episodes.

:class:`AutomationSession` is the contract the step engine depends on;
:class:`PlaywrightSession` implements it on a real Chromium page.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from persona_lab.errors import ActionError
from persona_lab.reasoning.outputs import (
    BrowserAction,
    ClickAction,
    ClickCoordinatesAction,
    DoneAction,
    NavigateBackAction,
    ScrollAction,
    TypeAction,
    WaitAction,
)

logger = logging.getLogger(__name__)

DEFAULT_SCROLL_FRACTION = 0.3
_SETTLE_TIMEOUT_MS = 5_000
_SETTLE_PAUSE_S = 0.3
_SCROLL_PAUSE_S = 0.8
_WAIT_ACTION_S = 2.0

_INTERACTIVE_SELECTOR = ", ".join(
    [
        "a[href]",
        "button",
        "input:not([type=hidden])",
        "select",
        "textarea",
        "[role='button']",
        "[role='link']",
        "[role='tab']",
        "[role='menuitem']",
        "[role='checkbox']",
        "[role='radio']",
    ]
)

# Returns visible interactive elements with their bounding boxes, capped to
# five viewports below the top of the document.
_EXTRACT_ELEMENTS_JS = """
(selector) => {
  const vh = window.innerHeight, vw = window.innerWidth, maxY = vh * 5;
  const out = [];
  for (const el of document.querySelectorAll(selector)) {
    const r = el.getBoundingClientRect();
    if (r.width < 4 || r.height < 4) continue;
    if (r.y > maxY || r.x > 5000 || r.x < -100 || r.y < -100) continue;
    out.push({
      tag: el.tagName.toLowerCase(),
      role: el.getAttribute("role"),
      text: (el.innerText || el.getAttribute("aria-label") || el.getAttribute("alt") || "").trim().slice(0, 80),
      type: el.getAttribute("type"),
      placeholder: el.getAttribute("placeholder"),
      href: el.getAttribute("href"),
      x: Math.round(r.x), y: Math.round(r.y),
      width: Math.round(r.width), height: Math.round(r.height),
      inViewport: r.x + r.width > 0 && r.x < vw && r.y + r.height > 0 && r.y < vh,
    });
  }
  return out;
}
"""

_SCROLL_INFO_JS = """
() => ({
  scrollY: Math.round(window.scrollY),
  viewportHeight: window.innerHeight,
  pageHeight: document.documentElement.scrollHeight,
})
"""


@dataclass(frozen=True, slots=True)
class PageElement:
    """An interactive element the persona can target by index."""

    index: int
    tag: str
    text: str = ""
    role: str | None = None
    type: str | None = None
    placeholder: str | None = None
    href: str | None = None
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    in_viewport: bool = True

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2


@dataclass(slots=True)
class PageState:
    """Snapshot of the live page shown to the persona for one step."""

    url: str
    title: str = ""
    elements: list[PageElement] = field(default_factory=list)
    scroll_y: int = 0
    viewport_height: int = 800
    page_height: int = 800
    screenshot: bytes | None = None

    @property
    def at_bottom(self) -> bool:
        return self.scroll_y + self.viewport_height >= self.page_height - 10


class AutomationSession(ABC):
    """A live page driven by an agent-mode episode."""

    @abstractmethod
    async def start(self, url: str) -> None:
        """Open the page at *url*."""

    @abstractmethod
    async def observe(self) -> PageState:
        """Capture the current page state, including a screenshot.

        Raises :class:`ActionError` when the page cannot be read.
        """

    @abstractmethod
    async def execute(self, action: BrowserAction) -> PageState:
        """Perform *action* and return the resulting page state.

        Raises :class:`ActionError` when the action cannot be done.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the page and its browser."""

    async def __aenter__(self) -> AutomationSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class PlaywrightSession(AutomationSession):
    """Chromium page via ``playwright.async_api``.

    Parameters
    ----------
    width, height:
        Viewport size in CSS pixels.
    headless:
        Launch without a visible window.
    """

    def __init__(self, width: int = 1280, height: int = 800, headless: bool = True) -> None:
        self.width = width
        self.height = height
        self.headless = headless
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None
        self._elements: list[PageElement] = []
        self._page_height = height

    @property
    def page(self) -> Any:
        if self._page is None:
            raise RuntimeError("Browser not started. Call start() first.")
        return self._page

    async def start(self, url: str) -> None:
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-extensions", "--no-sandbox"],
        )
        context = await self._browser.new_context(
            viewport={"width": self.width, "height": self.height},
        )
        self._page = await context.new_page()
        logger.info("Browser started: %dx%d headless=%s -> %s", self.width, self.height, self.headless, url)
        await self.page.goto(url, wait_until="domcontentloaded")
        await self._settle()

    async def _settle(self) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=_SETTLE_TIMEOUT_MS)
        except Exception as exc:
            # Some pages never reach network idle.
            logger.debug("Page did not settle: %s", exc)
        await asyncio.sleep(_SETTLE_PAUSE_S)

    async def observe(self) -> PageState:
        try:
            return await self._observe()
        except Exception as exc:
            logger.error("Observe failed: %s", exc)
            raise ActionError("observe", str(exc)) from exc

    async def _observe(self) -> PageState:
        page = self.page
        raw_elements = await page.evaluate(_EXTRACT_ELEMENTS_JS, _INTERACTIVE_SELECTOR)
        self._elements = [
            PageElement(
                index=i,
                tag=str(item.get("tag") or ""),
                text=str(item.get("text") or ""),
                role=item.get("role"),
                type=item.get("type"),
                placeholder=item.get("placeholder"),
                href=item.get("href"),
                x=int(item.get("x", 0)),
                y=int(item.get("y", 0)),
                width=int(item.get("width", 0)),
                height=int(item.get("height", 0)),
                in_viewport=bool(item.get("inViewport", True)),
            )
            for i, item in enumerate(raw_elements or [])
        ]
        scroll = await page.evaluate(_SCROLL_INFO_JS)
        self._page_height = int(scroll.get("pageHeight", self.height))
        screenshot = await page.screenshot(type="png", full_page=False)
        return PageState(
            url=page.url,
            title=await page.title(),
            elements=list(self._elements),
            scroll_y=int(scroll.get("scrollY", 0)),
            viewport_height=int(scroll.get("viewportHeight", self.height)),
            page_height=self._page_height,
            screenshot=screenshot,
        )

    def _element(self, index: int, action_type: str) -> PageElement:
        if index < 0 or index >= len(self._elements):
            raise ActionError(action_type, f"element index {index} out of range ({len(self._elements)} elements)")
        return self._elements[index]

    async def execute(self, action: BrowserAction) -> PageState:
        page = self.page
        try:
            if isinstance(action, ClickAction):
                x, y = self._element(action.element_index, action.type).center
                await page.mouse.click(x, y)
                await self._settle()
                logger.debug("click element %d at (%.0f, %.0f)", action.element_index, x, y)

            elif isinstance(action, ClickCoordinatesAction):
                await page.mouse.click(action.x, action.y)
                await self._settle()
                logger.debug("click_coordinates (%.0f, %.0f)", action.x, action.y)

            elif isinstance(action, TypeAction):
                x, y = self._element(action.element_index, action.type).center
                await page.mouse.click(x, y)
                await page.keyboard.press("ControlOrMeta+A")
                await page.keyboard.press("Backspace")
                await page.keyboard.type(action.text, delay=30)
                if action.submit:
                    await page.keyboard.press("Enter")
                    await self._settle()
                logger.debug("type into element %d submit=%s", action.element_index, action.submit)

            elif isinstance(action, ScrollAction):
                fraction = action.amount or DEFAULT_SCROLL_FRACTION
                delta = round(fraction * self._page_height) * (1 if action.direction == "down" else -1)
                await page.mouse.wheel(0, delta)
                await asyncio.sleep(_SCROLL_PAUSE_S)
                logger.debug("scroll %s by %dpx", action.direction, delta)

            elif isinstance(action, NavigateBackAction):
                await page.go_back(wait_until="domcontentloaded")
                await self._settle()
                logger.debug("navigate_back")

            elif isinstance(action, WaitAction):
                await asyncio.sleep(_WAIT_ACTION_S)
                logger.debug("wait: %s", action.reason[:60])

            elif isinstance(action, DoneAction):
                logger.debug("done (no-op)")

            else:
                raise ActionError(str(getattr(action, "type", action)), "unsupported action")

        except ActionError:
            raise
        except Exception as exc:
            logger.error("Action %s failed: %s", action.type, exc)
            raise ActionError(action.type, str(exc)) from exc
        return await self.observe()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._page = None
        logger.info("Browser stopped")
