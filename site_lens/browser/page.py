# site_lens/browser/page.py
"""
Renderable-page capability and its Playwright backend.

Everything above this module talks to :class:`RenderablePage` and
:class:`BrowserSession` only, so tests drive the pipeline with fake pages and
the scanner never imports Playwright directly.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from site_lens.config import BrowserConfig
from site_lens.errors import NetworkError, StageTimeoutError
from site_lens.models import BoundingBox

__all__ = (
    "RenderablePage",
    "BrowserSession",
    "BrowserFactory",
    "PlaywrightPage",
    "PlaywrightSession",
    "launch_playwright",
)

logger = logging.getLogger("SiteLens")


@runtime_checkable
class RenderablePage(Protocol):
    """A browser tab: navigate, run scripts, read the DOM, take screenshots."""

    async def navigate(self, url: str, timeout_ms: int) -> None: ...

    async def wait_for_network_idle(self, timeout_ms: int) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def content(self) -> str: ...

    async def bounding_box(self, selector: str) -> Optional[BoundingBox]: ...

    async def screenshot(self, *, quality: int = 45, full_page: bool = True) -> bytes: ...

    async def close(self) -> None: ...


@runtime_checkable
class BrowserSession(Protocol):
    """One launched renderer shared by every page of a scan."""

    async def new_page(self) -> RenderablePage: ...

    async def close(self) -> None: ...


BrowserFactory = Callable[[BrowserConfig, str], Awaitable[BrowserSession]]


class PlaywrightPage:
    """:class:`RenderablePage` over a Playwright :class:`~playwright.async_api.Page`."""

    def __init__(self, page: Page) -> None:
        self._page = page

    async def navigate(self, url: str, timeout_ms: int) -> None:
        try:
            response = await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise StageTimeoutError("navigation", timeout_ms) from exc
        except PlaywrightError as exc:
            raise NetworkError(str(exc)) from exc
        if response is not None and response.status >= 400:
            raise NetworkError(f"HTTP {response.status} for {url}")

    async def wait_for_network_idle(self, timeout_ms: int) -> None:
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise StageTimeoutError("network idle", timeout_ms) from exc

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def content(self) -> str:
        return await self._page.content()

    async def bounding_box(self, selector: str) -> Optional[BoundingBox]:
        locator = self._page.locator(selector).first
        if await locator.count() < 1:
            return None
        box = await locator.bounding_box()
        if not box or box["width"] <= 0 or box["height"] <= 0:
            return None
        return BoundingBox(
            x=round(box["x"]), y=round(box["y"]), width=round(box["width"]), height=round(box["height"])
        )

    async def screenshot(self, *, quality: int = 45, full_page: bool = True) -> bytes:
        return await self._page.screenshot(full_page=full_page, type="jpeg", quality=quality)

    async def close(self) -> None:
        await self._page.close()


class PlaywrightSession:
    """:class:`BrowserSession` that owns the Playwright driver, browser and context."""

    def __init__(self, playwright: Playwright, browser: Browser, context: BrowserContext) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context

    async def new_page(self) -> RenderablePage:
        return PlaywrightPage(await self._context.new_page())

    async def close(self) -> None:
        for closer in (self._context.close, self._browser.close, self._playwright.stop):
            try:
                await closer()
            except PlaywrightError as exc:
                logger.debug("Browser shutdown step failed: %s", exc)


async def launch_playwright(config: BrowserConfig, user_agent: str) -> BrowserSession:
    """Start Chromium headless with one context sized to the configured viewport."""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(headless=config.headless, args=list(config.launch_args))
        context = await browser.new_context(
            viewport={"width": config.viewport_width, "height": config.viewport_height},
            user_agent=user_agent,
        )
    except BaseException:
        await playwright.stop()
        raise
    logger.debug("Chromium launched (%dx%d)", config.viewport_width, config.viewport_height)
    return PlaywrightSession(playwright, browser, context)
