# File: tests/fakes.py
"""In-memory stand-ins for the browser session and the monotonic clock, plus a local aiohttp server helper."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import web

from site_lens.browser.prepare import ASSET_SCRIPT, SCROLL_SCRIPT
from site_lens.errors import NetworkError
from site_lens.heuristics import HEURISTICS_SCRIPT
from site_lens.performance import METRICS_SCRIPT

CLEAN_HTML = (
    '<html lang="en"><head><title>Home</title></head>'
    "<body><h1>Welcome</h1><p>Nothing to report.</p></body></html>"
)

PSI_PAYLOAD: Dict[str, Any] = {
    "id": "https://example.com/",
    "lighthouseResult": {
        "finalDisplayedUrl": "https://example.com/",
        "categories": {
            "performance": {
                "score": 0.83,
                "auditRefs": [
                    {"id": "render-blocking-resources"},
                    {"id": "largest-contentful-paint"},
                    {"id": "diagnostics"},
                    {"id": "not-in-audits"},
                ],
            },
            "seo": {"score": 0.9, "auditRefs": [{"id": "meta-description"}]},
            "best-practices": {"score": 1, "auditRefs": []},
        },
        "audits": {
            "render-blocking-resources": {
                "title": "Eliminate render-blocking resources",
                "score": 0.1,
                "description": "Resources are blocking the first paint. <a href='https://web.dev'>Learn more</a>.",
                "displayValue": "Potential savings of 450 ms",
            },
            "largest-contentful-paint": {"title": "Largest Contentful Paint", "score": 0.45, "numericValue": 3120.4},
            "diagnostics": {"title": "Diagnostics", "score": None, "scoreDisplayMode": "informative"},
            "meta-description": {"title": "Document does not have a meta description", "score": 0},
            "cumulative-layout-shift": {"numericValue": 0.04567},
        },
    },
    "loadingExperience": {
        "metrics": {"LARGEST_CONTENTFUL_PAINT_MS": {"percentile": 2400, "category": "FAST"}},
    },
}


class FakeClock:
    """Monotonic clock in seconds; tests move it forward explicitly."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


@dataclass
class FakeSite:
    """One URL served by the fake browser."""

    html: str = CLEAN_HTML
    metrics: Dict[str, Any] = field(default_factory=dict)
    heuristics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    navigation_cost_ms: float = 0
    delay_s: float = 0
    screenshot: bytes = b"\xff\xd8\xff\xe0fake-jpeg"


class FakePage:
    def __init__(self, session: "FakeSession") -> None:
        self.session = session
        self.url: Optional[str] = None
        self.closed = False

    @property
    def site(self) -> FakeSite:
        return self.session.sites.get(self.url or "", FakeSite())

    async def navigate(self, url: str, timeout_ms: int) -> None:
        self.url = url
        self.session.visited.append(url)
        self.session.timeouts.append(timeout_ms)
        site = self.session.sites.get(url)
        if site is None:
            raise NetworkError(f"HTTP 404 for {url}")
        if self.session.clock is not None and site.navigation_cost_ms:
            self.session.clock.advance(site.navigation_cost_ms)
        if site.delay_s:
            await asyncio.sleep(site.delay_s)
        if site.error is not None:
            raise site.error

    async def wait_for_network_idle(self, timeout_ms: int) -> None:
        return None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if script is HEURISTICS_SCRIPT:
            return self.site.heuristics
        if script is METRICS_SCRIPT:
            return self.site.metrics
        if script in (SCROLL_SCRIPT, ASSET_SCRIPT):
            return None
        raise AssertionError("unexpected script")

    async def content(self) -> str:
        return self.site.html

    async def bounding_box(self, selector: str):
        return None

    async def screenshot(self, *, quality: int = 45, full_page: bool = True) -> bytes:
        self.session.screenshots.append(self.url)
        return self.site.screenshot

    async def close(self) -> None:
        self.closed = True


class FakeSession:
    """BrowserSession that serves HTML from a dict instead of the network."""

    def __init__(self, sites: Dict[str, FakeSite], clock: Optional[FakeClock] = None) -> None:
        self.sites = sites
        self.clock = clock
        self.pages: List[FakePage] = []
        self.visited: List[str] = []
        self.timeouts: List[int] = []
        self.screenshots: List[Optional[str]] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


def session_factory(session: FakeSession):
    async def factory(browser_config, user_agent):
        return session

    return factory



async def serve_app(app: web.Application, port: int) -> AsyncIterator[str]:
    """Start *app* on *port*, yield base URL, ensure cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "localhost", port)
    await site.start()
    try:
        yield f"http://localhost:{port}"
    finally:
        await runner.cleanup()
