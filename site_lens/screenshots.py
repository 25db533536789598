# site_lens/screenshots.py
"""
Screenshot capture after the crawl.

Screenshots are optional output: a capture that cannot fit the remaining
budget, fails, or exceeds the size limit is recorded as an omission and the
scan goes on.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from site_lens.browser.page import BrowserSession
from site_lens.browser.prepare import prepare_page
from site_lens.budget import TimeBudget
from site_lens.errors import sanitize_error_message
from site_lens.models import PageResult, Screenshot

__all__ = ("CaptureResult", "select_targets", "capture_screenshot", "MIN_CAPTURE_BUDGET_MS")

logger = logging.getLogger("SiteLens")

MIN_CAPTURE_BUDGET_MS = 1200
CAPTURE_CAP_MS = 9000
JPEG_QUALITY = 45


@dataclass(frozen=True, slots=True)
class CaptureResult:
    page_url: str
    screenshot: Optional[Screenshot] = None
    reason: str = ""

    @property
    def omitted(self) -> bool:
        return self.screenshot is None


def select_targets(start_url: str, pages: Sequence[PageResult], limit: int = 3) -> List[str]:
    """Стартовая страница (если ok), затем ok-страницы с наибольшим числом проблем."""
    if limit <= 0:
        return []
    ok_pages = [page for page in pages if page.status == "ok"]
    targets: List[str] = []
    if any(page.url == start_url for page in ok_pages):
        targets.append(start_url)
    others = sorted(
        (page for page in ok_pages if page.url != start_url),
        key=lambda page: (-len(page.issues), page.url),
    )
    for page in others:
        if len(targets) >= limit:
            break
        if page.url not in targets:
            targets.append(page.url)
    return targets[:limit]


async def capture_screenshot(
    session: BrowserSession,
    page_url: str,
    budget: TimeBudget,
    *,
    max_bytes: int = 600 * 1024,
) -> CaptureResult:
    """JPEG full-page capture as a ``data:`` URL; omissions carry a reason."""
    if budget.remaining_ms() < MIN_CAPTURE_BUDGET_MS:
        return CaptureResult(page_url, reason="time_budget_low")

    page = None
    try:
        page = await session.new_page()
        await page.navigate(page_url, budget.allot(CAPTURE_CAP_MS, floor_ms=1000, margin_ms=300))
        await prepare_page(page, budget.allot(CAPTURE_CAP_MS, floor_ms=1400, margin_ms=300))
        data = await page.screenshot(quality=JPEG_QUALITY, full_page=True)
    except Exception as exc:  # noqa: BLE001
        logger.debug("screenshot failed for %s: %s", page_url, exc)
        return CaptureResult(page_url, reason=sanitize_error_message(exc) or "capture_failed")
    finally:
        if page is not None:
            try:
                await page.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("page close failed for %s: %s", page_url, exc)

    if len(data) > max_bytes:
        return CaptureResult(page_url, reason=f"size_limit_exceeded:{len(data)}")
    encoded = base64.b64encode(data).decode("ascii")
    return CaptureResult(page_url, Screenshot(page_url, f"data:image/jpeg;base64,{encoded}"))
