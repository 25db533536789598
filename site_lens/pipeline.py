# site_lens/pipeline.py
"""
Page Scan Pipeline.

One URL, one fresh page, stages strictly in order:

navigate -> prepare -> rule engine -> heuristics -> performance audit -> links

Every stage gets a slice of the *remaining* scan budget. Navigation or rule
engine failure ends the page (``timeout``/``error``); preparation, heuristics
and the performance audit only degrade what the page reports.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Sequence

from site_lens.browser.page import BrowserSession, RenderablePage
from site_lens.browser.prepare import prepare_page
from site_lens.budget import TimeBudget, with_deadline
from site_lens.config import BudgetConfig, CapsConfig
from site_lens.crawler.urls import extract_links
from site_lens.errors import error_code, sanitize_error_message
from site_lens.heuristics import heuristic_flags, run_heuristics
from site_lens.models import PageResult, ScanMode
from site_lens.performance import audit_page
from site_lens.rules.adapter import RuleEngineAdapter, RuleScope

__all__ = ("PageBudget", "PageScanPipeline")

logger = logging.getLogger("SiteLens")


@dataclass(frozen=True, slots=True)
class PageBudget:
    """Per-stage ceilings; actual timeouts are ``max(floor, min(cap, remaining - margin))``."""

    page_cap_ms: int = 12_000
    navigation_cap_ms: int = 10_000
    prepare_cap_ms: int = 12_000
    engine_cap_ms: int = 12_000

    @classmethod
    def from_config(cls, budget: BudgetConfig) -> PageBudget:
        return cls(
            page_cap_ms=budget.page_scan_ms,
            navigation_cap_ms=budget.navigation_ms,
            prepare_cap_ms=budget.page_scan_ms,
            engine_cap_ms=budget.rule_engine_ms,
        )

    def page_ms(self, budget: TimeBudget) -> int:
        return max(1200, min(self.page_cap_ms, max(1200, budget.remaining_ms() - 700)))

    def navigation_ms(self, budget: TimeBudget) -> int:
        return budget.allot(self.navigation_cap_ms, floor_ms=1000, margin_ms=500)

    def prepare_ms(self, budget: TimeBudget) -> int:
        return budget.allot(self.prepare_cap_ms, floor_ms=1600, margin_ms=300)

    def engine_ms(self, budget: TimeBudget) -> int:
        return budget.allot(self.engine_cap_ms, floor_ms=1200, margin_ms=300)


class PageScanPipeline:
    """Scans single pages for one scan request; holds no per-page state."""

    def __init__(
        self,
        adapter: RuleEngineAdapter,
        *,
        tags: Sequence[str],
        scope: RuleScope,
        caps: CapsConfig,
        mode: ScanMode = "single",
        start_origin: str = "",
        page_budget: PageBudget = PageBudget(),
        include_bbox: bool = True,
    ) -> None:
        self.adapter = adapter
        self.tags = tuple(tags)
        self.scope = scope
        self.caps = caps
        self.mode = mode
        self.start_origin = start_origin
        self.page_budget = page_budget
        self.include_bbox = include_bbox

    async def scan(self, session: BrowserSession, page_url: str, budget: TimeBudget) -> PageResult:
        """Never raises for page-level failures; the page is always closed."""
        started = budget.elapsed_ms()
        page = None
        try:
            page = await session.new_page()
            page_ms = self.page_budget.page_ms(budget)
            result = await with_deadline(self._run(page, page_url, budget), page_ms, "page scan")
        except Exception as exc:  # noqa: BLE001
            status = "timeout" if error_code(exc) == "timeout" else "error"
            message = sanitize_error_message(exc) or status
            logger.warning("Page %s failed (%s): %s", page_url, status, message)
            return PageResult.failed(page_url, status, message, budget.elapsed_ms() - started)
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as exc:  # noqa: BLE001
                    logger.debug("page close failed for %s: %s", page_url, exc)
        return replace(result, duration_ms=budget.elapsed_ms() - started)

    async def _run(self, page: RenderablePage, page_url: str, budget: TimeBudget) -> PageResult:
        await page.navigate(page_url, self.page_budget.navigation_ms(budget))
        await prepare_page(page, self.page_budget.prepare_ms(budget))

        evaluation = await self.adapter.evaluate(
            page,
            page_url=page_url,
            tags=self.tags,
            scope=self.scope,
            caps=self.caps,
            timeout_ms=self.page_budget.engine_ms(budget),
            include_bbox=self.include_bbox,
        )

        heuristics = await run_heuristics(page)
        audit = await audit_page(page, page_url)

        links: List[str] = []
        if self.mode == "crawl":
            links = await self._discover_links(page, page_url)

        return PageResult(
            url=page_url,
            status="ok",
            issues=evaluation.issues,
            heuristic_flags=heuristic_flags(page_url, heuristics),
            performance_issues=audit.issues,
            discovered_links=tuple(links),
            incomplete=evaluation.incomplete,
            truncated_by=evaluation.truncated_by,
            detected_violation_count=evaluation.detected_violation_count,
            detected_issue_count=evaluation.detected_issue_count,
        )

    async def _discover_links(self, page: RenderablePage, page_url: str) -> List[str]:
        try:
            html = await page.content()
        except Exception as exc:  # noqa: BLE001
            logger.debug("link discovery failed on %s: %s", page_url, exc)
            return []
        return extract_links(html, page_url, self.start_origin)
