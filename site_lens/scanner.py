# site_lens/scanner.py
"""
Accessibility scan: crawl loop, caps and result assembly.

:class:`AccessibilityScanner` launches one browser session per request, visits
pages strictly one at a time through :class:`~site_lens.pipeline.PageScanPipeline`
and applies the whole-scan issue cap in visit order, so the first pages keep
their issues when the cap is close.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from site_lens.aggregator import engine_insights, errors_summary, performance_summary
from site_lens.browser.page import BrowserFactory, BrowserSession, launch_playwright
from site_lens.budget import Clock, TimeBudget
from site_lens.config import MAX_DEPTH, ScannerConfig
from site_lens.crawler.scheduler import MAX_PAGES_REACHED, TIME_BUDGET_LOW, CrawlScheduler
from site_lens.crawler.urls import origin_of
from site_lens.errors import sanitize_error_message
from site_lens.heuristics import base_review_flags, incomplete_review_flags, merge_review_flags
from site_lens.models import (
    AccessibilityScanResult,
    IncompleteRule,
    Issue,
    PageResult,
    PerformanceIssue,
    ReviewFlag,
    ScanRequest,
    Screenshot,
)
from site_lens.pipeline import PageBudget, PageScanPipeline
from site_lens.rules.adapter import RuleEngineAdapter, RuleScope
from site_lens.screenshots import capture_screenshot, select_targets

__all__ = ("AccessibilityScanner", "runtime_hint", "MAX_TOTAL_ISSUES_REACHED", "RUNTIME_ERROR")

logger = logging.getLogger("SiteLens")

MAX_TOTAL_ISSUES_REACHED = "max_total_issues_overall"
RUNTIME_ERROR = "runtime_error"

_LAUNCH_FAILURE_MARKERS = (
    "executable doesn't exist",
    "failed to launch",
    "could not find browser",
    "browsertype.launch",
)


def runtime_hint(error_text: str) -> str:
    """Подсказка оператору по тексту ошибки браузера (пустая строка, если нечего сказать)."""
    text = (error_text or "").lower()
    if any(marker in text for marker in _LAUNCH_FAILURE_MARKERS):
        return "Chromium launch failed. Verify Playwright Chromium is installed (playwright install chromium)."
    if "target page, context or browser has been closed" in text:
        return "Browser session closed unexpectedly. Rerun the scan."
    return ""


class AccessibilityScanner:
    """Runs the accessibility pass of one scan request."""

    def __init__(
        self,
        config: ScannerConfig,
        adapter: RuleEngineAdapter,
        *,
        browser_factory: BrowserFactory = launch_playwright,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.browser_factory = browser_factory
        self.clock = clock

    def new_budget(self, request: ScanRequest) -> TimeBudget:
        return TimeBudget(
            request.budget_ms,
            low_water_ms=self.config.budget.min_remaining_to_start_page_ms,
            clock=self.clock,
        )

    async def scan(self, request: ScanRequest, budget: Optional[TimeBudget] = None) -> AccessibilityScanResult:
        budget = budget or self.new_budget(request)
        start_url = request.canonical_url
        if start_url is None:
            logger.warning("Invalid start URL: %r", request.start_url)
            return self._invalid_url_result(request, budget)

        scope = RuleScope(request.include_selectors, request.exclude_selectors)
        pipeline = PageScanPipeline(
            self.adapter,
            tags=request.tags,
            scope=scope,
            caps=request.caps,
            mode=request.mode,
            start_origin=origin_of(start_url) or "",
            page_budget=PageBudget.from_config(self.config.budget),
        )
        scheduler = CrawlScheduler(
            start_url,
            max_pages=request.max_pages,
            budget=budget,
            max_depth=min(self.config.max_depth, MAX_DEPTH),
            follow_links=request.mode == "crawl",
        )

        pages: List[PageResult] = []
        issues: List[Issue] = []
        performance_issues: List[PerformanceIssue] = []
        screenshots: List[Screenshot] = []
        dynamic_flags: List[ReviewFlag] = []
        global_errors: List[str] = []
        issue_cap_hit = False
        runtime_message = ""
        hint = ""

        session: Optional[BrowserSession] = None
        try:
            session = await self.browser_factory(self.config.browser, self.config.user_agent)
            while True:
                target = scheduler.next_target()
                if target is None:
                    break
                page = await pipeline.scan(session, target.url, budget)
                if page.error:
                    global_errors.append(page.error)
                dynamic_flags.extend(page.heuristic_flags)
                performance_issues.extend(page.performance_issues)

                headroom = max(0, request.caps.max_total_issues_overall - len(issues))
                page = page.accept_issues(headroom)
                issues.extend(page.issues)
                pages.append(page)

                if page.truncated_by.total_issues:
                    issue_cap_hit = True
                    scheduler.stop(MAX_TOTAL_ISSUES_REACHED)
                    break
                scheduler.record(target, page.discovered_links)

            if request.include_screenshots and pages:
                await self._capture(session, start_url, pages, budget, screenshots, global_errors)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            runtime_message = sanitize_error_message(exc) or type(exc).__name__
            hint = runtime_hint(runtime_message)
            logger.error("Accessibility scan aborted: %s", runtime_message)
            global_errors.append(runtime_message)
            if hint:
                global_errors.append(hint)
            scheduler.stop(RUNTIME_ERROR)
        finally:
            if session is not None:
                try:
                    await session.close()
                except Exception as exc:  # noqa: BLE001
                    logger.debug("browser close failed: %s", exc)

        stop_reason = scheduler.stop_reason
        time_budget_hit = stop_reason == TIME_BUDGET_LOW
        if budget.remaining_ms() <= 0:
            time_budget_hit = True
            if stop_reason in (None, "completed"):
                stop_reason = TIME_BUDGET_LOW

        truncated = (
            time_budget_hit
            or issue_cap_hit
            or stop_reason in (MAX_PAGES_REACHED, RUNTIME_ERROR)
            or any(page.truncated for page in pages)
        )
        partial = (
            time_budget_hit
            or stop_reason == RUNTIME_ERROR
            or any(page.status != "ok" for page in pages)
        )
        status = "partial" if partial else "complete"
        message = _message(status, stop_reason, budget.total_ms, runtime_message, hint)

        incomplete_by_page: List[Tuple[str, Tuple[IncompleteRule, ...]]] = [
            (page.url, page.incomplete) for page in pages if page.incomplete
        ]
        needs_review = merge_review_flags(
            base_review_flags(request.mode, pages),
            [*dynamic_flags, *incomplete_review_flags(incomplete_by_page)],
        )
        metadata = self._metadata(
            request,
            pages=pages,
            issues=issues,
            performance_issues=performance_issues,
            global_errors=global_errors,
            incomplete_by_page=incomplete_by_page,
            truncation={"timeBudget": time_budget_hit, "maxTotalIssues": issue_cap_hit},
            duration_ms=budget.elapsed_ms(),
        )
        logger.info(
            "Accessibility scan %s: %d page(s), %d issue(s), stop=%s",
            status,
            len(pages),
            len(issues),
            stop_reason,
        )
        return AccessibilityScanResult(
            status=status,
            message=message,
            mode=request.mode,
            start_url=start_url,
            total_budget_ms=budget.total_ms,
            duration_ms=budget.elapsed_ms(),
            pages=tuple(pages),
            issues=tuple(issues),
            performance_issues=tuple(performance_issues),
            screenshots=tuple(screenshots),
            needs_review=needs_review,
            truncated=truncated,
            stop_reason=stop_reason,
            errors=tuple(global_errors),
            metadata=metadata,
        )

    async def _capture(
        self,
        session: BrowserSession,
        start_url: str,
        pages: List[PageResult],
        budget: TimeBudget,
        screenshots: List[Screenshot],
        global_errors: List[str],
    ) -> None:
        browser = self.config.browser
        for url in select_targets(start_url, pages, browser.max_screenshots):
            result = await capture_screenshot(session, url, budget, max_bytes=browser.max_screenshot_bytes)
            if result.screenshot is None:
                global_errors.append(f"{url}: {result.reason}")
                continue
            screenshots.append(result.screenshot)

    def _metadata(
        self,
        request: ScanRequest,
        *,
        pages: List[PageResult],
        issues: List[Issue],
        performance_issues: List[PerformanceIssue],
        global_errors: List[str],
        incomplete_by_page: List[Tuple[str, Tuple[IncompleteRule, ...]]],
        truncation: Dict[str, bool],
        duration_ms: int,
    ) -> Dict[str, Any]:
        return {
            "durationMs": duration_ms,
            "pagesAttempted": len(pages),
            "pagesScanned": sum(1 for page in pages if page.status == "ok"),
            "truncation": truncation,
            "errorsSummary": errors_summary(pages, global_errors),
            "caps": {
                "maxViolationsPerPage": request.caps.max_violations_per_page,
                "maxNodesPerViolation": request.caps.max_nodes_per_violation,
                "maxTotalIssuesOverall": request.caps.max_total_issues_overall,
            },
            "engine": {
                "name": self.adapter.name,
                "activeRuleCount": self.adapter.active_rule_count(request.tags),
                "insights": engine_insights(incomplete_by_page, issues),
            },
            "standards": {
                "ruleset": request.ruleset.value,
                "tags": list(request.tags),
                "includeBestPractices": request.include_best_practices,
                "includeExperimental": request.include_experimental,
            },
            "scope": RuleScope(request.include_selectors, request.exclude_selectors).to_dict(),
            "performance": performance_summary(performance_issues),
            "screenshotSelection": {
                "enabled": request.include_screenshots,
                "maxScreenshots": self.config.browser.max_screenshots,
            },
        }

    def _invalid_url_result(self, request: ScanRequest, budget: TimeBudget) -> AccessibilityScanResult:
        metadata = self._metadata(
            request,
            pages=[],
            issues=[],
            performance_issues=[],
            global_errors=[],
            incomplete_by_page=[],
            truncation={"timeBudget": False, "maxTotalIssues": False},
            duration_ms=budget.elapsed_ms(),
        )
        metadata["errorsSummary"] = {"totalErrors": 1, "totalTimeouts": 0, "messages": ["Invalid start URL"]}
        return AccessibilityScanResult(
            status="partial",
            message="Invalid start URL. Returning empty partial result.",
            mode=request.mode,
            start_url=None,
            total_budget_ms=budget.total_ms,
            duration_ms=budget.elapsed_ms(),
            pages=(),
            issues=(),
            performance_issues=(),
            screenshots=(),
            needs_review=(),
            truncated=True,
            stop_reason="invalid_start_url",
            errors=("Invalid start URL",),
            metadata=metadata,
        )


def _message(status: str, stop_reason: Optional[str], total_ms: int, runtime_message: str, hint: str) -> str:
    if status == "partial" and stop_reason == TIME_BUDGET_LOW:
        return f"Time budget exceeded at {total_ms}ms. Returning partial results."
    if stop_reason == MAX_TOTAL_ISSUES_REACHED:
        return "Issue cap reached. Additional issues were not returned."
    if stop_reason == MAX_PAGES_REACHED:
        return "Page cap reached. Crawl ended at configured max pages."
    if stop_reason == RUNTIME_ERROR:
        return " ".join(part for part in ("Runtime error occurred.", runtime_message, hint) if part)
    if status == "partial":
        return "Some pages could not be scanned. Returning partial results."
    return "Scan completed."
