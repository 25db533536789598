# site_lens/coordinator.py
"""
Multi-Engine Coordinator.

Runs the accessibility pass and the three scorer-derived engines
(performance, seo, bestPractices) concurrently. The scorer is called once per
request and its result is shared; every engine waits under its own timeout
and degrades to an ``unavailable`` section instead of failing the request.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from site_lens.budget import StageOutcome, TimeBudget, run_with_timeout
from site_lens.config import ScannerConfig
from site_lens.engines import accessibility_engine, category_engine, overall_score
from site_lens.errors import sanitize_error_message
from site_lens.models import ENGINE_KEYS, AccessibilityScanResult, EngineResult, ScanReport, ScanRequest
from site_lens.psi.client import CategoryScorerClient, ProbeResult
from site_lens.scanner import AccessibilityScanner

__all__ = ("MultiEngineCoordinator", "ProgressCallback", "failed_report", "SCORER_ENGINES")

logger = logging.getLogger("SiteLens")

ProgressCallback = Callable[[int, str], Awaitable[None]]

SCORER_ENGINES = ("performance", "seo", "bestPractices")
ACCESSIBILITY_GRACE_MS = 5000
MAX_ERROR_MESSAGES = 8


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MultiEngineCoordinator:
    """Одна точка входа для HTTP, CLI и фоновых заданий."""

    def __init__(
        self,
        config: ScannerConfig,
        scanner: AccessibilityScanner,
        scorer: CategoryScorerClient,
    ) -> None:
        self.config = config
        self.scanner = scanner
        self.scorer = scorer

    async def run(self, request: ScanRequest, progress: Optional[ProgressCallback] = None) -> ScanReport:
        started_at = _now()
        budget = self.scanner.new_budget(request)
        start_url = request.canonical_url
        logger.info("Scan started: %s (mode=%s, budget=%dms)", request.start_url, request.mode, budget.total_ms)
        await _notify(progress, 5, "Scan started")

        completed = 0

        async def tracked(name: str, work: Awaitable[EngineResult]) -> EngineResult:
            nonlocal completed
            result = await work
            completed += 1
            await _notify(progress, 10 + completed * 20, f"{name} engine {result.status}")
            return result

        shared_probe: Optional[asyncio.Future] = None
        if start_url is not None:
            shared_probe = asyncio.ensure_future(
                self.scorer.fetch(start_url, request.psi_strategy, self.config.psi.timeout_ms)
            )

        accessibility_outcome: Dict[str, StageOutcome[Any]] = {}
        try:
            results = await asyncio.gather(
                tracked("accessibility", self._accessibility(request, budget, accessibility_outcome)),
                *(
                    tracked(name, self._scorer_engine(name, shared_probe, budget, start_url or request.start_url))
                    for name in SCORER_ENGINES
                ),
            )
        finally:
            if shared_probe is not None and not shared_probe.done():
                shared_probe.cancel()

        engines = dict(zip(ENGINE_KEYS, results))
        outcome = accessibility_outcome.get("accessibility")
        scan: Optional[AccessibilityScanResult] = outcome.value if outcome and outcome.ok else None
        probe: Optional[ProbeResult] = None
        if shared_probe is not None and shared_probe.done() and not shared_probe.cancelled():
            if shared_probe.exception() is None:
                probe = shared_probe.result()

        report = self._assemble(request, engines, scan, probe, budget, started_at)
        await _notify(progress, 100, f"Scan {report.status}")
        logger.info("Scan finished: %s in %dms", report.status, report.duration_ms)
        return report

    async def _accessibility(
        self,
        request: ScanRequest,
        budget: TimeBudget,
        sink: Dict[str, StageOutcome[Any]],
    ) -> EngineResult:
        outcome = await run_with_timeout(
            self.scanner.scan(request, budget),
            budget.total_ms + ACCESSIBILITY_GRACE_MS,
            "accessibility scan",
        )
        sink["accessibility"] = outcome
        if not outcome.ok:
            logger.warning("Accessibility engine unavailable (%s): %s", outcome.reason, outcome.message)
            return EngineResult.unavailable("accessibility", outcome.reason, outcome.message)
        return accessibility_engine(outcome.value)

    async def _scorer_engine(
        self,
        name: str,
        shared_probe: Optional[asyncio.Future],
        budget: TimeBudget,
        start_url: str,
    ) -> EngineResult:
        if shared_probe is None:
            return EngineResult.unavailable(name, "unknown", "Invalid start URL")
        threshold = self.config.budget.min_remaining_to_start_engine_ms
        if budget.is_low(threshold):
            return EngineResult.unavailable(name, "timeout", "Time budget exhausted before the engine could start.")
        timeout_ms = budget.allot(
            self.config.psi.clamp_timeout(self.config.psi.timeout_ms) + self.config.budget.safety_margin_ms,
            floor_ms=threshold,
            margin_ms=self.config.budget.safety_margin_ms,
        )
        outcome = await run_with_timeout(asyncio.shield(shared_probe), timeout_ms, f"{name} engine")
        if not outcome.ok:
            logger.warning("%s engine unavailable (%s): %s", name, outcome.reason, outcome.message)
            return EngineResult.unavailable(name, outcome.reason, outcome.message)
        return category_engine(name, outcome.value, start_url)

    def _assemble(
        self,
        request: ScanRequest,
        engines: Dict[str, EngineResult],
        scan: Optional[AccessibilityScanResult],
        probe: Optional[ProbeResult],
        budget: TimeBudget,
        started_at: str,
    ) -> ScanReport:
        failed = [name for name in ENGINE_KEYS if engines[name].status != "available"]
        status = "complete" if not failed else "partial"
        engine_errors = {
            name: engines[name].error or engines[name].reason or "unknown"
            for name in failed
            if engines[name].status == "unavailable"
        }
        summary = {
            "accessibilityScore": engines["accessibility"].score,
            "performanceScore": engines["performance"].score,
            "seoScore": engines["seo"].score,
            "bestPracticesScore": engines["bestPractices"].score,
            "overallScore": overall_score(engines.values()),
            "pagesScanned": scan.pages_scanned if scan else 0,
            "issueCount": len(scan.issues) if scan else 0,
        }
        base_errors = (scan.metadata.get("errorsSummary") if scan else None) or {
            "totalErrors": 0,
            "totalTimeouts": 0,
            "messages": [],
        }
        metadata: Dict[str, Any] = {
            "durationMs": budget.elapsed_ms(),
            "enginesRun": list(ENGINE_KEYS),
            "enginesFailed": failed,
            "engineErrors": engine_errors,
            "errorsSummary": _merge_errors(base_errors, engine_errors),
            "scorerCallsMade": probe.calls_made if probe else 0,
            "scorerCacheHits": 1 if probe and probe.cache_hit else 0,
            "request": {
                "startUrl": request.start_url,
                "mode": request.mode,
                "maxPages": request.max_pages,
                "includeScreenshots": request.include_screenshots,
                "psiStrategy": request.psi_strategy,
                "totalBudgetMs": budget.total_ms,
            },
        }
        return ScanReport(
            status=status,
            message=_report_message(status, engines, scan),
            mode=request.mode,
            start_url=(scan.start_url if scan and scan.start_url else request.start_url),
            started_at=started_at,
            finished_at=_now(),
            duration_ms=budget.elapsed_ms(),
            engines=engines,
            summary=summary,
            pages=scan.pages if scan else (),
            issues=scan.issues if scan else (),
            performance_issues=scan.performance_issues if scan else (),
            screenshots=scan.screenshots if scan else (),
            needs_review=scan.needs_review if scan else (),
            truncated=scan.truncated if scan else True,
            stop_reason=scan.stop_reason if scan else None,
            metadata=metadata,
        )


def _merge_errors(base: Dict[str, Any], engine_errors: Dict[str, str]) -> Dict[str, Any]:
    messages: List[str] = list(base.get("messages") or [])
    seen = {message.lower() for message in messages}
    timeouts = int(base.get("totalTimeouts") or 0)
    errors = int(base.get("totalErrors") or 0)
    for name, error in engine_errors.items():
        text = sanitize_error_message(f"{name}: {error}")
        if text.lower() in seen:
            continue
        seen.add(text.lower())
        errors += 1
        if "timeout" in text.lower() or "timed out" in text.lower():
            timeouts += 1
        if len(messages) < MAX_ERROR_MESSAGES:
            messages.append(text)
    return {"totalErrors": errors, "totalTimeouts": timeouts, "messages": messages}


def _report_message(
    status: str,
    engines: Dict[str, EngineResult],
    scan: Optional[AccessibilityScanResult],
) -> str:
    if status == "complete":
        return scan.message if scan and scan.message else "Scan completed."
    parts: List[str] = []
    if scan is not None and scan.status == "partial" and scan.message:
        parts.append(scan.message)
    reasons = {engine.reason for name, engine in engines.items() if name in SCORER_ENGINES}
    if "missing_api_key" in reasons:
        parts.append("PageSpeed API key missing. Scorer engines unavailable.")
    elif "quota_exceeded" in reasons:
        parts.append("PageSpeed Insights quota exceeded.")
    unavailable = [name for name, engine in engines.items() if engine.status == "unavailable"]
    if unavailable:
        parts.append(f"Unavailable engines: {', '.join(unavailable)}.")
    return " ".join(parts) or "Some engines returned partial results."


def failed_report(request: Optional[ScanRequest], error: BaseException) -> ScanReport:
    """Report for an unexpected coordinator crash: every engine unavailable, status ``failed``."""
    message = sanitize_error_message(error)
    now = _now()
    engines = {name: EngineResult.unavailable(name, "unknown", message) for name in ENGINE_KEYS}
    return ScanReport(
        status="failed",
        message=message,
        mode=request.mode if request else "single",
        start_url=request.start_url if request else "",
        started_at=now,
        finished_at=now,
        duration_ms=0,
        engines=engines,
        summary={
            "accessibilityScore": None,
            "performanceScore": None,
            "seoScore": None,
            "bestPracticesScore": None,
            "overallScore": None,
            "pagesScanned": 0,
            "issueCount": 0,
        },
        truncated=True,
        metadata={
            "enginesRun": list(ENGINE_KEYS),
            "enginesFailed": list(ENGINE_KEYS),
            "errorsSummary": {"totalErrors": 1, "totalTimeouts": 0, "messages": [message]},
        },
    )


async def _notify(progress: Optional[ProgressCallback], percent: int, message: str) -> None:
    if progress is None:
        return
    try:
        await progress(percent, message)
    except Exception as exc:  # noqa: BLE001
        logger.debug("progress callback failed: %s", exc)
