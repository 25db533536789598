# File: site_lens/performance.py
"""site_lens.performance: In-page performance metrics and the threshold policy.

:func:`collect_metrics` reads raw signals from the rendered page;
:func:`evaluate_metrics` is a pure function that turns those signals into
ranked :class:`~site_lens.models.PerformanceIssue` objects, so the policy can be
tested without a browser.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from site_lens.browser.page import RenderablePage
from site_lens.errors import sanitize_error_message
from site_lens.models import PerformanceIssue
from site_lens.utils import impact_weight

__all__ = (
    "PageMetrics",
    "Threshold",
    "THRESHOLDS",
    "METRICS_SCRIPT",
    "PerformanceAudit",
    "collect_metrics",
    "evaluate_metrics",
    "runtime_issue",
    "audit_page",
)

logger = logging.getLogger("SiteLens")

KB = 1024
MB = 1024 * 1024
MAX_PERFORMANCE_ISSUES = 60

METRICS_SCRIPT = """
() => {
  const safeUrl = (input) => { try { return new URL(input, window.location.href); } catch (e) { return null; } };
  const resources = performance.getEntriesByType('resource').map((entry) => ({
    name: String(entry.name || ''),
    initiatorType: String(entry.initiatorType || ''),
    size: Math.max(Number(entry.transferSize || 0), Number(entry.encodedBodySize || 0),
                   Number(entry.decodedBodySize || 0), 0)
  }));
  const nav = performance.getEntriesByType('navigation')[0] || null;
  const lcpEntries = performance.getEntriesByType('largest-contentful-paint');
  const clsEntries = performance.getEntriesByType('layout-shift');
  const longTasks = performance.getEntriesByType('longtask');
  const origin = window.location.origin;
  const jsResources = resources.filter((r) => r.initiatorType === 'script' || /\\.m?js(\\?|$)/i.test(r.name));
  const imageResources = resources.filter(
    (r) => r.initiatorType === 'img' || /\\.(avif|webp|png|jpe?g|gif|svg)(\\?|$)/i.test(r.name)
  );
  return {
    requestCount: resources.length,
    totalBytes: resources.reduce((sum, r) => sum + r.size, 0),
    jsBytes: jsResources.reduce((sum, r) => sum + r.size, 0),
    imageBytes: imageResources.reduce((sum, r) => sum + r.size, 0),
    thirdPartyRequests: resources.filter((r) => { const u = safeUrl(r.name); return u && u.origin !== origin; }).length,
    domNodeCount: document.getElementsByTagName('*').length,
    renderBlockingStylesheets: document.querySelectorAll('head link[rel="stylesheet"]:not([media="print"])').length,
    renderBlockingScripts: document.querySelectorAll('head script[src]:not([async]):not([defer])').length,
    offscreenWithoutLazy: Array.from(document.images).filter((img) => {
      const rect = img.getBoundingClientRect();
      return rect.top > window.innerHeight * 1.5 && String(img.getAttribute('loading') || '').toLowerCase() !== 'lazy';
    }).length,
    ttfbMs: nav ? Number(nav.responseStart || 0) : 0,
    lcpMs: lcpEntries.length ? Number(lcpEntries[lcpEntries.length - 1].startTime || 0) : 0,
    cls: clsEntries.filter((e) => !e.hadRecentInput).reduce((sum, e) => sum + Number(e.value || 0), 0),
    longTaskCount: longTasks.length,
    longTaskTotalMs: longTasks.reduce((sum, t) => sum + Number(t.duration || 0), 0),
    largestImages: [...imageResources].sort((a, b) => b.size - a.size).slice(0, 5)
      .map((r) => ({ name: r.name, size: r.size }))
  };
}
"""


def _num(value: Any) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    return numeric if math.isfinite(numeric) else 0.0


def _round(value: float, precision: int = 2) -> float:
    return round(_num(value), precision)


def _kb(value: float) -> str:
    return f"{_round(value / KB, 1):g} KB"


def _ms(value: float) -> str:
    return f"{round(_num(value))} ms"


@dataclass(frozen=True, slots=True)
class PageMetrics:
    """Raw in-page signals; missing values default to zero."""

    request_count: int = 0
    total_bytes: float = 0
    js_bytes: float = 0
    image_bytes: float = 0
    third_party_requests: int = 0
    dom_node_count: int = 0
    render_blocking_stylesheets: int = 0
    render_blocking_scripts: int = 0
    offscreen_without_lazy: int = 0
    ttfb_ms: float = 0
    lcp_ms: float = 0
    cls: float = 0
    long_task_count: int = 0
    long_task_total_ms: float = 0
    largest_images: Tuple[Tuple[str, float], ...] = ()

    @property
    def blocking_resources(self) -> int:
        return self.render_blocking_scripts + self.render_blocking_stylesheets

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> PageMetrics:
        images = []
        for item in raw.get("largestImages") or []:
            if isinstance(item, Mapping):
                images.append((str(item.get("name") or ""), _num(item.get("size"))))
        return cls(
            request_count=int(_num(raw.get("requestCount"))),
            total_bytes=_num(raw.get("totalBytes")),
            js_bytes=_num(raw.get("jsBytes")),
            image_bytes=_num(raw.get("imageBytes")),
            third_party_requests=int(_num(raw.get("thirdPartyRequests"))),
            dom_node_count=int(_num(raw.get("domNodeCount"))),
            render_blocking_stylesheets=int(_num(raw.get("renderBlockingStylesheets"))),
            render_blocking_scripts=int(_num(raw.get("renderBlockingScripts"))),
            offscreen_without_lazy=int(_num(raw.get("offscreenWithoutLazy"))),
            ttfb_ms=_num(raw.get("ttfbMs")),
            lcp_ms=_num(raw.get("lcpMs")),
            cls=_num(raw.get("cls")),
            long_task_count=int(_num(raw.get("longTaskCount"))),
            long_task_total_ms=_num(raw.get("longTaskTotalMs")),
            largest_images=tuple(images),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestCount": self.request_count,
            "totalBytes": self.total_bytes,
            "jsBytes": self.js_bytes,
            "imageBytes": self.image_bytes,
            "thirdPartyRequests": self.third_party_requests,
            "domNodeCount": self.dom_node_count,
            "renderBlockingStylesheets": self.render_blocking_stylesheets,
            "renderBlockingScripts": self.render_blocking_scripts,
            "offscreenWithoutLazy": self.offscreen_without_lazy,
            "ttfbMs": self.ttfb_ms,
            "lcpMs": self.lcp_ms,
            "cls": self.cls,
            "longTaskCount": self.long_task_count,
            "longTaskTotalMs": self.long_task_total_ms,
        }


@dataclass(frozen=True, slots=True)
class Threshold:
    """One row of the policy table: value >= moderate gives moderate, >= serious gives serious."""

    rule_id: str
    metric: str
    moderate: float
    serious: float
    threshold_text: str
    title: str
    recommendation: str
    read: Callable[[PageMetrics], float]
    fmt: Callable[[PageMetrics], str]
    summary: Callable[[PageMetrics], str]

    def impact(self, metrics: PageMetrics) -> str:
        value = self.read(metrics)
        if value >= self.serious:
            return "serious"
        if value >= self.moderate:
            return "moderate"
        return ""


THRESHOLDS: Tuple[Threshold, ...] = (
    Threshold(
        "total-byte-weight", "totalBytes", 3 * MB, 5 * MB, ">= 3072 KB (moderate), >= 5120 KB (serious)",
        "Total page weight is high",
        "Compress heavy assets, defer non-critical bundles, and optimize image formats.",
        lambda m: m.total_bytes, lambda m: _kb(m.total_bytes),
        lambda m: f"Transferred resource weight is {_kb(m.total_bytes)} across network requests.",
    ),
    Threshold(
        "network-requests", "requestCount", 100, 160, ">= 100 (moderate), >= 160 (serious)",
        "High number of network requests",
        "Reduce request count via bundling, inlining critical assets, and removing unused resources.",
        lambda m: m.request_count, lambda m: str(m.request_count),
        lambda m: f"Page initiated {m.request_count} resource requests.",
    ),
    Threshold(
        "third-party-summary", "thirdPartyRequests", 30, 60, ">= 30 (moderate), >= 60 (serious)",
        "Third-party request pressure is high",
        "Audit third-party scripts/widgets and remove or defer non-essential vendors.",
        lambda m: m.third_party_requests, lambda m: str(m.third_party_requests),
        lambda m: f"{m.third_party_requests} requests were loaded from third-party origins.",
    ),
    Threshold(
        "javascript-payload", "jsBytes", 900 * KB, 1500 * KB, ">= 900 KB (moderate), >= 1500 KB (serious)",
        "JavaScript payload is heavy",
        "Code split aggressively and remove unused libraries/routes from initial bundles.",
        lambda m: m.js_bytes, lambda m: _kb(m.js_bytes),
        lambda m: f"JavaScript resources total {_kb(m.js_bytes)}.",
    ),
    Threshold(
        "render-blocking-resources", "blockingResources", 4, 8, ">= 4 (moderate), >= 8 (serious)",
        "Render-blocking resources detected",
        "Inline critical CSS and defer non-critical scripts/stylesheets.",
        lambda m: m.blocking_resources, lambda m: str(m.blocking_resources),
        lambda m: (
            f"{m.blocking_resources} blocking resources found in <head> "
            f"({m.render_blocking_stylesheets} stylesheet(s), {m.render_blocking_scripts} script(s))."
        ),
    ),
    Threshold(
        "dom-size", "domNodeCount", 1500, 3000, ">= 1500 (moderate), >= 3000 (serious)",
        "DOM size is large",
        "Simplify nested structures and reduce duplicated/hidden markup.",
        lambda m: m.dom_node_count, lambda m: str(m.dom_node_count),
        lambda m: f"DOM contains {m.dom_node_count} nodes.",
    ),
    Threshold(
        "server-response-time", "ttfbMs", 800, 1800, ">= 800ms (moderate), >= 1800ms (serious)",
        "Server response time is slow",
        "Improve caching and server processing performance on first response.",
        lambda m: m.ttfb_ms, lambda m: _ms(m.ttfb_ms),
        lambda m: f"Estimated TTFB is {_ms(m.ttfb_ms)}.",
    ),
    Threshold(
        "largest-contentful-paint", "lcpMs", 2500, 4000, ">= 2500ms (moderate), >= 4000ms (serious)",
        "Largest Contentful Paint is high",
        "Prioritize above-the-fold assets and reduce render-blocking work.",
        lambda m: m.lcp_ms, lambda m: _ms(m.lcp_ms),
        lambda m: f"Estimated LCP is {_ms(m.lcp_ms)}.",
    ),
    Threshold(
        "cumulative-layout-shift", "cls", 0.1, 0.25, ">= 0.1 (moderate), >= 0.25 (serious)",
        "Layout instability detected",
        "Reserve explicit width/height for media and avoid layout-shifting late inserts.",
        lambda m: m.cls, lambda m: f"{_round(m.cls, 3):g}",
        lambda m: f"Estimated CLS is {_round(m.cls, 3):g}.",
    ),
    Threshold(
        "long-main-thread-tasks", "longTaskTotalMs", 300, 1000, ">= 300ms (moderate), >= 1000ms (serious)",
        "Long main-thread work detected",
        "Break up long tasks and defer non-critical script execution.",
        lambda m: m.long_task_total_ms, lambda m: _ms(m.long_task_total_ms),
        lambda m: f"{m.long_task_count} long task(s), total {_ms(m.long_task_total_ms)}.",
    ),
)

OFFSCREEN_SERIOUS = 8
LARGE_IMAGE_MODERATE = 300 * KB
LARGE_IMAGE_SERIOUS = 900 * KB


def evaluate_metrics(page_url: str, metrics: PageMetrics) -> List[PerformanceIssue]:
    """Apply the threshold table; issues ranked by impact (stable), capped at 60."""
    issues: List[PerformanceIssue] = []
    for row in THRESHOLDS:
        impact = row.impact(metrics)
        if not impact:
            continue
        issues.append(
            PerformanceIssue(
                page_url=page_url,
                rule_id=row.rule_id,
                impact=impact,
                title=row.title,
                failure_summary=row.summary(metrics),
                recommendation=row.recommendation,
                metric=row.metric,
                value=row.fmt(metrics),
                threshold=row.threshold_text,
            )
        )

    if metrics.offscreen_without_lazy > 0:
        issues.append(
            PerformanceIssue(
                page_url=page_url,
                rule_id="offscreen-images-lazy-loading",
                impact="serious" if metrics.offscreen_without_lazy >= OFFSCREEN_SERIOUS else "moderate",
                title="Offscreen images are not lazy-loaded",
                failure_summary=f'{metrics.offscreen_without_lazy} offscreen image(s) missing loading="lazy".',
                recommendation="Apply lazy loading to below-the-fold images.",
                metric="offscreenWithoutLazy",
                value=str(metrics.offscreen_without_lazy),
                threshold=">= 1",
            )
        )

    for name, size in metrics.largest_images:
        if size < LARGE_IMAGE_MODERATE:
            continue
        issues.append(
            PerformanceIssue(
                page_url=page_url,
                rule_id="large-image-resource",
                impact="serious" if size >= LARGE_IMAGE_SERIOUS else "moderate",
                title="Large image resource detected",
                failure_summary=f"Image transfer size is {_kb(size)}.",
                recommendation="Compress image and serve modern formats sized to display dimensions.",
                metric="imageBytes",
                value=_kb(size),
                threshold=">= 300 KB",
                sample=name,
            )
        )

    issues.sort(key=lambda issue: -impact_weight(issue.impact))
    return issues[:MAX_PERFORMANCE_ISSUES]


def runtime_issue(page_url: str, error: BaseException) -> PerformanceIssue:
    return PerformanceIssue(
        page_url=page_url,
        rule_id="performance-audit-runtime",
        impact="minor",
        title="Performance audit did not fully complete",
        failure_summary=sanitize_error_message(error),
        recommendation="Rerun the scan to retry performance analysis.",
    )


async def collect_metrics(page: RenderablePage) -> PageMetrics:
    raw = await page.evaluate(METRICS_SCRIPT)
    return PageMetrics.from_raw(raw if isinstance(raw, Mapping) else {})


@dataclass(frozen=True, slots=True)
class PerformanceAudit:
    issues: Tuple[PerformanceIssue, ...]
    metrics: Optional[PageMetrics]


async def audit_page(page: RenderablePage, page_url: str) -> PerformanceAudit:
    """Collect and evaluate; a collection failure becomes a single minor runtime issue."""
    try:
        metrics = await collect_metrics(page)
    except Exception as exc:  # noqa: BLE001
        logger.debug("performance audit failed on %s: %s", page_url, exc)
        return PerformanceAudit((runtime_issue(page_url, exc),), None)
    return PerformanceAudit(tuple(evaluate_metrics(page_url, metrics)), metrics)

