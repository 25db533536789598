# File: site_lens/engines.py
"""site_lens.engines: Сборка разделов отчёта (EngineResult) для каждого движка.

Движок доступности строится из результата прохода по страницам, остальные
три из общего ответа сервиса оценки категорий. Ни одна функция не бросает
исключений: отсутствие данных даёт раздел со статусом ``unavailable``.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from site_lens.models import AccessibilityScanResult, EngineResult, Issue
from site_lens.psi import categories
from site_lens.psi.client import ProbeResult
from site_lens.utils import clamp_score

__all__ = (
    "ACCESSIBILITY_PENALTIES",
    "accessibility_score",
    "accessibility_engine",
    "category_engine",
    "overall_score",
)

ACCESSIBILITY_PENALTIES: Dict[str, int] = {"critical": 15, "serious": 10, "moderate": 5, "minor": 2}
_IMPACT_ORDER = ("critical", "serious", "moderate", "minor")

ENGINE_LABELS: Dict[str, str] = {
    "accessibility": "Accessibility",
    "performance": "Performance",
    "seo": "SEO",
    "bestPractices": "Best Practices",
}


def accessibility_score(issues: Iterable[Issue]) -> int:
    """100 минус штраф за каждое различное правило по его наибольшему impact."""
    worst: Dict[str, str] = {}
    for issue in issues:
        current = worst.get(issue.rule_id)
        if current is None or _IMPACT_ORDER.index(issue.impact) < _IMPACT_ORDER.index(current):
            worst[issue.rule_id] = issue.impact
    penalty = sum(ACCESSIBILITY_PENALTIES[impact] for impact in worst.values())
    return max(0, 100 - penalty)


def accessibility_engine(result: AccessibilityScanResult) -> EngineResult:
    """Раздел доступности: available/partial/unavailable по числу успешных страниц."""
    pages = result.pages
    ok_pages = [page for page in pages if page.status == "ok"]
    metadata: Dict[str, Any] = {
        "message": result.message,
        "stopReason": result.stop_reason,
        "truncated": result.truncated,
        "pagesAttempted": len(pages),
        "pagesScanned": len(ok_pages),
        "needsReviewCount": len(result.needs_review),
        **result.metadata,
    }
    if not ok_pages:
        reason = "timeout" if any(page.status == "timeout" for page in pages) else "unknown"
        error = result.errors[0] if result.errors else result.message
        return EngineResult(
            name="accessibility",
            status="unavailable",
            reason=reason,
            error=error or None,
            issue_count=0,
            metadata=metadata,
        )
    status = "available" if len(ok_pages) == len(pages) else "partial"
    return EngineResult(
        name="accessibility",
        status=status,
        score=accessibility_score(result.issues),
        issues=result.issues,
        reason=None if status == "available" else "unknown",
        metadata=metadata,
    )


def category_engine(name: str, probe: Optional[ProbeResult], start_url: str) -> EngineResult:
    """Раздел performance/seo/bestPractices из общего ответа сервиса оценки."""
    category_key = categories.CATEGORY_KEYS[name]
    if probe is None or not probe.ok:
        reason = (probe.reason if probe else None) or "unknown"
        message = (probe.message if probe else "") or f"{ENGINE_LABELS[name]} data unavailable."
        return EngineResult.unavailable(
            name,
            reason,
            error=message,
            source="pagespeed-insights",
            cacheHit=bool(probe and probe.cache_hit),
        )

    payload = probe.payload
    issues = categories.category_issues(payload, category_key, categories.CATEGORY_ISSUE_CAPS[name])
    metadata: Dict[str, Any] = {
        "source": "pagespeed-insights",
        "strategy": probe.strategy,
        "analyzedUrl": categories.analyzed_url(payload, start_url),
        "auditCount": categories.audit_count(payload, category_key),
        "failedAuditCount": len(issues),
        "fetchDurationMs": probe.duration_ms,
        "cacheHit": probe.cache_hit,
    }
    if name == "performance":
        metadata["lighthouseMetrics"] = categories.lighthouse_metrics(payload)
        metadata["coreWebVitals"] = categories.core_web_vitals(payload)
    score = categories.category_score(payload, category_key)
    return EngineResult(
        name=name,
        status="available" if score is not None else "partial",
        score=score,
        issues=tuple(issues),
        reason=None if score is not None else "unknown",
        metadata=metadata,
    )


def overall_score(engines: Iterable[EngineResult]) -> Optional[int]:
    """Среднее по движкам, у которых есть оценка; None, если оценок нет."""
    scores = [clamp_score(engine.score) for engine in engines if engine.score is not None]
    scores = [score for score in scores if score is not None]
    if not scores:
        return None
    return clamp_score(sum(scores) / len(scores))
