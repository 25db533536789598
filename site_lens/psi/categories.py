# File: site_lens/psi/categories.py
"""site_lens.psi.categories: Извлечение оценок и проблем из ответа PageSpeed Insights.

Все функции чистые и терпимы к неполному ответу: отсутствующие поля дают
``None`` или пустой список, а не исключение.
"""
from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Mapping, Optional

from site_lens.models import CategoryIssue

__all__ = (
    "CATEGORY_KEYS",
    "CATEGORY_ISSUE_CAPS",
    "to_score",
    "strip_html",
    "category_score",
    "category_issues",
    "audit_count",
    "analyzed_url",
    "lighthouse_metrics",
    "core_web_vitals",
)

# ключ движка в отчёте -> категория Lighthouse
CATEGORY_KEYS: Dict[str, str] = {
    "accessibility": "accessibility",
    "performance": "performance",
    "seo": "seo",
    "bestPractices": "best-practices",
}
CATEGORY_ISSUE_CAPS: Dict[str, int] = {
    "accessibility": 40,
    "performance": 40,
    "seo": 30,
    "bestPractices": 30,
}

_SKIPPED_DISPLAY_MODES = frozenset({"notApplicable", "manual", "informative"})
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

_LIGHTHOUSE_METRICS = (
    ("fcpMs", "first-contentful-paint", 0),
    ("lcpMs", "largest-contentful-paint", 0),
    ("speedIndexMs", "speed-index", 0),
    ("tbtMs", "total-blocking-time", 0),
    ("ttiMs", "interactive", 0),
    ("cls", "cumulative-layout-shift", 3),
    ("ttfbMs", "server-response-time", 0),
)

_FIELD_METRICS = (
    ("lcpMs", "LARGEST_CONTENTFUL_PAINT_MS", "largest-contentful-paint", 0),
    ("inpMs", "INTERACTION_TO_NEXT_PAINT", "interaction-to-next-paint", 0),
    ("cls", "CUMULATIVE_LAYOUT_SHIFT_SCORE", "cumulative-layout-shift", 3),
    ("fcpMs", "FIRST_CONTENTFUL_PAINT_MS", "first-contentful-paint", 0),
    ("ttfbMs", "EXPERIMENTAL_TIME_TO_FIRST_BYTE", "server-response-time", 0),
)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def _round(value: Any, precision: int = 0) -> Optional[float]:
    numeric = _number(value)
    if numeric is None:
        return None
    rounded = round(numeric, precision)
    return int(rounded) if precision == 0 else rounded


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _lighthouse(payload: Any) -> Mapping[str, Any]:
    return _mapping(_mapping(payload).get("lighthouseResult"))


def _category(payload: Any, category_key: str) -> Mapping[str, Any]:
    return _mapping(_mapping(_lighthouse(payload).get("categories")).get(category_key))


def _audits(payload: Any) -> Mapping[str, Any]:
    return _mapping(_lighthouse(payload).get("audits"))


def to_score(raw: Any) -> Optional[int]:
    """Оценка 0..1 (или уже 0..100) -> целое 0..100; мусор -> None."""
    numeric = _number(raw)
    if numeric is None:
        return None
    scaled = numeric * 100 if numeric <= 1 else numeric
    return max(0, min(100, int(round(scaled))))


def strip_html(value: Any) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", str(value or ""))).strip()


def category_score(payload: Any, category_key: str) -> Optional[int]:
    return to_score(_category(payload, category_key).get("score"))


def audit_count(payload: Any, category_key: str) -> int:
    refs = _category(payload, category_key).get("auditRefs")
    return len(refs) if isinstance(refs, list) else 0


def analyzed_url(payload: Any, fallback: str) -> str:
    final = _lighthouse(payload).get("finalDisplayedUrl") or _mapping(payload).get("id")
    return str(final or fallback)


def _impact_for(score: float) -> str:
    if score <= 0.2:
        return "serious"
    if score <= 0.5:
        return "moderate"
    return "minor"


def category_issues(payload: Any, category_key: str, max_issues: int = 25) -> List[CategoryIssue]:
    """Непройденные аудиты категории, по возрастанию score, затем по id."""
    refs = _category(payload, category_key).get("auditRefs")
    audits = _audits(payload)
    found: List[CategoryIssue] = []
    for ref in refs if isinstance(refs, list) else []:
        rule_id = str(_mapping(ref).get("id") or "").strip()
        audit = _mapping(audits.get(rule_id)) if rule_id else {}
        if not audit:
            continue
        if str(audit.get("scoreDisplayMode") or "") in _SKIPPED_DISPLAY_MODES:
            continue
        score = _number(audit.get("score"))
        if score is None or score >= 1:
            continue
        score = max(0.0, min(1.0, score))
        found.append(
            CategoryIssue(
                rule_id=rule_id,
                title=str(audit.get("title") or rule_id),
                impact=_impact_for(score),
                score=score,
                description=strip_html(audit.get("description")),
                display_value=str(audit.get("displayValue") or "").strip(),
            )
        )
    found.sort(key=lambda issue: (issue.score, issue.rule_id))
    return found[: max(1, int(max_issues))]


def lighthouse_metrics(payload: Any) -> Dict[str, Optional[float]]:
    """Лабораторные метрики Lighthouse (FCP, LCP, Speed Index, TBT, TTI, CLS, TTFB)."""
    audits = _audits(payload)
    return {
        key: _round(_mapping(audits.get(audit_id)).get("numericValue"), precision)
        for key, audit_id, precision in _LIGHTHOUSE_METRICS
    }


def core_web_vitals(payload: Any) -> Dict[str, Dict[str, Any]]:
    """Полевые данные loadingExperience, при отсутствии метрики берётся лабораторное значение."""
    field = _mapping(_mapping(_mapping(payload).get("loadingExperience")).get("metrics"))
    audits = _audits(payload)
    vitals: Dict[str, Dict[str, Any]] = {}
    for key, field_key, audit_id, precision in _FIELD_METRICS:
        metric = _mapping(field.get(field_key))
        value = _round(metric.get("percentile"), precision)
        if value is not None:
            vitals[key] = {"value": value, "category": str(metric.get("category") or "").lower(), "source": "field"}
            continue
        value = _round(_mapping(audits.get(audit_id)).get("numericValue"), precision)
        vitals[key] = {"value": value, "category": "", "source": "lighthouse" if value is not None else ""}
    return vitals
