# File: site_lens/aggregator.py
"""site_lens.aggregator: Сводки по результатам сканирования.

Чистые функции над уже собранными страницами и проблемами: сводка ошибок,
распределение по impact, топ правил, сводка «незавершённых» правил движка.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence, Tuple

from site_lens.models import IncompleteRule, PageResult
from site_lens.utils import IMPACT_LEVELS

__all__ = (
    "errors_summary",
    "impact_summary",
    "rule_totals",
    "issue_counts_by_page",
    "performance_summary",
    "engine_insights",
)

MAX_ERROR_MESSAGES = 8
MAX_TOP_RULES = 10
MAX_INCOMPLETE_TOP_RULES = 8
MAX_INCOMPLETE_SAMPLES = 10


def errors_summary(pages: Sequence[PageResult], global_errors: Iterable[str]) -> Dict[str, Any]:
    """Ошибки страниц (``"url: error"``), затем глобальные ошибки; не более 8 сообщений."""
    messages: List[str] = []
    for page in pages:
        if len(messages) >= MAX_ERROR_MESSAGES:
            break
        if page.error:
            messages.append(f"{page.url}: {page.error}")
    for err in global_errors:
        if len(messages) >= MAX_ERROR_MESSAGES:
            break
        if err:
            messages.append(str(err))
    return {
        "totalErrors": sum(1 for page in pages if page.status == "error"),
        "totalTimeouts": sum(1 for page in pages if page.status == "timeout"),
        "messages": messages,
    }


def impact_summary(issues: Iterable[Any]) -> Dict[str, int]:
    """Число проблем по каждому из четырёх уровней impact."""
    counts = {level: 0 for level in IMPACT_LEVELS}
    for issue in issues:
        impact = str(getattr(issue, "impact", "") or "").lower()
        if impact in counts:
            counts[impact] += 1
    return counts


def _ranked(counts: Dict[str, int], limit: int) -> List[Dict[str, Any]]:
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [{"ruleId": rule_id, "count": count} for rule_id, count in ranked]


def rule_totals(issues: Iterable[Any], limit: int = MAX_TOP_RULES) -> List[Dict[str, Any]]:
    """Топ правил по числу проблем (убывание), при равенстве по id."""
    counts: Dict[str, int] = {}
    for issue in issues:
        rule_id = str(getattr(issue, "rule_id", "") or "").strip()
        if rule_id:
            counts[rule_id] = counts.get(rule_id, 0) + 1
    return _ranked(counts, limit)


def issue_counts_by_page(issues: Iterable[Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for issue in issues:
        page_url = str(getattr(issue, "page_url", "") or "").strip()
        if page_url:
            counts[page_url] = counts.get(page_url, 0) + 1
    return counts


def performance_summary(issues: Sequence[Any]) -> Dict[str, Any]:
    return {
        "issueCount": len(issues),
        "impactSummary": impact_summary(issues),
        "topRules": rule_totals(issues),
        "issuesByPage": issue_counts_by_page(issues),
    }


def engine_insights(
    incomplete_by_page: Iterable[Tuple[str, Sequence[IncompleteRule]]],
    issues: Sequence[Any],
) -> Dict[str, Any]:
    """Сводка движка правил: impact, топ правил и правила, требующие ручной проверки."""
    incomplete_counts: Dict[str, int] = {}
    samples: List[Dict[str, Any]] = []
    for page_url, incomplete in incomplete_by_page:
        for rule in incomplete:
            if not rule.rule_id:
                continue
            incomplete_counts[rule.rule_id] = incomplete_counts.get(rule.rule_id, 0) + 1
            if len(samples) < MAX_INCOMPLETE_SAMPLES:
                samples.append({"pageUrl": page_url, **rule.to_dict()})
    return {
        "issueCount": len(issues),
        "impactSummary": impact_summary(issues),
        "topRules": rule_totals(issues),
        "incompleteRuleCount": len(incomplete_counts),
        "incompleteTopRules": _ranked(incomplete_counts, MAX_INCOMPLETE_TOP_RULES),
        "incompleteSamples": samples,
    }
