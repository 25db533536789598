# File: site_lens/models.py
"""site_lens.models: Модели запроса и результатов сканирования.

Запрос (:class:`ScanRequest`) валидируется Pydantic один раз на входе.
Результаты (страницы, проблемы, движки, итоговый отчёт) хранятся в неизменяемых
dataclass-объектах; ``to_dict()`` отдаёт JSON-представление в camelCase,
которое возвращает HTTP API.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from site_lens.config import (
    MAX_NODES_PER_VIOLATION,
    MAX_PAGES,
    MAX_TOTAL_ISSUES_OVERALL,
    MAX_VIOLATIONS_PER_PAGE,
    MIN_TOTAL_ISSUES_OVERALL,
    CapsConfig,
    ScannerConfig,
)
from site_lens.crawler.urls import canonicalize_url
from site_lens.errors import InvalidScanRequestError
from site_lens.rules.profiles import RulesetProfile, profile_tags
from site_lens.utils import IMPACT_LEVELS, MAX_SELECTOR_LENGTH, clamp_int, trim_text

__all__ = (
    "ScanMode",
    "PageStatus",
    "EngineStatus",
    "ScanRequest",
    "BoundingBox",
    "Issue",
    "PerformanceIssue",
    "CategoryIssue",
    "ReviewFlag",
    "IncompleteRule",
    "TruncatedBy",
    "PageResult",
    "Screenshot",
    "AccessibilityScanResult",
    "EngineResult",
    "ScanReport",
    "ENGINE_KEYS",
)

ScanMode = Literal["single", "crawl"]
PageStatus = Literal["ok", "timeout", "error"]
EngineStatus = Literal["available", "partial", "unavailable"]

ENGINE_KEYS: Tuple[str, ...] = ("accessibility", "performance", "seo", "bestPractices")

MAX_SCOPE_SELECTORS = 8


# --------------------------------------------------------------------------- #
# Запрос                                                                       #
# --------------------------------------------------------------------------- #

_PAYLOAD_KEYS = {
    "startUrl": "start_url",
    "url": "start_url",
    "maxPages": "max_pages",
    "includeScreenshots": "include_screenshots",
    "totalBudgetMs": "budget_ms",
    "timeoutMs": "budget_ms",
    "psiStrategy": "psi_strategy",
    "strategy": "psi_strategy",
    "ruleset": "ruleset",
    "includeBestPractices": "include_best_practices",
    "includeExperimental": "include_experimental",
    "includeSelectors": "include_selectors",
    "excludeSelectors": "exclude_selectors",
    "maxViolationsPerPage": "max_violations_per_page",
    "maxNodesPerViolation": "max_nodes_per_violation",
    "maxTotalIssuesOverall": "max_total_issues_overall",
}


def _scope_selectors(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    cleaned = (trim_text(str(item or "").strip(), MAX_SELECTOR_LENGTH) for item in value)
    return tuple(item for item in cleaned if item)[:MAX_SCOPE_SELECTORS]


class ScanRequest(BaseModel):
    """Нормализованный запрос на сканирование.

    ``start_url`` хранится как пришёл; каноническая форма доступна через
    :attr:`canonical_url` (None, если URL не http/https). Некорректный URL
    не является ошибкой запроса: сканер вернёт частичный отчёт без страниц.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    start_url: str = ""
    mode: ScanMode = "single"
    max_pages: int = Field(1, ge=1, le=MAX_PAGES)
    include_screenshots: bool = True
    budget_ms: int = Field(28_000, gt=0)
    psi_strategy: Literal["mobile", "desktop"] = "mobile"
    ruleset: RulesetProfile = RulesetProfile.WCAG22AA
    include_best_practices: bool = True
    include_experimental: bool = False
    include_selectors: Tuple[str, ...] = ()
    exclude_selectors: Tuple[str, ...] = ()
    caps: CapsConfig = Field(default_factory=CapsConfig)

    @field_validator("start_url", mode="before")
    def _coerce_url(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""

    @field_validator("mode", mode="before")
    def _coerce_mode(cls, v: Any) -> str:
        return "crawl" if str(v or "").strip().lower() == "crawl" else "single"

    @field_validator("psi_strategy", mode="before")
    def _coerce_strategy(cls, v: Any) -> str:
        return "desktop" if str(v or "").strip().lower() == "desktop" else "mobile"

    @field_validator("ruleset", mode="before")
    def _coerce_ruleset(cls, v: Any) -> RulesetProfile:
        return RulesetProfile.parse(v)

    @field_validator("include_selectors", "exclude_selectors", mode="before")
    def _coerce_scope(cls, v: Any) -> Tuple[str, ...]:
        return _scope_selectors(v)

    @model_validator(mode="before")
    @classmethod
    def _single_page(cls, data: Any) -> Any:
        if isinstance(data, dict) and str(data.get("mode") or "").strip().lower() != "crawl":
            data = {**data, "max_pages": 1}
        return data

    @property
    def canonical_url(self) -> Optional[str]:
        return canonicalize_url(self.start_url)

    @property
    def tags(self) -> Tuple[str, ...]:
        return profile_tags(
            self.ruleset,
            include_best_practices=self.include_best_practices,
            include_experimental=self.include_experimental,
        )

    @classmethod
    def from_payload(cls, payload: Any, config: Optional[ScannerConfig] = None) -> ScanRequest:
        """Строит запрос из тела HTTP/CLI (camelCase), зажимая числа в допустимые границы."""
        if not isinstance(payload, Mapping):
            raise InvalidScanRequestError("Scan request body must be a JSON object")
        cfg = config or ScannerConfig()
        data: Dict[str, Any] = {}
        for key, value in payload.items():
            target = _PAYLOAD_KEYS.get(key, key)
            if target not in data or value is not None:
                data[target] = value

        mode = "crawl" if str(data.get("mode") or "").strip().lower() == "crawl" else "single"
        max_pages = 1
        if mode == "crawl":
            max_pages = _positive_or(data.get("max_pages"), cfg.default_crawl_pages)
            max_pages = min(cfg.max_pages, max(1, max_pages))

        caps = CapsConfig(
            max_violations_per_page=clamp_int(
                data.get("max_violations_per_page"), cfg.caps.max_violations_per_page, 1, MAX_VIOLATIONS_PER_PAGE
            ),
            max_nodes_per_violation=clamp_int(
                data.get("max_nodes_per_violation"), cfg.caps.max_nodes_per_violation, 1, MAX_NODES_PER_VIOLATION
            ),
            max_total_issues_overall=clamp_int(
                data.get("max_total_issues_overall"),
                cfg.caps.max_total_issues_overall,
                MIN_TOTAL_ISSUES_OVERALL,
                MAX_TOTAL_ISSUES_OVERALL,
            ),
        )
        include_screenshots = data.get("include_screenshots")
        return cls(
            start_url=data.get("start_url"),
            mode=mode,
            max_pages=max_pages,
            include_screenshots=True if include_screenshots is None else bool(include_screenshots),
            budget_ms=cfg.budget.clamp(data.get("budget_ms"), mode),
            psi_strategy=data.get("psi_strategy") or cfg.psi.default_strategy,
            ruleset=data.get("ruleset") or cfg.rules.ruleset,
            include_best_practices=_flag(data.get("include_best_practices"), cfg.rules.include_best_practices),
            include_experimental=_flag(data.get("include_experimental"), cfg.rules.include_experimental),
            include_selectors=data.get("include_selectors"),
            exclude_selectors=data.get("exclude_selectors"),
            caps=caps,
        )


def _positive_or(value: Any, fallback: int) -> int:
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return numeric if numeric > 0 else fallback


def _flag(value: Any, fallback: bool) -> bool:
    return fallback if value is None else bool(value)


# --------------------------------------------------------------------------- #
# Результаты                                                                   #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True, slots=True)
class Issue:
    """Нарушение правила доступности на конкретном узле страницы."""

    page_url: str
    rule_id: str
    impact: str
    target_selectors: Tuple[str, ...]
    html_snippet: str = ""
    failure_summary: str = ""
    wcag_refs: Tuple[str, ...] = ()
    bbox: Optional[BoundingBox] = None

    def __post_init__(self) -> None:
        if self.impact not in IMPACT_LEVELS:
            raise ValueError(f"unknown impact {self.impact!r}")

    @property
    def dedupe_key(self) -> Tuple[str, str, str]:
        first = self.target_selectors[0] if self.target_selectors else ""
        return (self.page_url, self.rule_id, first)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageUrl": self.page_url,
            "ruleId": self.rule_id,
            "wcagRefs": list(self.wcag_refs),
            "impact": self.impact,
            "targetSelectors": list(self.target_selectors),
            "htmlSnippet": self.html_snippet,
            "failureSummary": self.failure_summary,
            "bbox": self.bbox.to_dict() if self.bbox else None,
        }


@dataclass(frozen=True, slots=True)
class PerformanceIssue:
    """Проблема производительности с метрикой, значением и порогом."""

    page_url: str
    rule_id: str
    impact: str
    title: str
    failure_summary: str
    recommendation: str
    metric: str = ""
    value: str = ""
    threshold: str = ""
    sample: str = ""
    category: str = "performance"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageUrl": self.page_url,
            "ruleId": self.rule_id,
            "impact": self.impact,
            "category": self.category,
            "title": self.title,
            "failureSummary": self.failure_summary,
            "recommendation": self.recommendation,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "sample": self.sample,
        }


@dataclass(frozen=True, slots=True)
class CategoryIssue:
    """Непройденный аудит из отчёта внешнего сервиса оценки."""

    rule_id: str
    title: str
    impact: str
    score: Optional[float]
    description: str = ""
    display_value: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "title": self.title,
            "impact": self.impact,
            "score": self.score,
            "description": self.description,
            "displayValue": self.display_value,
        }


@dataclass(frozen=True, slots=True)
class ReviewFlag:
    """Пункт «требует ручной проверки» (needsReview)."""

    id: str
    title: str
    reason: str
    samples: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "title": self.title, "reason": self.reason}
        if self.samples:
            out["samples"] = list(self.samples)
        return out


@dataclass(frozen=True, slots=True)
class IncompleteRule:
    """Правило, которое движок не смог решить автоматически."""

    rule_id: str
    impact: str = "moderate"
    help: str = ""
    node_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"ruleId": self.rule_id, "impact": self.impact, "help": self.help, "nodeCount": self.node_count}


@dataclass(frozen=True, slots=True)
class TruncatedBy:
    violations: bool = False
    nodes: bool = False
    total_issues: bool = False

    @property
    def any(self) -> bool:
        return self.violations or self.nodes or self.total_issues

    def to_dict(self) -> Dict[str, bool]:
        return {"violations": self.violations, "nodes": self.nodes, "totalIssues": self.total_issues}


@dataclass(frozen=True, slots=True)
class PageResult:
    """Итог сканирования одной страницы. Статус != ok всегда несёт ``error``."""

    url: str
    status: PageStatus
    issues: Tuple[Issue, ...] = ()
    heuristic_flags: Tuple[ReviewFlag, ...] = ()
    performance_issues: Tuple[PerformanceIssue, ...] = ()
    discovered_links: Tuple[str, ...] = ()
    incomplete: Tuple[IncompleteRule, ...] = ()
    duration_ms: int = 0
    truncated_by: TruncatedBy = field(default_factory=TruncatedBy)
    detected_violation_count: int = 0
    detected_issue_count: int = 0
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status != "ok" and not self.error:
            raise ValueError(f"page {self.url} has status {self.status!r} without an error")

    @classmethod
    def failed(cls, url: str, status: PageStatus, error: str, duration_ms: int = 0) -> PageResult:
        return cls(url=url, status=status, error=error or status, duration_ms=duration_ms)

    @property
    def truncated(self) -> bool:
        return self.truncated_by.any

    def accept_issues(self, limit: int) -> PageResult:
        """Оставляет первые ``limit`` проблем; отрезание помечается ``totalIssues``."""
        if len(self.issues) <= limit:
            return self
        return replace(
            self,
            issues=self.issues[: max(0, limit)],
            truncated_by=replace(self.truncated_by, total_issues=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "issueCount": len(self.issues),
            "performanceIssueCount": len(self.performance_issues),
            "detectedIssueCount": self.detected_issue_count,
            "detectedViolationCount": self.detected_violation_count,
            "error": self.error,
            "truncated": self.truncated,
            "truncatedBy": self.truncated_by.to_dict(),
            "durationMs": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class Screenshot:
    page_url: str
    data_url: str

    def to_dict(self) -> Dict[str, str]:
        return {"pageUrl": self.page_url, "dataUrl": self.data_url}


@dataclass(frozen=True, slots=True)
class AccessibilityScanResult:
    """Результат прохода доступности (обход + конвейер страниц)."""

    status: Literal["complete", "partial"]
    message: str
    mode: ScanMode
    start_url: Optional[str]
    total_budget_ms: int
    duration_ms: int
    pages: Tuple[PageResult, ...]
    issues: Tuple[Issue, ...]
    performance_issues: Tuple[PerformanceIssue, ...]
    screenshots: Tuple[Screenshot, ...]
    needs_review: Tuple[ReviewFlag, ...]
    truncated: bool
    stop_reason: Optional[str]
    errors: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def pages_scanned(self) -> int:
        return sum(1 for page in self.pages if page.status == "ok")


@dataclass(frozen=True, slots=True)
class EngineResult:
    """Раздел отчёта одного движка. Недоступный движок не бросает исключений."""

    name: str
    status: EngineStatus
    score: Optional[int] = None
    issues: Tuple[Any, ...] = ()
    reason: Optional[str] = None
    error: Optional[str] = None
    issue_count: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unavailable(cls, name: str, reason: str, error: Optional[str] = None, **metadata: Any) -> EngineResult:
        return cls(name=name, status="unavailable", reason=reason, error=error, metadata=dict(metadata))

    @property
    def available(self) -> bool:
        return self.status == "available"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "error": self.error,
            "score": self.score,
            "issueCount": len(self.issues) if self.issue_count is None else self.issue_count,
            "issues": [issue.to_dict() for issue in self.issues],
            "metadata": self.metadata,
        }


@dataclass(frozen=True, slots=True)
class ScanReport:
    """Итоговый отчёт: собирается один раз и больше не меняется."""

    status: Literal["complete", "partial", "failed"]
    message: str
    mode: ScanMode
    start_url: str
    started_at: str
    finished_at: str
    duration_ms: int
    engines: Dict[str, EngineResult]
    summary: Dict[str, Any]
    pages: Tuple[PageResult, ...] = ()
    issues: Tuple[Issue, ...] = ()
    performance_issues: Tuple[PerformanceIssue, ...] = ()
    screenshots: Tuple[Screenshot, ...] = ()
    needs_review: Tuple[ReviewFlag, ...] = ()
    truncated: bool = False
    stop_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "mode": self.mode,
            "startUrl": self.start_url,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "durationMs": self.duration_ms,
            "summary": self.summary,
            "engines": {key: self.engines[key].to_dict() for key in ENGINE_KEYS if key in self.engines},
            "pages": [page.to_dict() for page in self.pages],
            "issues": [issue.to_dict() for issue in self.issues],
            "performanceIssues": [issue.to_dict() for issue in self.performance_issues],
            "screenshots": [shot.to_dict() for shot in self.screenshots],
            "needsReview": [flag.to_dict() for flag in self.needs_review],
            "truncated": self.truncated,
            "stopReason": self.stop_reason,
            "metadata": self.metadata,
        }

    def json(self, *, pretty: bool = False) -> str:
        """JSON-представление отчёта."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2 if pretty else None)
