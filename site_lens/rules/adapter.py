# site_lens/rules/adapter.py
"""
Rule Engine Adapter.

Runs whichever rule backend is configured against a page and turns its raw
``violations``/``incomplete`` output into canonical :class:`Issue` objects:
impact bucketed to four levels, selectors and text trimmed, per-page caps
applied in a deterministic order.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from site_lens.browser.page import RenderablePage
from site_lens.budget import with_deadline
from site_lens.config import CapsConfig, RulesConfig
from site_lens.models import BoundingBox, IncompleteRule, Issue, TruncatedBy
from site_lens.utils import bucket_impact, impact_weight, trim_selectors, trim_text

__all__ = ("RuleBackend", "RuleScope", "RuleEvaluation", "RuleEngineAdapter", "build_backend", "wcag_refs")

logger = logging.getLogger("SiteLens")

MAX_HTML_SNIPPET = 600
MAX_FAILURE_SUMMARY = 500
MAX_WCAG_REFS = 8

_WCAG_REF_RE = re.compile(r"^wcag(?:\d{3,4}|2a|2aa|21aa|22aa)$", re.IGNORECASE)


class RuleBackend(Protocol):
    """Rule-evaluation capability: ``run(scope, tags) -> {violations, incomplete}``."""

    name: str

    def active_rule_count(self, tags: Sequence[str]) -> Optional[int]: ...

    async def run(
        self,
        page: RenderablePage,
        *,
        tags: Sequence[str],
        include: Sequence[str],
        exclude: Sequence[str],
        max_nodes: int,
    ) -> Dict[str, List[Dict[str, Any]]]: ...


@dataclass(frozen=True, slots=True)
class RuleScope:
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, List[str]]:
        return {"includeSelectors": list(self.include), "excludeSelectors": list(self.exclude)}


@dataclass(frozen=True, slots=True)
class RuleEvaluation:
    issues: Tuple[Issue, ...] = ()
    incomplete: Tuple[IncompleteRule, ...] = ()
    truncated_by: TruncatedBy = field(default_factory=TruncatedBy)
    detected_violation_count: int = 0
    detected_issue_count: int = 0


def wcag_refs(tags: Sequence[Any]) -> Tuple[str, ...]:
    return tuple(str(tag) for tag in tags or () if _WCAG_REF_RE.match(str(tag or "")))[:MAX_WCAG_REFS]


def _violation_order(violation: Mapping[str, Any]) -> Tuple[int, str]:
    return (-impact_weight(violation.get("impact")), str(violation.get("id") or ""))


def _node_order(node: Mapping[str, Any]) -> Tuple[str, str]:
    target = node.get("target")
    joined = "|".join(str(t) for t in target) if isinstance(target, (list, tuple)) else ""
    return (joined, str(node.get("html") or ""))


def build_backend(rules: RulesConfig) -> RuleBackend:
    """Backend selected by configuration at startup."""
    if rules.backend == "axe":
        from site_lens.rules.axe import AxeBackend

        return AxeBackend(rules.axe_script_path)
    from site_lens.rules.lumen import LumenBackend

    return LumenBackend()


class RuleEngineAdapter:
    """Same output shape regardless of which backend evaluated the page."""

    def __init__(self, backend: RuleBackend) -> None:
        self.backend = backend

    @property
    def name(self) -> str:
        return self.backend.name

    def active_rule_count(self, tags: Sequence[str]) -> Optional[int]:
        return self.backend.active_rule_count(tags)

    async def evaluate(
        self,
        page: RenderablePage,
        *,
        page_url: str,
        tags: Sequence[str],
        scope: RuleScope,
        caps: CapsConfig,
        timeout_ms: int,
        include_bbox: bool = True,
    ) -> RuleEvaluation:
        """Evaluate rules on ``page``. Exceeding ``timeout_ms`` raises StageTimeoutError."""
        raw = await with_deadline(
            self.backend.run(
                page,
                tags=list(tags),
                include=list(scope.include),
                exclude=list(scope.exclude),
                max_nodes=caps.max_nodes_per_violation + 1,
            ),
            timeout_ms,
            f"{self.name} analysis",
        )
        return await self.normalize(page, page_url, raw, caps, include_bbox=include_bbox)

    async def normalize(
        self,
        page: Optional[RenderablePage],
        page_url: str,
        raw: Mapping[str, Any],
        caps: CapsConfig,
        *,
        include_bbox: bool = True,
    ) -> RuleEvaluation:
        violations = sorted(
            (v for v in raw.get("violations") or [] if isinstance(v, Mapping) and v.get("id")),
            key=_violation_order,
        )
        truncated_violations = len(violations) > caps.max_violations_per_page
        truncated_nodes = False
        issues: List[Issue] = []
        seen = set()

        for violation in violations[: caps.max_violations_per_page]:
            nodes = sorted(
                (n for n in violation.get("nodes") or [] if isinstance(n, Mapping)), key=_node_order
            )
            node_total = max(len(nodes), int(violation.get("nodeCount") or 0))
            if node_total > caps.max_nodes_per_violation:
                truncated_nodes = True
            for node in nodes[: caps.max_nodes_per_violation]:
                selectors = tuple(trim_selectors(node.get("target")))
                issue = Issue(
                    page_url=page_url,
                    rule_id=str(violation["id"]),
                    impact=bucket_impact(node.get("impact") or violation.get("impact")),
                    target_selectors=selectors,
                    html_snippet=trim_text(str(node.get("html") or ""), MAX_HTML_SNIPPET),
                    failure_summary=trim_text(str(node.get("failureSummary") or ""), MAX_FAILURE_SUMMARY),
                    wcag_refs=wcag_refs(violation.get("tags") or ()),
                )
                if issue.dedupe_key in seen:
                    continue
                seen.add(issue.dedupe_key)
                if include_bbox and page is not None:
                    bbox = await self._resolve_bbox(page, selectors)
                    if bbox is not None:
                        issue = replace(issue, bbox=bbox)
                issues.append(issue)

        incomplete = tuple(
            IncompleteRule(
                rule_id=str(item["id"]),
                impact=bucket_impact(item.get("impact") or "moderate"),
                help=str(item.get("help") or ""),
                node_count=int(item.get("nodeCount") or len(item.get("nodes") or [])),
            )
            for item in raw.get("incomplete") or []
            if isinstance(item, Mapping) and item.get("id")
        )

        return RuleEvaluation(
            issues=tuple(issues),
            incomplete=incomplete,
            truncated_by=TruncatedBy(violations=truncated_violations, nodes=truncated_nodes),
            detected_violation_count=len(violations),
            detected_issue_count=len(issues),
        )

    @staticmethod
    async def _resolve_bbox(page: RenderablePage, selectors: Sequence[str]) -> Optional[BoundingBox]:
        for selector in selectors:
            if not selector:
                continue
            try:
                box = await page.bounding_box(selector)
            except Exception as exc:  # noqa: BLE001
                logger.debug("bbox lookup failed for %s: %s", selector, exc)
                continue
            if box is not None:
                return box
        return None
