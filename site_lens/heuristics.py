# File: site_lens/heuristics.py
"""site_lens.heuristics: Эвристики DOM и флаги ручной проверки (needsReview).

Эвристики никогда не дают жёстких нарушений: только рекомендательные флаги.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from site_lens.browser.page import RenderablePage
from site_lens.models import IncompleteRule, PageResult, ReviewFlag

__all__ = (
    "HeuristicReport",
    "HEURISTICS_SCRIPT",
    "run_heuristics",
    "heuristic_flags",
    "base_review_flags",
    "incomplete_review_flags",
    "merge_review_flags",
)

logger = logging.getLogger("SiteLens")

MAX_SMALL_TARGETS = 8
MAX_OVERLAYS = 5
MAX_INCOMPLETE_FLAGS = 8
MAX_REVIEW_FLAGS = 20

HEURISTICS_SCRIPT = """
() => {
  const makeSelector = (el) => {
    if (!el || !(el instanceof Element)) return '';
    if (el.id) return `#${el.id}`;
    const cls = (el.className || '').toString().trim().split(/\\s+/).filter(Boolean).slice(0, 2);
    return `${el.tagName.toLowerCase()}${cls.length ? `.${cls.join('.')}` : ''}`;
  };
  const isVisible = (el) => {
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden' || Number(style.opacity) === 0) return false;
    const rect = el.getBoundingClientRect();
    return rect.width > 0 && rect.height > 0;
  };
  const smallTargets = [];
  const interactive = document.querySelectorAll(
    'a, button, input, select, textarea, [role="button"], [role="link"], [tabindex]'
  );
  for (const element of interactive) {
    if (!isVisible(element)) continue;
    const rect = element.getBoundingClientRect();
    if (rect.width < 24 || rect.height < 24) smallTargets.push(makeSelector(element));
    if (smallTargets.length >= 8) break;
  }
  const overlays = Array.from(document.querySelectorAll('*')).filter((el) => {
    if (!isVisible(el)) return false;
    const style = window.getComputedStyle(el);
    if (style.position !== 'fixed' && style.position !== 'sticky') return false;
    const z = Number(style.zIndex);
    if (!Number.isFinite(z) || z < 100) return false;
    return el.getBoundingClientRect().height >= window.innerHeight * 0.2;
  }).slice(0, 5).map(makeSelector);
  return { smallTargets, focusObscuredCandidates: overlays };
}
"""


@dataclass(frozen=True, slots=True)
class HeuristicReport:
    small_targets: Tuple[str, ...] = ()
    overlays: Tuple[str, ...] = ()

    @property
    def focus_obscured_risk(self) -> bool:
        return bool(self.overlays)

    @classmethod
    def from_raw(cls, raw: Any) -> HeuristicReport:
        if not isinstance(raw, Mapping):
            return cls()
        small = [str(s) for s in raw.get("smallTargets") or [] if s]
        overlays = [str(s) for s in raw.get("focusObscuredCandidates") or [] if s]
        return cls(tuple(small[:MAX_SMALL_TARGETS]), tuple(overlays[:MAX_OVERLAYS]))


async def run_heuristics(page: RenderablePage) -> Optional[HeuristicReport]:
    """Best-effort: None if the page could not be inspected."""
    try:
        return HeuristicReport.from_raw(await page.evaluate(HEURISTICS_SCRIPT))
    except Exception as exc:  # noqa: BLE001
        logger.debug("heuristics skipped: %s", exc)
        return None


def heuristic_flags(page_url: str, report: Optional[HeuristicReport]) -> Tuple[ReviewFlag, ...]:
    """Флаги needsReview по результатам эвристик одной страницы."""
    if report is None:
        return ()
    flags: List[ReviewFlag] = []
    if report.focus_obscured_risk:
        flags.append(
            ReviewFlag(
                id="focus-not-obscured-minimum",
                title="Focus Not Obscured (Minimum)",
                reason=f"Heuristic risk on {page_url}: potential sticky/fixed overlays may obscure focused controls.",
                samples=report.overlays,
            )
        )
    if report.small_targets:
        flags.append(
            ReviewFlag(
                id="target-size-minimum",
                title="Target Size (Minimum)",
                reason=(
                    f"Heuristic on {page_url}: found {len(report.small_targets)} potential targets "
                    "smaller than 24x24 CSS px."
                ),
                samples=report.small_targets,
            )
        )
    return tuple(flags)


_BASE_FLAGS = (
    ReviewFlag(
        "focus-not-obscured-minimum",
        "Focus Not Obscured (Minimum)",
        "Heuristic/manual check required. Automated detection is limited.",
    ),
    ReviewFlag(
        "target-size-minimum",
        "Target Size (Minimum)",
        "Heuristic/manual check required. Exact pointer target sizing needs visual review.",
    ),
    ReviewFlag(
        "redundant-entry",
        "Redundant Entry",
        "Manual verification required to confirm users are not forced to re-enter data.",
    ),
    ReviewFlag(
        "accessible-authentication",
        "Accessible Authentication",
        "Manual verification required for cognitive function test exemptions and alternatives.",
    ),
    ReviewFlag(
        "consistent-help",
        "Consistent Help",
        "Manual verification required across user journeys and templates.",
    ),
)


def base_review_flags(mode: str, pages: Sequence[PageResult]) -> Tuple[ReviewFlag, ...]:
    """Постоянные флаги ручной проверки; для обхода меньше двух страниц добавляется crawl-coverage."""
    flags = list(_BASE_FLAGS)
    if mode == "crawl" and len(pages) < 2:
        flags.append(
            ReviewFlag(
                "crawl-coverage",
                "Crawl Coverage",
                "Crawl visited too few pages for consistent-help assessment.",
            )
        )
    return tuple(flags)


def incomplete_review_flags(pages: Iterable[Tuple[str, Sequence[IncompleteRule]]]) -> Tuple[ReviewFlag, ...]:
    """Один флаг на каждое правило, не решённое движком автоматически (максимум 8)."""
    output: List[ReviewFlag] = []
    seen = set()
    for page_url, incomplete in pages:
        for rule in incomplete:
            if not rule.rule_id or rule.rule_id in seen:
                continue
            seen.add(rule.rule_id)
            output.append(
                ReviewFlag(
                    id=f"incomplete-{rule.rule_id}",
                    title=f"Incomplete check: {rule.rule_id}",
                    reason=rule.help or f"Rule {rule.rule_id} requires manual verification.",
                    samples=(page_url,) if page_url else (),
                )
            )
            if len(output) >= MAX_INCOMPLETE_FLAGS:
                return tuple(output)
    return tuple(output)


def merge_review_flags(base: Iterable[ReviewFlag], dynamic: Iterable[ReviewFlag]) -> Tuple[ReviewFlag, ...]:
    """Объединяет флаги без повторов по (id, reason), не более 20."""
    merged: List[ReviewFlag] = []
    seen = set()
    for flag in [*base, *dynamic]:
        if not flag.id or not flag.reason:
            continue
        key = (flag.id, flag.reason)
        if key in seen:
            continue
        seen.add(key)
        merged.append(flag)
        if len(merged) >= MAX_REVIEW_FLAGS:
            break
    return tuple(merged)
