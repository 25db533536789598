# site_lens/rules/axe.py
"""
Third-party rule backend: axe-core injected into the rendered page.

The axe-core bundle is read from disk (``rules.axe_script_path``) so the
library version is pinned by the deployment, not by this package.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from site_lens.browser.page import RenderablePage

__all__ = ("AxeBackend", "RUN_SCRIPT")

RUN_SCRIPT = """
async ({ include, exclude, tags, maxNodes }) => {
  if (!window.axe) throw new Error('axe-core is not loaded');
  const context = {};
  if (include.length) context.include = include.map((selector) => [selector]);
  if (exclude.length) context.exclude = exclude.map((selector) => [selector]);
  const result = await window.axe.run(
    Object.keys(context).length ? context : document,
    { runOnly: { type: 'tag', values: tags }, resultTypes: ['violations', 'incomplete'] }
  );
  const mapRule = (rule) => ({
    id: rule.id,
    impact: rule.impact,
    help: rule.help,
    tags: rule.tags,
    nodeCount: rule.nodes.length,
    nodes: rule.nodes.slice(0, maxNodes).map((node) => ({
      target: node.target.map(String),
      html: node.html,
      failureSummary: node.failureSummary,
      impact: node.impact
    }))
  });
  return {
    violations: result.violations.map(mapRule),
    incomplete: result.incomplete.map(mapRule)
  };
}
"""


class AxeBackend:
    """Rule backend that delegates evaluation to axe-core running in the page."""

    name = "axe-core"

    def __init__(self, script_path: Union[str, Path]) -> None:
        self._script = Path(script_path).read_text(encoding="utf-8")

    def active_rule_count(self, tags: Sequence[str]) -> Optional[int]:
        return None

    async def run(
        self,
        page: RenderablePage,
        *,
        tags: Sequence[str],
        include: Sequence[str],
        exclude: Sequence[str],
        max_nodes: int,
    ) -> Dict[str, List[Dict[str, Any]]]:
        await page.evaluate(self._script)
        raw = await page.evaluate(
            RUN_SCRIPT,
            {"include": list(include), "exclude": list(exclude), "tags": list(tags), "maxNodes": max_nodes},
        )
        return {
            "violations": list((raw or {}).get("violations") or []),
            "incomplete": list((raw or {}).get("incomplete") or []),
        }
