# File: tests/test_rules.py
import pytest

from site_lens.config import CapsConfig, RulesConfig
from site_lens.rules.adapter import RuleEngineAdapter, RuleScope, build_backend, wcag_refs
from site_lens.rules.axe import RUN_SCRIPT, AxeBackend
from site_lens.rules.lumen import LUMEN_RULES, LumenBackend, evaluate_html, select_rules
from site_lens.rules.profiles import RulesetProfile, profile_tags

from fakes import CLEAN_HTML

PAGE = "https://example.com/"

BROKEN_HTML = """
<html><head></head><body>
  <h1>Shop</h1>
  <h3>Skipped a level</h3>
  <img src="/a.png">
  <img src="/b.png" alt="">
  <img src="/c.png" role="presentation">
  <form><input type="text" id="q"><label for="named">Name</label><input id="named"></form>
  <button></button>
  <button aria-label="Close"></button>
  <a href="/x"></a>
  <a href="/y">Read more</a>
  <iframe src="/frame"></iframe>
  <div id="dup"></div><span id="dup"></span>
  <div tabindex="3">focus me first</div>
  <video src="/v.mp4"></video>
</body></html>
"""


def rule_ids(raw):
    return {violation["id"] for violation in raw["violations"]}


def test_clean_page_has_no_violations():
    raw = evaluate_html(CLEAN_HTML, LUMEN_RULES)
    assert raw == {"violations": [], "incomplete": []}


def test_broken_page_violations():
    raw = evaluate_html(BROKEN_HTML, LUMEN_RULES)
    assert rule_ids(raw) == {rule.id for rule in LUMEN_RULES}

    by_id = {violation["id"]: violation for violation in raw["violations"]}
    assert len(by_id["image-alt-missing"]["nodes"]) == 1
    assert len(by_id["form-control-label-missing"]["nodes"]) == 1
    assert by_id["form-control-label-missing"]["nodes"][0]["target"] == ["#q"]
    assert len(by_id["button-name-missing"]["nodes"]) == 1
    assert len(by_id["link-name-missing"]["nodes"]) == 1
    assert len(by_id["duplicate-id"]["nodes"]) == 2
    assert "h1 to h3" in by_id["heading-order-skipped"]["nodes"][0]["failureSummary"]
    assert "wcag111" in by_id["image-alt-missing"]["tags"]


def test_max_nodes_samples_findings():
    html = '<html lang="en"><title>t</title><body>' + "<img src='x'>" * 30 + "</body></html>"
    raw = evaluate_html(html, LUMEN_RULES, max_nodes=21)
    assert len(raw["violations"][0]["nodes"]) == 21


def test_scope_include_and_exclude():
    html = (
        '<html lang="en"><title>t</title><body>'
        '<main><img src="in.png"></main>'
        '<aside><img src="out.png"></aside>'
        '<main><div class="ads"><img src="ad.png"></div></main>'
        "</body></html>"
    )
    raw = evaluate_html(html, LUMEN_RULES, include=["main"], exclude=[".ads"])
    nodes = raw["violations"][0]["nodes"]
    assert len(nodes) == 1
    assert "in.png" in nodes[0]["html"]


def test_select_rules_honours_optional_categories():
    wcag_only = select_rules(profile_tags(RulesetProfile.WCAG22AA, include_best_practices=False))
    ids = {rule.id for rule in wcag_only}
    assert "positive-tabindex" not in ids
    assert "video-caption-track-missing" not in ids

    everything = select_rules(
        profile_tags(RulesetProfile.WCAG22AA, include_best_practices=True, include_experimental=True)
    )
    assert len(everything) == len(LUMEN_RULES)

    level_a = {rule.id for rule in select_rules(profile_tags(RulesetProfile.WCAG2A, include_best_practices=False))}
    assert "heading-order-skipped" not in level_a


def test_ruleset_parse_falls_back_to_default():
    assert RulesetProfile.parse("SECTION508") is RulesetProfile.SECTION508
    assert RulesetProfile.parse("wcag9") is RulesetProfile.WCAG22AA
    assert RulesetProfile.parse(None) is RulesetProfile.WCAG22AA


def test_wcag_refs_filters_profile_tags():
    assert wcag_refs(["wcag2a", "section508", "wcag111", "best-practice", "wcag1412"]) == (
        "wcag2a",
        "wcag111",
        "wcag1412",
    )


# --------------------------------------------------------------------------- #
#                               Adapter                                       #
# --------------------------------------------------------------------------- #


def _violation(rule_id, impact, count, prefix="n"):
    return {
        "id": rule_id,
        "impact": impact,
        "tags": ["wcag2a", "wcag111"],
        "nodes": [
            {"target": [f"#{prefix}{i:02d}"], "html": f"<i id='{prefix}{i:02d}'>", "failureSummary": "x" * 900}
            for i in range(count)
        ],
    }


@pytest.mark.asyncio()
async def test_normalize_orders_caps_and_trims():
    adapter = RuleEngineAdapter(LumenBackend())
    caps = CapsConfig(max_violations_per_page=2, max_nodes_per_violation=3)
    raw = {
        "violations": [
            _violation("minor-rule", "minor", 1, "m"),
            _violation("critical-rule", "critical", 5, "c"),
            _violation("serious-rule", "bogus", 1, "s"),
            _violation("moderate-rule", "moderate", 1, "o"),
        ],
        "incomplete": [{"id": "color-contrast", "impact": "serious", "nodes": [{}, {}]}],
    }

    evaluation = await adapter.normalize(None, PAGE, raw, caps)

    assert [issue.rule_id for issue in evaluation.issues] == ["critical-rule"] * 3 + ["moderate-rule"]
    assert evaluation.truncated_by.violations
    assert evaluation.truncated_by.nodes
    assert evaluation.detected_violation_count == 4
    assert all(len(issue.failure_summary) == 500 for issue in evaluation.issues)
    assert evaluation.issues[0].target_selectors == ("#c00",)
    assert evaluation.incomplete[0].rule_id == "color-contrast"
    assert evaluation.incomplete[0].node_count == 2


@pytest.mark.asyncio()
async def test_normalize_buckets_unknown_impact_and_dedupes():
    adapter = RuleEngineAdapter(LumenBackend())
    node = {"target": ["#same"], "html": "<b>", "failureSummary": "dup"}
    raw = {"violations": [{"id": "r", "impact": "weird", "nodes": [node, dict(node)]}]}

    evaluation = await adapter.normalize(None, PAGE, raw, CapsConfig())

    assert len(evaluation.issues) == 1
    assert evaluation.issues[0].impact == "minor"
    assert not evaluation.truncated_by.any


class _HtmlPage:
    def __init__(self, html):
        self.html = html

    async def content(self):
        return self.html

    async def bounding_box(self, selector):
        return None


@pytest.mark.asyncio()
async def test_adapter_evaluate_with_lumen_backend():
    adapter = RuleEngineAdapter(LumenBackend())
    tags = profile_tags(RulesetProfile.WCAG22AA)
    evaluation = await adapter.evaluate(
        _HtmlPage(BROKEN_HTML),
        page_url=PAGE,
        tags=tags,
        scope=RuleScope(),
        caps=CapsConfig(),
        timeout_ms=5_000,
    )
    ids = {issue.rule_id for issue in evaluation.issues}
    assert "html-lang-missing" in ids
    assert "positive-tabindex" in ids
    assert "video-caption-track-missing" not in ids
    assert all(issue.page_url == PAGE for issue in evaluation.issues)
    assert adapter.name == "LumenScan"
    assert adapter.active_rule_count(tags) == len(LUMEN_RULES) - 1


class _ScriptedPage:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def evaluate(self, script, arg=None):
        self.calls.append((script, arg))
        return self.result if script == RUN_SCRIPT else None


@pytest.mark.asyncio()
async def test_axe_backend_injects_bundle_and_runs(tmp_path):
    bundle = tmp_path / "axe.min.js"
    bundle.write_text("window.axe = {};", encoding="utf-8")
    backend = build_backend(RulesConfig(backend="axe", axe_script_path=bundle))
    assert isinstance(backend, AxeBackend)
    assert backend.active_rule_count(["wcag2a"]) is None

    page = _ScriptedPage({"violations": [_violation("image-alt", "critical", 1)], "incomplete": None})
    raw = await backend.run(page, tags=["wcag2a"], include=["main"], exclude=[], max_nodes=5)

    assert page.calls[0] == ("window.axe = {};", None)
    assert page.calls[1][1] == {"include": ["main"], "exclude": [], "tags": ["wcag2a"], "maxNodes": 5}
    assert [item["id"] for item in raw["violations"]] == ["image-alt"]
    assert raw["incomplete"] == []


def test_lumen_is_the_default_backend():
    assert isinstance(build_backend(RulesConfig()), LumenBackend)
