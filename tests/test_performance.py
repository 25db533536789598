# File: tests/test_performance.py
import pytest

from site_lens.performance import KB, MB, PageMetrics, audit_page, evaluate_metrics

from fakes import FakeSession, FakeSite

PAGE = "https://example.com/"


def test_quiet_page_has_no_issues():
    assert evaluate_metrics(PAGE, PageMetrics()) == []


def test_thresholds_ranked_by_impact():
    metrics = PageMetrics.from_raw(
        {
            "totalBytes": 6 * MB,
            "requestCount": 120,
            "jsBytes": 100 * KB,
            "cls": 0.12,
            "offscreenWithoutLazy": 2,
            "largestImages": [
                {"name": "https://example.com/hero.jpg", "size": 950 * KB},
                {"name": "https://example.com/thumb.png", "size": 10 * KB},
            ],
        }
    )
    issues = evaluate_metrics(PAGE, metrics)

    assert [(issue.rule_id, issue.impact) for issue in issues] == [
        ("total-byte-weight", "serious"),
        ("large-image-resource", "serious"),
        ("network-requests", "moderate"),
        ("cumulative-layout-shift", "moderate"),
        ("offscreen-images-lazy-loading", "moderate"),
    ]
    assert issues[0].value == "6144 KB"
    assert issues[1].sample == "https://example.com/hero.jpg"
    assert all(issue.category == "performance" for issue in issues)


@pytest.mark.parametrize(
    "raw,impact",
    [
        ({"ttfbMs": 799}, None),
        ({"ttfbMs": 800}, "moderate"),
        ({"ttfbMs": 1800}, "serious"),
        ({"renderBlockingScripts": 2, "renderBlockingStylesheets": 2}, "moderate"),
        ({"offscreenWithoutLazy": 8}, "serious"),
        ({"lcpMs": "garbage"}, None),
    ],
)
def test_threshold_boundaries(raw, impact):
    issues = evaluate_metrics(PAGE, PageMetrics.from_raw(raw))
    if impact is None:
        assert issues == []
    else:
        assert len(issues) == 1
        assert issues[0].impact == impact


class _BrokenPage:
    async def evaluate(self, script, arg=None):
        raise RuntimeError("Execution context was destroyed")


@pytest.mark.asyncio()
async def test_audit_failure_becomes_runtime_issue():
    audit = await audit_page(_BrokenPage(), PAGE)
    assert audit.metrics is None
    assert len(audit.issues) == 1
    issue = audit.issues[0]
    assert issue.rule_id == "performance-audit-runtime"
    assert issue.impact == "minor"
    assert "Execution context" in issue.failure_summary


@pytest.mark.asyncio()
async def test_audit_reads_page_metrics():
    session = FakeSession({PAGE: FakeSite(metrics={"domNodeCount": 3200})})
    page = await session.new_page()
    await page.navigate(PAGE, 1_000)
    audit = await audit_page(page, PAGE)
    assert audit.metrics.dom_node_count == 3200
    assert [issue.rule_id for issue in audit.issues] == ["dom-size"]
    assert audit.issues[0].impact == "serious"
