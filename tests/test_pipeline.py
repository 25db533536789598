# File: tests/test_pipeline.py
import pytest

from site_lens.budget import TimeBudget
from site_lens.config import CapsConfig
from site_lens.errors import StageTimeoutError
from site_lens.pipeline import PageBudget, PageScanPipeline
from site_lens.rules.adapter import RuleEngineAdapter, RuleScope
from site_lens.rules.lumen import LumenBackend
from site_lens.rules.profiles import RulesetProfile, profile_tags

from fakes import FakeSession, FakeSite

ORIGIN = "https://example.com"
HOME = f"{ORIGIN}/"

HOME_HTML = (
    '<html lang="en"><head><title>Home</title></head><body>'
    '<img src="/hero.png">'
    '<a href="/about">About</a><a href="https://elsewhere.org/">Out</a>'
    "</body></html>"
)


def make_pipeline(mode="single"):
    return PageScanPipeline(
        RuleEngineAdapter(LumenBackend()),
        tags=profile_tags(RulesetProfile.WCAG22AA),
        scope=RuleScope(),
        caps=CapsConfig(),
        mode=mode,
        start_origin=ORIGIN,
        include_bbox=False,
    )


@pytest.mark.asyncio()
async def test_ok_page_collects_everything(clock):
    session = FakeSession(
        {
            HOME: FakeSite(
                html=HOME_HTML,
                metrics={"domNodeCount": 1600},
                heuristics={"smallTargets": ["a.icon"]},
                navigation_cost_ms=500,
            )
        },
        clock=clock,
    )
    budget = TimeBudget(30_000, clock=clock)

    result = await make_pipeline("crawl").scan(session, HOME, budget)

    assert result.status == "ok"
    assert result.error is None
    assert [issue.rule_id for issue in result.issues] == ["image-alt-missing"]
    assert [issue.rule_id for issue in result.performance_issues] == ["dom-size"]
    assert [flag.id for flag in result.heuristic_flags] == ["target-size-minimum"]
    assert result.discovered_links == (f"{ORIGIN}/about",)
    assert result.duration_ms == 500
    assert session.timeouts == [10_000]
    assert all(page.closed for page in session.pages)


@pytest.mark.asyncio()
async def test_single_mode_does_not_collect_links(clock):
    session = FakeSession({HOME: FakeSite(html=HOME_HTML)}, clock=clock)
    result = await make_pipeline("single").scan(session, HOME, TimeBudget(30_000, clock=clock))
    assert result.status == "ok"
    assert result.discovered_links == ()


@pytest.mark.asyncio()
async def test_navigation_failure_is_page_error(clock):
    session = FakeSession({}, clock=clock)
    result = await make_pipeline().scan(session, f"{ORIGIN}/missing", TimeBudget(30_000, clock=clock))
    assert result.status == "error"
    assert "HTTP 404" in result.error
    assert result.issues == ()
    assert session.pages[0].closed


@pytest.mark.asyncio()
async def test_navigation_timeout_is_page_timeout(clock):
    session = FakeSession({HOME: FakeSite(error=StageTimeoutError("navigation", 1_000))}, clock=clock)
    result = await make_pipeline().scan(session, HOME, TimeBudget(30_000, clock=clock))
    assert result.status == "timeout"
    assert "navigation timed out" in result.error
    assert session.pages[0].closed


def test_stage_slices_follow_remaining_budget(clock):
    page_budget = PageBudget()
    budget = TimeBudget(30_000, clock=clock)
    assert page_budget.navigation_ms(budget) == 10_000
    assert page_budget.page_ms(budget) == 12_000

    clock.advance(27_000)
    assert page_budget.navigation_ms(budget) == 2_500
    assert page_budget.engine_ms(budget) == 2_700
    assert page_budget.page_ms(budget) == 2_300

    clock.advance(2_900)
    assert page_budget.navigation_ms(budget) == 1_000
    assert page_budget.page_ms(budget) == 1_200
