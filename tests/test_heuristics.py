# File: tests/test_heuristics.py
import pytest

from site_lens.heuristics import (
    MAX_INCOMPLETE_FLAGS,
    MAX_REVIEW_FLAGS,
    HeuristicReport,
    base_review_flags,
    heuristic_flags,
    incomplete_review_flags,
    merge_review_flags,
    run_heuristics,
)
from site_lens.models import IncompleteRule, PageResult, ReviewFlag

from fakes import FakeSession, FakeSite

PAGE = "https://example.com/"


def test_report_from_raw_caps_samples():
    report = HeuristicReport.from_raw(
        {"smallTargets": [f"a.tiny-{i}" for i in range(12)], "focusObscuredCandidates": ["#cookie-banner", ""]}
    )
    assert len(report.small_targets) == 8
    assert report.overlays == ("#cookie-banner",)
    assert report.focus_obscured_risk


def test_report_from_garbage_is_empty():
    report = HeuristicReport.from_raw("nope")
    assert report == HeuristicReport()
    assert heuristic_flags(PAGE, report) == ()
    assert heuristic_flags(PAGE, None) == ()


def test_heuristic_flags_ids():
    report = HeuristicReport(small_targets=("a.icon",), overlays=("#chat",))
    flags = heuristic_flags(PAGE, report)
    assert [flag.id for flag in flags] == ["focus-not-obscured-minimum", "target-size-minimum"]
    assert PAGE in flags[1].reason
    assert flags[1].samples == ("a.icon",)


@pytest.mark.asyncio()
async def test_run_heuristics_reads_page():
    session = FakeSession({PAGE: FakeSite(heuristics={"smallTargets": ["#x"]})})
    page = await session.new_page()
    await page.navigate(PAGE, 1_000)
    report = await run_heuristics(page)
    assert report.small_targets == ("#x",)


def test_base_flags_add_crawl_coverage_for_tiny_crawls():
    one_page = [PageResult(url=PAGE, status="ok")]
    single = {flag.id for flag in base_review_flags("single", one_page)}
    crawl = {flag.id for flag in base_review_flags("crawl", one_page)}
    assert "crawl-coverage" not in single
    assert crawl - single == {"crawl-coverage"}
    assert {"redundant-entry", "accessible-authentication", "consistent-help"} <= single


def test_incomplete_flags_are_unique_and_capped():
    rules = [IncompleteRule(rule_id=f"rule-{i}", help="") for i in range(12)]
    flags = incomplete_review_flags([(PAGE, rules), ("https://example.com/b", rules[:2])])
    assert len(flags) == MAX_INCOMPLETE_FLAGS
    assert flags[0].id == "incomplete-rule-0"
    assert flags[0].samples == (PAGE,)
    assert "manual verification" in flags[0].reason


def test_merge_dedupes_on_id_and_reason():
    base = base_review_flags("single", [])
    same = ReviewFlag(base[0].id, base[0].title, base[0].reason)
    different = ReviewFlag(base[0].id, base[0].title, "Overlay found on checkout.")
    merged = merge_review_flags(base, [same, different, ReviewFlag("empty", "Empty", "")])
    assert len(merged) == len(base) + 1
    assert merged[-1].reason == "Overlay found on checkout."

    many = [ReviewFlag(f"f{i}", "t", "r") for i in range(40)]
    assert len(merge_review_flags([], many)) == MAX_REVIEW_FLAGS
