# File: tests/test_scanner.py
# End-to-end accessibility pass over the fake browser session
from __future__ import annotations

import pytest

from site_lens.models import ScanRequest
from site_lens.rules.adapter import RuleEngineAdapter
from site_lens.rules.lumen import LumenBackend
from site_lens.scanner import AccessibilityScanner, runtime_hint

from fakes import CLEAN_HTML, FakeSession, FakeSite, session_factory

ORIGIN = "https://example.com"
HOME = f"{ORIGIN}/"


def page_html(body: str) -> str:
    return f'<html lang="en"><head><title>Page</title></head><body>{body}</body></html>'


def make_scanner(config, clock, session=None, factory=None):
    return AccessibilityScanner(
        config,
        RuleEngineAdapter(LumenBackend()),
        browser_factory=factory or session_factory(session),
        clock=clock,
    )


async def run(config, clock, session, payload, factory=None):
    request = ScanRequest.from_payload(payload, config)
    return await make_scanner(config, clock, session, factory).scan(request)


@pytest.mark.asyncio()
async def test_single_clean_page_completes(config, clock):
    session = FakeSession({HOME: FakeSite(html=CLEAN_HTML)}, clock=clock)

    result = await run(config, clock, session, {"startUrl": "https://Example.com/?utm_source=x"})

    assert result.status == "complete"
    assert result.message == "Scan completed."
    assert result.start_url == HOME
    assert result.stop_reason == "completed"
    assert not result.truncated
    assert [page.url for page in result.pages] == [HOME]
    assert result.issues == ()
    assert len(result.screenshots) == 1
    assert result.screenshots[0].data_url.startswith("data:image/jpeg;base64,")
    assert {flag.id for flag in result.needs_review} >= {"redundant-entry", "consistent-help"}
    assert result.metadata["pagesScanned"] == 1
    assert result.metadata["engine"]["name"] == "LumenScan"
    assert session.closed


@pytest.mark.asyncio()
async def test_crawl_stops_at_page_cap(config, clock):
    links = "".join(f'<a href="/{name}">{name}</a>' for name in ("a", "b", "c"))
    session = FakeSession(
        {
            HOME: FakeSite(html=page_html(links)),
            f"{ORIGIN}/a": FakeSite(html=page_html("<p>a</p>")),
            f"{ORIGIN}/b": FakeSite(html=page_html("<p>b</p>")),
            f"{ORIGIN}/c": FakeSite(html=page_html("<p>c</p>")),
        },
        clock=clock,
    )

    result = await run(config, clock, session, {"startUrl": HOME, "mode": "crawl", "maxPages": 2})

    assert [page.url for page in result.pages] == [HOME, f"{ORIGIN}/a"]
    assert result.stop_reason == "max_pages_reached"
    assert result.truncated
    assert result.status == "complete"
    assert result.message == "Page cap reached. Crawl ended at configured max pages."
    assert [shot.page_url for shot in result.screenshots] == [HOME, f"{ORIGIN}/a"]


@pytest.mark.asyncio()
async def test_failed_page_makes_scan_partial(config, clock):
    session = FakeSession({}, clock=clock)

    result = await run(config, clock, session, {"startUrl": HOME})

    assert result.status == "partial"
    assert result.message == "Some pages could not be scanned. Returning partial results."
    assert result.pages[0].status == "error"
    assert result.screenshots == ()
    assert result.metadata["errorsSummary"]["totalErrors"] >= 1


@pytest.mark.asyncio()
async def test_low_budget_stops_crawl(config, clock):
    session = FakeSession(
        {
            HOME: FakeSite(html=page_html('<a href="/next">next</a>'), navigation_cost_ms=3_000),
            f"{ORIGIN}/next": FakeSite(html=page_html("<p>next</p>")),
        },
        clock=clock,
    )

    result = await run(
        config,
        clock,
        session,
        {"startUrl": HOME, "mode": "crawl", "maxPages": 5, "totalBudgetMs": 5_000, "includeScreenshots": False},
    )

    assert session.visited == [HOME]
    assert result.stop_reason == "time_budget_low"
    assert result.status == "partial"
    assert result.truncated
    assert result.message == "Time budget exceeded at 5000ms. Returning partial results."
    assert result.metadata["truncation"]["timeBudget"] is True


@pytest.mark.asyncio()
async def test_issue_cap_on_single_page(config, clock):
    body = '<img src="/i.png">' * 15 + '<a href="/x"></a>' * 10
    session = FakeSession({HOME: FakeSite(html=page_html(body))}, clock=clock)

    result = await run(
        config, clock, session, {"startUrl": HOME, "maxTotalIssuesOverall": 20, "includeScreenshots": False}
    )

    assert len(result.issues) == 20
    assert [issue.rule_id for issue in result.issues].count("image-alt-missing") == 15
    assert result.stop_reason == "max_total_issues_overall"
    assert result.message == "Issue cap reached. Additional issues were not returned."
    assert result.truncated
    assert result.pages[0].truncated_by.total_issues
    assert result.metadata["truncation"]["maxTotalIssues"] is True


@pytest.mark.asyncio()
async def test_issue_cap_keeps_first_page_issues(config, clock):
    session = FakeSession(
        {
            HOME: FakeSite(html=page_html('<img src="/i.png">' * 15 + '<a href="/b">b</a>')),
            f"{ORIGIN}/b": FakeSite(html=page_html('<img src="/j.png">' * 10)),
        },
        clock=clock,
    )

    result = await run(
        config,
        clock,
        session,
        {"startUrl": HOME, "mode": "crawl", "maxPages": 3, "maxTotalIssuesOverall": 20, "includeScreenshots": False},
    )

    per_page = [len(page.issues) for page in result.pages]
    assert per_page == [15, 5]
    assert not result.pages[0].truncated_by.total_issues
    assert result.pages[1].truncated_by.total_issues
    assert len(result.issues) == 20


@pytest.mark.asyncio()
async def test_browser_launch_failure_is_runtime_error(config, clock):
    async def broken_factory(browser_config, user_agent):
        raise RuntimeError("BrowserType.launch: Executable doesn't exist at /ms-playwright/chromium")

    result = await run(config, clock, None, {"startUrl": HOME}, factory=broken_factory)

    assert result.status == "partial"
    assert result.stop_reason == "runtime_error"
    assert result.message.startswith("Runtime error occurred.")
    assert "playwright install chromium" in result.message
    assert result.pages == ()


@pytest.mark.asyncio()
async def test_invalid_start_url_returns_empty_partial(config, clock):
    calls = []

    async def factory(browser_config, user_agent):
        calls.append(user_agent)
        raise AssertionError("browser must not start")

    result = await run(config, clock, None, {"startUrl": "ftp://example.com/"}, factory=factory)

    assert calls == []
    assert result.status == "partial"
    assert result.stop_reason == "invalid_start_url"
    assert result.message == "Invalid start URL. Returning empty partial result."
    assert result.start_url is None


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Executable doesn't exist at /x", "playwright install chromium"),
        ("Target page, context or browser has been closed", "Rerun the scan"),
        ("net::ERR_NAME_NOT_RESOLVED", ""),
    ],
)
def test_runtime_hint(text, expected):
    hint = runtime_hint(text)
    if expected:
        assert expected in hint
    else:
        assert hint == ""
