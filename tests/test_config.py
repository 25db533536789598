# File: tests/test_config.py
import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from site_lens.config import ScannerConfig, load_config
from site_lens.models import ScanRequest


def write_file(tmp_path: Path, content: str, suffix: str) -> Path:
    path = tmp_path / f"config{suffix}"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "content,suffix,expect_exc",
    [
        ("user_agent: TestAgent/1.0\nmax_pages: 3", ".yaml", None),
        (json.dumps({"user_agent": "TestAgent/1.0", "max_pages": 3}), ".json", None),
        ("max_pages: 50", ".yaml", ValidationError),
        ("unknown_key: 1", ".yaml", ValidationError),
        ("- a\n- b", ".yaml", TypeError),
        ("key: [unclosed", ".yaml", ValueError),
        ("{not json", ".json", ValueError),
        ("user_agent: x", ".toml", ValueError),
    ],
)
def test_load_config_variants(tmp_path, content, suffix, expect_exc):
    cfg_path = write_file(tmp_path, content, suffix)
    if expect_exc:
        with pytest.raises(expect_exc):
            load_config(cfg_path)
    else:
        cfg = load_config(cfg_path)
        assert isinstance(cfg, ScannerConfig)
        assert cfg.user_agent == "TestAgent/1.0"
        assert cfg.max_pages == 3


def test_load_config_default_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        load_config(None)


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_defaults_match_budget_policy():
    cfg = ScannerConfig()
    assert cfg.caps.max_violations_per_page == 50
    assert cfg.caps.max_nodes_per_violation == 20
    assert cfg.caps.max_total_issues_overall == 300
    assert cfg.budget.min_remaining_to_start_page_ms == 2200
    assert cfg.budget.min_remaining_to_start_engine_ms == 1200
    assert cfg.psi.cache_ttl_ms == 30 * 60 * 1000


@pytest.mark.parametrize(
    "requested,mode,expected",
    [
        (None, "single", 28_000),
        (None, "crawl", 35_000),
        ("garbage", "single", 28_000),
        (-5, "crawl", 35_000),
        (1_000, "single", 5_000),
        (999_999, "crawl", 45_000),
        (20_000, "single", 20_000),
        (float("inf"), "single", 28_000),
        (float("nan"), "crawl", 35_000),
        ("1e400", "crawl", 35_000),
    ],
)
def test_budget_clamp(requested, mode, expected):
    assert ScannerConfig().budget.clamp(requested, mode) == expected


def test_psi_timeout_clamp():
    psi = ScannerConfig().psi
    assert psi.clamp_timeout(None) == psi.timeout_ms
    assert psi.clamp_timeout(1) == psi.min_timeout_ms
    assert psi.clamp_timeout(10**9) == psi.max_timeout_ms
    assert psi.clamp_timeout(float("inf")) == psi.timeout_ms


def test_environment_from_env(monkeypatch):
    monkeypatch.setenv("SITE_LENS_ENV", "production")
    monkeypatch.setenv("PAGESPEED_API_KEY", "  secret  ")
    cfg = ScannerConfig()
    assert cfg.is_production
    assert cfg.psi.api_key == "secret"


def test_axe_backend_requires_script(tmp_path):
    with pytest.raises(ValidationError):
        ScannerConfig(rules={"backend": "axe"})
    script = tmp_path / "axe.min.js"
    script.write_text("window.axe = {};", encoding="utf-8")
    cfg = ScannerConfig(rules={"backend": "axe", "axe_script_path": str(script)})
    assert cfg.rules.backend == "axe"


def test_shipped_default_config_is_valid():
    path = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"
    cfg = load_config(path)
    assert cfg.rules.backend == "lumen"
    assert cfg.max_depth == 2


@pytest.mark.parametrize("raw", [float("inf"), float("-inf"), float("nan"), "1e400"])
def test_scan_request_ignores_non_finite_numbers(raw):
    cfg = ScannerConfig()
    request = ScanRequest.from_payload(
        {
            "startUrl": "https://example.com/",
            "mode": "crawl",
            "maxPages": raw,
            "totalBudgetMs": raw,
            "maxTotalIssuesOverall": raw,
        },
        cfg,
    )
    assert request.max_pages == cfg.default_crawl_pages
    assert request.budget_ms == cfg.budget.crawl_ms
    assert request.caps.max_total_issues_overall == cfg.caps.max_total_issues_overall
