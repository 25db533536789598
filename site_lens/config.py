"""
Модуль для загрузки и валидации конфигурации сканера SiteLens.
Используется Pydantic для описания схемы и проверки данных.

Секреты и параметры окружения (ключ PageSpeed, адрес Redis, тип окружения)
берутся из переменных среды, если в файле они не заданы.
"""
from __future__ import annotations

import errno
import json
import os
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

Environment = Literal["local", "staging", "production"]

# Жёсткие потолки: значения из конфига или запроса зажимаются в эти границы.
MAX_VIOLATIONS_PER_PAGE = 100
MAX_NODES_PER_VIOLATION = 80
MAX_TOTAL_ISSUES_OVERALL = 1000
MIN_TOTAL_ISSUES_OVERALL = 20
MAX_PAGES = 10
MAX_DEPTH = 2


class CapsConfig(BaseModel):
    """Лимиты на объём результатов."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_violations_per_page: int = Field(50, ge=1, le=MAX_VIOLATIONS_PER_PAGE)
    max_nodes_per_violation: int = Field(20, ge=1, le=MAX_NODES_PER_VIOLATION)
    max_total_issues_overall: int = Field(
        300, ge=MIN_TOTAL_ISSUES_OVERALL, le=MAX_TOTAL_ISSUES_OVERALL
    )


class BudgetConfig(BaseModel):
    """Временной бюджет сканирования (миллисекунды)."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    single_ms: int = Field(28_000, gt=0, description="Бюджет по умолчанию для одной страницы.")
    crawl_ms: int = Field(35_000, gt=0, description="Бюджет по умолчанию для обхода.")
    min_ms: int = Field(5_000, gt=0)
    max_ms: int = Field(45_000, gt=0)
    min_remaining_to_start_page_ms: int = Field(2_200, ge=0)
    min_remaining_to_start_engine_ms: int = Field(1_200, ge=0)
    safety_margin_ms: int = Field(250, ge=0)
    page_scan_ms: int = Field(12_000, gt=0)
    navigation_ms: int = Field(10_000, gt=0)
    rule_engine_ms: int = Field(12_000, gt=0)
    load_state_ms: int = Field(5_000, gt=0)
    engine_timeout_ms: int = Field(10_000, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> BudgetConfig:
        if self.min_ms > self.max_ms:
            raise ValueError("budget.min_ms must not exceed budget.max_ms")
        return self

    def clamp(self, requested_ms: Any, mode: str) -> int:
        """Зажимает запрошенный бюджет; мусор или <=0 даёт значение по умолчанию для режима."""
        fallback = self.crawl_ms if mode == "crawl" else self.single_ms
        try:
            numeric = int(float(requested_ms))
        except (TypeError, ValueError, OverflowError):
            numeric = 0
        if numeric <= 0:
            numeric = fallback
        return min(self.max_ms, max(self.min_ms, numeric))


class PsiConfig(BaseModel):
    """Настройки удалённого сервиса оценки категорий (PageSpeed Insights)."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    endpoint: str = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    api_key: str = Field(default_factory=lambda: os.getenv("PAGESPEED_API_KEY", "").strip())
    require_api_key: bool = False
    default_strategy: Literal["mobile", "desktop"] = "mobile"
    timeout_ms: int = Field(10_000, gt=0)
    min_timeout_ms: int = Field(3_000, gt=0)
    max_timeout_ms: int = Field(20_000, gt=0)
    cache_ttl_ms: int = Field(30 * 60 * 1000, gt=0)
    quota_block_max_ms: int = Field(12 * 60 * 60 * 1000, gt=0)

    def clamp_timeout(self, timeout_ms: Any) -> int:
        try:
            numeric = int(float(timeout_ms))
        except (TypeError, ValueError, OverflowError):
            numeric = 0
        if numeric <= 0:
            numeric = self.timeout_ms
        return max(self.min_timeout_ms, min(self.max_timeout_ms, numeric))


class JobStoreConfig(BaseModel):
    """Хранилище асинхронных заданий."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    redis_url: Optional[str] = Field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    key_prefix: str = "site-lens:job:"
    ttl_ms: int = Field(30 * 60 * 1000, gt=0)
    heartbeat_interval_s: float = Field(5.0, gt=0)


class BrowserConfig(BaseModel):
    """Параметры рендерера страниц."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    headless: bool = True
    viewport_width: int = Field(1366, gt=0)
    viewport_height: int = Field(900, gt=0)
    launch_args: list[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]
    )
    max_screenshots: int = Field(3, ge=0)
    max_screenshot_bytes: int = Field(600 * 1024, gt=0)


class RulesConfig(BaseModel):
    """Выбор набора правил доступности."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    backend: Literal["lumen", "axe"] = "lumen"
    axe_script_path: Optional[Path] = None
    ruleset: str = "wcag22aa"
    include_best_practices: bool = True
    include_experimental: bool = False

    @model_validator(mode="after")
    def _check_axe_script(self) -> RulesConfig:
        if self.backend == "axe":
            if self.axe_script_path is None:
                raise ValueError("rules.axe_script_path is required when rules.backend is 'axe'")
            if not Path(self.axe_script_path).is_file():
                raise FileNotFoundError(
                    errno.ENOENT, os.strerror(errno.ENOENT), str(self.axe_script_path)
                )
        return self


class ScannerConfig(BaseModel):
    """Конфигурация сервиса сканирования."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    environment: Environment = Field(
        default_factory=lambda: os.getenv("SITE_LENS_ENV", "local"),  # type: ignore[arg-type]
        description="Окружение: в production запасное хранилище в памяти запрещено.",
    )
    user_agent: str = Field("SiteLensBot/1.0", min_length=1, description="Заголовок User-Agent.")
    max_depth: int = Field(MAX_DEPTH, ge=0, le=MAX_DEPTH, description="Глубина обхода ссылок.")
    default_crawl_pages: int = Field(5, ge=1, le=MAX_PAGES)
    max_pages: int = Field(MAX_PAGES, ge=1, le=MAX_PAGES, description="Жесткий лимит по числу страниц.")
    caps: CapsConfig = Field(default_factory=CapsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    psi: PsiConfig = Field(default_factory=PsiConfig)
    jobs: JobStoreConfig = Field(default_factory=JobStoreConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)

    @field_validator("user_agent", mode="before")
    def _strip_user_agent(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


_DEFAULT_CFG = Path("configs/default.yaml")


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Неправильный YAML в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень YAML должен быть mapping, получено {type(data).__name__}")
    return data


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8")) or {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Неправильный JSON в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень JSON должен быть mapping, получено {type(data).__name__}")
    return data


def load_config(path: Union[str, Path, None]) -> ScannerConfig:
    """
    Читает YAML или JSON и возвращает проверенный объект ScannerConfig.
    При отсутствии файла конфига бросает FileNotFoundError.
    """
    if path is None:
        if not _DEFAULT_CFG.exists():
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(_DEFAULT_CFG))
        path_obj = _DEFAULT_CFG
    else:
        path_obj = Path(path).expanduser().resolve()
        if not path_obj.is_file():
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path_obj))

    suffix = path_obj.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = _read_yaml(path_obj)
    elif suffix == ".json":
        data = _read_json(path_obj)
    else:
        raise ValueError(f"Неподдерживаемый формат конфига: {suffix}")

    return ScannerConfig(**data)


__all__ = [
    "CapsConfig",
    "BudgetConfig",
    "PsiConfig",
    "JobStoreConfig",
    "BrowserConfig",
    "RulesConfig",
    "ScannerConfig",
    "ValidationError",
    "load_config",
]
