# File: site_lens/engine.py
"""site_lens.engine: Сборка компонентов сканера из конфигурации и запуск сканирования."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

from site_lens.browser.page import BrowserFactory, launch_playwright
from site_lens.config import ScannerConfig, load_config
from site_lens.coordinator import MultiEngineCoordinator, ProgressCallback, failed_report
from site_lens.errors import InvalidScanRequestError
from site_lens.logger import logger
from site_lens.models import ScanReport, ScanRequest
from site_lens.psi.client import CategoryScorerClient
from site_lens.rules.adapter import RuleEngineAdapter, build_backend
from site_lens.scanner import AccessibilityScanner

__all__ = ["Engine"]


class Engine:
    """Фасад для CLI, HTTP-сервера и тестов: конфиг → адаптер правил, сканер, клиент оценки, координатор."""

    @staticmethod
    def load_config(path: Optional[str]) -> ScannerConfig:
        """Загружает конфиг из YAML/JSON или использует значения по умолчанию."""
        return load_config(path)

    def __init__(
        self,
        config: ScannerConfig,
        *,
        browser_factory: BrowserFactory = launch_playwright,
        scorer: Optional[CategoryScorerClient] = None,
    ) -> None:
        """Собирает все компоненты; сетевые ресурсы открываются лениво."""
        self.config = config
        self.adapter = RuleEngineAdapter(build_backend(config.rules))
        self.scanner = AccessibilityScanner(config, self.adapter, browser_factory=browser_factory)
        self.scorer = scorer or CategoryScorerClient(config.psi)
        self.coordinator = MultiEngineCoordinator(config, self.scanner, self.scorer)

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Закрывает HTTP-сессию клиента оценки."""
        await self.scorer.close()

    def build_request(self, payload: Mapping[str, Any]) -> ScanRequest:
        return ScanRequest.from_payload(payload, self.config)

    async def scan(self, payload: Mapping[str, Any], progress: Optional[ProgressCallback] = None) -> ScanReport:
        """Запускает полное сканирование. Неожиданный сбой превращается в отчёт со статусом failed."""
        request: Optional[ScanRequest] = None
        try:
            request = self.build_request(payload)
            return await self.coordinator.run(request, progress=progress)
        except (asyncio.CancelledError, InvalidScanRequestError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Scan failed: %s", exc)
            return failed_report(request, exc)

    def start_scan(self, payload: Mapping[str, Any]) -> ScanReport:
        """Синхронная обёртка для CLI."""

        async def _runner() -> ScanReport:
            async with self:
                return await self.scan(payload)

        return asyncio.run(_runner())
