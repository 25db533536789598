# site_lens/psi/client.py
"""
Category scorer client (Google PageSpeed Insights v5).

Order of checks for every request: API key requirement, quota circuit, cache,
then one remote call under its own timeout. Failures are never raised; they
come back as a :class:`ProbeResult` with a machine ``reason``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from aiohttp import ClientConnectionError, ClientError, ClientSession, ClientTimeout

from site_lens.config import PsiConfig
from site_lens.crawler.urls import canonicalize_url
from site_lens.errors import sanitize_error_message
from site_lens.psi.cache import QuotaCircuit, TTLCache

__all__ = ("ProbeResult", "CategoryScorerClient", "classify_failure", "DEFAULT_CATEGORIES")

logger = logging.getLogger("SiteLens")

DEFAULT_CATEGORIES: Sequence[str] = ("performance", "seo", "best-practices")

_NETWORK_MARKERS = ("failed to fetch", "networkerror", "econn", "enotfound", "cannot connect", "name or service")


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of one scorer lookup; ``payload`` is set only on success."""

    status: str
    strategy: str
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    message: str = ""
    cache_hit: bool = False
    blocked: bool = False
    calls_made: int = 0
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "success" and self.payload is not None

    @classmethod
    def failed(cls, strategy: str, reason: str, message: str, **extra: Any) -> ProbeResult:
        return cls(status="failed", strategy=strategy, reason=reason, message=sanitize_error_message(message), **extra)


def classify_failure(status: int = 0, text: str = "", error: Optional[BaseException] = None) -> str:
    """quota_exceeded | timeout | network | unknown."""
    joined = f"{text} {error or ''}".lower()
    if status == 429 or "quota exceeded" in joined:
        return "quota_exceeded"
    if isinstance(error, asyncio.TimeoutError) or "timed out" in joined:
        return "timeout"
    if isinstance(error, ClientConnectionError) or any(marker in joined for marker in _NETWORK_MARKERS):
        return "network"
    return "unknown"


def _normalize_strategy(strategy: Any) -> str:
    return "desktop" if str(strategy or "").strip().lower() == "desktop" else "mobile"


class CategoryScorerClient:
    """Fetches category scores over a shared aiohttp session.

    The cache and circuit are injected so that several clients (or tests) can
    share or isolate them explicitly.
    """

    def __init__(
        self,
        config: PsiConfig,
        *,
        session: Optional[ClientSession] = None,
        cache: Optional[TTLCache[Dict[str, Any]]] = None,
        circuit: Optional[QuotaCircuit] = None,
        categories: Sequence[str] = DEFAULT_CATEGORIES,
    ) -> None:
        self.config = config
        self.cache: TTLCache[Dict[str, Any]] = cache or TTLCache(config.cache_ttl_ms)
        self.circuit = circuit or QuotaCircuit(config.quota_block_max_ms)
        self.categories = tuple(categories)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> CategoryScorerClient:
        if self._session is None:
            self._session = ClientSession(headers={"Accept": "application/json"})
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, strategy: Any = "mobile", timeout_ms: Optional[int] = None) -> ProbeResult:
        strategy = _normalize_strategy(strategy)
        target = canonicalize_url(url, strip_tracking=False)
        if target is None:
            return ProbeResult.failed(strategy, "unknown", "Invalid scorer URL input.")

        api_key = self.config.api_key
        if self.config.require_api_key and not api_key:
            return ProbeResult.failed(strategy, "missing_api_key", "PageSpeed API key missing.")

        if self.circuit.is_open():
            return ProbeResult.failed(
                strategy,
                "quota_exceeded",
                "Quota circuit breaker active. Skipping network request.",
                blocked=True,
            )

        key = f"{strategy}:{target}"
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Category scorer cache hit for %s", key)
            return ProbeResult(
                status="success", strategy=strategy, payload=cached, message="Cache hit.", cache_hit=True
            )

        timeout = self.config.clamp_timeout(timeout_ms)
        params = [("url", target), ("strategy", strategy)]
        params.extend(("category", category) for category in self.categories)
        if api_key:
            params.append(("key", api_key))

        if self._session is None:
            self._session = ClientSession(headers={"Accept": "application/json"})
            self._owns_session = True

        started = time.monotonic()
        try:
            async with self._session.get(
                self.config.endpoint,
                params=params,
                timeout=ClientTimeout(total=timeout / 1000.0),
                raise_for_status=False,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, ClientError) as exc:
            reason = classify_failure(error=exc)
            if reason == "quota_exceeded":
                self.circuit.trip()
            message = f"Scorer request timed out after {timeout}ms." if reason == "timeout" else str(exc)
            logger.warning("Category scorer request failed (%s): %s", reason, sanitize_error_message(message))
            return ProbeResult.failed(strategy, reason, message, calls_made=1, duration_ms=_since(started))

        payload = _parse_json(text)
        duration = _since(started)
        if status >= 400:
            error_obj = payload.get("error")
            api_message = str(error_obj.get("message") or "") if isinstance(error_obj, dict) else ""
            api_message = api_message or f"Scorer request failed with status {status}."
            reason = classify_failure(status=status, text=f"{text} {api_message}")
            if reason == "quota_exceeded":
                self.circuit.trip()
            logger.warning("Category scorer returned HTTP %s (%s)", status, reason)
            return ProbeResult.failed(
                strategy,
                reason,
                api_message,
                blocked=reason == "quota_exceeded",
                calls_made=1,
                duration_ms=duration,
            )

        self.cache.set(key, payload)
        return ProbeResult(
            status="success",
            strategy=strategy,
            payload=payload,
            message="Request completed.",
            calls_made=1,
            duration_ms=duration,
        )


def _parse_json(text: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _since(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))
