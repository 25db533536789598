# File: site_lens/budget.py
"""site_lens.budget: общий дедлайн сканирования и ограничение стадий по времени.

Каждая стадия перед стартом спрашивает у :class:`TimeBudget`, хватит ли
оставшегося времени, и получает таймаут как долю *оставшегося* бюджета,
а не фиксированную константу.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, Optional, TypeVar

from site_lens.errors import StageTimeoutError, error_code, sanitize_error_message

__all__ = ("TimeBudget", "StageOutcome", "run_with_timeout", "with_deadline")

T = TypeVar("T")

Clock = Callable[[], float]

DEFAULT_LOW_WATER_MS = 2200
DEFAULT_SAFETY_MARGIN_MS = 250


class TimeBudget:
    """Дедлайн, от которого отсчитываются все стадии одного сканирования.

    ``clock`` возвращает секунды (по умолчанию :func:`time.monotonic`);
    в тестах подставляется фиктивные часы.
    """

    __slots__ = ("total_ms", "low_water_ms", "_clock", "started_at", "deadline_at", "_floor")

    def __init__(
        self,
        total_ms: int,
        *,
        low_water_ms: int = DEFAULT_LOW_WATER_MS,
        clock: Clock = time.monotonic,
    ) -> None:
        if total_ms <= 0:
            raise ValueError("total_ms must be > 0")
        self.total_ms = int(total_ms)
        self.low_water_ms = int(low_water_ms)
        self._clock = clock
        self.started_at = clock()
        self.deadline_at = self.started_at + self.total_ms / 1000.0
        self._floor = self.total_ms

    def remaining_ms(self) -> int:
        remaining = max(0, int((self.deadline_at - self._clock()) * 1000))
        # часы с откатом назад не должны увеличивать остаток
        self._floor = min(self._floor, remaining)
        return self._floor

    def elapsed_ms(self) -> int:
        return max(0, int((self._clock() - self.started_at) * 1000))

    def is_low(self, threshold_ms: Optional[int] = None) -> bool:
        threshold = self.low_water_ms if threshold_ms is None else threshold_ms
        return self.remaining_ms() < threshold

    def can_afford(self, cost_ms: int, margin_ms: int = DEFAULT_SAFETY_MARGIN_MS) -> bool:
        """True, если операция стоимостью ``cost_ms`` успеет до дедлайна с запасом."""
        return self.remaining_ms() >= cost_ms + margin_ms

    def allot(self, cap_ms: int, *, floor_ms: int = 0, margin_ms: int = 0) -> int:
        """Доля бюджета: ``max(floor, min(cap, remaining - margin))``."""
        return max(floor_ms, min(cap_ms, self.remaining_ms() - margin_ms))

    def __repr__(self) -> str:
        return f"TimeBudget(total_ms={self.total_ms}, remaining_ms={self.remaining_ms()})"


@dataclass(frozen=True, slots=True)
class StageOutcome(Generic[T]):
    """Результат стадии: успех, таймаут или ошибка (исключение не пробрасывается)."""

    status: Literal["success", "timeout", "error"]
    value: Optional[T] = None
    error: Optional[BaseException] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def reason(self) -> str:
        if self.status == "success":
            return ""
        if self.status == "timeout":
            return "timeout"
        return error_code(self.error)

    @property
    def message(self) -> str:
        return sanitize_error_message(self.error) if self.error is not None else ""


async def with_deadline(awaitable: Awaitable[T], timeout_ms: int, stage: str) -> T:
    """Ожидает ``awaitable`` не дольше ``timeout_ms``; по истечении бросает StageTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=max(0, timeout_ms) / 1000.0)
    except asyncio.TimeoutError as exc:
        raise StageTimeoutError(stage, timeout_ms) from exc


async def run_with_timeout(
    awaitable: Awaitable[Any],
    timeout_ms: int,
    label: str,
    *,
    clock: Clock = time.monotonic,
) -> StageOutcome[Any]:
    """Как :func:`with_deadline`, но любая ошибка превращается в :class:`StageOutcome`."""
    started = clock()
    try:
        value = await with_deadline(awaitable, timeout_ms, label)
    except asyncio.CancelledError:
        raise
    except StageTimeoutError as exc:
        return StageOutcome("timeout", error=exc, duration_ms=_since(started, clock))
    except Exception as exc:  # noqa: BLE001
        status = "timeout" if error_code(exc) == "timeout" else "error"
        return StageOutcome(status, error=exc, duration_ms=_since(started, clock))
    return StageOutcome("success", value=value, duration_ms=_since(started, clock))


def _since(started: float, clock: Clock) -> int:
    return max(0, int((clock() - started) * 1000))
