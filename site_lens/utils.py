# File: site_lens/utils.py
"""site_lens.utils: Утилиты для обрезки текста, нормализации чисел и работы со списками."""

from __future__ import annotations

import re
from typing import Any, List, Sequence

__all__: Sequence[str] = (
    "IMPACT_LEVELS",
    "impact_weight",
    "bucket_impact",
    "trim_text",
    "trim_selectors",
    "sanitize_text",
    "clamp_int",
    "clamp_score",
)

IMPACT_LEVELS: Sequence[str] = ("critical", "serious", "moderate", "minor")

_IMPACT_WEIGHTS = {"critical": 4, "serious": 3, "moderate": 2, "minor": 1}
_WHITESPACE_RE = re.compile(r"\s+")

MAX_SELECTOR_COUNT = 6
MAX_SELECTOR_LENGTH = 220


def impact_weight(impact: str | None) -> int:
    """Вес серьёзности для сортировки: critical=4 … minor=1 (неизвестное = minor)."""
    return _IMPACT_WEIGHTS.get(str(impact or "").lower(), 1)


def bucket_impact(value: Any) -> str:
    """Приводит произвольное значение impact к одному из четырёх уровней."""
    text = str(value or "").strip().lower()
    return text if text in _IMPACT_WEIGHTS else "minor"


def trim_text(value: Any, max_length: int) -> str:
    """Обрезает строку до max_length, заканчивая многоточием."""
    if not isinstance(value, str):
        return ""
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - 3)] + "..."


def trim_selectors(value: Any, limit: int = MAX_SELECTOR_COUNT) -> List[str]:
    """Оставляет не более limit непустых селекторов, каждый не длиннее 220 символов."""
    if not isinstance(value, (list, tuple)):
        return []
    trimmed = (trim_text(str(item or ""), MAX_SELECTOR_LENGTH) for item in value[:limit])
    return [item for item in trimmed if item]


def sanitize_text(value: Any, fallback: str = "", limit: int = 280) -> str:
    """Схлопывает пробелы и ограничивает длину текста."""
    text = _WHITESPACE_RE.sub(" ", str(value or fallback)).strip()
    return text[:limit]


def clamp_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    """Целое в [minimum, maximum]; мусор на входе даёт fallback."""
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return min(maximum, max(minimum, numeric))


def clamp_score(value: Any) -> int | None:
    """Оценка 0–100 или None, если значение нечисловое."""
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric:  # NaN
        return None
    return round(max(0.0, min(100.0, numeric)))

