# File: site_lens/rules/profiles.py
"""Ruleset profiles and the rule tags each one activates."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Tuple

__all__ = ("RulesetProfile", "DEFAULT_PROFILE", "BEST_PRACTICE_TAG", "EXPERIMENTAL_TAG", "profile_tags")

BEST_PRACTICE_TAG = "best-practice"
EXPERIMENTAL_TAG = "experimental"


class RulesetProfile(str, Enum):
    WCAG2A = "wcag2a"
    WCAG2AA = "wcag2aa"
    WCAG21AA = "wcag21aa"
    WCAG22AA = "wcag22aa"
    SECTION508 = "section508"

    @classmethod
    def parse(cls, value: Any) -> RulesetProfile:
        """Unknown or empty values fall back to :data:`DEFAULT_PROFILE`."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return DEFAULT_PROFILE

    @property
    def base_tags(self) -> Tuple[str, ...]:
        return _PROFILE_TAGS[self]


DEFAULT_PROFILE = RulesetProfile.WCAG22AA

_PROFILE_TAGS: Dict[RulesetProfile, Tuple[str, ...]] = {
    RulesetProfile.WCAG2A: ("wcag2a",),
    RulesetProfile.WCAG2AA: ("wcag2a", "wcag2aa"),
    RulesetProfile.WCAG21AA: ("wcag2a", "wcag2aa", "wcag21aa"),
    RulesetProfile.WCAG22AA: ("wcag2a", "wcag2aa", "wcag21aa", "wcag22aa"),
    RulesetProfile.SECTION508: ("section508",),
}


def profile_tags(
    profile: RulesetProfile,
    *,
    include_best_practices: bool = True,
    include_experimental: bool = False,
) -> Tuple[str, ...]:
    """Active tag set for a profile plus the optional extra tags."""
    tags = list(profile.base_tags)
    if include_best_practices:
        tags.append(BEST_PRACTICE_TAG)
    if include_experimental:
        tags.append(EXPERIMENTAL_TAG)
    return tuple(dict.fromkeys(tags))
