# site_lens/crawler/scheduler.py
"""
Breadth-first crawl frontier over same-origin links.

The scheduler owns the queue and the stop decision; it never fetches anything
itself. The scanner asks :meth:`CrawlScheduler.next_target` for the next URL,
scans it and feeds discovered links back through :meth:`CrawlScheduler.record`.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Optional, Set

from site_lens.budget import TimeBudget
from site_lens.crawler.urls import should_skip_url

__all__ = ("CrawlTarget", "CrawlScheduler", "MAX_PAGES_REACHED", "TIME_BUDGET_LOW", "COMPLETED")

MAX_PAGES_REACHED = "max_pages_reached"
TIME_BUDGET_LOW = "time_budget_low"
COMPLETED = "completed"

logger = logging.getLogger("SiteLens")


@dataclass(frozen=True, slots=True)
class CrawlTarget:
    url: str
    depth: int


class CrawlScheduler:
    """BFS queue with depth cap, page cap and budget-aware admission."""

    def __init__(
        self,
        start_url: str,
        *,
        max_pages: int,
        budget: TimeBudget,
        max_depth: int = 2,
        follow_links: bool = True,
    ) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        self.max_pages = max_pages
        self.max_depth = max_depth
        self.follow_links = follow_links
        self._budget = budget
        self._queue: Deque[CrawlTarget] = deque([CrawlTarget(start_url, 0)])
        self._queued: Set[str] = {start_url}
        self._visited: Set[str] = set()
        self._frontier_limit = max_pages * 4
        self.pages_started = 0
        self.stop_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason in (MAX_PAGES_REACHED, TIME_BUDGET_LOW)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def next_target(self) -> Optional[CrawlTarget]:
        """Next URL to scan, or None once the crawl must stop (``stop_reason`` is set)."""
        while self._queue:
            if self.pages_started >= self.max_pages:
                return self._stop(MAX_PAGES_REACHED)
            if self._budget.is_low():
                return self._stop(TIME_BUDGET_LOW)
            target = self._queue.popleft()
            self._queued.discard(target.url)
            if target.url in self._visited:
                continue
            self._visited.add(target.url)
            self.pages_started += 1
            return target
        if self.stop_reason is None:
            self.stop_reason = COMPLETED
        return None

    def record(self, target: CrawlTarget, discovered: Iterable[str]) -> int:
        """Enqueue links discovered on ``target``; returns how many were added."""
        if not self.follow_links or target.depth >= self.max_depth:
            return 0
        added = 0
        for url in discovered:
            if url in self._visited or url in self._queued:
                continue
            if should_skip_url(url):
                continue
            self._queue.append(CrawlTarget(url, target.depth + 1))
            self._queued.add(url)
            added += 1
            if len(self._queue) > self._frontier_limit:
                break
        return added

    def stop(self, reason: str) -> None:
        """External stop (issue cap, runtime error); the first reason wins."""
        if self.stop_reason is None or self.stop_reason == COMPLETED:
            self.stop_reason = reason

    def _stop(self, reason: str) -> None:
        if self.stop_reason is None:
            logger.info("Crawl stopped: %s (%d page(s) started, %d queued)", reason, self.pages_started, len(self._queue))
            self.stop_reason = reason
        return None
