"""
Crawl-wide bookkeeping: which locators were already queued and how much of
the result and page budgets is left. Safe to share between worker threads.
"""

import threading
from dataclasses import dataclass
from typing import Set

import config


@dataclass(frozen=True)
class CrawlBudget:
    results_wanted: int = 50
    max_pages: int = 10
    collect_details: bool = True
    dedupe: bool = True

    @classmethod
    def from_settings(cls, **overrides) -> 'CrawlBudget':
        values = {
            'results_wanted': config.RESULTS_WANTED,
            'max_pages': config.MAX_PAGES,
            'collect_details': config.COLLECT_DETAILS,
            'dedupe': config.DEDUPE,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class Frontier:
    def __init__(self, budget: CrawlBudget):
        self.budget = budget
        self._seen: Set[str] = set()
        self._emitted = 0
        self._pages_visited = 0
        self._lock = threading.Lock()

    @property
    def emitted(self) -> int:
        return self._emitted

    @property
    def pages_visited(self) -> int:
        return self._pages_visited

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def admit(self, locator: str) -> bool:
        """True when the locator should be processed; marks it as seen."""
        with self._lock:
            if not self.budget.dedupe:
                self._seen.add(locator)
                return True
            if locator in self._seen:
                return False
            self._seen.add(locator)
            return True

    def remaining_budget(self) -> int:
        with self._lock:
            return max(0, self.budget.results_wanted - self._emitted)

    def record_emitted(self) -> bool:
        """Claim one result slot. False once the budget is spent (counter untouched)."""
        with self._lock:
            if self._emitted >= self.budget.results_wanted:
                return False
            self._emitted += 1
            return True

    def page_visited(self) -> int:
        with self._lock:
            self._pages_visited += 1
            return self._pages_visited
