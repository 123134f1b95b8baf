from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from adintel.config import settings

logger = logging.getLogger(__name__)


@dataclass
class WaitPolicy:
    """
    Every pause the analysis pipeline takes goes through here.

    `sleep` is injectable so tests can pass a fake clock's sleep and assert on
    the exact delays instead of waiting for them.
    """

    item_delay_seconds: float = field(default_factory=lambda: settings.ANALYSIS_ITEM_DELAY_SECONDS)
    backoff_base_seconds: float = field(default_factory=lambda: settings.ANALYSIS_BACKOFF_BASE_SECONDS)
    max_backoff_seconds: float = field(default_factory=lambda: settings.ANALYSIS_MAX_BACKOFF_SECONDS)
    # Re-check the limiter at least this often while waiting out a long window.
    max_rate_wait_seconds: float = 60.0
    sleep: Callable[[float], None] = time.sleep

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): base * 2**attempt."""
        return min(self.backoff_base_seconds * (2 ** attempt), self.max_backoff_seconds)

    def pause_between_items(self) -> None:
        if self.item_delay_seconds > 0:
            self.sleep(self.item_delay_seconds)

    def wait_for_rate_limit(self, wait_seconds: float) -> float:
        waited = min(max(wait_seconds, 0.0), self.max_rate_wait_seconds)
        # Never spin: a zero wait still yields a short pause before re-checking.
        waited = max(waited, 0.05)
        self.sleep(waited)
        return waited

    def wait_before_retry(self, attempt: int) -> float:
        delay = self.backoff_seconds(attempt)
        if delay > 0:
            self.sleep(delay)
        return delay
