"""
Dataclass for tracking download session statistics.
"""

import time
from collections import Counter
from dataclasses import dataclass, field


@dataclass
class RunStats:
    """Tracks chapter and page outcomes across every manga processed in a run."""

    chapters_archived: int = 0
    chapters_failed: int = 0
    chapters_skipped: int = 0
    pages_fetched: int = 0
    pages_failed: int = 0
    bytes_fetched: int = 0
    manga_processed: set[str] = field(default_factory=set)
    manga_partial: set[str] = field(default_factory=set)
    skip_reasons: Counter = field(default_factory=Counter)
    started_at: float = field(default_factory=time.monotonic, repr=False)

    def record_skip(self, reason: str) -> None:
        self.chapters_skipped += 1
        self.skip_reasons[reason] += 1

    def record_pages(self, fetched: int, failed: int, size: int) -> None:
        self.pages_fetched += fetched
        self.pages_failed += failed
        self.bytes_fetched += size

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def average_speed_bps(self) -> float:
        elapsed = self.elapsed
        return self.bytes_fetched / elapsed if elapsed > 0 else 0.0
