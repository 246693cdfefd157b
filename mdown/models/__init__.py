"""
Data Models Layer.

This package contains the configuration model, the catalog and ledger records,
and the run statistics shared throughout the application.
"""

from .catalog import (
    BackupSnapshot,
    Chapter,
    ChapterFetchReport,
    ChapterState,
    DownloadJob,
    LedgerDiff,
    LedgerEntry,
    LockRecord,
    Manga,
    MangaIndex,
    PageOutcome,
    PageRef,
    QualityTier,
)
from .config import RunConfig
from .stats import RunStats

__all__ = [
    "BackupSnapshot",
    "Chapter",
    "ChapterFetchReport",
    "ChapterState",
    "DownloadJob",
    "LedgerDiff",
    "LedgerEntry",
    "LockRecord",
    "Manga",
    "MangaIndex",
    "PageOutcome",
    "PageRef",
    "QualityTier",
    "RunConfig",
    "RunStats",
]
