"""
Domain records shared by the catalog client, the ledger and the download engine.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class ChapterState(str, Enum):
    """Lifecycle of a chapter as tracked by the ledger."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    ASSEMBLING = "assembling"
    ARCHIVED = "archived"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def can_transition_to(self, target: "ChapterState") -> bool:
        """
        Returns True if moving from this state to `target` keeps the chapter
        monotonic. Archived is absorbing; a failed chapter may only be picked up
        again by a fresh attempt, which starts at downloading.
        """
        if self is ChapterState.ARCHIVED:
            return False
        if self is ChapterState.FAILED:
            return target is ChapterState.DOWNLOADING
        return target.rank > self.rank


_STATE_RANK = {
    ChapterState.PENDING: 0,
    ChapterState.DOWNLOADING: 1,
    ChapterState.ASSEMBLING: 2,
    ChapterState.ARCHIVED: 3,
    ChapterState.FAILED: 3,
}


class QualityTier(str, Enum):
    """Image quality served by the catalog's image servers."""

    NORMAL = "normal"
    SAVER = "saver"

    @property
    def url_segment(self) -> str:
        return "data" if self is QualityTier.NORMAL else "data-saver"

    @property
    def manifest_key(self) -> str:
        return "data" if self is QualityTier.NORMAL else "dataSaver"

    @property
    def other(self) -> "QualityTier":
        return QualityTier.SAVER if self is QualityTier.NORMAL else QualityTier.NORMAL


@dataclass
class Manga:
    id: str
    title: str
    status: str = ""
    cover: str = ""
    description: str = ""
    original_language: str = ""
    available_languages: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    folder: str = ""


@dataclass
class Chapter:
    id: str
    manga_id: str
    number: str = ""
    volume: str = ""
    language: str = "en"
    title: str = ""
    pages: int = 0
    updated_at: str = ""
    external_url: str | None = None
    groups: list[str] = field(default_factory=list)
    state: ChapterState = ChapterState.PENDING

    @property
    def number_value(self) -> float | None:
        """The chapter number as a float, or None for oneshots and odd labels."""
        try:
            return float(self.number)
        except (TypeError, ValueError):
            return None

    @property
    def label(self) -> str:
        """Short human-readable label, e.g. 'Vol.2 Ch.13'."""
        parts = []
        if self.volume:
            parts.append(f"Vol.{self.volume}")
        parts.append(f"Ch.{self.number}" if self.number else "Oneshot")
        return " ".join(parts)


@dataclass
class MangaIndex:
    """A manga's metadata together with its full chapter index in catalog order."""

    manga: Manga
    chapters: list[Chapter]


@dataclass(frozen=True)
class PageRef:
    index: int
    url: str
    file_name: str

    @property
    def extension(self) -> str:
        suffix = Path(self.file_name).suffix.lstrip(".").lower()
        return suffix or "jpg"

    @property
    def staged_name(self) -> str:
        return f"{self.index:04d}.{self.extension}"


@dataclass
class PageOutcome:
    """Result of fetching one page into the staging area."""

    index: int
    staging_path: Path | None = None
    verified: bool = False
    attempts: int = 0
    size: int = 0
    error: str | None = None


@dataclass
class ChapterFetchReport:
    chapter: Chapter
    outcomes: list[PageOutcome]

    @property
    def complete(self) -> bool:
        return bool(self.outcomes) and all(o.verified for o in self.outcomes)

    @property
    def failed_pages(self) -> list[PageOutcome]:
        return [o for o in self.outcomes if not o.verified]

    @property
    def bytes_fetched(self) -> int:
        return sum(o.size for o in self.outcomes)


@dataclass
class DownloadJob:
    """A chapter scheduled for download in the current run."""

    chapter: Chapter
    tier: QualityTier = QualityTier.NORMAL
    force: bool = False
    offset_cursor: int = 0


@dataclass
class LedgerEntry:
    """The ledger's view of one chapter."""

    manga_id: str
    chapter_id: str
    state: ChapterState
    changed_at: str
    number: str = ""
    tier: str = ""
    archive_path: str = ""
    remote_updated_at: str = ""


@dataclass
class LockRecord:
    pid: int
    created_at: float
    path: Path
    version: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {"pid": self.pid, "created_at": self.created_at, "version": self.version}
        )

    @classmethod
    def from_json(cls, raw: str, path: Path) -> "LockRecord":
        data = json.loads(raw)
        return cls(
            pid=int(data["pid"]),
            created_at=float(data["created_at"]),
            path=path,
            version=str(data.get("version", "")),
        )


@dataclass(frozen=True)
class BackupSnapshot:
    created_at: datetime
    day_key: str
    path: Path


@dataclass
class LedgerDiff:
    """Remote chapters that are not (or no longer) reflected by the local archive."""

    manga_id: str
    new: list[Chapter] = field(default_factory=list)
    outdated: list[Chapter] = field(default_factory=list)
    missing: list[Chapter] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new or self.outdated or self.missing)

    @property
    def chapter_ids(self) -> set[str]:
        return {c.id for c in self.new + self.outdated + self.missing}

    @property
    def forced_ids(self) -> set[str]:
        """Chapters that already have an archived row and must be re-fetched."""
        return {c.id for c in self.outdated + self.missing}
