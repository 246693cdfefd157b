"""
Chapter selection: ordering, offsets, filters and the already-archived check.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from mdown.exceptions import StaleArchiveConflictError
from mdown.media.packager import read_metadata
from mdown.models.catalog import Chapter, ChapterState, DownloadJob, LedgerEntry
from mdown.models.config import RunConfig

log = logging.getLogger(__name__)


@dataclass
class SkippedChapter:
    chapter: Chapter
    reason: str


@dataclass
class Selection:
    jobs: list[DownloadJob] = field(default_factory=list)
    skipped: list[SkippedChapter] = field(default_factory=list)
    adopted: list[tuple[Chapter, Path]] = field(default_factory=list)
    eligible_count: int = 0

    @property
    def chapters(self) -> list[Chapter]:
        return [job.chapter for job in self.jobs]


def sort_chapters(chapters: list[Chapter], unsorted: bool = False) -> list[Chapter]:
    """
    Orders chapters by numeric chapter number. Chapters without a numeric
    number keep their catalog order after the numbered ones. In unsorted mode
    the catalog order is returned untouched.
    """
    if unsorted:
        return list(chapters)
    numbered = [c for c in chapters if c.number_value is not None]
    others = [c for c in chapters if c.number_value is None]
    return sorted(numbered, key=lambda c: c.number_value) + others


def _matches(filter_value: str, actual: str) -> bool:
    if filter_value in ("*", ""):
        return True
    if filter_value == actual:
        return True
    try:
        return float(filter_value) == float(actual)
    except ValueError:
        return False


def claim_existing_archive(
    path: Path, chapter: Chapter, force: bool
) -> dict[str, Any] | None:
    """
    Reads the metadata of an archive already sitting at a chapter's target path.

    Returns the metadata when the archive belongs to `chapter`, or None when it
    does not but `force` allows overwriting it.

    Raises:
        StaleArchiveConflictError: If the archive belongs elsewhere (or is
            unreadable) and `force` is not set.
    """
    metadata = read_metadata(path)
    if metadata is not None and metadata.get("id") == chapter.id:
        return metadata
    if force:
        return None
    raise StaleArchiveConflictError(
        f"{path.name} exists but does not belong to chapter {chapter.id};"
        " use --force to overwrite it."
    )


def select_chapters(
    chapters: list[Chapter],
    config: RunConfig,
    ledger_entries: dict[str, LedgerEntry],
    archive_path_of: Callable[[Chapter], Path],
    only_ids: set[str] | None = None,
    forced_ids: set[str] | None = None,
) -> Selection:
    """
    Decides which chapters of a resolved index are downloaded in this run.

    The chapter offset skips the first chapters of the ordered index that pass
    the language, volume, chapter and external filters, so it never selects a
    chapter earlier than its own position in the full index. The database
    offset has already been applied by the catalog before ordering, so in
    sorted mode it removes whichever chapters happened to come first in the
    catalog's raw order.
    """
    selection = Selection()
    forced_ids = forced_ids or set()
    ordered = sort_chapters(chapters, config.unsorted)
    seen_numbers: set[tuple[str, str]] = set()
    offset_remaining = config.offset

    for position, chapter in enumerate(ordered):
        if config.lang != "*" and chapter.language != config.lang:
            selection.skipped.append(SkippedChapter(chapter, "language"))
            continue
        if not _matches(config.volume, chapter.volume):
            selection.skipped.append(SkippedChapter(chapter, "volume"))
            continue
        if not _matches(config.chapter, chapter.number):
            selection.skipped.append(SkippedChapter(chapter, "chapter"))
            continue
        if chapter.pages == 0 or chapter.external_url:
            selection.skipped.append(SkippedChapter(chapter, "external"))
            continue

        number_key = (chapter.language, chapter.number)
        if chapter.number and number_key in seen_numbers:
            selection.skipped.append(SkippedChapter(chapter, "duplicate"))
            continue
        seen_numbers.add(number_key)

        if offset_remaining > 0:
            offset_remaining -= 1
            selection.skipped.append(SkippedChapter(chapter, "offset"))
            continue
        selection.eligible_count += 1

        if only_ids is not None and chapter.id not in only_ids:
            selection.skipped.append(SkippedChapter(chapter, "unchanged"))
            continue

        force = config.force or chapter.id in forced_ids
        job = DownloadJob(
            chapter=chapter, tier=config.tier, force=force, offset_cursor=position
        )
        entry = ledger_entries.get(chapter.id)
        archived = entry is not None and entry.state is ChapterState.ARCHIVED
        if archived:
            chapter.state = ChapterState.ARCHIVED

        path = archive_path_of(chapter)
        if not path.is_file():
            if archived and not force:
                selection.skipped.append(SkippedChapter(chapter, "archived"))
            else:
                selection.jobs.append(job)
            continue

        try:
            metadata = claim_existing_archive(path, chapter, force)
        except StaleArchiveConflictError as e:
            log.warning(f"[yellow]⚠ {e}[/yellow]")
            selection.skipped.append(SkippedChapter(chapter, "conflict"))
            continue
        if metadata is None:
            selection.jobs.append(job)
            continue

        tier_matches = bool(metadata.get("saver")) == config.saver
        if force or not tier_matches:
            selection.jobs.append(job)
        elif archived:
            selection.skipped.append(SkippedChapter(chapter, "archived"))
        else:
            selection.adopted.append((chapter, path))
            selection.skipped.append(SkippedChapter(chapter, "archived"))

    return selection
