"""
The per-manga download state machine:
Resolving -> Selecting -> Downloading -> Finalizing -> Done | PartialFailure.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.markup import escape

from mdown.api.client import CatalogClient
from mdown.exceptions import CatalogError, NetworkPermanentError, NetworkTransientError
from mdown.media.downloader import PageFetchPool
from mdown.models.catalog import (
    Chapter,
    ChapterState,
    DownloadJob,
    Manga,
    MangaIndex,
    PageOutcome,
)
from mdown.models.config import RunConfig
from mdown.models.stats import RunStats
from mdown.storage.backup import BackupManager
from mdown.storage.ledger import ProgressLedger
from mdown.utils.path import archive_path_for, manga_folder_name, staging_dir_for

from .assembler import ChapterAssembler
from .selection import SkippedChapter, select_chapters

log = logging.getLogger(__name__)


class RunPhase(str, Enum):
    RESOLVING = "resolving"
    SELECTING = "selecting"
    DOWNLOADING = "downloading"
    FINALIZING = "finalizing"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"


class RunObserver:
    """
    Hooks for optional subsystems (progress displays, remote viewers). The
    default implementation ignores every event.
    """

    def on_phase(self, manga_id: str, phase: RunPhase) -> None:
        pass

    def on_chapter(self, chapter: Chapter, state: ChapterState) -> None:
        pass

    def on_page(self, chapter: Chapter, outcome: PageOutcome) -> None:
        pass


@dataclass
class MangaRunReport:
    manga_id: str
    manga: Manga | None = None
    phase: RunPhase = RunPhase.RESOLVING
    output_dir: Path | None = None
    archived: list[Chapter] = field(default_factory=list)
    failed: list[Chapter] = field(default_factory=list)
    skipped: list[SkippedChapter] = field(default_factory=list)
    zero_eligible: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.phase is RunPhase.DONE


class DownloadOrchestrator:
    """
    Drives one manga at a time through resolution, selection, the chapter
    pipelines and finalization.

    All chapter pipelines of a manga start together and share one page pool,
    so chapters interleave at page granularity and the total number of
    in-flight page requests never exceeds the configured budget.
    """

    def __init__(
        self,
        config: RunConfig,
        catalog: CatalogClient,
        ledger: ProgressLedger,
        backup_manager: BackupManager | None = None,
        observer: RunObserver | None = None,
        stats: RunStats | None = None,
    ):
        self.config = config
        self.catalog = catalog
        self.ledger = ledger
        self.backup_manager = backup_manager
        self.observer = observer or RunObserver()
        self.stats = stats or RunStats()
        self.pool = PageFetchPool(
            catalog, config.max_consecutive, max_attempts=config.max_attempts
        )
        self.assembler = ChapterAssembler(ledger, self.pool.file_budget)

    def request_stop(self) -> None:
        self.pool.request_stop()

    @property
    def stopping(self) -> bool:
        return self.pool.stopping

    def _enter(self, report: MangaRunReport, phase: RunPhase) -> None:
        report.phase = phase
        self.observer.on_phase(report.manga_id, phase)
        log.debug(f"{report.manga_id}: {phase.value}")

    async def run(
        self,
        manga_id: str,
        config: RunConfig | None = None,
        index: MangaIndex | None = None,
        only_ids: set[str] | None = None,
        forced_ids: set[str] | None = None,
    ) -> MangaRunReport:
        """
        Processes one manga. Catalog failures end this manga with an error in
        the report; ledger failures propagate and abort the run.
        """
        config = config or self.config
        report = MangaRunReport(manga_id=manga_id)

        self._enter(report, RunPhase.RESOLVING)
        if index is None:
            try:
                index = await self.catalog.resolve_manga(manga_id, config.database_offset)
            except (CatalogError, NetworkTransientError, NetworkPermanentError) as e:
                log.error(f"[red]✗ Could not resolve manga {escape(manga_id)}: {e}[/red]")
                await self.ledger.log_event(f"Resolve failed: {e}", "ERROR", manga_id)
                report.error = str(e)
                self._enter(report, RunPhase.PARTIAL_FAILURE)
                return report

        manga = index.manga
        manga.folder = manga_folder_name(manga, config.folder, config.title)
        report.manga = manga
        output_dir = config.cwd / manga.folder
        report.output_dir = output_dir
        existed_before = output_dir.is_dir()
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)
        log.info(f"[bold cyan]{escape(manga.title)}[/bold cyan] [dim]({manga.id})[/dim]")

        self._enter(report, RunPhase.SELECTING)
        entries = await self.ledger.chapters_for(manga.id)
        selection = await asyncio.to_thread(
            select_chapters,
            index.chapters,
            config,
            entries,
            lambda c: archive_path_for(output_dir, manga.folder, c),
            only_ids,
            forced_ids,
        )
        for chapter, path in selection.adopted:
            await self.ledger.adopt_archive(
                chapter,
                config.tier.value,
                str(path),
                f"Adopted existing archive {path.name}",
            )
        report.skipped = selection.skipped
        for skipped in selection.skipped:
            self.stats.record_skip(skipped.reason)
        report.zero_eligible = selection.eligible_count == 0
        log.info(
            f"  {len(selection.jobs)} chapter(s) to download, "
            f"{len(selection.skipped)} skipped"
        )

        self._enter(report, RunPhase.DOWNLOADING)
        results = await asyncio.gather(
            *(self._run_chapter(job, manga, output_dir, config) for job in selection.jobs)
        )
        for job, state in zip(selection.jobs, results):
            if state is ChapterState.ARCHIVED:
                report.archived.append(job.chapter)
            elif state is ChapterState.FAILED:
                report.failed.append(job.chapter)
            else:
                report.skipped.append(SkippedChapter(job.chapter, "interrupted"))
                self.stats.record_skip("interrupted")

        self._enter(report, RunPhase.FINALIZING)
        await self._finalize(report, manga, output_dir, existed_before, config)

        self.stats.manga_processed.add(manga.id)
        if report.failed:
            self.stats.manga_partial.add(manga.id)
            self._enter(report, RunPhase.PARTIAL_FAILURE)
        else:
            self._enter(report, RunPhase.DONE)
        return report

    async def _run_chapter(
        self, job: DownloadJob, manga: Manga, output_dir: Path, config: RunConfig
    ) -> ChapterState | None:
        """Runs one chapter pipeline. Returns None if it never started."""
        chapter = job.chapter
        if self.stopping:
            return None

        previously_archived = chapter.state is ChapterState.ARCHIVED
        if not previously_archived:
            await self.ledger.transition(chapter, ChapterState.DOWNLOADING)
        self.observer.on_chapter(chapter, ChapterState.DOWNLOADING)

        try:
            refs, tier = await self.catalog.resolve_pages(chapter, job.tier)
        except (CatalogError, NetworkTransientError, NetworkPermanentError) as e:
            state = await self.assembler.fail(
                chapter, f"page manifest unavailable: {e}", previously_archived
            )
            return self._chapter_done(chapter, state)
        if not refs:
            state = await self.assembler.fail(
                chapter, "catalog lists no pages", previously_archived
            )
            return self._chapter_done(chapter, state)

        staging_dir = staging_dir_for(config.cache_dir, manga.folder, chapter)
        report = await self.pool.fetch_chapter(
            chapter, refs, staging_dir, self.observer.on_page
        )
        self.stats.record_pages(
            fetched=len(report.outcomes) - len(report.failed_pages),
            failed=len(report.failed_pages),
            size=report.bytes_fetched,
        )
        state = await self.assembler.assemble(
            report,
            archive_path_for(output_dir, manga.folder, chapter),
            staging_dir,
            tier,
            previously_archived,
        )
        return self._chapter_done(chapter, state)

    def _chapter_done(self, chapter: Chapter, state: ChapterState) -> ChapterState:
        if state is ChapterState.ARCHIVED:
            self.stats.chapters_archived += 1
        else:
            self.stats.chapters_failed += 1
        self.observer.on_chapter(chapter, state)
        return state

    async def _finalize(
        self,
        report: MangaRunReport,
        manga: Manga,
        output_dir: Path,
        existed_before: bool,
        config: RunConfig,
    ) -> None:
        if report.zero_eligible:
            log.info(
                f"  [yellow]No chapters of '{escape(manga.title)}' match the "
                "requested filters.[/yellow]"
            )
            await asyncio.to_thread(
                self.assembler.remove_empty_output, output_dir, existed_before
            )
            await self.ledger.log_event(
                "No eligible chapters; nothing tracked", "WARNING", manga.id
            )
        else:
            await self.assembler.write_manga_assets(
                manga, output_dir, self.catalog, config.stat
            )
            await self.ledger.put_manga(
                manga,
                config.lang,
                f"Run finished: {len(report.archived)} archived, "
                f"{len(report.failed)} failed, {len(report.skipped)} skipped",
            )

        if config.backup and self.backup_manager is not None:
            await asyncio.to_thread(self.backup_manager.snapshot)

        try:
            config.cache_dir.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            log.debug("Staging cache still holds failed chapters; keeping it.")
