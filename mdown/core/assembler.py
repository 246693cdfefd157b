"""
Turns a fetched chapter into an archive, or records why it could not.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

from rich.markup import escape

from mdown.api.client import CatalogClient
from mdown.exceptions import CatalogError, NetworkPermanentError, NetworkTransientError
from mdown.media.integrity import PageIntegrityChecker
from mdown.media.packager import build_metadata, verify_archive, write_archive
from mdown.models.catalog import (
    Chapter,
    ChapterFetchReport,
    ChapterState,
    Manga,
    QualityTier,
)
from mdown.storage.ledger import ProgressLedger
from mdown.utils.formatting import describe_statistics

log = logging.getLogger(__name__)

DEFAULT_FILE_BUDGET = 40


class ChapterAssembler:
    """
    Packages verified pages and promotes the archive into the output folder.

    The archive is written next to its final path with a '.tmp' suffix and only
    renamed into place once it lists every page, so a reader never sees a
    partial archive and an earlier archive survives a failed replacement.
    """

    def __init__(
        self, ledger: ProgressLedger, file_budget: asyncio.Semaphore | None = None
    ):
        self.ledger = ledger
        # Usually the fetch pool's semaphore.
        self._file_budget = (
            file_budget if file_budget is not None else asyncio.Semaphore(DEFAULT_FILE_BUDGET)
        )

    async def _check_page(self, path: Path) -> bool:
        async with self._file_budget:
            return await asyncio.to_thread(PageIntegrityChecker.check_image, path)

    async def fail(self, chapter: Chapter, reason: str, previously_archived: bool) -> ChapterState:
        """
        Records a chapter failure. A chapter that already had an archive keeps
        its archived row and file; the failed replacement is only logged.
        """
        log.error(f"  [red]✗ Failed:[/] {escape(chapter.label)} ({escape(reason)})")
        if previously_archived:
            await self.ledger.log_event(
                f"Replacement of {chapter.label} failed: {reason}",
                "ERROR",
                chapter.manga_id,
                chapter.id,
            )
            return ChapterState.FAILED
        await self.ledger.transition(chapter, ChapterState.FAILED, reason)
        return ChapterState.FAILED

    async def assemble(
        self,
        report: ChapterFetchReport,
        archive_path: Path,
        staging_dir: Path,
        tier: QualityTier,
        previously_archived: bool = False,
    ) -> ChapterState:
        chapter = report.chapter
        if not report.complete:
            missing = ", ".join(str(o.index) for o in report.failed_pages)
            first_error = next((o.error for o in report.failed_pages if o.error), "")
            # Staged pages stay in place for inspection and for the next attempt.
            return await self.fail(
                chapter,
                f"{len(report.failed_pages)} page(s) failed [{missing}] {first_error}".strip(),
                previously_archived,
            )

        if not previously_archived:
            await self.ledger.transition(chapter, ChapterState.ASSEMBLING)

        pages = [o.staging_path for o in report.outcomes]
        checks = await asyncio.gather(*(self._check_page(p) for p in pages))
        if not all(checks):
            bad = [str(o.index) for o, ok in zip(report.outcomes, checks) if not ok]
            return await self.fail(
                chapter,
                f"staged page(s) {', '.join(bad)} no longer verify",
                previously_archived,
            )

        tmp_path = archive_path.with_name(archive_path.name + ".tmp")
        metadata = build_metadata(chapter, tier, len(pages))
        try:
            await asyncio.to_thread(write_archive, tmp_path, pages, metadata)
            if not await asyncio.to_thread(verify_archive, tmp_path, len(pages)):
                raise OSError("packaged archive is missing pages")
            await asyncio.to_thread(os.replace, tmp_path, archive_path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            return await self.fail(chapter, f"packaging failed: {e}", previously_archived)

        if previously_archived:
            await self.ledger.refresh_archived(chapter, tier.value, str(archive_path))
        else:
            await self.ledger.transition(
                chapter,
                ChapterState.ARCHIVED,
                f"{chapter.label} archived ({len(pages)} pages)",
                tier=tier.value,
                archive_path=str(archive_path),
            )
        chapter.state = ChapterState.ARCHIVED
        await asyncio.to_thread(shutil.rmtree, staging_dir, ignore_errors=True)
        log.info(f"  [green]✓ Archived:[/] [dim]{escape(archive_path.name)}[/dim]")
        return ChapterState.ARCHIVED

    async def write_manga_assets(
        self, manga: Manga, output_dir: Path, catalog: CatalogClient, stat: bool = False
    ) -> None:
        """
        Writes the cover, the description and, if requested, a statistics page.
        Failures here are reported but never fail the manga.
        """
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)

        if manga.description:
            await asyncio.to_thread(
                (output_dir / "_description.txt").write_text,
                manga.description,
                "utf-8",
            )

        try:
            cover = await catalog.fetch_cover(manga)
            if cover and PageIntegrityChecker.check_bytes(cover):
                ext = PageIntegrityChecker.image_extension(cover)
                await asyncio.to_thread((output_dir / f"_cover.{ext}").write_bytes, cover)
            elif cover:
                log.warning(f"[yellow]Cover for '{escape(manga.title)}' is not a valid image.[/yellow]")
        except (NetworkTransientError, NetworkPermanentError, OSError) as e:
            log.warning(f"[yellow]Could not save cover: {e}[/yellow]")

        if stat:
            try:
                stats = await catalog.fetch_statistics(manga.id)
                await asyncio.to_thread(
                    (output_dir / "_statistics.md").write_text,
                    describe_statistics(manga.title, stats),
                    "utf-8",
                )
            except (NetworkTransientError, NetworkPermanentError, CatalogError, OSError) as e:
                log.warning(f"[yellow]Could not save statistics: {e}[/yellow]")

    @staticmethod
    def remove_empty_output(output_dir: Path, existed_before: bool) -> bool:
        """Deletes an output folder this run created for a manga with nothing to offer."""
        if existed_before or not output_dir.is_dir():
            return False
        shutil.rmtree(output_dir)
        log.info(f"[dim]Removed empty folder {escape(output_dir.name)}[/dim]")
        return True
