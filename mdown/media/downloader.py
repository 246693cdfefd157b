"""
Fetches chapter pages into the staging cache under a single concurrency budget
shared by every chapter of the run.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable

import aiofiles
import aiohttp

from mdown.api.client import CatalogClient
from mdown.exceptions import (
    FileIntegrityError,
    NetworkPermanentError,
    NetworkTransientError,
)
from mdown.models.catalog import Chapter, ChapterFetchReport, PageOutcome, PageRef

from .integrity import PageIntegrityChecker

log = logging.getLogger(__name__)

PageCallback = Callable[[Chapter, PageOutcome], None]


class PageFetchPool:
    """
    Downloads pages with bounded concurrency, retries and verification.

    One semaphore is shared across all chapters served by the pool, so the
    budget bounds outbound requests and open files for the whole run. A page
    is streamed into '<index>.<ext>.part', verified, then renamed, which means
    a staged page without the suffix is always complete and is reused when an
    interrupted chapter is resumed.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        max_concurrent: int = 40,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        page_timeout: float = 120.0,
    ):
        self.catalog = catalog
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.page_timeout = page_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._stop = asyncio.Event()
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def file_budget(self) -> asyncio.Semaphore:
        """The semaphore bounding requests and open staging files."""
        return self._semaphore

    def request_stop(self) -> None:
        """Stops scheduling new pages; in-flight fetches are left to finish."""
        if not self._stop.is_set():
            log.info("[yellow]Stop requested, draining in-flight pages...[/yellow]")
        self._stop.set()

    async def fetch_chapter(
        self,
        chapter: Chapter,
        refs: list[PageRef],
        staging_dir: Path,
        on_page: PageCallback | None = None,
    ) -> ChapterFetchReport:
        """
        Fetches every page of a chapter. Returns once each page has either been
        verified or failed permanently, with outcomes ordered by page index.
        """
        await asyncio.to_thread(staging_dir.mkdir, parents=True, exist_ok=True)

        async def _run(ref: PageRef) -> PageOutcome:
            outcome = await self._fetch_page(ref, staging_dir)
            if on_page:
                on_page(chapter, outcome)
            return outcome

        outcomes = await asyncio.gather(*(_run(ref) for ref in refs))
        return ChapterFetchReport(
            chapter=chapter, outcomes=sorted(outcomes, key=lambda o: o.index)
        )

    async def _fetch_page(self, ref: PageRef, staging_dir: Path) -> PageOutcome:
        final_path = staging_dir / ref.staged_name
        part_path = staging_dir / f"{ref.staged_name}.part"
        outcome = PageOutcome(index=ref.index)

        async with self._semaphore:
            if await asyncio.to_thread(final_path.is_file) and await asyncio.to_thread(
                PageIntegrityChecker.check_image, final_path
            ):
                outcome.verified = True
                outcome.staging_path = final_path
                log.debug(f"Reusing staged page {final_path.name}")
                return outcome

            if self._stop.is_set():
                outcome.error = "interrupted"
                return outcome

            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                for attempt in range(1, self.max_attempts + 1):
                    outcome.attempts = attempt
                    try:
                        size = await asyncio.wait_for(
                            self._stream_to(ref, part_path), timeout=self.page_timeout
                        )
                        if not await asyncio.to_thread(
                            PageIntegrityChecker.check_image, part_path
                        ):
                            raise FileIntegrityError(
                                f"Page {ref.index} failed its integrity check."
                            )
                        await asyncio.to_thread(os.replace, part_path, final_path)
                        outcome.verified = True
                        outcome.staging_path = final_path
                        outcome.size = size
                        outcome.error = None
                        return outcome
                    except NetworkPermanentError as e:
                        outcome.error = str(e)
                        log.debug(f"Page {ref.index} failed permanently: {e}")
                        break
                    except (
                        NetworkTransientError,
                        FileIntegrityError,
                        aiohttp.ClientError,
                        asyncio.TimeoutError,
                    ) as e:
                        outcome.error = str(e) or type(e).__name__
                        log.debug(
                            f"Page {ref.index} attempt {attempt}/{self.max_attempts}"
                            f" failed: {outcome.error}"
                        )
                        if self._stop.is_set():
                            break
                        if attempt < self.max_attempts:
                            await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
            finally:
                self.in_flight -= 1
                if part_path.exists():
                    try:
                        os.remove(part_path)
                    except OSError:
                        log.debug(f"Could not remove partial page {part_path}")
        return outcome

    async def _stream_to(self, ref: PageRef, path: Path) -> int:
        size = 0
        async with aiofiles.open(path, "wb") as f:
            async for chunk in self.catalog.fetch_page(ref):
                await f.write(chunk)
                size += len(chunk)
        return size
