"""
A download session: the working-directory lock, the ledger, the backups and
the orchestrator wired together for one invocation.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from rich.markup import escape

from mdown.api.client import CatalogClient
from mdown.exceptions import CatalogError, ConfigurationError
from mdown.models.catalog import Chapter, LedgerDiff, MangaIndex
from mdown.models.config import RunConfig
from mdown.models.stats import RunStats
from mdown.storage.backup import BackupManager
from mdown.storage.ledger import ProgressLedger
from mdown.storage.lock import LockManager, SharedSessionLock
from mdown.utils.path import parse_manga_id

from .orchestrator import DownloadOrchestrator, MangaRunReport, RunObserver

log = logging.getLogger(__name__)


def _tracked_chapters(index: MangaIndex, lang: str) -> list[Chapter]:
    return [
        c
        for c in index.chapters
        if (lang == "*" or c.language == lang) and c.pages > 0 and not c.external_url
    ]


class DownloadSession:
    """
    Owns the resources of one invocation.

    Interactive sessions take the working-directory lock on entry and release
    it on exit. Shared sessions take no lock and end only via `terminate()`.
    """

    def __init__(
        self,
        config: RunConfig,
        catalog: CatalogClient,
        data_dir: Path,
        ledger: ProgressLedger | None = None,
        observer: RunObserver | None = None,
        lock_clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.catalog = catalog
        self.ledger = ledger or ProgressLedger(data_dir)
        self.backup_manager = BackupManager(data_dir)
        if config.shared_mode:
            self.lock: LockManager | SharedSessionLock = SharedSessionLock()
        else:
            self.lock = LockManager(config.lock_path, clock=lock_clock)
        self.stats = RunStats()
        self.orchestrator = DownloadOrchestrator(
            config,
            catalog,
            self.ledger,
            self.backup_manager,
            observer,
            self.stats,
        )
        self._terminated = asyncio.Event()

    async def __aenter__(self) -> "DownloadSession":
        if self.config.force_delete and self.lock.force_delete():
            log.warning("[yellow]Existing lock file deleted (--force-delete).[/yellow]")
        self.lock.acquire()
        try:
            await self.ledger.fail_interrupted()
        except BaseException:
            self.lock.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.lock.release()

    def request_stop(self) -> None:
        """Graceful drain: no new pages start, in-flight pages finish."""
        self.orchestrator.request_stop()

    def terminate(self) -> None:
        """Explicit shutdown for shared sessions."""
        self.request_stop()
        self._terminated.set()

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    async def resolve_target(self, target: str) -> str:
        """Turns a URL, an id or (with --search) a title into a manga id."""
        if self.config.search:
            manga_id = await self.catalog.search(target)
            if not manga_id:
                raise CatalogError(f"No manga found for '{target}'.")
            return manga_id
        manga_id = parse_manga_id(target)
        if not manga_id:
            raise ConfigurationError(f"'{target}' is not a manga URL or id.")
        return manga_id

    async def download(self, targets: list[str]) -> list[MangaRunReport]:
        """Downloads each target manga in turn."""
        reports = []
        for target in targets:
            if self.orchestrator.stopping:
                break
            manga_id = await self.resolve_target(target)
            reports.append(await self.orchestrator.run(manga_id))
        return reports

    async def _diffs(self) -> list[tuple[dict, LedgerDiff, MangaIndex]]:
        results = []
        for row in await self.ledger.list_manga():
            try:
                index = await self.catalog.resolve_manga(row["id"])
            except CatalogError as e:
                log.warning(f"[yellow]Skipping {escape(row['title'] or row['id'])}: {e}[/yellow]")
                continue
            lang = row.get("language") or self.config.lang
            diff = await self.ledger.diff(row["id"], _tracked_chapters(index, lang))
            results.append((row, diff, index))
        return results

    async def check(self) -> list[tuple[dict, LedgerDiff]]:
        """Reports, per tracked manga, what an update would download."""
        return [(row, diff) for row, diff, _ in await self._diffs()]

    async def update(self) -> list[MangaRunReport]:
        """Downloads the diff of every tracked manga."""
        reports = []
        for row, diff, index in await self._diffs():
            if diff.is_empty or self.orchestrator.stopping:
                continue
            config = self.config.model_copy(
                update={
                    "lang": row.get("language") or self.config.lang,
                    "folder": row.get("folder") or self.config.folder,
                }
            )
            reports.append(
                await self.orchestrator.run(
                    row["id"],
                    config=config,
                    index=index,
                    only_ids=diff.chapter_ids,
                    forced_ids=diff.forced_ids,
                )
            )
        return reports
