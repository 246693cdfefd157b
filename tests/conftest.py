"""Pytest fixtures and an in-memory catalog for mdown tests."""

import asyncio
import threading
import time
from io import BytesIO
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
from PIL import Image

from mdown.api.client import CatalogClient
from mdown.exceptions import CatalogError, NetworkTransientError, PageMissingError
from mdown.models.catalog import Chapter, Manga, MangaIndex, PageRef, QualityTier
from mdown.models.config import RunConfig
from mdown.storage.ledger import ProgressLedger

MANGA_ID = "a1b2c3d4-0000-4000-8000-000000000001"


def make_png(color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (2, 2), color).save(buffer, format="PNG")
    return buffer.getvalue()


PNG_BYTES = make_png()


def make_chapter(
    number: str,
    language: str = "en",
    pages: int = 2,
    volume: str = "",
    chapter_id: str | None = None,
    updated_at: str = "2024-01-01T00:00:00+00:00",
    external_url: str | None = None,
) -> Chapter:
    return Chapter(
        id=chapter_id or f"ch-{language}-{number or 'oneshot'}",
        manga_id=MANGA_ID,
        number=number,
        volume=volume,
        language=language,
        pages=pages,
        updated_at=updated_at,
        external_url=external_url,
    )


class ThreadCounter:
    """Stands in for a blocking page check and records how many ran at once."""

    def __init__(self, delay: float = 0.02):
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def check(self, path: Path) -> bool:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return True


class FakeCatalog(CatalogClient):
    """
    A catalog served from memory.

    `failures` maps (chapter_id, page_index) to either "missing" (permanent)
    or a number of transient failures before the page succeeds. `corrupt`
    holds pages that always return bytes that are not an image.
    """

    def __init__(
        self,
        chapters: list[Chapter],
        manga: Manga | None = None,
        delay: float = 0.0,
    ):
        self.manga = manga or Manga(
            id=MANGA_ID,
            title="Test Manga",
            description="A manga used in tests.",
            cover="cover.png",
        )
        self.chapters = chapters
        self.delay = delay
        self.failures: dict[tuple[str, int], Any] = {}
        self.corrupt: set[tuple[str, int]] = set()
        self.page_delays: dict[int, float] = {}
        self.fetch_calls: list[tuple[str, int]] = []
        self.resolve_calls: list[int] = []
        self.concurrent = 0
        self.peak_concurrent = 0
        self.statistics: dict[str, Any] = {"rating": {"bayesian": 8.1}, "follows": 12}

    async def resolve_manga(self, manga_id: str, database_offset: int = 0) -> MangaIndex:
        self.resolve_calls.append(database_offset)
        if manga_id != self.manga.id:
            raise CatalogError(f"Manga '{manga_id}' could not be resolved.")
        chapters = [
            Chapter(**{**c.__dict__, "groups": list(c.groups)})
            for c in self.chapters[database_offset:]
        ]
        manga = Manga(**{**self.manga.__dict__})
        return MangaIndex(manga=manga, chapters=chapters)

    async def resolve_pages(
        self, chapter: Chapter, tier: QualityTier
    ) -> tuple[list[PageRef], QualityTier]:
        refs = [
            PageRef(index=i, url=f"fake://{chapter.id}/{i}", file_name=f"p{i}.png")
            for i in range(chapter.pages)
        ]
        return refs, tier

    async def fetch_page(self, ref: PageRef) -> AsyncIterator[bytes]:
        chapter_id = ref.url.split("/")[2]
        key = (chapter_id, ref.index)
        self.fetch_calls.append(key)
        self.concurrent += 1
        self.peak_concurrent = max(self.peak_concurrent, self.concurrent)
        try:
            await asyncio.sleep(self.page_delays.get(ref.index, self.delay))
            failure = self.failures.get(key)
            if failure == "missing":
                raise PageMissingError(f"HTTP 404: {ref.url} not found", status=404)
            if isinstance(failure, int) and failure > 0:
                self.failures[key] = failure - 1
                raise NetworkTransientError(f"HTTP 503 from {ref.url}")
            if key in self.corrupt:
                yield b"not an image"
                return
            half = len(PNG_BYTES) // 2
            yield PNG_BYTES[:half]
            yield PNG_BYTES[half:]
        finally:
            self.concurrent -= 1

    async def fetch_cover(self, manga: Manga) -> bytes | None:
        return PNG_BYTES if manga.cover else None

    async def fetch_statistics(self, manga_id: str) -> dict[str, Any]:
        return self.statistics

    async def search(self, title: str) -> str | None:
        return self.manga.id if title.lower() in self.manga.title.lower() else None


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def ledger(data_dir: Path) -> ProgressLedger:
    return ProgressLedger(data_dir)


@pytest.fixture
def make_config(work_dir: Path):
    """Builds a RunConfig rooted in the test working directory."""

    def _make(**overrides: Any) -> RunConfig:
        options: dict[str, Any] = {"cwd": work_dir, "backup": False, "max_consecutive": 4}
        options.update(overrides)
        return RunConfig(**options)

    return _make
