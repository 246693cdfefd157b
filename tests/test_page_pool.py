"""Tests for the shared page fetch pool."""

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import PNG_BYTES, FakeCatalog, ThreadCounter, make_chapter
from mdown.media.downloader import PageFetchPool
from mdown.media.integrity import PageIntegrityChecker
from mdown.models.catalog import QualityTier


async def _fetch(pool: PageFetchPool, catalog: FakeCatalog, chapter, staging: Path):
    refs, _ = await catalog.resolve_pages(chapter, QualityTier.NORMAL)
    return await pool.fetch_chapter(chapter, refs, staging)


class TestPageFetchPool:
    @pytest.mark.asyncio
    async def test_pages_are_staged_and_verified(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=3)
        catalog = FakeCatalog([chapter])
        pool = PageFetchPool(catalog, max_concurrent=2, base_delay=0)

        report = await _fetch(pool, catalog, chapter, tmp_path / "stage")

        assert report.complete
        assert [o.index for o in report.outcomes] == [0, 1, 2]
        assert [o.staging_path.name for o in report.outcomes] == [
            "0000.png",
            "0001.png",
            "0002.png",
        ]
        assert report.bytes_fetched == 3 * len(PNG_BYTES)
        assert not list((tmp_path / "stage").glob("*.part"))

    @pytest.mark.asyncio
    async def test_budget_bounds_requests_across_chapters(self, tmp_path: Path) -> None:
        chapters = [make_chapter(str(n), pages=10) for n in range(1, 4)]
        catalog = FakeCatalog(chapters, delay=0.01)
        pool = PageFetchPool(catalog, max_concurrent=4, base_delay=0)

        reports = await asyncio.gather(
            *(_fetch(pool, catalog, c, tmp_path / c.id) for c in chapters)
        )

        assert all(r.complete for r in reports)
        assert len(catalog.fetch_calls) == 30
        assert catalog.peak_concurrent <= 4
        assert pool.peak_in_flight <= 4
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=2)
        catalog = FakeCatalog([chapter])
        catalog.failures[(chapter.id, 1)] = 2
        pool = PageFetchPool(catalog, max_attempts=3, base_delay=0)

        report = await _fetch(pool, catalog, chapter, tmp_path / "stage")

        assert report.complete
        assert report.outcomes[1].attempts == 3

    @pytest.mark.asyncio
    async def test_missing_page_fails_without_retry(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=2)
        catalog = FakeCatalog([chapter])
        catalog.failures[(chapter.id, 0)] = "missing"
        pool = PageFetchPool(catalog, max_attempts=3, base_delay=0)

        report = await _fetch(pool, catalog, chapter, tmp_path / "stage")

        assert not report.complete
        failed = report.failed_pages
        assert [o.index for o in failed] == [0]
        assert failed[0].attempts == 1
        assert "404" in failed[0].error
        assert catalog.fetch_calls.count((chapter.id, 0)) == 1

    @pytest.mark.asyncio
    async def test_corrupt_payload_exhausts_attempts(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=1)
        catalog = FakeCatalog([chapter])
        catalog.corrupt.add((chapter.id, 0))
        pool = PageFetchPool(catalog, max_attempts=2, base_delay=0)

        report = await _fetch(pool, catalog, chapter, tmp_path / "stage")

        assert report.failed_pages[0].attempts == 2
        assert not any((tmp_path / "stage").iterdir())

    @pytest.mark.asyncio
    async def test_verified_staged_pages_are_reused(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=3)
        catalog = FakeCatalog([chapter])
        staging = tmp_path / "stage"
        staging.mkdir()
        (staging / "0001.png").write_bytes(PNG_BYTES)
        (staging / "0002.png").write_bytes(b"truncated")

        report = await _fetch(PageFetchPool(catalog, base_delay=0), catalog, chapter, staging)

        assert report.complete
        assert sorted(i for _, i in catalog.fetch_calls) == [0, 2]

    @pytest.mark.asyncio
    async def test_stop_request_leaves_pages_unstarted(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=2)
        catalog = FakeCatalog([chapter])
        pool = PageFetchPool(catalog, base_delay=0)
        pool.request_stop()

        report = await _fetch(pool, catalog, chapter, tmp_path / "stage")

        assert pool.stopping
        assert catalog.fetch_calls == []
        assert {o.error for o in report.outcomes} == {"interrupted"}

    @pytest.mark.asyncio
    async def test_staged_page_checks_share_the_budget(self, tmp_path: Path) -> None:
        chapter = make_chapter("1", pages=6)
        catalog = FakeCatalog([chapter])
        staging = tmp_path / "stage"
        staging.mkdir()
        for i in range(6):
            (staging / f"{i:04d}.png").write_bytes(PNG_BYTES)
        counter = ThreadCounter()

        with patch.object(PageIntegrityChecker, "check_image", counter.check):
            pool = PageFetchPool(catalog, max_concurrent=2, base_delay=0)
            report = await _fetch(pool, catalog, chapter, staging)

        assert report.complete
        assert catalog.fetch_calls == []
        assert counter.calls == 6
        assert counter.peak <= 2
