"""Tests for the MangaDex client's response handling."""

from unittest.mock import AsyncMock, patch

import pytest

from mdown.api.client import MangaDexClient, raise_for_status
from mdown.exceptions import (
    CatalogError,
    NetworkPermanentError,
    NetworkTransientError,
    PageMissingError,
)
from mdown.models.catalog import Chapter, QualityTier

MANGA_ID = "a1b2c3d4-0000-4000-8000-000000000001"


def _manga_payload() -> dict:
    return {
        "data": {
            "id": MANGA_ID,
            "attributes": {
                "title": {"ja-ro": "Tesuto"},
                "altTitles": [{"en": "Test Manga"}],
                "description": {"en": "About a test."},
                "status": "ongoing",
                "originalLanguage": "ja",
                "availableTranslatedLanguages": ["en", "fr", None],
                "tags": [{"attributes": {"name": {"en": "Action"}}}],
            },
            "relationships": [
                {"type": "author", "id": "x"},
                {"type": "cover_art", "attributes": {"fileName": "cover.jpg"}},
            ],
        }
    }


def _feed_item(number: str) -> dict:
    return {
        "id": f"chapter-{number}",
        "attributes": {
            "chapter": number,
            "volume": None,
            "translatedLanguage": "en",
            "title": f"Title {number}",
            "pages": 12,
            "updatedAt": "2024-03-01T00:00:00+00:00",
            "externalUrl": None,
        },
        "relationships": [
            {"type": "scanlation_group", "attributes": {"name": "Group A"}},
        ],
    }


class TestRaiseForStatus:
    def test_status_mapping(self) -> None:
        raise_for_status(200, "u")
        with pytest.raises(NetworkTransientError):
            raise_for_status(503, "u")
        with pytest.raises(NetworkTransientError):
            raise_for_status(429, "u")
        with pytest.raises(PageMissingError) as missing:
            raise_for_status(404, "u")
        assert missing.value.status == 404
        with pytest.raises(NetworkPermanentError):
            raise_for_status(403, "u")


class TestMangaDexClient:
    @pytest.mark.asyncio
    async def test_resolve_manga_pages_through_the_feed(self) -> None:
        client = MangaDexClient()
        first_page = {"data": [_feed_item(str(n)) for n in range(client.FEED_LIMIT)]}
        second_page = {"data": [_feed_item("x1"), _feed_item("x2")]}
        api_call = AsyncMock(side_effect=[_manga_payload(), first_page, second_page])

        with patch.object(client, "api_call", api_call):
            index = await client.resolve_manga(MANGA_ID, database_offset=7)

        assert index.manga.title == "Test Manga"
        assert index.manga.cover == "cover.jpg"
        assert index.manga.available_languages == ["en", "fr"]
        assert index.manga.tags == ["Action"]
        assert len(index.chapters) == client.FEED_LIMIT + 2
        assert index.chapters[0].groups == ["Group A"]
        assert index.chapters[0].volume == ""
        offsets = [dict(call.kwargs["params"])["offset"] for call in api_call.await_args_list[1:]]
        assert offsets == ["7", str(7 + client.FEED_LIMIT)]

    @pytest.mark.asyncio
    async def test_unknown_manga_is_a_catalog_error(self) -> None:
        client = MangaDexClient()
        api_call = AsyncMock(side_effect=NetworkPermanentError("HTTP 404", status=404))

        with patch.object(client, "api_call", api_call):
            with pytest.raises(CatalogError):
                await client.resolve_manga(MANGA_ID)

    @pytest.mark.asyncio
    async def test_resolve_pages_builds_ordered_refs(self) -> None:
        client = MangaDexClient()
        manifest = {
            "baseUrl": "https://node.example",
            "chapter": {"hash": "abc", "data": ["x1.png", "x2.jpg"], "dataSaver": []},
        }
        chapter = Chapter(id="ch", manga_id=MANGA_ID, number="1", pages=2)

        with patch.object(client, "api_call", AsyncMock(return_value=manifest)):
            refs, tier = await client.resolve_pages(chapter, QualityTier.NORMAL)

        assert tier is QualityTier.NORMAL
        assert [r.url for r in refs] == [
            "https://node.example/data/abc/x1.png",
            "https://node.example/data/abc/x2.jpg",
        ]
        assert [r.staged_name for r in refs] == ["0000.png", "0001.jpg"]

    @pytest.mark.asyncio
    async def test_resolve_pages_falls_back_to_other_tier(self) -> None:
        client = MangaDexClient()
        manifest = {
            "baseUrl": "https://node.example",
            "chapter": {"hash": "abc", "data": [], "dataSaver": ["s1.jpg"]},
        }
        chapter = Chapter(id="ch", manga_id=MANGA_ID, number="1", pages=1)

        with patch.object(client, "api_call", AsyncMock(return_value=manifest)):
            refs, tier = await client.resolve_pages(chapter, QualityTier.NORMAL)

        assert tier is QualityTier.SAVER
        assert refs[0].url == "https://node.example/data-saver/abc/s1.jpg"

    @pytest.mark.asyncio
    async def test_malformed_manifest_is_rejected(self) -> None:
        client = MangaDexClient()
        chapter = Chapter(id="ch", manga_id=MANGA_ID)
        with patch.object(client, "api_call", AsyncMock(return_value={"result": "error"})):
            with pytest.raises(CatalogError):
                await client.resolve_pages(chapter, QualityTier.NORMAL)

    @pytest.mark.asyncio
    async def test_search_returns_first_hit(self) -> None:
        client = MangaDexClient()
        api_call = AsyncMock(side_effect=[{"data": [{"id": MANGA_ID}]}, {"data": []}])
        with patch.object(client, "api_call", api_call):
            assert await client.search("test") == MANGA_ID
            assert await client.search("nothing") is None

    @pytest.mark.asyncio
    async def test_statistics_are_unwrapped(self) -> None:
        client = MangaDexClient()
        payload = {"statistics": {MANGA_ID: {"follows": 3}}}
        with patch.object(client, "api_call", AsyncMock(return_value=payload)):
            assert await client.fetch_statistics(MANGA_ID) == {"follows": 3}
