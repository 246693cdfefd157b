"""
Catalog clients. `CatalogClient` is the boundary the download engine talks to;
`MangaDexClient` implements it over the MangaDex JSON API.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import aiohttp

from mdown import __version__
from mdown.exceptions import (
    CatalogError,
    NetworkPermanentError,
    NetworkTransientError,
    PageMissingError,
)
from mdown.models.catalog import Chapter, Manga, MangaIndex, PageRef, QualityTier
from mdown.utils.formatting import pick_localized

from .rate_limiter import AdaptiveRateLimiter

log = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {408, 425, 429, 500, 502, 503, 504}
_MISSING_STATUSES = {404, 410}


def raise_for_status(status: int, url: str, missing_error: type = PageMissingError) -> None:
    """Maps an HTTP status onto the transient/permanent error split."""
    if status < 400:
        return
    if status in _RETRYABLE_STATUSES:
        raise NetworkTransientError(f"HTTP {status} from {url}")
    if status in _MISSING_STATUSES:
        raise missing_error(f"HTTP {status}: {url} not found", status=status)
    raise NetworkPermanentError(f"HTTP {status} from {url}", status=status)


class CatalogClient(ABC):
    """The operations the download engine needs from a manga catalog."""

    @abstractmethod
    async def resolve_manga(self, manga_id: str, database_offset: int = 0) -> MangaIndex:
        """Returns metadata and the chapter index, skipping `database_offset` raw entries."""

    @abstractmethod
    async def resolve_pages(
        self, chapter: Chapter, tier: QualityTier
    ) -> tuple[list[PageRef], QualityTier]:
        """Returns the page refs of a chapter and the tier they were resolved for."""

    @abstractmethod
    def fetch_page(self, ref: PageRef) -> AsyncIterator[bytes]:
        """Streams the bytes of one page."""

    @abstractmethod
    async def fetch_cover(self, manga: Manga) -> bytes | None: ...

    @abstractmethod
    async def fetch_statistics(self, manga_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def search(self, title: str) -> str | None: ...

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class MangaDexClient(CatalogClient):
    """
    Async client for the MangaDex API.

    Features:
    - Shared connection pool sized from the page concurrency budget
    - Adaptive rate limiting for API (not image) requests
    - Retries with exponential back-off for transient API failures
    """

    BASE_URL = "https://api.mangadex.org/"
    COVER_URL = "https://uploads.mangadex.org/covers/"
    FEED_LIMIT = 500
    CHUNK_SIZE = 65536
    CONTENT_RATINGS = ("safe", "suggestive", "erotica", "pornographic")

    def __init__(
        self,
        max_connections: int = 40,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        language: str = "en",
    ):
        self.max_connections = max_connections
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.language = language if language != "*" else "en"
        self._session: aiohttp.ClientSession | None = None
        self._rate_limiter = AdaptiveRateLimiter()

    async def _initialize_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_connections + 4,
                limit_per_host=self.max_connections,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": f"mdown/{__version__}"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=60),
            )
        return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def api_call(self, endpoint: str, params: Any = None) -> dict[str, Any]:
        """
        Makes an API call with rate limiting and retry on transient failures.

        Raises:
            NetworkTransientError: If every attempt failed transiently.
            NetworkPermanentError: On a non-retryable HTTP status.
        """
        session = await self._initialize_session()
        url = self.BASE_URL + endpoint
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            await self._rate_limiter.acquire()
            try:
                async with session.get(url, params=params) as r:
                    if r.status == 429:
                        retry_after = r.headers.get("X-RateLimit-Retry-After")
                        delay = None
                        if retry_after and retry_after.isdigit():
                            delay = max(0.0, float(retry_after) - time.time())
                            delay = min(delay, 60.0)
                        await self._rate_limiter.on_429(delay)
                    raise_for_status(r.status, url, missing_error=NetworkPermanentError)
                    return await r.json()
            except NetworkTransientError as e:
                last_error = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = NetworkTransientError(f"{type(e).__name__}: {e}")
            log.debug(
                f"API call to {endpoint} failed (attempt {attempt}/{self.max_attempts}):"
                f" {last_error}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
        raise last_error or NetworkTransientError(f"API call to {endpoint} failed")

    def _parse_manga(self, data: dict[str, Any]) -> Manga:
        attrs = data.get("attributes") or {}
        cover = next(
            (
                (rel.get("attributes") or {}).get("fileName", "")
                for rel in data.get("relationships", [])
                if rel.get("type") == "cover_art"
            ),
            "",
        )
        tags = [
            pick_localized((tag.get("attributes") or {}).get("name"))
            for tag in attrs.get("tags", [])
        ]
        return Manga(
            id=data["id"],
            title=pick_localized(attrs.get("title"), attrs.get("altTitles"), self.language),
            status=attrs.get("status") or "",
            cover=cover,
            description=pick_localized(attrs.get("description"), None, self.language),
            original_language=attrs.get("originalLanguage") or "",
            available_languages=[
                lang for lang in attrs.get("availableTranslatedLanguages") or [] if lang
            ],
            tags=[t for t in tags if t],
        )

    @staticmethod
    def _parse_chapter(manga_id: str, item: dict[str, Any]) -> Chapter:
        attrs = item.get("attributes") or {}
        groups = [
            (rel.get("attributes") or {}).get("name", "")
            for rel in item.get("relationships", [])
            if rel.get("type") == "scanlation_group"
        ]
        return Chapter(
            id=item["id"],
            manga_id=manga_id,
            number=attrs.get("chapter") or "",
            volume=attrs.get("volume") or "",
            language=attrs.get("translatedLanguage") or "",
            title=attrs.get("title") or "",
            pages=int(attrs.get("pages") or 0),
            updated_at=attrs.get("updatedAt") or "",
            external_url=attrs.get("externalUrl"),
            groups=[g for g in groups if g],
        )

    async def resolve_manga(self, manga_id: str, database_offset: int = 0) -> MangaIndex:
        try:
            response = await self.api_call(
                f"manga/{manga_id}", params=[("includes[]", "cover_art")]
            )
        except NetworkPermanentError as e:
            raise CatalogError(f"Manga '{manga_id}' could not be resolved: {e}") from e
        if not isinstance(response.get("data"), dict):
            raise CatalogError(f"Malformed catalog response for manga '{manga_id}'.")
        manga = self._parse_manga(response["data"])

        chapters: list[Chapter] = []
        page = 0
        while True:
            params = [
                ("limit", str(self.FEED_LIMIT)),
                ("offset", str(database_offset + self.FEED_LIMIT * page)),
                ("includes[]", "scanlation_group"),
            ]
            params += [("contentRating[]", rating) for rating in self.CONTENT_RATINGS]
            feed = await self.api_call(f"manga/{manga_id}/feed", params=params)
            items = feed.get("data") or []
            chapters.extend(self._parse_chapter(manga.id, item) for item in items)
            if len(items) < self.FEED_LIMIT:
                break
            page += 1

        log.debug(f"Resolved '{manga.title}' with {len(chapters)} index entries")
        return MangaIndex(manga=manga, chapters=chapters)

    async def resolve_pages(
        self, chapter: Chapter, tier: QualityTier
    ) -> tuple[list[PageRef], QualityTier]:
        response = await self.api_call(f"at-home/server/{chapter.id}")
        base_url = response.get("baseUrl")
        manifest = response.get("chapter") or {}
        if not base_url or "hash" not in manifest:
            raise CatalogError(f"Malformed page manifest for chapter {chapter.id}.")

        effective = tier
        files = manifest.get(tier.manifest_key) or []
        if not files:
            effective = tier.other
            files = manifest.get(effective.manifest_key) or []
            if files:
                log.warning(
                    f"[yellow]{chapter.label} has no {tier.value} pages, using "
                    f"{effective.value} instead.[/yellow]"
                )
        refs = [
            PageRef(
                index=i,
                url=f"{base_url}/{effective.url_segment}/{manifest['hash']}/{name}",
                file_name=name,
            )
            for i, name in enumerate(files)
        ]
        return refs, effective

    async def fetch_page(self, ref: PageRef) -> AsyncIterator[bytes]:
        session = await self._initialize_session()
        try:
            async with session.get(ref.url) as response:
                raise_for_status(response.status, ref.url)
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkTransientError(f"{type(e).__name__}: {e}") from e

    async def fetch_cover(self, manga: Manga) -> bytes | None:
        if not manga.cover:
            return None
        session = await self._initialize_session()
        url = f"{self.COVER_URL}{manga.id}/{manga.cover}"
        try:
            async with session.get(url) as response:
                raise_for_status(response.status, url)
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkTransientError(f"{type(e).__name__}: {e}") from e

    async def fetch_statistics(self, manga_id: str) -> dict[str, Any]:
        response = await self.api_call(f"statistics/manga/{manga_id}")
        return (response.get("statistics") or {}).get(manga_id) or {}

    async def search(self, title: str) -> str | None:
        response = await self.api_call(
            "manga", params=[("title", title), ("limit", "1")]
        )
        results = response.get("data") or []
        return results[0]["id"] if results else None
