"""
Utilities for naming output folders and archives, and for parsing manga URLs.
"""

import re
from pathlib import Path

from pathvalidate import sanitize_filename

from mdown.models.catalog import Chapter, Manga

MAX_TITLE_LENGTH = 70

_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_TITLE_URL_PATTERN = re.compile(
    r"mangadex\.org/(?:title|manga)/(?P<id>[0-9a-fA-F-]{36})"
)


def parse_manga_id(url_or_id: str) -> str | None:
    """
    Extracts a manga id from a catalog URL or a bare id.
    Handles 'https://mangadex.org/title/<id>/<slug>' and plain UUIDs.
    """
    value = url_or_id.strip()
    if match := _TITLE_URL_PATTERN.search(value):
        return match.group("id").lower()
    if _UUID_PATTERN.fullmatch(value):
        return value.lower()
    return None


def sanitize_title(title: str) -> str:
    """
    Makes a title safe to use as a file or folder name. Titles longer than the
    limit are cut and marked with a trailing '__'.
    """
    name = sanitize_filename(title.replace("/", " "), platform="universal").strip()
    name = name.rstrip(". ")
    if len(name) > MAX_TITLE_LENGTH:
        name = name[:MAX_TITLE_LENGTH] + "__"
    return name or "untitled"


def manga_folder_name(manga: Manga, folder_option: str = "name", title: str = "") -> str:
    """
    Chooses the output folder for a manga. The 'name' option means the title
    (the override if given, otherwise the catalog title).
    """
    if folder_option and folder_option != "name":
        return sanitize_title(folder_option)
    return sanitize_title(title or manga.title)


def chapter_base_name(manga_name: str, chapter: Chapter) -> str:
    """Builds '<manga> - Vol.<v> Ch.<n> - <title>' for staging folders and archives."""
    parts = [manga_name, "-"]
    if chapter.volume:
        parts.append(f"Vol.{chapter.volume}")
    parts.append(f"Ch.{chapter.number}" if chapter.number else "Oneshot")
    name = " ".join(parts)
    if chapter.title:
        name = f"{name} - {chapter.title}"
    return sanitize_filename(name, platform="universal").rstrip(". ")


def archive_path_for(output_dir: Path, manga_name: str, chapter: Chapter) -> Path:
    return output_dir / f"{chapter_base_name(manga_name, chapter)}.cbz"


def staging_dir_for(cache_dir: Path, manga_name: str, chapter: Chapter) -> Path:
    """One staging directory per chapter; the id suffix keeps same-named chapters apart."""
    return cache_dir / f"{chapter_base_name(manga_name, chapter)} [{chapter.id[:8]}]"
