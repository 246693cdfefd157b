"""Tests for naming helpers and URL parsing."""

from pathlib import Path

from mdown.models.catalog import Chapter, Manga
from mdown.utils.formatting import (
    describe_statistics,
    format_duration,
    format_size,
    pick_localized,
)
from mdown.utils.path import (
    MAX_TITLE_LENGTH,
    archive_path_for,
    chapter_base_name,
    manga_folder_name,
    parse_manga_id,
    sanitize_title,
    staging_dir_for,
)

MANGA_ID = "a1b2c3d4-0000-4000-8000-000000000001"


def test_parse_manga_id_accepts_urls_and_bare_ids() -> None:
    assert parse_manga_id(f"https://mangadex.org/title/{MANGA_ID}/some-slug") == MANGA_ID
    assert parse_manga_id(f"mangadex.org/manga/{MANGA_ID.upper()}") == MANGA_ID
    assert parse_manga_id(f"  {MANGA_ID}  ") == MANGA_ID
    assert parse_manga_id("https://example.com/title/123") is None
    assert parse_manga_id("") is None


def test_sanitize_title_strips_unsafe_characters() -> None:
    assert sanitize_title('What?: A "Story"/Part 2.') == "What A Story Part 2"


def test_long_titles_are_truncated_idempotently() -> None:
    name = sanitize_title("x" * 200)
    assert name == "x" * MAX_TITLE_LENGTH + "__"
    assert sanitize_title(name) == name


def test_folder_name_prefers_explicit_folder_then_title_override() -> None:
    manga = Manga(id=MANGA_ID, title="Catalog Title")
    assert manga_folder_name(manga) == "Catalog Title"
    assert manga_folder_name(manga, "name", "My Title") == "My Title"
    assert manga_folder_name(manga, "Library") == "Library"


def test_chapter_names(tmp_path: Path) -> None:
    chapter = Chapter(id="0123456789", manga_id=MANGA_ID, number="12", volume="3", title="End")
    oneshot = Chapter(id="abcdefghij", manga_id=MANGA_ID)

    assert chapter_base_name("Manga", chapter) == "Manga - Vol.3 Ch.12 - End"
    assert chapter_base_name("Manga", oneshot) == "Manga - Oneshot"
    assert archive_path_for(tmp_path, "Manga", chapter) == tmp_path / "Manga - Vol.3 Ch.12 - End.cbz"
    assert staging_dir_for(tmp_path, "Manga", oneshot).name == "Manga - Oneshot [abcdefgh]"


def test_pick_localized_fallbacks() -> None:
    assert pick_localized({"en": "A", "ja": "B"}) == "A"
    assert pick_localized({"ja": "B"}, [{"en": "C"}]) == "C"
    assert pick_localized({"ja": "B"}, [{"fr": "C"}]) == "B"
    assert pick_localized(None) == ""


def test_describe_statistics_lists_distribution() -> None:
    text = describe_statistics(
        "Manga", {"rating": {"average": 7.5, "distribution": {"1": 0, "10": 4}}}
    )
    assert text.startswith("# Manga")
    assert "| 10 | 4 |" in text
    assert text.index("| 10 |") < text.index("| 1 |")


def test_format_size_and_duration() -> None:
    assert format_size(0) == "0 B"
    assert format_size(2048) == "2.0 KB"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(0) == "0s"
