"""
Reads and writes chapter archives (.cbz): a zip of ordered page images plus a
'_metadata' JSON entry describing the chapter.
"""

import json
import logging
import re
import zipfile
from pathlib import Path
from typing import Any

from mdown.models.catalog import Chapter, QualityTier

log = logging.getLogger(__name__)

METADATA_NAME = "_metadata"
_PAGE_NAME = re.compile(r"^(\d{4})\.\w+$")


def build_metadata(chapter: Chapter, tier: QualityTier, page_count: int) -> dict[str, Any]:
    return {
        "id": chapter.id,
        "manga_id": chapter.manga_id,
        "chapter": chapter.number,
        "volume": chapter.volume,
        "title": chapter.title,
        "language": chapter.language,
        "pages": page_count,
        "saver": tier is QualityTier.SAVER,
        "scanlation": chapter.groups,
        "updated_at": chapter.updated_at,
    }


def write_archive(target: Path, pages: list[Path], metadata: dict[str, Any]) -> None:
    """Writes pages in the given order followed by the metadata entry."""
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_STORED) as zf:
        for page in pages:
            zf.write(page, arcname=page.name)
        zf.writestr(METADATA_NAME, json.dumps(metadata, ensure_ascii=False, indent=2))


def verify_archive(path: Path, page_count: int) -> bool:
    """True if the archive is readable and holds every page index 0..count-1."""
    try:
        with zipfile.ZipFile(path) as zf:
            if zf.testzip() is not None:
                return False
            indices = {
                int(m.group(1)) for name in zf.namelist() if (m := _PAGE_NAME.match(name))
            }
    except (zipfile.BadZipFile, OSError) as e:
        log.debug(f"Archive {path.name} failed verification: {e}")
        return False
    return indices == set(range(page_count))


def read_metadata(path: Path) -> dict[str, Any] | None:
    """Returns the '_metadata' entry of an archive, or None if it cannot be read."""
    try:
        with zipfile.ZipFile(path) as zf:
            raw = zf.read(METADATA_NAME)
        data = json.loads(raw)
    except (zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        log.debug(f"No readable metadata in {path.name}: {e}")
        return None
    return data if isinstance(data, dict) else None


def page_names(path: Path) -> list[str]:
    """Page entries of an archive in stored order."""
    with zipfile.ZipFile(path) as zf:
        return [name for name in zf.namelist() if _PAGE_NAME.match(name)]
