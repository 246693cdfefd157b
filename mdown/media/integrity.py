"""
Provides methods for checking the integrity of downloaded page images.
"""

import logging
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)


class PageIntegrityChecker:
    """A collection of static methods for validating page images."""

    @staticmethod
    def check_image(filepath: Path) -> bool:
        """
        Performs a structural check on an image file.

        Args:
            filepath: Path to the staged page.

        Returns:
            True if Pillow recognises the file and its data verifies.
        """
        try:
            if filepath.stat().st_size == 0:
                log.warning(f"Page integrity check failed for '{filepath.name}': empty file.")
                return False
            with Image.open(filepath) as img:
                img.verify()
            return True
        except UnidentifiedImageError:
            log.warning(
                f"Page integrity check failed for '{filepath.name}': not an image."
            )
            return False
        except (OSError, SyntaxError, ValueError) as e:
            log.debug(f"Page check failed for '{filepath.name}': {e}")
            return False

    @staticmethod
    def check_bytes(data: bytes) -> bool:
        """Same check for an in-memory payload, such as a cover image."""
        if not data:
            return False
        try:
            with Image.open(BytesIO(data)) as img:
                img.verify()
            return True
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
            return False

    @staticmethod
    def image_extension(data: bytes, default: str = "jpg") -> str:
        """Guesses a file extension from the image payload."""
        try:
            with Image.open(BytesIO(data)) as img:
                fmt = (img.format or "").lower()
        except (UnidentifiedImageError, OSError):
            return default
        return {"jpeg": "jpg"}.get(fmt, fmt or default)
