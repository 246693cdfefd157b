"""
Media Layer.

This package is responsible for page transfer, page image validation and the
chapter archive format.
"""

from .downloader import PageFetchPool
from .integrity import PageIntegrityChecker

__all__ = ["PageFetchPool", "PageIntegrityChecker"]
