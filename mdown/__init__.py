"""
mdown: a resumable, concurrency-bounded manga chapter downloader.
"""

__version__ = "0.10.2"
