"""
Catalog API Layer.

This package handles all communication with the remote manga catalog.
"""

from .client import CatalogClient, MangaDexClient
from .rate_limiter import AdaptiveRateLimiter

__all__ = ["AdaptiveRateLimiter", "CatalogClient", "MangaDexClient"]
