"""
Data Fetchers Package

Upstream bar providers:
- BaseFetcher: Abstract base class with rate limiting and session handling
- PolygonFetcher: Polygon.io aggregates
"""

from .base_fetcher import (
    BaseFetcher,
    RateLimiter,
    RateLimitConfig,
    ProviderStatus,
    ProviderPage,
    ProviderUnavailable,
)
from .polygon_io import PolygonFetcher

__all__ = [
    "BaseFetcher",
    "RateLimiter",
    "RateLimitConfig",
    "ProviderStatus",
    "ProviderPage",
    "ProviderUnavailable",
    "PolygonFetcher",
]
