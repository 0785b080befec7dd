"""Source fetching, caching, rate limiting, and cached read services.

Re-exports all public service classes so consumers can import directly:
    from Pick_Sync.services import RedditThreadSource, ServiceCache
"""

from Pick_Sync.services.cache import CacheEntry, CacheKey, CacheWarmer, ServiceCache
from Pick_Sync.services.queries import PickQueries, ScanDetail
from Pick_Sync.services.rate_limiter import RateLimiter
from Pick_Sync.services.source import RedditThreadSource, SourceAdapter

__all__ = [
    # Infrastructure
    "CacheEntry",
    "CacheKey",
    "CacheWarmer",
    "RateLimiter",
    "ServiceCache",
    # Source adapter
    "RedditThreadSource",
    "SourceAdapter",
    # Read paths
    "PickQueries",
    "ScanDetail",
]
