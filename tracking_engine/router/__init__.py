"""Tracking service storage and request filters"""

from .database import DatabaseClient, InMemoryStorage, TrackingStorage, DEMO_CUSTOMER
from .dedup import DedupCache, dedup_key
from .rate_limit import RateLimiter

__all__ = [
    "DatabaseClient",
    "InMemoryStorage",
    "TrackingStorage",
    "DEMO_CUSTOMER",
    "DedupCache",
    "dedup_key",
    "RateLimiter"
]
