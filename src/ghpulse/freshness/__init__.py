"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Freshness tiers and the stale-while-revalidate cache.
"""

from .cache import (
    RECORD_COLLECTIONS,
    CachedRecord,
    CacheResult,
    FreshnessCache,
    RefreshResult,
    normalize_subject_key,
    record_collection,
)
from .memo import MemoEntry, RecordMemo
from .tiers import EXPIRES_AFTER_S, FRESH_FOR_S, TIER_REFRESH_PRIORITY, classify_tier

__all__ = [
    "RECORD_COLLECTIONS",
    "CachedRecord",
    "CacheResult",
    "FreshnessCache",
    "RefreshResult",
    "normalize_subject_key",
    "record_collection",
    "MemoEntry",
    "RecordMemo",
    "EXPIRES_AFTER_S",
    "FRESH_FOR_S",
    "TIER_REFRESH_PRIORITY",
    "classify_tier",
]
