"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Age-derived freshness tiers.
"""

from __future__ import annotations

from ..types import FreshnessTier, RefreshPriority

FRESH_FOR_S = 60 * 60.0
EXPIRES_AFTER_S = 24 * 60 * 60.0

# Priority of the background refresh each tier schedules. Fresh schedules none.
TIER_REFRESH_PRIORITY: dict[str, RefreshPriority] = {
    "stale": "normal",
    "expired": "high",
}


def classify_tier(
    age_s: float,
    *,
    fresh_for_s: float = FRESH_FOR_S,
    expires_after_s: float = EXPIRES_AFTER_S,
) -> FreshnessTier:
    """
    Classify a record by age.

    ``fresh`` below ``fresh_for_s``, ``expired`` at or beyond
    ``expires_after_s``, ``stale`` in between. Negative ages (clock skew)
    count as fresh.
    """
    if age_s < fresh_for_s:
        return "fresh"
    if age_s < expires_after_s:
        return "stale"
    return "expired"
