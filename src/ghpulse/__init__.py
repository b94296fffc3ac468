"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Tiered data-freshness cache for GitHub profile analytics.

Quick start::

    from ghpulse import GhPulseSettings, build_runtime

    runtime = build_runtime(GhPulseSettings.from_env())
    result = await runtime.cache.get_or_refresh("octocat")
    print(result.tier, result.data["followers"])

    await runtime.worker.run_once()
"""

from .errors import (
    GhPulseError,
    NotFoundError,
    RateLimitedError,
    RefreshExhaustedError,
    StoreUnavailableError,
    UpstreamRateLimitedError,
    UpstreamUnavailableError,
)
from .runtime import GhPulseRuntime, build_runtime
from .settings import GhPulseSettings

__all__ = [
    "GhPulseError",
    "NotFoundError",
    "RateLimitedError",
    "RefreshExhaustedError",
    "StoreUnavailableError",
    "UpstreamRateLimitedError",
    "UpstreamUnavailableError",
    "GhPulseRuntime",
    "build_runtime",
    "GhPulseSettings",
]
