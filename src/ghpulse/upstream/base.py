"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Upstream data source contract.
"""

from __future__ import annotations

from typing import Protocol

from ..types import Document, RefreshType


class UpstreamSource(Protocol):
    """
    Rate-limited external API returning subject data.

    Implementations raise `NotFoundError` for subjects that do not exist,
    `UpstreamRateLimitedError` when the upstream quota is exhausted, and
    `UpstreamUnavailableError` for every other failure.
    """

    async def fetch(self, subject_key: str, refresh_type: RefreshType) -> Document:
        """Fetch fresh data for one subject and refresh type."""
        ...
