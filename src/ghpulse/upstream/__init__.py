"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Upstream data sources.
"""

from .base import UpstreamSource
from .github import (
    GitHubClient,
    HttpGet,
    HttpResponse,
    normalize_profile,
    normalize_repositories,
    urllib_get,
)

__all__ = [
    "UpstreamSource",
    "GitHubClient",
    "HttpGet",
    "HttpResponse",
    "normalize_profile",
    "normalize_repositories",
    "urllib_get",
]
