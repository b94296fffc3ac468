"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Runtime settings and explicit config loading.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def env_first(*names: str, default: str | None = None) -> str | None:
    """
    Return the first non-empty environment variable in `names`.

    Args:
        *names: Environment variable names to check in order.
        default: Value returned if no non-empty variable is found.
    """
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        value = raw.strip()
        if value:
            return value
    return default


@dataclass(frozen=True, slots=True)
class GhPulseSettings:
    """Explicit settings shared by the store, cache, limiter and worker."""

    store_backend: str = "inmemory"
    redis_url: str | None = None
    redis_prefix: str = "ghpulse"

    github_token: str | None = None
    github_api_base_url: str = "https://api.github.com"
    github_user_agent: str = "GitHub-Profile-Analyzer"
    upstream_timeout_s: float = 60.0

    fresh_for_s: float = 3600.0
    expires_after_s: float = 86400.0
    memo_ttl_s: float = 60.0
    memo_max_entries: int = 1024

    rate_limit_budget: int = 5000
    rate_limit_window_s: float = 3600.0

    max_attempts: int = 3
    batch_size: int = 20
    poll_interval_s: float = 600.0
    inter_item_delay_s: float = 1.0
    processing_timeout_s: float = 300.0
    completed_retention_s: float | None = 86400.0
    failed_retention_s: float | None = 7 * 86400.0

    refresh_api_secret: str | None = None
    service_host: str = "127.0.0.1"
    service_port: int = 8000

    @staticmethod
    def from_env() -> "GhPulseSettings":
        """Load settings from `GHPULSE_*` environment variables."""
        return GhPulseSettings(
            store_backend=(
                env_first("GHPULSE_STORE_BACKEND", default="inmemory") or "inmemory"
            ).lower(),
            redis_url=_redis_url_from_env(),
            redis_prefix=env_first("GHPULSE_REDIS_PREFIX", default="ghpulse")
            or "ghpulse",
            github_token=env_first("GHPULSE_GITHUB_TOKEN", "GITHUB_TOKEN"),
            github_api_base_url=env_first(
                "GHPULSE_GITHUB_API_BASE_URL", default="https://api.github.com"
            )
            or "https://api.github.com",
            github_user_agent=env_first(
                "GHPULSE_GITHUB_USER_AGENT", default="GitHub-Profile-Analyzer"
            )
            or "GitHub-Profile-Analyzer",
            upstream_timeout_s=float(os.getenv("GHPULSE_UPSTREAM_TIMEOUT_S", "60")),
            fresh_for_s=float(os.getenv("GHPULSE_FRESH_FOR_S", "3600")),
            expires_after_s=float(os.getenv("GHPULSE_EXPIRES_AFTER_S", "86400")),
            memo_ttl_s=float(os.getenv("GHPULSE_MEMO_TTL_S", "60")),
            memo_max_entries=int(os.getenv("GHPULSE_MEMO_MAX_ENTRIES", "1024")),
            rate_limit_budget=int(os.getenv("GHPULSE_RATE_LIMIT_BUDGET", "5000")),
            rate_limit_window_s=float(
                os.getenv("GHPULSE_RATE_LIMIT_WINDOW_S", "3600")
            ),
            max_attempts=int(os.getenv("GHPULSE_REFRESH_MAX_ATTEMPTS", "3")),
            batch_size=int(os.getenv("GHPULSE_REFRESH_BATCH_SIZE", "20")),
            poll_interval_s=float(os.getenv("GHPULSE_REFRESH_POLL_INTERVAL_S", "600")),
            inter_item_delay_s=float(
                os.getenv("GHPULSE_REFRESH_INTER_ITEM_DELAY_S", "1.0")
            ),
            processing_timeout_s=float(
                os.getenv("GHPULSE_REFRESH_PROCESSING_TIMEOUT_S", "300")
            ),
            completed_retention_s=_optional_seconds(
                "GHPULSE_REFRESH_COMPLETED_RETENTION_S", 86400.0
            ),
            failed_retention_s=_optional_seconds(
                "GHPULSE_REFRESH_FAILED_RETENTION_S", 7 * 86400.0
            ),
            refresh_api_secret=env_first(
                "GHPULSE_REFRESH_API_SECRET", "BACKGROUND_REFRESH_API_SECRET"
            ),
            service_host=env_first("GHPULSE_HOST", default="127.0.0.1")
            or "127.0.0.1",
            service_port=int(env_first("GHPULSE_PORT", default="8000") or "8000"),
        )


def _redis_url_from_env() -> str | None:
    """Resolve a Redis URL from an explicit URL or host/port/db/password parts."""
    url = env_first("GHPULSE_REDIS_URL")
    if url:
        return url
    host = env_first("GHPULSE_REDIS_HOST")
    if not host:
        return None
    port = env_first("GHPULSE_REDIS_PORT", default="6379") or "6379"
    db = env_first("GHPULSE_REDIS_DB", default="0") or "0"
    password = env_first("GHPULSE_REDIS_PASSWORD", default="") or ""
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


def _optional_seconds(name: str, default: float) -> float | None:
    """Read a duration where ``none`` or ``off`` disables the limit."""
    raw = env_first(name)
    if raw is None:
        return default
    if raw.lower() in ("none", "off"):
        return None
    return float(raw)
