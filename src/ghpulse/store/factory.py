"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Factory helpers for selecting document store backends from settings.
"""

from __future__ import annotations

from typing import Any

from ..settings import GhPulseSettings
from .base import DocumentStore
from .memory import InMemoryDocumentStore


def create_document_store(
    settings: GhPulseSettings,
    *,
    redis_client: Any | None = None,
) -> DocumentStore:
    """
    Create a document store backend from explicit settings.

    Backends:
    - `inmemory` (default)
    - `redis`

    Redis resolution:
    - Uses the provided `redis_client` when supplied.
    - Otherwise builds a client from `settings.redis_url`
      (defaulting to `redis://localhost:6379/0`).
    """
    backend = settings.store_backend.strip().lower()

    if backend in ("mem", "memory", "inmemory", "in_memory"):
        return InMemoryDocumentStore()

    if backend in ("redis",):
        from .redis_store import RedisDocumentStore

        client = redis_client
        if client is None:
            try:
                import redis.asyncio as redis
            except ModuleNotFoundError as exc:  # pragma: no cover
                raise RuntimeError(
                    "Redis store backend requires `redis` to be installed."
                ) from exc
            client = redis.Redis.from_url(
                settings.redis_url or "redis://localhost:6379/0"
            )

        return RedisDocumentStore(client, prefix=settings.redis_prefix)

    raise ValueError(f"Unknown GHPULSE_STORE_BACKEND: {backend}")


def create_document_store_from_env(*, redis_client: Any | None = None) -> DocumentStore:
    """Create a document store backend from `GHPULSE_*` environment variables."""
    return create_document_store(GhPulseSettings.from_env(), redis_client=redis_client)
