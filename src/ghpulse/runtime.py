"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Process-level wiring: build every component once and inject it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .freshness import FreshnessCache, RecordMemo
from .ratelimit import RateLimiter
from .refresh import RefreshMetrics, RefreshQueue, RefreshWorker, RefreshWorkerConfig
from .settings import GhPulseSettings
from .store import DocumentStore, create_document_store
from .upstream import GitHubClient, UpstreamSource
from .watchers import ProfileWatchNotifier

logger = logging.getLogger("ghpulse.runtime")


@dataclass(slots=True)
class GhPulseRuntime:
    """Explicitly constructed collaborators shared by request handlers and the worker."""

    settings: GhPulseSettings
    store: DocumentStore
    upstream: UpstreamSource
    limiter: RateLimiter
    queue: RefreshQueue
    cache: FreshnessCache
    notifier: ProfileWatchNotifier
    worker: RefreshWorker

    async def aclose(self) -> None:
        """Stop the worker if it runs and release the store connection."""
        if self.worker.is_running:
            await self.worker.shutdown()
        await self.store.close()


def build_runtime(
    settings: GhPulseSettings | None = None,
    *,
    store: DocumentStore | None = None,
    upstream: UpstreamSource | None = None,
    redis_client: Any | None = None,
    metrics: RefreshMetrics | None = None,
    clock: Callable[[], float] | None = None,
) -> GhPulseRuntime:
    """
    Build the runtime from settings.

    Args:
        settings: Explicit settings; loaded from the environment when omitted.
        store: Prebuilt document store; otherwise chosen by ``store_backend``.
        upstream: Prebuilt upstream source; otherwise a `GitHubClient`.
        redis_client: Redis client reused by the Redis store backend.
        metrics: Refresh worker metrics sink.
        clock: Wall clock shared by every component (tests inject one).
    """
    cfg = settings or GhPulseSettings.from_env()
    doc_store = store or create_document_store(cfg, redis_client=redis_client)
    source = upstream or GitHubClient(
        token=cfg.github_token,
        api_base_url=cfg.github_api_base_url,
        user_agent=cfg.github_user_agent,
        timeout_s=cfg.upstream_timeout_s,
    )
    limiter = RateLimiter(
        doc_store,
        budget=cfg.rate_limit_budget,
        window_s=cfg.rate_limit_window_s,
        clock=clock,
    )
    queue = RefreshQueue(doc_store, max_attempts=cfg.max_attempts, clock=clock)
    cache = FreshnessCache(
        doc_store,
        source,
        queue=queue,
        limiter=limiter,
        fresh_for_s=cfg.fresh_for_s,
        expires_after_s=cfg.expires_after_s,
        upstream_timeout_s=cfg.upstream_timeout_s,
        memo=RecordMemo(
            ttl_s=cfg.memo_ttl_s,
            max_entries=cfg.memo_max_entries,
            clock=clock,
        ),
        clock=clock,
    )
    notifier = ProfileWatchNotifier(doc_store, clock=clock)
    worker = RefreshWorker(
        queue,
        cache,
        limiter,
        notifier=notifier,
        metrics=metrics,
        config=RefreshWorkerConfig(
            batch_size=cfg.batch_size,
            poll_interval_s=cfg.poll_interval_s,
            inter_item_delay_s=cfg.inter_item_delay_s,
            processing_timeout_s=cfg.processing_timeout_s,
            completed_retention_s=cfg.completed_retention_s,
            failed_retention_s=cfg.failed_retention_s,
        ),
    )
    logger.debug("Built ghpulse runtime (store=%s)", doc_store.backend_id)
    return GhPulseRuntime(
        settings=cfg,
        store=doc_store,
        upstream=source,
        limiter=limiter,
        queue=queue,
        cache=cache,
        notifier=notifier,
        worker=worker,
    )
