"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Refresh worker: polling consumer that drains the refresh queue.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from ..errors import NotFoundError, UpstreamRateLimitedError
from .metrics import (
    REFRESH_CLAIMED,
    REFRESH_ITEMS,
    REFRESH_LOOP_ERRORS,
    REFRESH_PURGED,
    REFRESH_RECLAIMED,
    NoOpRefreshMetrics,
    RefreshMetrics,
)
from .queue import RefreshQueue
from .types import RefreshQueueItem, RefreshStatus

if TYPE_CHECKING:
    from ..freshness.cache import FreshnessCache
    from ..ratelimit import RateLimiter
    from ..watchers import ProfileWatchNotifier

logger = logging.getLogger("ghpulse.refresh.worker")

ItemOutcome = Literal["completed", "retried", "failed", "deferred", "skipped"]


@dataclass
class RefreshWorkerConfig:
    """
    Configuration for the refresh worker.

    Attributes:
        batch_size: Maximum items claimed per tick.
        poll_interval_s: Seconds between ticks when running in the background.
        inter_item_delay_s: Pause between items within one tick.
        processing_timeout_s: Age after which a ``processing`` item counts as
            abandoned and is reclaimed at the start of a tick. The claim clock
            restarts right before each item runs, so the bound covers one
            item rather than the whole batch.
        completed_retention_s: How long completed items stay in the queue;
            ``None`` keeps them forever.
        failed_retention_s: How long failed items stay available for redrive;
            ``None`` keeps them forever.
        shutdown_timeout_s: Grace period for the in-flight tick on shutdown.
    """

    batch_size: int = 20
    poll_interval_s: float = 600.0
    inter_item_delay_s: float = 1.0
    processing_timeout_s: float = 300.0
    completed_retention_s: float | None = 86400.0
    failed_retention_s: float | None = 7 * 86400.0
    shutdown_timeout_s: float = 30.0


@dataclass(frozen=True, slots=True)
class RefreshRunSummary:
    """Counts from one `RefreshWorker.run_once` tick."""

    reclaimed: int = 0
    purged: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0


class RefreshWorker:
    """
    Claims queued refreshes in batches and writes fresh data through the cache.

    Each item spends limiter budget before calling upstream. Denied items are
    released back to ``pending`` without consuming an attempt. Errors are
    isolated per item: one failure never aborts the rest of the batch.

    Queue updates carry the claim token issued to this worker. An item whose
    claim was reclaimed by another worker while it waited in the batch is
    skipped instead of being run twice.
    """

    def __init__(
        self,
        queue: RefreshQueue,
        cache: FreshnessCache,
        limiter: RateLimiter | None = None,
        *,
        notifier: ProfileWatchNotifier | None = None,
        metrics: RefreshMetrics | None = None,
        config: RefreshWorkerConfig | None = None,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._limiter = limiter
        self._notifier = notifier
        self._metrics: RefreshMetrics = metrics or NoOpRefreshMetrics()
        self._config = config or RefreshWorkerConfig()
        if self._config.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self._config.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self._config.inter_item_delay_s < 0:
            raise ValueError("inter_item_delay_s must be >= 0")
        if self._config.processing_timeout_s <= 0:
            raise ValueError("processing_timeout_s must be > 0")
        for name in ("completed_retention_s", "failed_retention_s"):
            retention = getattr(self._config, name)
            if retention is not None and retention < 0:
                raise ValueError(f"{name} must be >= 0")
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._worker_id = uuid.uuid4().hex

    @property
    def is_running(self) -> bool:
        """Whether the background loop is active."""
        return self._running

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run_once(self) -> RefreshRunSummary:
        """
        Run one tick: reclaim abandoned items, purge expired terminal items,
        then process one claimed batch.

        Items are processed sequentially with ``inter_item_delay_s`` between
        them to spread upstream calls.
        """
        reclaimed = await self._queue.reclaim_stale(
            older_than_s=self._config.processing_timeout_s
        )
        if reclaimed:
            self._metrics.incr(REFRESH_RECLAIMED, reclaimed)
        purged = await self._purge_terminal()

        items = await self._queue.claim_batch(
            self._config.batch_size, claimed_by=self._worker_id
        )
        if not items:
            logger.debug("No pending refresh items")
            return RefreshRunSummary(reclaimed=reclaimed, purged=purged)

        logger.info("Processing %d refresh item(s)", len(items))
        self._metrics.incr(REFRESH_CLAIMED, len(items))
        counts: dict[str, int] = {
            "completed": 0,
            "retried": 0,
            "failed": 0,
            "deferred": 0,
            "skipped": 0,
        }
        for index, item in enumerate(items):
            if index and self._config.inter_item_delay_s > 0:
                await asyncio.sleep(self._config.inter_item_delay_s)
            outcome = await self._process(item)
            counts[outcome] += 1
            self._metrics.incr(REFRESH_ITEMS, tags={"outcome": outcome, "type": item.type})

        summary = RefreshRunSummary(
            reclaimed=reclaimed, purged=purged, claimed=len(items), **counts
        )
        logger.info(
            "Refresh tick done: %d completed, %d retried, %d failed, %d deferred, %d skipped",
            summary.completed,
            summary.retried,
            summary.failed,
            summary.deferred,
            summary.skipped,
        )
        return summary

    async def _purge_terminal(self) -> int:
        """Delete completed and failed items older than their retention."""
        retention: tuple[tuple[RefreshStatus, float | None], ...] = (
            ("completed", self._config.completed_retention_s),
            ("failed", self._config.failed_retention_s),
        )
        total = 0
        for status, older_than_s in retention:
            if older_than_s is None:
                continue
            removed = await self._queue.purge(status=status, older_than_s=older_than_s)
            if removed:
                self._metrics.incr(REFRESH_PURGED, removed, tags={"status": status})
            total += removed
        return total

    async def _process(self, item: RefreshQueueItem) -> ItemOutcome:
        """Execute one claimed item and record its outcome on the queue."""
        try:
            return await self._execute(item)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception(
                "Queue bookkeeping failed for refresh %s (%s %s)",
                item.id,
                item.type,
                item.item_id,
            )
            return "skipped"

    async def _execute(self, item: RefreshQueueItem) -> ItemOutcome:
        token = item.claim_token
        if await self._queue.touch(item.id, claim_token=token) is None:
            logger.warning(
                "Claim on refresh %s (%s %s) was reclaimed before it ran; skipping",
                item.id,
                item.type,
                item.item_id,
            )
            return "skipped"

        if self._limiter is not None and not await self._limiter.acquire(
            f"github_{item.type}_refresh"
        ):
            logger.info(
                "Rate limit reached; deferring refresh of %s %s", item.type, item.item_id
            )
            await self._queue.release(item.id, claim_token=token)
            return "deferred"

        try:
            result = await self._cache.refresh(item.item_id, item.type)
        except NotFoundError as exc:
            await self._queue.fail(item.id, error=str(exc), retryable=False, claim_token=token)
            return "failed"
        except UpstreamRateLimitedError as exc:
            logger.warning(
                "GitHub quota exhausted; deferring refresh of %s %s: %s",
                item.type,
                item.item_id,
                exc,
            )
            await self._queue.release(item.id, claim_token=token)
            return "deferred"
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Error refreshing %s %s (attempt %d): %s",
                item.type,
                item.item_id,
                item.attempts,
                exc,
            )
            updated = await self._queue.fail(
                item.id, error=str(exc), retryable=True, claim_token=token
            )
            if updated is None:
                return "skipped"
            return "failed" if updated.status == "failed" else "retried"

        completed = await self._queue.complete(item.id, claim_token=token)
        if completed is None:
            logger.warning(
                "Refreshed %s %s but its claim had moved on; leaving the item to its new owner",
                item.type,
                item.item_id,
            )
        else:
            logger.info("Completed refresh for %s %s", item.type, item.item_id)

        if (
            self._notifier is not None
            and item.type == "profile"
            and result.written
            and result.previous is not None
        ):
            try:
                await self._notifier.notify_if_changed(
                    item.item_id, result.previous.payload, result.record.payload
                )
            except Exception:  # noqa: BLE001
                logger.exception("Error notifying watchers of %s", item.item_id)
        return "completed" if completed is not None else "skipped"

    async def start(self) -> None:
        """Run `run_once` every ``poll_interval_s`` in a background task."""
        if self._running:
            raise RuntimeError("RefreshWorker is already running")
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "RefreshWorker started (batch=%d, interval=%.0fs, worker_id=%s)",
            self._config.batch_size,
            self._config.poll_interval_s,
            self._worker_id[:8],
        )

    async def shutdown(self) -> None:
        """Stop the background loop, waiting up to ``shutdown_timeout_s``."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=self._config.shutdown_timeout_s)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        self._task = None
        logger.info("RefreshWorker shut down (worker_id=%s)", self._worker_id[:8])

    async def _loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:  # noqa: BLE001
                logger.exception("Refresh worker loop error")
                self._metrics.incr(REFRESH_LOOP_ERRORS)
            try:
                await asyncio.sleep(self._config.poll_interval_s)
            except asyncio.CancelledError:
                break
