"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Durable refresh queue and the worker that drains it.
"""

from .metrics import (
    REFRESH_COUNTERS,
    CounterSpec,
    NoOpRefreshMetrics,
    PrometheusRefreshMetrics,
    RefreshMetrics,
)
from .popular import POPULAR_LIMIT, POPULAR_WINDOW_S, schedule_popular_refreshes
from .queue import RefreshQueue, RefreshRequest
from .types import (
    DEAD_LETTER_NON_RETRYABLE,
    DEAD_LETTER_PROCESSING_TIMEOUT,
    DEAD_LETTER_RETRY_EXHAUSTED,
    MAX_ATTEMPTS,
    REFRESH_QUEUE_COLLECTION,
    RefreshQueueItem,
    RefreshStatus,
)
from .worker import (
    RefreshRunSummary,
    RefreshWorker,
    RefreshWorkerConfig,
)

__all__ = [
    "REFRESH_COUNTERS",
    "CounterSpec",
    "PrometheusRefreshMetrics",
    "POPULAR_LIMIT",
    "POPULAR_WINDOW_S",
    "schedule_popular_refreshes",
    "RefreshQueue",
    "RefreshRequest",
    "DEAD_LETTER_NON_RETRYABLE",
    "DEAD_LETTER_PROCESSING_TIMEOUT",
    "DEAD_LETTER_RETRY_EXHAUSTED",
    "MAX_ATTEMPTS",
    "REFRESH_QUEUE_COLLECTION",
    "RefreshQueueItem",
    "RefreshStatus",
    "NoOpRefreshMetrics",
    "RefreshMetrics",
    "RefreshRunSummary",
    "RefreshWorker",
    "RefreshWorkerConfig",
]
