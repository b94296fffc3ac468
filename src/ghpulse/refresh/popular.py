"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Proactive refresh of recently viewed profiles.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from ..freshness.cache import record_collection
from ..store import DocumentStore
from ..types import RefreshPriority
from .queue import RefreshQueue, RefreshRequest

logger = logging.getLogger("ghpulse.refresh.popular")

POPULAR_WINDOW_S = 7 * 24 * 60 * 60.0
POPULAR_LIMIT = 50


async def schedule_popular_refreshes(
    store: DocumentStore,
    queue: RefreshQueue,
    *,
    window_s: float = POPULAR_WINDOW_S,
    limit: int = POPULAR_LIMIT,
    priority: RefreshPriority = "low",
    clock: Callable[[], float] | None = None,
) -> int:
    """
    Enqueue profile refreshes for the most recently viewed profiles.

    Profiles viewed within ``window_s`` are ordered by ``lastViewed``
    (newest first) and the top ``limit`` are enqueued in one batch.
    Profiles that already have an active refresh are skipped.

    Returns:
        Number of newly enqueued items.
    """
    if window_s <= 0:
        raise ValueError("window_s must be > 0")
    if limit < 1:
        return 0
    cutoff = (clock or time.time)() - window_s

    viewed: list[tuple[float, str]] = []
    for key, doc in await store.list_documents(record_collection("profile")):
        last_viewed = doc.get("lastViewed")
        if isinstance(last_viewed, (int, float)) and last_viewed > cutoff:
            viewed.append((float(last_viewed), key))

    if not viewed:
        logger.info("No recently viewed profiles to refresh")
        return 0

    viewed.sort(reverse=True)
    created = await queue.enqueue_many(
        RefreshRequest(
            item_id=key,
            type="profile",
            priority=priority,
            metadata={"source": "popular"},
        )
        for _, key in viewed[:limit]
    )
    logger.info(
        "Scheduled %d popular profile refresh(es) out of %d recently viewed",
        len(created),
        len(viewed),
    )
    return len(created)
