"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Tiered freshness cache with stale-while-revalidate reads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..errors import (
    GhPulseError,
    RateLimitedError,
    StoreUnavailableError,
    UpstreamUnavailableError,
)
from ..store import DocumentStore, merge_documents
from ..types import Document, FreshnessTier, RefreshPriority, RefreshType
from .memo import RecordMemo
from .tiers import EXPIRES_AFTER_S, FRESH_FOR_S, TIER_REFRESH_PRIORITY, classify_tier

if TYPE_CHECKING:
    from ..ratelimit import RateLimiter
    from ..refresh.queue import RefreshQueue
    from ..upstream import UpstreamSource

logger = logging.getLogger("ghpulse.freshness")

RECORD_COLLECTIONS: dict[str, str] = {
    "profile": "github-users",
    "repos": "github-repos",
}


def normalize_subject_key(raw: str) -> str:
    """Normalize a login: trim, drop a leading ``@``, lower-case."""
    subject = raw.strip().lstrip("@").strip().lower()
    if not subject:
        raise ValueError("subject_key must be a non-empty string")
    return subject


def record_collection(refresh_type: RefreshType) -> str:
    try:
        return RECORD_COLLECTIONS[refresh_type]
    except KeyError:
        raise ValueError(f"Unknown refresh type: {refresh_type}") from None


@dataclass(frozen=True, slots=True)
class CachedRecord:
    """Last successful upstream fetch for one subject and refresh type."""

    subject_key: str
    refresh_type: RefreshType
    payload: Document
    last_updated: float

    def age_s(self, now: float) -> float:
        return now - self.last_updated

    def to_document(self) -> Document:
        return {
            "subjectKey": self.subject_key,
            "payload": self.payload,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_document(
        cls,
        doc: Document | None,
        *,
        subject_key: str,
        refresh_type: RefreshType,
    ) -> CachedRecord | None:
        """
        Parse a stored document.

        Documents that only carry side fields (view counters) are not records.
        """
        if doc is None:
            return None
        payload = doc.get("payload")
        last_updated = doc.get("lastUpdated")
        if not isinstance(payload, dict) or not isinstance(last_updated, (int, float)):
            return None
        return cls(
            subject_key=subject_key,
            refresh_type=refresh_type,
            payload=payload,
            last_updated=float(last_updated),
        )


@dataclass(frozen=True, slots=True)
class CacheResult:
    """
    Payload returned to request handlers plus its freshness tier.

    ``refresh_scheduled`` reports whether a background refresh was enqueued;
    ``fallback`` marks a cached value served because a forced fetch failed.
    """

    data: Document
    tier: FreshnessTier
    record: CachedRecord | None = None
    refresh_scheduled: bool = False
    fallback: bool = False


@dataclass(frozen=True, slots=True)
class RefreshResult:
    """Outcome of one fetch-and-write-through."""

    previous: CachedRecord | None
    record: CachedRecord
    written: bool


class FreshnessCache:
    """
    Serve, serve-and-refresh, or force-fetch depending on record age.

    Constructed once per process with explicit collaborators. Cached values
    always win over failures: a present record is returned immediately and a
    stale or expired one only schedules a background refresh on the queue.
    """

    def __init__(
        self,
        store: DocumentStore,
        upstream: UpstreamSource,
        *,
        queue: RefreshQueue | None = None,
        limiter: RateLimiter | None = None,
        fresh_for_s: float = FRESH_FOR_S,
        expires_after_s: float = EXPIRES_AFTER_S,
        upstream_timeout_s: float = 60.0,
        memo: RecordMemo[CachedRecord] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if fresh_for_s <= 0:
            raise ValueError("fresh_for_s must be > 0")
        if expires_after_s < fresh_for_s:
            raise ValueError("expires_after_s must be >= fresh_for_s")
        if upstream_timeout_s <= 0:
            raise ValueError("upstream_timeout_s must be > 0")
        self._store = store
        self._upstream = upstream
        self._queue = queue
        self._limiter = limiter
        self._fresh_for_s = fresh_for_s
        self._expires_after_s = expires_after_s
        self._upstream_timeout_s = upstream_timeout_s
        self._clock = clock or time.time
        self._memo: RecordMemo[CachedRecord] = (
            memo if memo is not None else RecordMemo(ttl_s=0, clock=self._clock)
        )

    def _now(self) -> float:
        return self._clock()

    @staticmethod
    def _memo_key(subject_key: str, refresh_type: RefreshType) -> str:
        return f"{refresh_type}:{subject_key}"

    def tier_for(self, record: CachedRecord, *, now: float | None = None) -> FreshnessTier:
        """Classify one record against this cache's thresholds."""
        current = self._now() if now is None else now
        return classify_tier(
            record.age_s(current),
            fresh_for_s=self._fresh_for_s,
            expires_after_s=self._expires_after_s,
        )

    async def get_or_refresh(
        self,
        subject_key: str,
        refresh_type: RefreshType = "profile",
        *,
        force_refresh: bool = False,
    ) -> CacheResult:
        """
        Return data for ``subject_key`` with its freshness tier.

        Raises:
            NotFoundError: Upstream reports the subject does not exist.
            UpstreamUnavailableError: Upstream failed or the rate limiter
                denied the call, and no cached value exists.
        """
        subject = normalize_subject_key(subject_key)
        record_collection(refresh_type)

        record: CachedRecord | None = None
        try:
            record = await self.get_record(subject, refresh_type)
        except StoreUnavailableError as exc:
            logger.warning(
                "Cache read failed for %s %s, treating as miss: %s",
                refresh_type,
                subject,
                exc,
            )

        if record is not None and not force_refresh:
            return await self._serve_cached(record)

        try:
            fresh = await self._fetch_guarded(subject, refresh_type)
        except UpstreamUnavailableError:
            if record is None:
                raise
            logger.warning(
                "Forced refresh for %s %s failed; serving cached value",
                refresh_type,
                subject,
            )
            return CacheResult(
                data=record.payload,
                tier=self.tier_for(record),
                record=record,
                fallback=True,
            )

        try:
            result = await self.write_record(subject, refresh_type, fresh)
            stored = result.record
        except StoreUnavailableError as exc:
            logger.warning(
                "Cache write failed for %s %s; serving unpersisted data: %s",
                refresh_type,
                subject,
                exc,
            )
            stored = CachedRecord(
                subject_key=subject,
                refresh_type=refresh_type,
                payload=fresh,
                last_updated=self._now(),
            )
        return CacheResult(data=stored.payload, tier=self.tier_for(stored), record=stored)

    async def _serve_cached(self, record: CachedRecord) -> CacheResult:
        tier = self.tier_for(record)
        priority = TIER_REFRESH_PRIORITY.get(tier)
        scheduled = False
        if priority is not None:
            logger.info(
                "Using %s data for %s %s while refreshing",
                tier,
                record.refresh_type,
                record.subject_key,
            )
            scheduled = await self._schedule(
                record.subject_key, record.refresh_type, priority, source=tier
            )
        else:
            logger.debug("Using cached data for %s %s", record.refresh_type, record.subject_key)
        return CacheResult(
            data=record.payload,
            tier=tier,
            record=record,
            refresh_scheduled=scheduled,
        )

    async def _schedule(
        self,
        subject_key: str,
        refresh_type: RefreshType,
        priority: RefreshPriority,
        *,
        source: str,
    ) -> bool:
        """Enqueue a background refresh; failures are logged, never raised."""
        if self._queue is None:
            return False
        try:
            await self._queue.enqueue(
                subject_key, refresh_type, priority, metadata={"source": source}
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Error scheduling background refresh for %s %s", refresh_type, subject_key
            )
            return False
        return True

    async def _fetch_guarded(self, subject_key: str, refresh_type: RefreshType) -> Document:
        """Fetch through the rate limiter, translating denial into a typed failure."""
        operation = f"github_{refresh_type}"
        if self._limiter is not None and not await self._limiter.acquire(operation):
            raise UpstreamUnavailableError(
                "GitHub API rate limit exceeded. Please try again later.",
                reason="rate_limited",
            ) from RateLimitedError(operation)
        logger.info("Fetching fresh data for %s %s", refresh_type, subject_key)
        return await self.fetch(subject_key, refresh_type)

    async def fetch(self, subject_key: str, refresh_type: RefreshType) -> Document:
        """
        Call upstream once, bounded by the upstream timeout.

        Unexpected exceptions are surfaced as `UpstreamUnavailableError`.
        """
        try:
            return await asyncio.wait_for(
                self._upstream.fetch(subject_key, refresh_type),
                timeout=self._upstream_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError(
                f"Upstream timed out after {self._upstream_timeout_s:.0f}s for '{subject_key}'",
                reason="timeout",
            ) from exc
        except GhPulseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailableError(
                f"Upstream fetch failed for '{subject_key}': {exc}"
            ) from exc

    async def refresh(self, subject_key: str, refresh_type: RefreshType = "profile") -> RefreshResult:
        """
        Fetch fresh data and write it through, without consulting the limiter.

        Callers (the refresh worker) acquire rate-limit budget themselves.
        Store failures propagate so the caller can retry.
        """
        subject = normalize_subject_key(subject_key)
        payload = await self.fetch(subject, refresh_type)
        return await self.write_record(subject, refresh_type, payload)

    async def get_record(
        self, subject_key: str, refresh_type: RefreshType = "profile"
    ) -> CachedRecord | None:
        """Read one record, memo first. Store failures propagate."""
        memo_key = self._memo_key(subject_key, refresh_type)
        memoized = self._memo.get(memo_key)
        if memoized is not None:
            return memoized
        doc = await self._store.get(record_collection(refresh_type), subject_key)
        record = CachedRecord.from_document(
            doc, subject_key=subject_key, refresh_type=refresh_type
        )
        if record is not None:
            self._memo.put(memo_key, record)
        return record

    async def write_record(
        self,
        subject_key: str,
        refresh_type: RefreshType,
        payload: Document,
        *,
        fetched_at: float | None = None,
    ) -> RefreshResult:
        """
        Write a fetch result unless a newer one is already stored.

        The timestamp comparison and the write share one store transaction,
        so a late-arriving older fetch can never replace a newer record.
        Other fields on the document (view counters) are preserved.
        """
        stamp = self._now() if fetched_at is None else fetched_at
        incoming = CachedRecord(
            subject_key=subject_key,
            refresh_type=refresh_type,
            payload=payload,
            last_updated=stamp,
        )

        def _mutation(current: Document | None) -> tuple[Document | None, RefreshResult]:
            previous = CachedRecord.from_document(
                current, subject_key=subject_key, refresh_type=refresh_type
            )
            if previous is not None and previous.last_updated > stamp:
                return None, RefreshResult(previous=previous, record=previous, written=False)
            return (
                merge_documents(current, incoming.to_document()),
                RefreshResult(previous=previous, record=incoming, written=True),
            )

        result = await self._store.transact(
            record_collection(refresh_type), subject_key, _mutation
        )
        if not result.written:
            logger.info(
                "Discarded older %s fetch for %s (stored %.0f > incoming %.0f)",
                refresh_type,
                subject_key,
                result.record.last_updated,
                stamp,
            )
        self._memo.put(self._memo_key(subject_key, refresh_type), result.record)
        return result

    async def record_view(self, subject_key: str) -> None:
        """Count one profile view; feeds popular-profile refresh scheduling."""
        subject = normalize_subject_key(subject_key)
        collection = record_collection("profile")
        try:
            await self._store.increment(collection, subject, "viewCount", 1)
            await self._store.set(
                collection, subject, {"lastViewed": self._now()}, merge=True
            )
        except StoreUnavailableError as exc:
            logger.warning("Failed to record profile view of %s: %s", subject, exc)
