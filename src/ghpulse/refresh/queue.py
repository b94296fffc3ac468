"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Store-backed refresh queue with deduplicated enqueue and atomic claims.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from ..errors import RefreshExhaustedError, StoreUnavailableError
from ..store import BatchWrite, DocumentStore
from ..types import (
    REFRESH_PRIORITIES,
    REFRESH_TYPES,
    Document,
    JSONValue,
    RefreshPriority,
    RefreshType,
)
from .types import (
    DEAD_LETTER_NON_RETRYABLE,
    DEAD_LETTER_PROCESSING_TIMEOUT,
    DEAD_LETTER_RETRY_EXHAUSTED,
    MAX_ATTEMPTS,
    PRIORITY_RANK,
    REFRESH_QUEUE_COLLECTION,
    REFRESH_SLOT_SUFFIX,
    RefreshQueueItem,
    RefreshStatus,
)

logger = logging.getLogger("ghpulse.refresh.queue")

_SLOT_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class RefreshRequest:
    """Input row for `RefreshQueue.enqueue_many`."""

    item_id: str
    type: RefreshType = "profile"
    priority: RefreshPriority = "normal"
    metadata: dict[str, JSONValue] = field(default_factory=dict)


class RefreshQueue:
    """
    Durable priority queue of refresh requests.

    Items live in one store collection so they survive process restarts.
    Every state transition is a per-item store transaction that checks the
    current status first, which makes claims race-free and terminal states
    immutable.

    A second collection holds one slot document per ``(item_id, type)``
    pointing at the newest item for that subject. Duplicate checks read the
    slot instead of scanning the queue, and the slot is swapped with a
    compare-and-set so two producers cannot both create an active item.

    Each claim issues a fresh ``claim_token``. `complete`, `fail`, `release`
    and `touch` given a token only apply while that claim is still current,
    so a worker whose claim was reclaimed cannot close another worker's
    claim.

    State machine::

        pending -> processing -> completed
                       |-> pending   (retryable failure, attempts < max_attempts)
                       |-> failed    (non-retryable, or attempts exhausted)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        collection: str = REFRESH_QUEUE_COLLECTION,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_attempts
        self._collection = collection
        self._slots = f"{collection}{REFRESH_SLOT_SUFFIX}"
        self._clock = clock or time.time

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _now(self) -> float:
        """Return wall-clock timestamp used for item lifecycle events."""
        return self._clock()

    @staticmethod
    def _validate(item_id: str, refresh_type: str, priority: str) -> str:
        subject = item_id.strip()
        if not subject:
            raise ValueError("item_id must be a non-empty string")
        if refresh_type not in REFRESH_TYPES:
            raise ValueError(f"Unknown refresh type: {refresh_type}")
        if priority not in REFRESH_PRIORITIES:
            raise ValueError(f"Unknown refresh priority: {priority}")
        return subject

    @staticmethod
    def _slot_key(item_id: str, refresh_type: str) -> str:
        return f"{refresh_type}:{item_id}"

    @staticmethod
    def _holds_claim(item: RefreshQueueItem, claim_token: str | None) -> bool:
        if item.status != "processing":
            return False
        return claim_token is None or item.claim_token == claim_token

    async def _all_items(self) -> list[RefreshQueueItem]:
        rows = await self._store.list_documents(self._collection)
        return [RefreshQueueItem.from_document(doc) for _, doc in rows]

    async def _transition(
        self,
        queue_id: str,
        change: Callable[[RefreshQueueItem], bool],
    ) -> RefreshQueueItem | None:
        """
        Apply ``change`` to one item atomically.

        ``change`` returns False to leave the item untouched; the call then
        returns ``None``.
        """

        def _mutation(current: Document | None) -> tuple[Document | None, RefreshQueueItem | None]:
            if current is None:
                return None, None
            item = RefreshQueueItem.from_document(current)
            if not change(item):
                return None, None
            return item.to_document(), item

        return await self._store.transact(self._collection, queue_id, _mutation)

    async def _slot_owner(self, item_id: str, refresh_type: RefreshType) -> str | None:
        doc = await self._store.get(self._slots, self._slot_key(item_id, refresh_type))
        owner = (doc or {}).get("queueId")
        return owner if isinstance(owner, str) else None

    async def _swap_slot(
        self,
        item_id: str,
        refresh_type: RefreshType,
        queue_id: str,
        *,
        expected: str | None,
    ) -> bool:
        """Point the subject's slot at ``queue_id`` if it still points at ``expected``."""

        def _mutation(current: Document | None) -> tuple[Document | None, bool]:
            owner = (current or {}).get("queueId")
            if owner != expected:
                return None, False
            return {"queueId": queue_id, "itemId": item_id, "type": refresh_type}, True

        return await self._store.transact(
            self._slots, self._slot_key(item_id, refresh_type), _mutation
        )

    async def _active_owner(
        self, item_id: str, refresh_type: RefreshType
    ) -> tuple[str | None, RefreshQueueItem | None]:
        """Return the slot's current owner id and the owner item when it is active."""
        owner = await self._slot_owner(item_id, refresh_type)
        if owner is None:
            return None, None
        item = await self.get(owner)
        if item is None or not item.is_active:
            return owner, None
        return owner, item

    async def find_active(
        self, item_id: str, refresh_type: RefreshType
    ) -> RefreshQueueItem | None:
        """Return the pending/processing item for ``(item_id, type)``, if any."""
        _, item = await self._active_owner(item_id, refresh_type)
        return item

    async def _keep_duplicate(
        self, existing: RefreshQueueItem, priority: RefreshPriority
    ) -> RefreshQueueItem:
        if existing.status == "pending" and PRIORITY_RANK[priority] > existing.priority_rank:

            def _upgrade(item: RefreshQueueItem) -> bool:
                if item.status != "pending" or PRIORITY_RANK[priority] <= item.priority_rank:
                    return False
                item.priority = priority
                return True

            upgraded = await self._transition(existing.id, _upgrade)
            if upgraded is not None:
                logger.info(
                    "Upgraded refresh for %s %s to %s priority",
                    existing.type,
                    existing.item_id,
                    priority,
                )
                return upgraded
        logger.debug(
            "Refresh for %s %s already %s; skipping enqueue",
            existing.type,
            existing.item_id,
            existing.status,
        )
        return existing

    async def enqueue(
        self,
        item_id: str,
        refresh_type: RefreshType = "profile",
        priority: RefreshPriority = "normal",
        *,
        metadata: dict[str, JSONValue] | None = None,
    ) -> RefreshQueueItem:
        """
        Add a refresh request unless one is already pending or processing.

        A pending duplicate is upgraded to the higher of the two priorities.
        The new item is written first and then takes over the subject's slot;
        when another producer took the slot in between, the new item is
        deleted and the winner is returned instead.
        """
        subject = self._validate(item_id, refresh_type, priority)

        for _ in range(_SLOT_ATTEMPTS):
            owner, existing = await self._active_owner(subject, refresh_type)
            if existing is not None:
                return await self._keep_duplicate(existing, priority)

            item = RefreshQueueItem(
                item_id=subject,
                type=refresh_type,
                priority=priority,
                created_at=self._now(),
                metadata=dict(metadata or {}),
            )
            await self._store.set(self._collection, item.id, item.to_document())
            if await self._swap_slot(subject, refresh_type, item.id, expected=owner):
                logger.info(
                    "Scheduled background refresh for %s %s with %s priority",
                    refresh_type,
                    subject,
                    priority,
                )
                return item
            await self._store.delete(self._collection, item.id)

        raise StoreUnavailableError(
            f"Could not reserve refresh slot for {refresh_type} {subject} "
            f"after {_SLOT_ATTEMPTS} attempts"
        )

    async def enqueue_many(self, requests: Iterable[RefreshRequest]) -> list[RefreshQueueItem]:
        """
        Enqueue several requests in one batch write, skipping duplicates.

        Items and their slots are written in the same batch. Unlike `enqueue`
        the slot check is not a compare-and-set; a concurrent producer can
        race it, which costs at most one redundant refresh.
        """
        seen: set[tuple[str, str]] = set()
        created: list[RefreshQueueItem] = []
        now = self._now()
        for offset, request in enumerate(requests):
            subject = self._validate(request.item_id, request.type, request.priority)
            slot = (subject, request.type)
            if slot in seen:
                continue
            seen.add(slot)
            if await self.find_active(subject, request.type) is not None:
                continue
            created.append(
                RefreshQueueItem(
                    item_id=subject,
                    type=request.type,
                    priority=request.priority,
                    # Keep input order stable for FIFO claims within a band.
                    created_at=now + offset * 1e-6,
                    metadata=dict(request.metadata),
                )
            )
        if created:
            writes: list[BatchWrite] = []
            for item in created:
                writes.append(BatchWrite(self._collection, item.id, item.to_document()))
                writes.append(
                    BatchWrite(
                        self._slots,
                        self._slot_key(item.item_id, item.type),
                        {"queueId": item.id, "itemId": item.item_id, "type": item.type},
                    )
                )
            await self._store.batch_write(writes)
            logger.info("Scheduled %d background refresh(es)", len(created))
        return created

    async def claim_batch(
        self, limit: int, *, claimed_by: str | None = None
    ) -> list[RefreshQueueItem]:
        """
        Claim up to ``limit`` pending items, highest priority then oldest first.

        Each claim is a conditional transaction (``pending`` -> ``processing``),
        so concurrent callers never receive the same item. Every claimed item
        carries a new ``claim_token``.
        """
        if limit < 1:
            return []
        pending = sorted(
            (item for item in await self._all_items() if item.status == "pending"),
            key=lambda item: item.claim_order,
        )
        claimed: list[RefreshQueueItem] = []
        for candidate in pending:
            if len(claimed) >= limit:
                break
            now = self._now()
            token = uuid.uuid4().hex

            def _claim(item: RefreshQueueItem, now: float = now, token: str = token) -> bool:
                if item.status != "pending":
                    return False
                item.status = "processing"
                item.processing_started_at = now
                item.attempts += 1
                item.claim_token = token
                item.claimed_by = claimed_by
                return True

            item = await self._transition(candidate.id, _claim)
            if item is not None:
                claimed.append(item)
        return claimed

    async def touch(
        self, queue_id: str, *, claim_token: str | None = None
    ) -> RefreshQueueItem | None:
        """
        Restart the processing clock of a claimed item.

        Returns ``None`` when the item is no longer processing under
        ``claim_token``, meaning the claim was reclaimed or finished.
        """
        now = self._now()

        def _touch(item: RefreshQueueItem) -> bool:
            if not self._holds_claim(item, claim_token):
                return False
            item.processing_started_at = now
            return True

        return await self._transition(queue_id, _touch)

    async def complete(
        self, queue_id: str, *, claim_token: str | None = None
    ) -> RefreshQueueItem | None:
        """Mark one processing item completed. Other states are left unchanged."""
        now = self._now()

        def _complete(item: RefreshQueueItem) -> bool:
            if not self._holds_claim(item, claim_token):
                return False
            item.status = "completed"
            item.completed_at = now
            item.error = None
            item.claim_token = None
            return True

        return await self._transition(queue_id, _complete)

    async def fail(
        self,
        queue_id: str,
        *,
        error: str,
        retryable: bool = True,
        claim_token: str | None = None,
    ) -> RefreshQueueItem | None:
        """
        Record a failed attempt on one processing item.

        Retryable failures with attempts left return the item to ``pending``;
        otherwise it moves to terminal ``failed``.
        """
        now = self._now()

        def _fail(item: RefreshQueueItem) -> bool:
            if not self._holds_claim(item, claim_token):
                return False
            item.error = error
            item.last_error_at = now
            item.processing_started_at = None
            item.claim_token = None
            if retryable and item.attempts < self._max_attempts:
                item.status = "pending"
                return True
            item.status = "failed"
            item.failed_at = now
            item.dead_letter_reason = (
                DEAD_LETTER_RETRY_EXHAUSTED if retryable else DEAD_LETTER_NON_RETRYABLE
            )
            return True

        item = await self._transition(queue_id, _fail)
        if item is not None and item.status == "failed":
            logger.warning(
                "%s (%s)",
                RefreshExhaustedError(item.item_id, item.attempts, error),
                item.dead_letter_reason,
            )
        return item

    async def release(
        self, queue_id: str, *, claim_token: str | None = None
    ) -> RefreshQueueItem | None:
        """
        Return one processing item to ``pending`` without consuming an attempt.

        Used when the item could not run because of rate-limit backpressure.
        """

        def _release(item: RefreshQueueItem) -> bool:
            if not self._holds_claim(item, claim_token):
                return False
            item.status = "pending"
            item.attempts = max(0, item.attempts - 1)
            item.processing_started_at = None
            item.claim_token = None
            return True

        return await self._transition(queue_id, _release)

    async def reclaim_stale(self, *, older_than_s: float = 300.0) -> int:
        """
        Recover items left in ``processing`` by a crashed worker.

        Items claimed more than ``older_than_s`` ago go back to ``pending``,
        or to ``failed`` once their attempts are exhausted.
        """
        if older_than_s <= 0:
            raise ValueError("older_than_s must be > 0")
        now = self._now()
        cutoff = now - older_than_s
        moved = 0
        for candidate in await self._all_items():
            if candidate.status != "processing":
                continue
            if (candidate.processing_started_at or 0.0) > cutoff:
                continue

            def _reclaim(item: RefreshQueueItem) -> bool:
                if item.status != "processing":
                    return False
                if (item.processing_started_at or 0.0) > cutoff:
                    return False
                item.processing_started_at = None
                item.claim_token = None
                item.last_error_at = now
                item.error = f"processing exceeded {older_than_s:.0f}s without completing"
                if item.attempts >= self._max_attempts:
                    item.status = "failed"
                    item.failed_at = now
                    item.dead_letter_reason = DEAD_LETTER_PROCESSING_TIMEOUT
                else:
                    item.status = "pending"
                return True

            if await self._transition(candidate.id, _reclaim) is not None:
                moved += 1
        if moved:
            logger.info("Reclaimed %d stale processing refresh item(s)", moved)
        return moved

    async def get(self, queue_id: str) -> RefreshQueueItem | None:
        """Return one item by queue id, or `None` when missing."""
        doc = await self._store.get(self._collection, queue_id)
        if doc is None:
            return None
        return RefreshQueueItem.from_document(doc)

    async def list_items(
        self,
        *,
        status: RefreshStatus | None = None,
        limit: int = 100,
    ) -> list[RefreshQueueItem]:
        """List items in claim order with an optional status filter."""
        items = await self._all_items()
        if status is not None:
            items = [item for item in items if item.status == status]
        items.sort(key=lambda item: item.claim_order)
        return items[:limit]

    async def redrive_failed(self, *, limit: int = 100, reason: str | None = None) -> int:
        """
        Requeue failed items back to pending with a fresh attempt budget.

        A failed item whose subject already has an active item is skipped.
        """
        moved = 0
        for candidate in await self.list_items(status="failed", limit=limit):
            if reason is not None and candidate.dead_letter_reason != reason:
                continue
            owner, active = await self._active_owner(candidate.item_id, candidate.type)
            if active is not None:
                continue
            if not await self._swap_slot(
                candidate.item_id, candidate.type, candidate.id, expected=owner
            ):
                continue

            def _redrive(item: RefreshQueueItem) -> bool:
                if item.status != "failed":
                    return False
                item.status = "pending"
                item.attempts = 0
                item.error = None
                item.failed_at = None
                item.dead_letter_reason = None
                return True

            if await self._transition(candidate.id, _redrive) is not None:
                moved += 1
        if moved:
            logger.info("Redrove %d failed refresh item(s)", moved)
        return moved

    async def purge(
        self,
        *,
        status: RefreshStatus = "completed",
        older_than_s: float = 0.0,
    ) -> int:
        """
        Delete terminal items that reached ``status`` at least ``older_than_s`` ago.

        Slot documents are kept; a slot pointing at a deleted item counts as
        free, and there is at most one slot per subject and type.
        """
        if status not in ("completed", "failed"):
            raise ValueError("only terminal items can be purged")
        if older_than_s < 0:
            raise ValueError("older_than_s must be >= 0")
        cutoff = self._now() - older_than_s
        removed = 0
        for item in await self._all_items():
            if item.status != status:
                continue
            finished_at = item.completed_at if status == "completed" else item.failed_at
            if finished_at is None or finished_at > cutoff:
                continue
            await self._store.delete(self._collection, item.id)
            removed += 1
        if removed:
            logger.info("Purged %d %s refresh item(s)", removed, status)
        return removed
