from __future__ import annotations

import asyncio

import pytest

from ghpulse.refresh import (
    DEAD_LETTER_NON_RETRYABLE,
    DEAD_LETTER_PROCESSING_TIMEOUT,
    DEAD_LETTER_RETRY_EXHAUSTED,
    RefreshQueue,
    RefreshQueueItem,
    RefreshRequest,
)
from ghpulse.store import InMemoryDocumentStore


def run_async(coro):
    return asyncio.run(coro)


class _Clock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _queue(**kwargs) -> tuple[RefreshQueue, _Clock]:
    clock = _Clock()
    return RefreshQueue(InMemoryDocumentStore(), clock=clock, **kwargs), clock


def test_enqueue_creates_pending_item():
    async def scenario() -> None:
        queue, clock = _queue()
        item = await queue.enqueue("octocat", "profile", "high", metadata={"source": "tests"})

        assert item.status == "pending"
        assert item.attempts == 0
        assert item.created_at == clock.now
        stored = await queue.get(item.id)
        assert stored == item
        assert stored.metadata == {"source": "tests"}

    run_async(scenario())


def test_duplicate_enqueue_is_idempotent():
    async def scenario() -> None:
        queue, _ = _queue()
        first = await queue.enqueue("octocat", "profile")
        second = await queue.enqueue("octocat", "profile")
        other_type = await queue.enqueue("octocat", "repos")

        assert second.id == first.id
        assert other_type.id != first.id
        assert len(await queue.list_items()) == 2

    run_async(scenario())


def test_duplicate_of_processing_item_is_not_enqueued():
    async def scenario() -> None:
        queue, _ = _queue()
        first = await queue.enqueue("octocat", "profile")
        await queue.claim_batch(1)

        again = await queue.enqueue("octocat", "profile", "high")

        assert again.id == first.id
        assert again.status == "processing"
        assert again.priority == "normal"
        assert len(await queue.list_items()) == 1

    run_async(scenario())


def test_pending_duplicate_gets_priority_upgrade_only():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("octocat", "profile", "normal")
        upgraded = await queue.enqueue("octocat", "profile", "high")
        not_downgraded = await queue.enqueue("octocat", "profile", "low")

        assert upgraded.id == item.id
        assert upgraded.priority == "high"
        assert not_downgraded.priority == "high"

    run_async(scenario())


def test_completed_subject_can_be_enqueued_again():
    async def scenario() -> None:
        queue, _ = _queue()
        first = await queue.enqueue("octocat", "profile")
        await queue.claim_batch(1)
        await queue.complete(first.id)

        second = await queue.enqueue("octocat", "profile")
        assert second.id != first.id

    run_async(scenario())


def test_claim_order_is_priority_then_fifo():
    async def scenario() -> None:
        queue, clock = _queue()
        low = await queue.enqueue("a", "profile", "low")
        clock.now += 1
        normal_old = await queue.enqueue("b", "profile", "normal")
        clock.now += 1
        high = await queue.enqueue("c", "profile", "high")
        clock.now += 1
        normal_new = await queue.enqueue("d", "profile", "normal")

        claimed = await queue.claim_batch(3)

        assert [item.id for item in claimed] == [high.id, normal_old.id, normal_new.id]
        assert all(item.status == "processing" for item in claimed)
        assert all(item.attempts == 1 for item in claimed)
        assert all(item.processing_started_at == clock.now for item in claimed)
        remaining = await queue.list_items(status="pending")
        assert [item.id for item in remaining] == [low.id]

    run_async(scenario())


def test_concurrent_claims_never_share_an_item():
    async def scenario() -> None:
        queue, _ = _queue()
        for index in range(10):
            await queue.enqueue(f"user{index}", "profile")

        batches = await asyncio.gather(*(queue.claim_batch(4) for _ in range(5)))

        claimed_ids = [item.id for batch in batches for item in batch]
        assert len(claimed_ids) == 10
        assert len(set(claimed_ids)) == 10

    run_async(scenario())


def test_retryable_failures_stop_at_max_attempts():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("octocat", "profile")

        for attempt in range(1, 4):
            claimed = await queue.claim_batch(1)
            assert [c.id for c in claimed] == [item.id]
            assert claimed[0].attempts == attempt
            updated = await queue.fail(item.id, error=f"boom-{attempt}")
            expected = "pending" if attempt < 3 else "failed"
            assert updated.status == expected

        final = await queue.get(item.id)
        assert final.status == "failed"
        assert final.attempts == 3
        assert final.error == "boom-3"
        assert final.dead_letter_reason == DEAD_LETTER_RETRY_EXHAUSTED
        assert final.failed_at is not None
        assert await queue.claim_batch(1) == []

    run_async(scenario())


def test_non_retryable_failure_is_terminal_immediately():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("ghost", "profile")
        await queue.claim_batch(1)

        updated = await queue.fail(item.id, error="not found", retryable=False)

        assert updated.status == "failed"
        assert updated.attempts == 1
        assert updated.dead_letter_reason == DEAD_LETTER_NON_RETRYABLE

    run_async(scenario())


def test_terminal_items_are_immutable():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("octocat", "profile")
        await queue.claim_batch(1)
        completed = await queue.complete(item.id)
        assert completed.status == "completed"

        assert await queue.fail(item.id, error="late") is None
        assert await queue.complete(item.id) is None
        assert await queue.release(item.id) is None
        assert (await queue.get(item.id)).status == "completed"

    run_async(scenario())


def test_transitions_require_processing_state():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("octocat", "profile")
        assert await queue.complete(item.id) is None
        assert await queue.fail(item.id, error="x") is None
        assert await queue.complete("missing") is None

    run_async(scenario())


def test_release_returns_item_without_consuming_attempt():
    async def scenario() -> None:
        queue, _ = _queue()
        item = await queue.enqueue("octocat", "profile")
        await queue.claim_batch(1)

        released = await queue.release(item.id)

        assert released.status == "pending"
        assert released.attempts == 0
        assert released.processing_started_at is None

    run_async(scenario())


def test_reclaim_stale_processing_items():
    async def scenario() -> None:
        queue, clock = _queue(max_attempts=2)
        stuck = await queue.enqueue("a", "profile")
        await queue.claim_batch(1)
        clock.now += 100
        recent = await queue.enqueue("b", "profile")
        await queue.claim_batch(1)

        clock.now += 250
        moved = await queue.reclaim_stale(older_than_s=300)

        assert moved == 1
        assert (await queue.get(stuck.id)).status == "pending"
        assert (await queue.get(recent.id)).status == "processing"

        await queue.claim_batch(1)
        clock.now += 301
        assert await queue.reclaim_stale(older_than_s=300) == 2
        exhausted = await queue.get(stuck.id)
        assert exhausted.status == "failed"
        assert exhausted.dead_letter_reason == DEAD_LETTER_PROCESSING_TIMEOUT
        assert (await queue.get(recent.id)).status == "pending"

    run_async(scenario())


def test_enqueue_many_skips_active_and_duplicate_requests():
    async def scenario() -> None:
        queue, _ = _queue()
        existing = await queue.enqueue("a", "profile")

        created = await queue.enqueue_many(
            [
                RefreshRequest("a"),
                RefreshRequest("b", priority="low"),
                RefreshRequest("b"),
                RefreshRequest("c", metadata={"source": "popular"}),
            ]
        )

        assert [item.item_id for item in created] == ["b", "c"]
        assert created[0].created_at < created[1].created_at
        items = await queue.list_items()
        assert {item.item_id for item in items} == {"a", "b", "c"}
        assert existing.id in {item.id for item in items}

    run_async(scenario())


def test_redrive_failed_and_purge():
    async def scenario() -> None:
        queue, clock = _queue(max_attempts=1)
        failed = await queue.enqueue("a", "profile")
        done = await queue.enqueue("b", "profile")
        await queue.claim_batch(2)
        await queue.fail(failed.id, error="boom")
        await queue.complete(done.id)

        assert await queue.redrive_failed(reason=DEAD_LETTER_NON_RETRYABLE) == 0
        assert await queue.redrive_failed() == 1
        redriven = await queue.get(failed.id)
        assert redriven.status == "pending"
        assert redriven.attempts == 0
        assert redriven.dead_letter_reason is None

        assert await queue.purge(status="completed", older_than_s=60) == 0
        clock.now += 61
        assert await queue.purge(status="completed", older_than_s=60) == 1
        assert await queue.get(done.id) is None
        with pytest.raises(ValueError, match="terminal"):
            await queue.purge(status="pending")

    run_async(scenario())


def test_enqueue_validates_inputs():
    async def scenario() -> None:
        queue, _ = _queue()
        with pytest.raises(ValueError, match="non-empty"):
            await queue.enqueue("  ", "profile")
        with pytest.raises(ValueError, match="refresh type"):
            await queue.enqueue("a", "gists")
        with pytest.raises(ValueError, match="priority"):
            await queue.enqueue("a", "profile", "urgent")

    run_async(scenario())


def test_queue_item_document_roundtrip_ignores_unknown_fields():
    item = RefreshQueueItem(item_id="octocat", type="repos", priority="high")
    doc = item.to_document()
    doc["legacyField"] = True
    assert RefreshQueueItem.from_document(doc) == item


class _CountingStore(InMemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.listed: list[str] = []

    async def list_documents(self, collection):
        self.listed.append(collection)
        return await super().list_documents(collection)


def test_reclaimed_claim_cannot_be_finished_by_its_previous_owner():
    async def scenario() -> None:
        queue, clock = _queue()
        await queue.enqueue("a", "profile")
        await queue.enqueue("b", "profile")
        first_owner = await queue.claim_batch(20, claimed_by="worker-a")
        assert len(first_owner) == 2

        clock.now += 301
        assert await queue.reclaim_stale(older_than_s=300) == 2
        second_owner = await queue.claim_batch(20, claimed_by="worker-b")

        assert {item.id for item in second_owner} == {item.id for item in first_owner}
        stale, live = first_owner[0], next(
            item for item in second_owner if item.id == first_owner[0].id
        )
        assert live.claim_token != stale.claim_token
        assert live.claimed_by == "worker-b"

        assert await queue.complete(stale.id, claim_token=stale.claim_token) is None
        assert await queue.release(stale.id, claim_token=stale.claim_token) is None
        assert await queue.touch(stale.id, claim_token=stale.claim_token) is None
        assert await queue.fail(stale.id, error="late", claim_token=stale.claim_token) is None

        retried = await queue.fail(live.id, error="boom", claim_token=live.claim_token)
        assert retried.status == "pending"
        assert retried.attempts == 2
        assert retried.error == "boom"
        assert retried.claim_token is None

    run_async(scenario())


def test_touch_restarts_the_processing_clock():
    async def scenario() -> None:
        queue, clock = _queue()
        item = await queue.enqueue("octocat", "profile")
        (claimed,) = await queue.claim_batch(1)

        clock.now += 250
        touched = await queue.touch(item.id, claim_token=claimed.claim_token)
        assert touched.processing_started_at == clock.now

        clock.now += 250
        assert await queue.reclaim_stale(older_than_s=300) == 0
        done = await queue.complete(item.id, claim_token=claimed.claim_token)
        assert done.status == "completed"
        assert await queue.touch(item.id, claim_token=claimed.claim_token) is None

    run_async(scenario())


def test_enqueue_checks_the_subject_slot_without_scanning_the_queue():
    async def scenario() -> None:
        store = _CountingStore()
        queue = RefreshQueue(store, clock=_Clock())
        for _ in range(25):
            item = await queue.enqueue("octocat", "profile")
            (claimed,) = await queue.claim_batch(1)
            await queue.complete(item.id, claim_token=claimed.claim_token)

        store.listed.clear()
        fresh = await queue.enqueue("octocat", "profile")
        duplicate = await queue.enqueue("octocat", "profile", "high")

        assert store.listed == []
        assert duplicate.id == fresh.id
        assert duplicate.priority == "high"
        assert (await queue.find_active("octocat", "profile")).id == fresh.id

    run_async(scenario())


def test_concurrent_enqueues_of_one_subject_create_one_item():
    async def scenario() -> None:
        queue, _ = _queue()
        items = await asyncio.gather(*(queue.enqueue("octocat", "repos") for _ in range(5)))

        assert len({item.id for item in items}) == 1
        assert len(await queue.list_items()) == 1

    run_async(scenario())


def test_purge_bounds_the_queue_after_many_cycles():
    async def scenario() -> None:
        queue, clock = _queue()
        for index in range(30):
            item = await queue.enqueue(f"user{index % 3}", "profile")
            (claimed,) = await queue.claim_batch(1)
            await queue.complete(item.id, claim_token=claimed.claim_token)
        assert len(await queue.list_items(limit=1000)) == 30

        clock.now += 61
        assert await queue.purge(status="completed", older_than_s=60) == 30
        assert await queue.list_items(limit=1000) == []

        again = await queue.enqueue("user0", "profile")
        assert again.status == "pending"
        with pytest.raises(ValueError, match="older_than_s"):
            await queue.purge(older_than_s=-1)

    run_async(scenario())


def test_redrive_skips_subjects_with_an_active_item():
    async def scenario() -> None:
        queue, _ = _queue(max_attempts=1)
        failed = await queue.enqueue("octocat", "profile")
        await queue.claim_batch(1)
        await queue.fail(failed.id, error="boom")
        replacement = await queue.enqueue("octocat", "profile")

        assert await queue.redrive_failed() == 0
        assert (await queue.get(failed.id)).status == "failed"
        assert (await queue.find_active("octocat", "profile")).id == replacement.id

    run_async(scenario())
