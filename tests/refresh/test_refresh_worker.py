from __future__ import annotations

import asyncio

import pytest

from ghpulse.errors import NotFoundError, UpstreamRateLimitedError, UpstreamUnavailableError
from ghpulse.freshness import FreshnessCache
from ghpulse.ratelimit import RateLimiter
from ghpulse.refresh import (
    DEAD_LETTER_NON_RETRYABLE,
    RefreshQueue,
    RefreshRunSummary,
    RefreshWorker,
    RefreshWorkerConfig,
)
from ghpulse.store import InMemoryDocumentStore
from ghpulse.watchers import ProfileWatchNotifier


def run_async(coro):
    return asyncio.run(coro)


HOUR = 3600.0


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeUpstream:
    def __init__(self) -> None:
        self.payloads: dict[str, dict] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, subject_key, refresh_type):
        self.calls.append((subject_key, refresh_type))
        error = self.errors.get(subject_key)
        if error is not None:
            raise error
        return dict(self.payloads.get(subject_key, {"login": subject_key}))


class _RecordingMetrics:
    def __init__(self) -> None:
        self.events: list[tuple[str, int, dict]] = []

    def incr(self, name, value=1, *, tags=None):
        self.events.append((name, value, dict(tags or {})))


class _Harness:
    def __init__(self, *, budget: int = 100, max_attempts: int = 3, upstream=None) -> None:
        self.clock = _Clock()
        self.store = InMemoryDocumentStore()
        self.upstream = upstream or _FakeUpstream()
        self.limiter = RateLimiter(self.store, budget=budget, window_s=HOUR, clock=self.clock)
        self.queue = RefreshQueue(self.store, max_attempts=max_attempts, clock=self.clock)
        self.cache = FreshnessCache(
            self.store,
            self.upstream,
            queue=self.queue,
            limiter=self.limiter,
            clock=self.clock,
        )
        self.notifier = ProfileWatchNotifier(self.store, clock=self.clock)
        self.metrics = _RecordingMetrics()
        self.worker = RefreshWorker(
            self.queue,
            self.cache,
            self.limiter,
            notifier=self.notifier,
            metrics=self.metrics,
            config=RefreshWorkerConfig(batch_size=20, inter_item_delay_s=0),
        )


def test_run_once_with_empty_queue():
    async def scenario() -> None:
        h = _Harness()
        assert await h.worker.run_once() == RefreshRunSummary()

    run_async(scenario())


def test_stale_while_revalidate_end_to_end():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.payloads["octocat"] = {"login": "octocat", "followers": 1}
        first = await h.cache.get_or_refresh("octocat")
        assert first.tier == "fresh"

        h.clock.now += 2 * HOUR
        h.upstream.payloads["octocat"] = {"login": "octocat", "followers": 2}
        stale = await h.cache.get_or_refresh("octocat")
        assert stale.tier == "stale"
        assert stale.data["followers"] == 1

        summary = await h.worker.run_once()
        assert summary.claimed == 1
        assert summary.completed == 1

        after = await h.cache.get_or_refresh("octocat")
        assert after.tier == "fresh"
        assert after.data["followers"] == 2
        items = await h.queue.list_items()
        assert [item.status for item in items] == ["completed"]

    run_async(scenario())


def test_not_found_fails_without_retry():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.errors["ghost"] = NotFoundError("ghost")
        item = await h.queue.enqueue("ghost", "profile")

        summary = await h.worker.run_once()

        assert summary.failed == 1
        stored = await h.queue.get(item.id)
        assert stored.status == "failed"
        assert stored.dead_letter_reason == DEAD_LETTER_NON_RETRYABLE

    run_async(scenario())


def test_transient_errors_retry_until_exhausted():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.errors["octocat"] = UpstreamUnavailableError("GitHub API error 502")
        item = await h.queue.enqueue("octocat", "repos")

        outcomes = [await h.worker.run_once() for _ in range(4)]

        assert [s.retried for s in outcomes] == [1, 1, 0, 0]
        assert [s.failed for s in outcomes] == [0, 0, 1, 0]
        stored = await h.queue.get(item.id)
        assert stored.status == "failed"
        assert stored.attempts == 3
        assert "502" in stored.error
        assert len(h.upstream.calls) == 3

    run_async(scenario())


def test_limiter_denial_defers_without_consuming_attempts():
    async def scenario() -> None:
        h = _Harness(budget=1)
        first = await h.queue.enqueue("a", "profile", "high")
        second = await h.queue.enqueue("b", "profile")

        summary = await h.worker.run_once()

        assert summary.completed == 1
        assert summary.deferred == 1
        assert (await h.queue.get(first.id)).status == "completed"
        deferred = await h.queue.get(second.id)
        assert deferred.status == "pending"
        assert deferred.attempts == 0
        assert h.upstream.calls == [("a", "profile")]

    run_async(scenario())


def test_upstream_quota_exhaustion_defers_item():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.errors["octocat"] = UpstreamRateLimitedError(
            "quota", status_code=403, reset_at=None
        )
        item = await h.queue.enqueue("octocat", "profile")

        summary = await h.worker.run_once()

        assert summary.deferred == 1
        stored = await h.queue.get(item.id)
        assert stored.status == "pending"
        assert stored.attempts == 0

    run_async(scenario())


def test_one_failing_item_does_not_abort_the_batch():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.errors["bad"] = RuntimeError("unexpected")
        await h.queue.enqueue("bad", "profile", "high")
        good = await h.queue.enqueue("good", "profile")

        summary = await h.worker.run_once()

        assert summary.retried == 1
        assert summary.completed == 1
        assert (await h.queue.get(good.id)).status == "completed"
        assert ("refresh_claimed_total", 2, {}) in h.metrics.events
        assert (
            "refresh_items_total",
            1,
            {"outcome": "completed", "type": "profile"},
        ) in h.metrics.events

    run_async(scenario())


def test_worker_reclaims_abandoned_items_first():
    async def scenario() -> None:
        h = _Harness()
        item = await h.queue.enqueue("octocat", "profile")
        await h.queue.claim_batch(1)
        h.clock.now += 301

        summary = await h.worker.run_once()

        assert summary.reclaimed == 1
        assert summary.completed == 1
        stored = await h.queue.get(item.id)
        assert stored.status == "completed"
        assert stored.attempts == 2

    run_async(scenario())


def test_profile_refresh_notifies_watchers():
    async def scenario() -> None:
        h = _Harness()
        h.upstream.payloads["octocat"] = {"login": "octocat", "followers": 10, "public_repos": 1}
        await h.cache.get_or_refresh("octocat")
        await h.notifier.watch("user-1", "octocat")

        h.clock.now += 2 * HOUR
        h.upstream.payloads["octocat"] = {"login": "octocat", "followers": 13, "public_repos": 1}
        await h.cache.get_or_refresh("octocat")
        await h.worker.run_once()

        notes = await h.notifier.notifications_for("user-1")
        assert [note["message"] for note in notes] == ["octocat gained 3 new followers"]

    run_async(scenario())


def test_start_and_shutdown_run_ticks_in_background():
    async def scenario() -> None:
        h = _Harness()
        worker = RefreshWorker(
            h.queue,
            h.cache,
            h.limiter,
            config=RefreshWorkerConfig(poll_interval_s=0.01, inter_item_delay_s=0),
        )
        item = await h.queue.enqueue("octocat", "profile")

        await worker.start()
        assert worker.is_running is True
        for _ in range(100):
            if (await h.queue.get(item.id)).status == "completed":
                break
            await asyncio.sleep(0.01)
        await worker.shutdown()

        assert worker.is_running is False
        assert (await h.queue.get(item.id)).status == "completed"

    run_async(scenario())


def test_items_reclaimed_by_another_worker_mid_batch_are_skipped():
    async def scenario() -> None:
        taken_over: list = []

        class _SlowUpstream(_FakeUpstream):
            async def fetch(self, subject_key, refresh_type):
                # Another worker reclaims and re-claims while this fetch is slow.
                h.clock.now += 301
                await h.queue.reclaim_stale(older_than_s=300)
                taken_over.extend(await h.queue.claim_batch(20, claimed_by="other"))
                return await super().fetch(subject_key, refresh_type)

        h = _Harness(upstream=_SlowUpstream())
        first = await h.queue.enqueue("first", "profile", "high")
        second = await h.queue.enqueue("second", "profile")
        summary = await h.worker.run_once()

        assert summary.claimed == 2
        assert summary.completed == 0
        assert summary.skipped == 2
        assert {item.id for item in taken_over} == {first.id, second.id}
        for item in taken_over:
            stored = await h.queue.get(item.id)
            assert stored.status == "processing"
            assert stored.claimed_by == "other"
            assert stored.attempts == 2
            done = await h.queue.complete(item.id, claim_token=item.claim_token)
            assert done.status == "completed"
        assert (
            "refresh_items_total",
            1,
            {"outcome": "skipped", "type": "profile"},
        ) in h.metrics.events

    run_async(scenario())


def test_run_once_purges_terminal_items_past_retention():
    async def scenario() -> None:
        h = _Harness()
        worker = RefreshWorker(
            h.queue,
            h.cache,
            h.limiter,
            metrics=h.metrics,
            config=RefreshWorkerConfig(
                inter_item_delay_s=0,
                completed_retention_s=HOUR,
                failed_retention_s=None,
            ),
        )
        done = await h.queue.enqueue("octocat", "profile")
        h.upstream.errors["ghost"] = NotFoundError("ghost")
        dead = await h.queue.enqueue("ghost", "profile")
        await worker.run_once()
        assert (await h.queue.get(done.id)).status == "completed"
        assert (await h.queue.get(dead.id)).status == "failed"

        h.clock.now += HOUR + 1
        summary = await worker.run_once()

        assert summary.purged == 1
        assert await h.queue.get(done.id) is None
        assert (await h.queue.get(dead.id)).status == "failed"
        assert ("refresh_purged_total", 1, {"status": "completed"}) in h.metrics.events

    run_async(scenario())


def test_worker_config_rejects_negative_retention():
    h = _Harness()
    with pytest.raises(ValueError, match="completed_retention_s"):
        RefreshWorker(h.queue, h.cache, config=RefreshWorkerConfig(completed_retention_s=-1))
    with pytest.raises(ValueError, match="processing_timeout_s"):
        RefreshWorker(h.queue, h.cache, config=RefreshWorkerConfig(processing_timeout_s=0))
