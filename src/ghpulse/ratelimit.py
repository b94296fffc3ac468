"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Shared fixed-window rate limiter guarding upstream calls.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import StoreUnavailableError
from .store import DocumentStore
from .types import Document, JSONValue

logger = logging.getLogger("ghpulse.ratelimit")

RATE_LIMIT_COLLECTION = "system"
RATE_LIMIT_KEY = "rateLimit"
LOW_BUDGET_THRESHOLD = 10


@dataclass(frozen=True, slots=True)
class RateLimitSnapshot:
    """Point-in-time view of the shared rate-limit counter."""

    remaining: int
    limit: int
    reset_at: float | None
    operations: dict[str, JSONValue] = field(default_factory=dict)

    @property
    def is_limited(self) -> bool:
        """Whether the budget is nearly exhausted."""
        return self.remaining < LOW_BUDGET_THRESHOLD

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset": self.reset_at,
            "isLimited": self.is_limited,
            "operations": dict(self.operations),
        }


class RateLimiter:
    """
    Fixed-window budget shared by every process using the same store.

    The window is anchored to first use and restarts whenever ``resetAt`` has
    passed. Check-and-decrement runs inside one store transaction so
    concurrent callers never oversell the budget. When the store is
    unreachable the limiter fails open: upstream enforces its own limits.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        budget: int = 5000,
        window_s: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if budget < 1:
            raise ValueError("budget must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self._store = store
        self._budget = budget
        self._window_s = window_s
        self._clock = clock or time.time

    @property
    def budget(self) -> int:
        return self._budget

    def _now(self) -> float:
        return self._clock()

    async def acquire(self, operation: str, cost: int = 1) -> bool:
        """
        Try to spend ``cost`` units of budget for ``operation``.

        Returns:
            ``True`` when the call may proceed, ``False`` as backpressure.
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        now = self._now()
        try:
            allowed = await self._store.transact(
                RATE_LIMIT_COLLECTION,
                RATE_LIMIT_KEY,
                lambda current: self._spend(current, operation=operation, cost=cost, now=now),
            )
        except StoreUnavailableError as exc:
            logger.warning(
                "Rate limit store unavailable; allowing %s (fail open): %s",
                operation,
                exc,
            )
            return True
        if not allowed:
            logger.warning("Rate limit exceeded for %s", operation)
        return allowed

    def _spend(
        self,
        current: Document | None,
        *,
        operation: str,
        cost: int,
        now: float,
    ) -> tuple[Document | None, bool]:
        state: Document = dict(current or {})
        remaining = state.get("remaining")
        reset_at = state.get("resetAt")
        changed = False

        if (
            current is None
            or not isinstance(remaining, int)
            or not isinstance(reset_at, (int, float))
            or reset_at <= now
        ):
            remaining = self._budget
            state["remaining"] = remaining
            state["limit"] = self._budget
            state["resetAt"] = now + self._window_s
            changed = True

        if remaining < cost:
            return (state if changed else None), False

        operations = state.get("operations")
        operations = dict(operations) if isinstance(operations, dict) else {}
        previous = operations.get(operation)
        count = previous.get("count", 0) if isinstance(previous, dict) else 0
        operations[operation] = {
            "count": (count if isinstance(count, int) else 0) + 1,
            "lastRequest": now,
        }
        state["remaining"] = remaining - cost
        state["operations"] = operations
        return state, True

    async def snapshot(self) -> RateLimitSnapshot:
        """Read the counter without spending budget."""
        doc = await self._store.get(RATE_LIMIT_COLLECTION, RATE_LIMIT_KEY)
        now = self._now()
        if doc is None:
            return RateLimitSnapshot(
                remaining=self._budget, limit=self._budget, reset_at=None
            )
        remaining = doc.get("remaining")
        reset_at = doc.get("resetAt")
        operations = doc.get("operations")
        if not isinstance(reset_at, (int, float)) or reset_at <= now:
            return RateLimitSnapshot(
                remaining=self._budget,
                limit=self._budget,
                reset_at=None,
                operations=operations if isinstance(operations, dict) else {},
            )
        return RateLimitSnapshot(
            remaining=remaining if isinstance(remaining, int) else self._budget,
            limit=self._budget,
            reset_at=float(reset_at),
            operations=operations if isinstance(operations, dict) else {},
        )
