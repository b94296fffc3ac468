"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Bounded in-process memo owned by one cache instance.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class MemoEntry(Generic[V]):
    """One memoized value with its expiry."""

    value: V
    expires_at_s: float


class RecordMemo(Generic[V]):
    """
    LRU memo bounded by entry count and per-entry TTL.

    A ``ttl_s`` of 0 disables memoization entirely.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 60.0,
        max_entries: int = 1024,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl_s < 0:
            raise ValueError("ttl_s must be >= 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock or time.time
        self._rows: OrderedDict[str, MemoEntry[V]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self._ttl_s > 0

    def get(self, key: str) -> V | None:
        row = self._rows.get(key)
        if row is None:
            return None
        if row.expires_at_s <= self._clock():
            self._rows.pop(key, None)
            return None
        self._rows.move_to_end(key)
        return row.value

    def put(self, key: str, value: V) -> None:
        if not self.enabled:
            return
        self._rows[key] = MemoEntry(value=value, expires_at_s=self._clock() + self._ttl_s)
        self._rows.move_to_end(key)
        while len(self._rows) > self._max_entries:
            self._rows.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._rows.pop(key, None)

    def clear(self) -> None:
        self._rows.clear()

    def __len__(self) -> int:
        return len(self._rows)
