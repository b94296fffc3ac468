"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

In-memory document store implementation.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Sequence
from typing import TypeVar

from ..types import Document
from .base import BatchWrite, DocumentStore, Mutation, merge_documents

T = TypeVar("T")


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local document store using dicts and per-document asyncio locks.

    Suitable for single-process systems and testing. Documents are lost on
    process restart. Documents are deep-copied on the way in and out so
    callers never share mutable state with the store.
    """

    backend_id = "inmemory"

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, collection: str, key: str) -> asyncio.Lock:
        lock = self._locks.get((collection, key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(collection, key)] = lock
        return lock

    def _rows(self, collection: str) -> dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def _write(self, collection: str, key: str, data: Document, *, merge: bool) -> None:
        rows = self._rows(collection)
        if merge:
            rows[key] = merge_documents(rows.get(key), copy.deepcopy(data))
        else:
            rows[key] = copy.deepcopy(data)

    async def get(self, collection: str, key: str) -> Document | None:
        row = self._rows(collection).get(key)
        if row is None:
            return None
        return copy.deepcopy(row)

    async def set(
        self,
        collection: str,
        key: str,
        data: Document,
        *,
        merge: bool = False,
    ) -> None:
        async with self._lock_for(collection, key):
            self._write(collection, key, data, merge=merge)

    async def delete(self, collection: str, key: str) -> None:
        async with self._lock_for(collection, key):
            self._rows(collection).pop(key, None)

    async def increment(
        self,
        collection: str,
        key: str,
        field_name: str,
        amount: int | float = 1,
    ) -> int | float:
        async with self._lock_for(collection, key):
            row = self._rows(collection).setdefault(key, {})
            current = row.get(field_name)
            base = current if isinstance(current, (int, float)) else 0
            value = base + amount
            row[field_name] = value
            return value

    async def batch_write(self, writes: Sequence[BatchWrite]) -> None:
        # Single-threaded event loop: no await between writes keeps the batch atomic.
        for write in writes:
            self._write(write.collection, write.key, write.data, merge=write.merge)

    async def transact(
        self,
        collection: str,
        key: str,
        mutation: Mutation[T],
    ) -> T:
        async with self._lock_for(collection, key):
            current = await self.get(collection, key)
            new_doc, result = mutation(current)
            if new_doc is not None:
                self._write(collection, key, new_doc, merge=False)
            return result

    async def list_documents(self, collection: str) -> list[tuple[str, Document]]:
        return [
            (key, copy.deepcopy(row)) for key, row in self._rows(collection).items()
        ]

    @property
    def collection_names(self) -> list[str]:
        """Names of collections that currently hold documents."""
        return sorted(name for name, rows in self._collections.items() if rows)
