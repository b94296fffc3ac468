"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Document store contract shared by the cache, limiter and refresh queue.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..types import Document

T = TypeVar("T")

# A transaction mutation receives the current document (or None) and returns
# ``(new_document_or_None, result)``. Returning None as the document skips the write.
Mutation = Callable[[Document | None], tuple[Document | None, T]]


@dataclass(frozen=True, slots=True)
class BatchWrite:
    """One write inside a `DocumentStore.batch_write` call."""

    collection: str
    key: str
    data: Document = field(default_factory=dict)
    merge: bool = False


def merge_documents(current: Document | None, update: Document) -> Document:
    """Shallow merge used by merge-set: fields missing from `update` survive."""
    merged: Document = dict(current or {})
    merged.update(update)
    return merged


class DocumentStore(ABC):
    """
    Persistent key-value document store addressed by ``(collection, key)``.

    Implementations raise `StoreUnavailableError` when the backend cannot be
    reached. `transact` is the only primitive that guarantees an atomic
    read-modify-write on one document; callers needing compare-and-swap
    semantics must go through it.
    """

    backend_id: str = "abstract"

    @abstractmethod
    async def get(self, collection: str, key: str) -> Document | None:
        """Return one document, or ``None`` when missing."""

    @abstractmethod
    async def set(
        self,
        collection: str,
        key: str,
        data: Document,
        *,
        merge: bool = False,
    ) -> None:
        """
        Write one document.

        Args:
            collection: Collection name.
            key: Document key.
            data: Document fields.
            merge: Preserve existing fields not present in ``data`` (upsert).
        """

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        """Delete one document. Missing documents are ignored."""

    @abstractmethod
    async def increment(
        self,
        collection: str,
        key: str,
        field_name: str,
        amount: int | float = 1,
    ) -> int | float:
        """Atomically add ``amount`` to a numeric field and return the new value."""

    @abstractmethod
    async def batch_write(self, writes: Sequence[BatchWrite]) -> None:
        """Apply several writes together, all-or-nothing where the backend allows."""

    @abstractmethod
    async def transact(
        self,
        collection: str,
        key: str,
        mutation: Mutation[T],
    ) -> T:
        """
        Run an atomic read-modify-write on one document.

        The mutation may be invoked more than once by optimistic backends, so
        it must be free of side effects.
        """

    @abstractmethod
    async def list_documents(self, collection: str) -> list[tuple[str, Document]]:
        """Return every ``(key, document)`` pair in a collection."""

    async def close(self) -> None:
        """Release backend resources."""
        return None

    async def __aenter__(self) -> "DocumentStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
