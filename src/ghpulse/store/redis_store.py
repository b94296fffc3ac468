"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Redis-backed persistent document store.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from redis.exceptions import RedisError, WatchError

from ..errors import StoreUnavailableError
from ..types import Document
from .base import BatchWrite, DocumentStore, Mutation, merge_documents

logger = logging.getLogger("ghpulse.store.redis")

T = TypeVar("T")


class RedisDocumentStore(DocumentStore):
    """
    Persistent document store using Redis for durability across restarts.

    Uses:
    - Redis string (``{prefix}:doc:{collection}:{key}``) per JSON document
    - Redis set (``{prefix}:idx:{collection}``) indexing keys per collection

    Read-modify-write operations use ``WATCH``/``MULTI``/``EXEC`` optimistic
    transactions on the document key and retry on conflict.

    Requires ``redis.asyncio`` (``pip install redis``).

    Args:
        redis: An ``redis.asyncio.Redis`` client instance.
        prefix: Key prefix for namespacing.
        max_transaction_retries: Conflict retries before giving up.
    """

    backend_id = "redis"

    def __init__(
        self,
        redis: Any,
        *,
        prefix: str = "ghpulse",
        max_transaction_retries: int = 32,
    ) -> None:
        if max_transaction_retries < 1:
            raise ValueError("max_transaction_retries must be >= 1")
        self._redis = redis
        self._prefix = prefix
        self._max_transaction_retries = max_transaction_retries

    def _doc_key(self, collection: str, key: str) -> str:
        """Redis string key storing one serialized document."""
        return f"{self._prefix}:doc:{collection}:{key}"

    def _index_key(self, collection: str) -> str:
        """Redis set key storing the document keys of one collection."""
        return f"{self._prefix}:idx:{collection}"

    def _serialize(self, data: Document) -> str:
        return json.dumps(data, default=str)

    def _deserialize(self, raw: str | bytes | None) -> Document | None:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        return data

    @staticmethod
    def _text(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def get(self, collection: str, key: str) -> Document | None:
        try:
            raw = await self._redis.get(self._doc_key(collection, key))
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                f"Redis get failed for {collection}/{key}: {exc}"
            ) from exc
        return self._deserialize(raw)

    async def set(
        self,
        collection: str,
        key: str,
        data: Document,
        *,
        merge: bool = False,
    ) -> None:
        if merge:
            await self.transact(
                collection,
                key,
                lambda current: (merge_documents(current, data), None),
            )
            return
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._doc_key(collection, key), self._serialize(data))
                pipe.sadd(self._index_key(collection), key)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                f"Redis set failed for {collection}/{key}: {exc}"
            ) from exc

    async def delete(self, collection: str, key: str) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._doc_key(collection, key))
                pipe.srem(self._index_key(collection), key)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                f"Redis delete failed for {collection}/{key}: {exc}"
            ) from exc

    async def increment(
        self,
        collection: str,
        key: str,
        field_name: str,
        amount: int | float = 1,
    ) -> int | float:
        def _mutation(current: Document | None) -> tuple[Document, int | float]:
            row = dict(current or {})
            existing = row.get(field_name)
            base = existing if isinstance(existing, (int, float)) else 0
            value = base + amount
            row[field_name] = value
            return row, value

        return await self.transact(collection, key, _mutation)

    async def transact(
        self,
        collection: str,
        key: str,
        mutation: Mutation[T],
    ) -> T:
        doc_key = self._doc_key(collection, key)
        for attempt in range(self._max_transaction_retries):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(doc_key)
                    current = self._deserialize(await pipe.get(doc_key))
                    new_doc, result = mutation(current)
                    if new_doc is None:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.set(doc_key, self._serialize(new_doc))
                    pipe.sadd(self._index_key(collection), key)
                    await pipe.execute()
                    return result
            except WatchError:
                logger.debug(
                    "Redis transaction conflict on %s/%s (attempt %d)",
                    collection,
                    key,
                    attempt + 1,
                )
                await asyncio.sleep(0)
                continue
            except (RedisError, OSError) as exc:
                raise StoreUnavailableError(
                    f"Redis transaction failed for {collection}/{key}: {exc}"
                ) from exc
        raise StoreUnavailableError(
            f"Redis transaction for {collection}/{key} gave up after "
            f"{self._max_transaction_retries} conflicting attempts"
        )

    async def batch_write(self, writes: Sequence[BatchWrite]) -> None:
        if not writes:
            return
        merge_keys = [
            self._doc_key(w.collection, w.key) for w in writes if w.merge
        ]
        for attempt in range(self._max_transaction_retries):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    current: dict[str, Document | None] = {}
                    if merge_keys:
                        await pipe.watch(*merge_keys)
                        for doc_key in merge_keys:
                            current[doc_key] = self._deserialize(await pipe.get(doc_key))
                    pipe.multi()
                    for write in writes:
                        doc_key = self._doc_key(write.collection, write.key)
                        data = (
                            merge_documents(current.get(doc_key), write.data)
                            if write.merge
                            else write.data
                        )
                        # Later writes to the same document see earlier ones.
                        current[doc_key] = data
                        pipe.set(doc_key, self._serialize(data))
                        pipe.sadd(self._index_key(write.collection), write.key)
                    await pipe.execute()
                    return
            except WatchError:
                logger.debug("Redis batch conflict (attempt %d)", attempt + 1)
                await asyncio.sleep(0)
                continue
            except (RedisError, OSError) as exc:
                raise StoreUnavailableError(f"Redis batch write failed: {exc}") from exc
        raise StoreUnavailableError(
            f"Redis batch write gave up after {self._max_transaction_retries} "
            "conflicting attempts"
        )

    async def list_documents(self, collection: str) -> list[tuple[str, Document]]:
        try:
            members = await self._redis.smembers(self._index_key(collection))
            keys = sorted(self._text(m) for m in members)
            if not keys:
                return []
            raws = await self._redis.mget(
                [self._doc_key(collection, key) for key in keys]
            )
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                f"Redis scan failed for {collection}: {exc}"
            ) from exc

        rows: list[tuple[str, Document]] = []
        for key, raw in zip(keys, raws):
            doc = self._deserialize(raw)
            if doc is not None:
                rows.append((key, doc))
        return rows

    async def close(self) -> None:
        close_fn = getattr(self._redis, "aclose", None) or getattr(
            self._redis, "close", None
        )
        if callable(close_fn):
            result = close_fn()
            if hasattr(result, "__await__"):
                await result
