"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Document store package: the persistence seam behind the cache, limiter and queue.
"""

from .base import BatchWrite, DocumentStore, merge_documents
from .factory import create_document_store, create_document_store_from_env
from .memory import InMemoryDocumentStore

__all__ = [
    "BatchWrite",
    "DocumentStore",
    "merge_documents",
    "InMemoryDocumentStore",
    "create_document_store",
    "create_document_store_from_env",
]


# Lazy import for Redis store
def __getattr__(name: str):
    """Lazily expose optional store backends that require extra dependencies."""
    if name == "RedisDocumentStore":
        from .redis_store import RedisDocumentStore

        return RedisDocumentStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
