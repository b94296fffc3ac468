"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Refresh queue item model and lifecycle vocabulary.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Literal

from ..types import Document, JSONValue, RefreshPriority, RefreshType

MAX_ATTEMPTS = 3
REFRESH_QUEUE_COLLECTION = "refreshQueue"
REFRESH_SLOT_SUFFIX = "Slots"

RefreshStatus = Literal["pending", "processing", "completed", "failed"]

DEAD_LETTER_RETRY_EXHAUSTED = "retry_budget_exhausted"
DEAD_LETTER_NON_RETRYABLE = "non_retryable_error"
DEAD_LETTER_PROCESSING_TIMEOUT = "processing_timeout"

PRIORITY_RANK: dict[str, int] = {"low": 0, "normal": 1, "high": 2}


@dataclass(slots=True)
class RefreshQueueItem:
    """
    One request to re-fetch a subject from upstream.

    Attributes:
        item_id: Subject identifier to refresh (normalized login).
        type: Which upstream call refreshes the subject.
        priority: Claim ordering band.
        id: Unique queue entry identifier (document key).
        status: Current lifecycle status.
        attempts: Claims made so far; incremented on every claim.
        created_at: Unix timestamp when the item was enqueued.
        processing_started_at: Unix timestamp of the latest claim.
        completed_at: Unix timestamp when the item completed.
        failed_at: Unix timestamp when the item failed terminally.
        last_error_at: Unix timestamp of the latest failed attempt.
        error: Latest error message.
        dead_letter_reason: Why a failed item stopped retrying.
        claim_token: Token issued by the latest claim; only its holder may
            complete, fail, release or extend the claim.
        claimed_by: Worker that holds the latest claim, for inspection.
        metadata: Optional JSON-safe metadata (e.g. the producer).
    """

    item_id: str
    type: RefreshType
    priority: RefreshPriority = "normal"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RefreshStatus = "pending"
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    processing_started_at: float | None = None
    completed_at: float | None = None
    failed_at: float | None = None
    last_error_at: float | None = None
    error: str | None = None
    dead_letter_reason: str | None = None
    claim_token: str | None = None
    claimed_by: str | None = None
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Whether the item has reached a terminal state."""
        return self.status in ("completed", "failed")

    @property
    def is_active(self) -> bool:
        """Whether the item still occupies its ``(item_id, type)`` slot."""
        return self.status in ("pending", "processing")

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK["normal"])

    @property
    def claim_order(self) -> tuple[int, float]:
        """Sort key: higher priority first, then FIFO by creation time."""
        return (-self.priority_rank, self.created_at)

    def to_document(self) -> Document:
        """Serialize to a JSON-safe store document."""
        return asdict(self)

    @classmethod
    def from_document(cls, doc: Document) -> RefreshQueueItem:
        """Deserialize from a store document, ignoring unknown fields."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in doc.items() if k in known})  # type: ignore[arg-type]
