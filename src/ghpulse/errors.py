"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Typed failures raised by the cache, store, upstream and refresh layers.
"""

from __future__ import annotations


class GhPulseError(RuntimeError):
    """Base class for ghpulse failures."""


class NotFoundError(GhPulseError):
    """Upstream authoritatively reports that the subject does not exist."""

    def __init__(self, subject_key: str, message: str | None = None) -> None:
        super().__init__(message or f"Subject '{subject_key}' was not found upstream")
        self.subject_key = subject_key


class UpstreamUnavailableError(GhPulseError):
    """
    Upstream call failed and no cached fallback exists.

    ``reason`` is a short machine-readable tag (``error``, ``timeout``,
    ``rate_limited``) request handlers use to pick a response status.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str = "error",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


class UpstreamRateLimitedError(UpstreamUnavailableError):
    """Upstream rejected the call because its own quota is exhausted."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reset_at: float | None = None,
    ) -> None:
        super().__init__(message, reason="rate_limited", status_code=status_code)
        self.reset_at = reset_at


class RateLimitedError(GhPulseError):
    """Local rate limiter denied an upstream call. Backpressure, not a data error."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Rate limit budget exhausted for '{operation}'")
        self.operation = operation


class StoreUnavailableError(GhPulseError):
    """Document store could not be read or written."""


class RefreshExhaustedError(GhPulseError):
    """Describes a refresh queue item that reached its retry bound."""

    def __init__(self, item_id: str, attempts: int, error: str | None = None) -> None:
        detail = f": {error}" if error else ""
        super().__init__(
            f"Refresh for '{item_id}' failed after {attempts} attempt(s){detail}"
        )
        self.item_id = item_id
        self.attempts = attempts
        self.error = error
