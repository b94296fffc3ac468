"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Refresh worker counters and the sinks that record them.

The worker reports through `RefreshMetrics.incr` using the names declared in
`REFRESH_COUNTERS`. Every counter has a fixed label set, so sinks can create
all series up front instead of guessing them from the first call.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

REFRESH_RECLAIMED = "refresh_reclaimed_total"
REFRESH_CLAIMED = "refresh_claimed_total"
REFRESH_ITEMS = "refresh_items_total"
REFRESH_PURGED = "refresh_purged_total"
REFRESH_LOOP_ERRORS = "refresh_loop_errors_total"


@dataclass(frozen=True, slots=True)
class CounterSpec:
    """Name, help text and label names of one refresh counter."""

    name: str
    documentation: str
    labels: tuple[str, ...] = ()


REFRESH_COUNTERS: dict[str, CounterSpec] = {
    spec.name: spec
    for spec in (
        CounterSpec(
            REFRESH_RECLAIMED,
            "Processing items returned to the queue after their claim timed out.",
        ),
        CounterSpec(
            REFRESH_CLAIMED,
            "Queue items claimed by worker ticks.",
        ),
        CounterSpec(
            REFRESH_ITEMS,
            "Claimed items by outcome (completed, retried, failed, deferred, "
            "skipped) and refresh type (profile, repos).",
            ("outcome", "type"),
        ),
        CounterSpec(
            REFRESH_PURGED,
            "Terminal queue items deleted after their retention period, by status.",
            ("status",),
        ),
        CounterSpec(
            REFRESH_LOOP_ERRORS,
            "Background worker ticks that raised before finishing.",
        ),
    )
}


class RefreshMetrics(Protocol):
    """Minimal metrics interface for refresh worker instrumentation."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        """Increment one of the counters in `REFRESH_COUNTERS`."""


class NoOpRefreshMetrics:
    """Default metrics sink when no metrics backend is provided."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        _ = name
        _ = value
        _ = tags


class PrometheusRefreshMetrics:
    """
    Prometheus-backed refresh metrics.

    One `prometheus_client.Counter` is registered per entry of
    `REFRESH_COUNTERS` at construction. Unknown names and mismatched label
    sets raise `ValueError`.

    Requires `prometheus_client` package.
    """

    def __init__(self, *, namespace: str = "ghpulse", registry: Any | None = None) -> None:
        try:
            from prometheus_client import REGISTRY, Counter
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise RuntimeError(
                "PrometheusRefreshMetrics requires `prometheus_client` to be installed."
            ) from exc

        target = registry if registry is not None else REGISTRY
        self._counters = {
            spec.name: Counter(
                spec.name,
                spec.documentation,
                labelnames=spec.labels,
                namespace=namespace,
                registry=target,
            )
            for spec in REFRESH_COUNTERS.values()
        }

    def incr(self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None) -> None:
        spec = REFRESH_COUNTERS.get(name)
        if spec is None:
            raise ValueError(f"Unknown refresh counter: {name}")
        labels = dict(tags or {})
        if set(labels) != set(spec.labels):
            raise ValueError(
                f"{name} expects labels {sorted(spec.labels)}, got {sorted(labels)}"
            )
        counter = self._counters[name]
        if spec.labels:
            counter.labels(**{label: str(labels[label]) for label in spec.labels}).inc(value)
        else:
            counter.inc(value)
