#!/usr/bin/env python3
"""
Standalone refresh worker process.

Drains the refresh queue on a fixed interval, and optionally schedules
refreshes for recently viewed profiles before each tick. Completed and
failed items are purged by the worker once their retention has passed.

Usage examples:
  PYTHONPATH=src python scripts/run_refresh_worker.py --once
  GHPULSE_STORE_BACKEND=redis GHPULSE_REDIS_URL=redis://localhost:6379/0 \
    PYTHONPATH=src python scripts/run_refresh_worker.py --interval 600 --popular
  PYTHONPATH=src python scripts/run_refresh_worker.py --once --redrive --redrive-reason processing_timeout
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging

from ghpulse import GhPulseSettings, build_runtime
from ghpulse.refresh import PrometheusRefreshMetrics, schedule_popular_refreshes

logger = logging.getLogger("ghpulse.scripts.worker")


async def run_worker(
    *,
    once: bool,
    interval_s: float | None,
    popular: bool,
    redrive: bool,
    redrive_reason: str | None,
    prometheus_port: int | None,
) -> None:
    settings = GhPulseSettings.from_env()
    if interval_s is not None:
        settings = dataclasses.replace(settings, poll_interval_s=interval_s)

    metrics = None
    if prometheus_port is not None:
        from prometheus_client import start_http_server

        start_http_server(prometheus_port)
        metrics = PrometheusRefreshMetrics()

    runtime = build_runtime(settings, metrics=metrics)
    try:
        if redrive:
            moved = await runtime.queue.redrive_failed(reason=redrive_reason)
            logger.info("Requeued %d failed refresh item(s)", moved)
        while True:
            if popular:
                await schedule_popular_refreshes(runtime.store, runtime.queue)
            summary = await runtime.worker.run_once()
            logger.info("Tick summary: %s", dataclasses.asdict(summary))
            if once:
                break
            await asyncio.sleep(settings.poll_interval_s)
    finally:
        await runtime.aclose()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ghpulse refresh worker")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks")
    parser.add_argument(
        "--popular",
        action="store_true",
        help="Schedule refreshes for recently viewed profiles each tick",
    )
    parser.add_argument(
        "--redrive",
        action="store_true",
        help="Requeue failed items with a fresh attempt budget before the first tick",
    )
    parser.add_argument(
        "--redrive-reason",
        type=str,
        default=None,
        help="Only requeue failed items with this dead-letter reason",
    )
    parser.add_argument("--prometheus-port", type=int, default=None)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(
            run_worker(
                once=args.once,
                interval_s=args.interval,
                popular=args.popular,
                redrive=args.redrive,
                redrive_reason=args.redrive_reason,
                prometheus_port=args.prometheus_port,
            )
        )
    except KeyboardInterrupt:
        logger.info("Refresh worker stopped")


if __name__ == "__main__":
    main()
