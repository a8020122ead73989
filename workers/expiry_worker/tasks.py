"""Expiry worker tasks."""

from __future__ import annotations

import asyncio

from storefront.dependencies import build_container
from storefront.services.expiry_scheduler import ExpiryScheduler
from workers.expiry_worker.worker import (
    ExpiryRunResult,
    ExpiryWorkerSettings,
    load_settings,
    run_sweep_with_retries,
)


def sweep_tick(
    settings: ExpiryWorkerSettings | None = None,
    scheduler: ExpiryScheduler | None = None,
) -> ExpiryRunResult:
    """Run a single expiry sweep.

    Useful for cron-style scheduling where no long-lived loop is wanted.
    """
    resolved_settings = settings or load_settings()

    async def tick() -> ExpiryRunResult:
        resolved_scheduler = scheduler or build_container().expiry
        result = await run_sweep_with_retries(resolved_scheduler, resolved_settings)
        await resolved_scheduler.engine.dispatcher.drain()
        return result

    return asyncio.run(tick())
