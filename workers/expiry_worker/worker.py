"""Expiry worker that periodically cancels unpaid orders."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import uuid4

from storefront.config import ensure_secure_runtime_settings, settings as app_settings
from storefront.dependencies import build_container
from storefront.observability import configure_logging, log_event, set_request_id
from storefront.services.expiry_scheduler import ExpiryScheduler


@dataclass(frozen=True)
class ExpiryWorkerSettings:
    interval_s: int
    max_retries: int
    retry_backoff_s: float


@dataclass(frozen=True)
class ExpiryRunResult:
    ok: bool
    checked: int
    cancelled: int
    error_count: int = 0
    error: str | None = None
    attempts: int = 1


def load_settings(env: dict[str, str] | None = None) -> ExpiryWorkerSettings:
    source = env if env is not None else os.environ
    interval_s = int(source.get("STOREFRONT_EXPIRY_WORKER_INTERVAL_S", str(app_settings.expiry_sweep_interval_s)))
    max_retries = int(source.get("STOREFRONT_EXPIRY_WORKER_MAX_RETRIES", "2"))
    retry_backoff_s = float(source.get("STOREFRONT_EXPIRY_WORKER_RETRY_BACKOFF_S", "5"))

    if interval_s < 1:
        raise ValueError("STOREFRONT_EXPIRY_WORKER_INTERVAL_S must be >= 1")
    if max_retries < 0:
        raise ValueError("STOREFRONT_EXPIRY_WORKER_MAX_RETRIES must be >= 0")
    if retry_backoff_s < 0:
        raise ValueError("STOREFRONT_EXPIRY_WORKER_RETRY_BACKOFF_S must be >= 0")

    return ExpiryWorkerSettings(
        interval_s=interval_s,
        max_retries=max_retries,
        retry_backoff_s=retry_backoff_s,
    )


async def run_sweep_once(scheduler: ExpiryScheduler) -> ExpiryRunResult:
    set_request_id(f"expiry-{uuid4().hex[:12]}")
    summary = await scheduler.run_expiry_sweep()
    return ExpiryRunResult(
        ok=summary.listing_error is None,
        checked=summary.checked,
        cancelled=summary.cancelled,
        error_count=summary.error_count,
        error=summary.listing_error,
    )


async def run_sweep_with_retries(
    scheduler: ExpiryScheduler,
    settings: ExpiryWorkerSettings,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ExpiryRunResult:
    # Per-order failures are left for the next tick; only a failed scan is retried.
    for attempts in range(1, settings.max_retries + 2):
        result = await run_sweep_once(scheduler)
        if result.ok or attempts > settings.max_retries:
            return ExpiryRunResult(
                ok=result.ok,
                checked=result.checked,
                cancelled=result.cancelled,
                error_count=result.error_count,
                error=result.error,
                attempts=attempts,
            )

        await sleep(settings.retry_backoff_s * (2 ** (attempts - 1)))

    raise RuntimeError("expiry retry loop exhausted unexpectedly")


async def run_forever(settings: ExpiryWorkerSettings, scheduler: ExpiryScheduler | None = None) -> None:
    if scheduler is None:
        ensure_secure_runtime_settings()
        container = build_container()
        await container.permissions.reload()
        scheduler = container.expiry

    while True:
        result = await run_sweep_with_retries(scheduler, settings)
        if not result.ok:
            log_event("expiry_worker_tick_failed", level=logging.ERROR, error=result.error, attempts=result.attempts)
        await scheduler.engine.dispatcher.drain()
        await asyncio.sleep(settings.interval_s)


if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_forever(load_settings()))
