"""Expiry worker module exports."""

from .worker import (
    ExpiryRunResult,
    ExpiryWorkerSettings,
    load_settings,
    run_forever,
    run_sweep_once,
    run_sweep_with_retries,
)

__all__ = [
    "ExpiryRunResult",
    "ExpiryWorkerSettings",
    "load_settings",
    "run_sweep_once",
    "run_sweep_with_retries",
    "run_forever",
]
