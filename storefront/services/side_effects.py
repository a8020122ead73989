import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from storefront.models.domain import now_utc
from storefront.observability import log_event, metrics_store

SideEffect = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class SideEffectFailure:
    name: str
    order_ref: str | None
    error: str
    occurred_at: datetime = field(default_factory=now_utc)


class SideEffectDispatcher:
    """Runs post-commit work off the caller's path.

    Every task is tracked until it finishes, and failures are kept on a
    bounded channel instead of disappearing with the task.
    """

    def __init__(self, max_failures: int = 200) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.failures: deque[SideEffectFailure] = deque(maxlen=max_failures)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, effect: SideEffect, *, order_ref: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(name, effect, order_ref))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, effect: SideEffect, order_ref: str | None) -> None:
        try:
            await effect()
        except Exception as err:
            metrics_store.increment("side_effect_failed_total", effect=name)
            self.failures.append(SideEffectFailure(name=name, order_ref=order_ref, error=str(err)))
            log_event(
                "side_effect_failed",
                level=logging.WARNING,
                order_ref=order_ref,
                exc_info=True,
                effect=name,
                error=str(err),
            )
            return
        metrics_store.increment("side_effect_completed_total")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CoalescingExportScheduler:
    """Debounced, rate-limited trigger for full order exports.

    Triggers that land while a run is pending or in flight set a dirty flag
    and collapse into a single follow-up run.
    """

    def __init__(
        self,
        run_export: SideEffect,
        *,
        debounce_s: float = 2.0,
        min_interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.run_export = run_export
        self.debounce_s = debounce_s
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._dirty = False
        self._task: asyncio.Task | None = None
        self._last_run_at: float | None = None
        self.triggers = 0
        self.runs = 0

    def trigger(self) -> None:
        self.triggers += 1
        self._dirty = True
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def _next_delay(self) -> float:
        delay = self.debounce_s
        if self._last_run_at is not None:
            delay = max(delay, self._last_run_at + self.min_interval_s - self._clock())
        return max(delay, 0.0)

    async def _loop(self) -> None:
        while self._dirty:
            await self._sleep(self._next_delay())
            self._dirty = False
            try:
                await self.run_export()
            except Exception as err:
                metrics_store.increment("side_effect_failed_total", effect="order_export")
                log_event("order_export_failed", level=logging.WARNING, exc_info=True, error=str(err))
            else:
                metrics_store.increment("order_export_runs_total")
            finally:
                self._last_run_at = self._clock()
                self.runs += 1

    async def flush(self) -> None:
        while self._task is not None and not self._task.done():
            await self._task
