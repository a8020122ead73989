import asyncio

from storefront.observability import metrics_store
from storefront.services.side_effects import CoalescingExportScheduler, SideEffectDispatcher


async def _no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


def test_dispatcher_records_failures_and_keeps_running():
    dispatcher = SideEffectDispatcher()
    done: list[str] = []

    async def ok():
        done.append("ok")

    async def boom():
        raise RuntimeError("smtp down")

    async def scenario():
        dispatcher.dispatch("email", boom, order_ref="ORD-1")
        dispatcher.dispatch("sheet", ok)
        await dispatcher.drain()

    asyncio.run(scenario())

    assert done == ["ok"]
    assert dispatcher.pending == 0
    assert [(failure.name, failure.order_ref, failure.error) for failure in dispatcher.failures] == [
        ("email", "ORD-1", "smtp down")
    ]
    counters = metrics_store.snapshot().counters
    assert counters["side_effect_failed_total"] == 1
    assert counters["side_effect_completed_total"] == 1


def test_export_scheduler_coalesces_burst_into_one_run():
    runs: list[int] = []

    async def export():
        runs.append(1)

    scheduler = CoalescingExportScheduler(export, debounce_s=0, min_interval_s=0, sleep=_no_sleep)

    async def scenario():
        for _ in range(5):
            scheduler.trigger()
        await scheduler.flush()

    asyncio.run(scenario())

    assert scheduler.triggers == 5
    assert runs == [1]


def test_export_scheduler_reruns_when_triggered_during_export():
    scheduler: CoalescingExportScheduler
    runs: list[int] = []

    async def export():
        runs.append(1)
        if len(runs) == 1:
            scheduler.trigger()
            scheduler.trigger()

    scheduler = CoalescingExportScheduler(export, debounce_s=0, min_interval_s=0, sleep=_no_sleep)

    async def scenario():
        scheduler.trigger()
        await scheduler.flush()

    asyncio.run(scenario())

    assert len(runs) == 2
    assert scheduler.runs == 2


def test_export_scheduler_waits_for_min_interval_between_runs():
    delays: list[float] = []
    clock = [100.0]

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    async def export():
        if len(delays) == 1:
            scheduler.trigger()

    scheduler = CoalescingExportScheduler(
        export,
        debounce_s=2,
        min_interval_s=5,
        clock=lambda: clock[0],
        sleep=fake_sleep,
    )

    async def scenario():
        scheduler.trigger()
        await scheduler.flush()

    asyncio.run(scenario())

    assert delays == [2, 5]


def test_export_failure_is_counted_not_raised():
    async def export():
        raise RuntimeError("sheet api 500")

    scheduler = CoalescingExportScheduler(export, debounce_s=0, min_interval_s=0, sleep=_no_sleep)

    async def scenario():
        scheduler.trigger()
        await scheduler.flush()

    asyncio.run(scenario())

    assert scheduler.runs == 1
    assert metrics_store.snapshot().counters["side_effect_failed_total"] == 1
