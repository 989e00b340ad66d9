import asyncio

import pytest

from conftest import make_order
from ordersync.services.errors import ApiError
from ordersync.services.polling import PollingScheduler
from ordersync.services.store import OrderStore


def test_requires_store_or_apply():
    async def fetch():
        return []

    with pytest.raises(ValueError):
        PollingScheduler(fetch)


def test_overlapping_tick_is_skipped_and_stop_is_deterministic():
    async def scenario():
        release = asyncio.Event()
        started = []

        async def fetch():
            started.append(1)
            await release.wait()
            return [make_order(1)]

        store = OrderStore()
        poller = PollingScheduler(fetch, store=store, interval=3600)
        assert poller.trigger()
        await asyncio.sleep(0)
        assert poller.in_flight
        assert not poller.trigger()
        assert poller.skipped == 1
        assert len(started) == 1

        await poller.stop()
        assert not poller.in_flight
        assert not poller.running
        release.set()
        await asyncio.sleep(0)
        # the cancelled tick never applied its result
        assert store.get_snapshot().orders == []

    asyncio.run(scenario())


def test_loop_ticks_until_stopped():
    async def scenario():
        calls = []

        async def fetch():
            calls.append(1)
            return [make_order(len(calls))]

        store = OrderStore()
        poller = PollingScheduler(fetch, store=store, interval=0.01)
        poller.start()
        poller.start()
        await asyncio.sleep(0.1)
        await poller.stop()
        count = len(calls)
        assert count >= 2
        assert poller.ticks == count
        await asyncio.sleep(0.05)
        assert len(calls) == count
        # each tick is a complete list: only the last order survives
        assert len(store.get_snapshot().orders) == 1

    asyncio.run(scenario())


def test_failures_are_absorbed():
    async def scenario():
        async def fetch():
            raise ApiError(None, None, "network down")

        poller = PollingScheduler(fetch, store=OrderStore(), interval=3600)
        assert await poller.tick() is False
        assert poller.failures == 1

    asyncio.run(scenario())


def test_result_for_an_old_subject_is_discarded():
    async def scenario():
        store = OrderStore(subject="T1")

        async def fetch():
            store.reset_subject("T2")
            return [make_order(1)]

        poller = PollingScheduler(fetch, store=store, interval=3600)
        assert await poller.tick() is True
        assert store.get_snapshot().orders == []

    asyncio.run(scenario())


def test_custom_apply_receives_ticket():
    async def scenario():
        store = OrderStore()
        seen = []

        async def fetch():
            return "payload"

        poller = PollingScheduler(fetch, store=store, apply=lambda result, ticket: seen.append((result, ticket)))
        await poller.tick()
        assert seen == [("payload", store.begin_fetch())]

    asyncio.run(scenario())


def test_manual_refresh_waits_for_the_tick_in_flight():
    async def scenario():
        release = asyncio.Event()
        active = []
        overlap = []

        async def fetch():
            active.append(1)
            overlap.append(len(active))
            await release.wait()
            active.pop()
            return [make_order(len(overlap))]

        store = OrderStore()
        poller = PollingScheduler(fetch, store=store, interval=3600)
        assert poller.trigger()
        await asyncio.sleep(0)
        manual = asyncio.create_task(poller.refresh())
        await asyncio.sleep(0)
        assert overlap == [1]

        release.set()
        await manual
        assert overlap == [1, 1]
        assert [o.id for o in store.get_snapshot().orders] == [2]
        await poller.stop()

    asyncio.run(scenario())


def test_tick_is_skipped_while_a_manual_refresh_runs():
    async def scenario():
        release = asyncio.Event()
        calls = []

        async def fetch():
            calls.append(1)
            await release.wait()
            return []

        poller = PollingScheduler(fetch, store=OrderStore(), interval=3600)
        manual = asyncio.create_task(poller.refresh())
        await asyncio.sleep(0)
        assert not poller.trigger()
        assert poller.skipped == 1
        release.set()
        await manual
        assert calls == [1]

    asyncio.run(scenario())


def test_manual_refresh_raises():
    async def scenario():
        async def fetch():
            raise ApiError(None, None, "network down")

        poller = PollingScheduler(fetch, store=OrderStore(), interval=3600)
        with pytest.raises(ApiError):
            await poller.refresh()
        assert poller.failures == 0

    asyncio.run(scenario())
