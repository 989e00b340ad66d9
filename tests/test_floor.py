import asyncio
from decimal import Decimal

import pytest

from conftest import make_order, order_payload
from ordersync.schemas.session import Table
from ordersync.views.floor import FloorView, derive_table_views

TABLES = {"data": [
    {"id": 1, "name": "T1", "code": "T1", "status": "free"},
    {"id": 2, "name": "T2", "code": "T2", "status": "occupied"},
    {"id": 3, "name": "T3", "code": "T3", "status": "Needs Cleaning"},
]}


def test_occupancy_is_derived_from_active_orders():
    tables = [Table.model_validate(t) for t in TABLES["data"]]
    orders = [
        make_order(1, table={"id": 1, "name": "T1"}),
        make_order(2, status="completed", table={"id": 2, "name": "T2"}),
    ]
    views = {tv.table.id: tv for tv in derive_table_views(tables, orders)}

    assert views[1].effective_status == "occupied"
    assert views[1].active_order_ids == [1]
    assert not views[1].mismatch

    assert views[2].effective_status == "occupied"
    assert views[2].mismatch

    assert views[3].effective_status == "needs_cleaning"
    assert not views[3].mismatch


def floor_api(api):
    api.on("GET", "/v1/tables", TABLES)
    api.on("GET", "/v1/orders", {"data": [
        order_payload(1, table={"id": 1, "name": "T1"}, total="12.00", table_session_id=4),
        order_payload(2, status="served", table={"id": 1, "name": "T1"}, total="3.50", table_session_id=4),
    ]})
    return api


def test_floor_view_loads_and_totals(api, ctx):
    floor_api(api)

    async def scenario():
        floor = FloorView(ctx, interval=3600)
        await floor.refresh()
        assert floor.table_view(1).active_order_ids == [1, 2]
        assert floor.table_total(1) == Decimal("15.50")
        assert [tv.table.id for tv in floor.mismatches()] == [2]
        with pytest.raises(KeyError):
            floor.table_view(99)

    asyncio.run(scenario())


def test_resolve_mismatch_is_manual(api, ctx):
    floor_api(api)
    api.on("PATCH", "/v1/tables/2/status", {"data": {"id": 2, "status": "free"}})

    async def scenario():
        floor = FloorView(ctx, interval=3600)
        await floor.refresh()
        # nothing is written until staff ask for it
        assert api.calls_to("PATCH", "/v1/tables/2/status") == []

        tv = await floor.resolve_mismatch(2)
        assert tv.effective_status == "free"
        assert floor.mismatches() == []

        with pytest.raises(ValueError):
            await floor.resolve_mismatch(1)
        with pytest.raises(ValueError):
            await floor.mark_free(1)

    asyncio.run(scenario())
    assert api.calls_to("PATCH", "/v1/tables/2/status")[0]["body"] == {"status": "free"}


def test_close_session_reloads(api, ctx):
    floor_api(api)
    api.on("POST", "/v1/tables/T1/sessions/4/close", {"message": "Session closed"})

    async def scenario():
        floor = FloorView(ctx, interval=3600)
        await floor.refresh()
        api.on("GET", "/v1/orders", {"data": []})
        await floor.close_session(1, 4)
        assert floor.table_view(1).effective_status == "free"
        assert floor.snapshot.orders == []

    asyncio.run(scenario())
    assert len(api.calls_to("POST", "/v1/tables/T1/sessions/4/close")) == 1
    assert len(api.calls_to("GET", "/v1/orders")) == 2
