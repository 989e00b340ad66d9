import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ordersync.core.context import AppContext
from ordersync.schemas.order import Order
from ordersync.schemas.session import Table, TableView
from ordersync.services import resources
from ordersync.services import status_machine as sm
from ordersync.services.store import FetchTicket
from ordersync.views.base import BaseView, kitchen_channel

logger = logging.getLogger("ordersync.views.floor")


def derive_table_views(tables: List[Table], orders: List[Order]) -> List[TableView]:
    """Occupancy of every table, recomputed from its active orders.

    A table with an active order is occupied whatever its stored status. A
    table stored as occupied with no active order is reported as a mismatch
    and left for staff to resolve.
    """
    active: Dict[int, List[int]] = {}
    for o in orders:
        if o.table_id is not None and sm.is_active_order(o.status):
            active.setdefault(o.table_id, []).append(o.id)

    views = []
    for t in tables:
        ids = sorted(active.get(t.id, []))
        views.append(TableView(
            table=t,
            effective_status="occupied" if ids else t.status,
            active_order_ids=ids,
            mismatch=t.status == "occupied" and not ids,
        ))
    return views


class FloorView(BaseView):
    name = "floor"

    def __init__(self, ctx: AppContext, interval: Optional[float] = None):
        super().__init__(ctx, interval=interval)
        self.tables: Dict[int, Table] = {}
        self.store.reset_subject("floor")

    def default_interval(self) -> float:
        return self.ctx.settings.FLOOR_POLL_SECONDS

    def channels(self):
        return [kitchen_channel(self.ctx.settings.RESTAURANT_ID)]

    async def fetch(self) -> Tuple[List[Table], List[Order]]:
        tables = await resources.fetch_tables(self.ctx.client)
        orders = await resources.fetch_orders(self.ctx.client, status=sorted(sm.ACTIVE_ORDER_STATUSES))
        return tables, orders

    def apply_fetch(self, result, ticket: Optional[FetchTicket]) -> None:
        tables, orders = result
        if ticket is not None and ticket.token != self.store.token:
            return
        self.tables = {t.id: t for t in tables}
        self.store.apply_server_fetch(orders, ticket=ticket)

    def table_views(self) -> List[TableView]:
        return derive_table_views(list(self.tables.values()), self.snapshot.orders)

    def table_view(self, table_id: int) -> TableView:
        for tv in self.table_views():
            if tv.table.id == table_id:
                return tv
        raise KeyError(table_id)

    def mismatches(self) -> List[TableView]:
        return [tv for tv in self.table_views() if tv.mismatch]

    def table_total(self, table_id: int) -> Decimal:
        ids = set(self.table_view(table_id).active_order_ids)
        return sum((o.total for o in self.snapshot.orders if o.id in ids), Decimal("0"))

    # -- manual status changes; never applied automatically --

    async def _set_table_status(self, table_id: int, status: str) -> TableView:
        if table_id not in self.tables:
            raise KeyError(table_id)
        await resources.update_table_status(self.ctx.client, table_id, status)
        self.tables[table_id] = self.tables[table_id].model_copy(update={"status": status})
        logger.info(f"Table {table_id} marked {status}")
        return self.table_view(table_id)

    async def resolve_mismatch(self, table_id: int) -> TableView:
        """Free a table that is marked occupied but has no active order."""
        tv = self.table_view(table_id)
        if not tv.mismatch:
            raise ValueError(f"table {table_id} has no occupancy mismatch")
        return await self._set_table_status(table_id, "free")

    async def mark_needs_cleaning(self, table_id: int) -> TableView:
        return await self._set_table_status(table_id, "needs_cleaning")

    async def close_session(self, table_id: int, session_id: int) -> None:
        """End a table's session server-side, then reload the floor."""
        table = self.tables.get(table_id)
        if table is None or not table.code:
            raise KeyError(table_id)
        await resources.close_table_session(self.ctx.client, table.code, session_id)
        logger.info(f"Closed session {session_id} on table {table_id}")
        await self.refresh()

    async def mark_free(self, table_id: int) -> TableView:
        tv = self.table_view(table_id)
        if tv.active_order_ids:
            raise ValueError(f"table {table_id} still has active orders {tv.active_order_ids}")
        return await self._set_table_status(table_id, "free")
