import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ordersync.core.context import AppContext
from ordersync.core.time_utils import minutes_since
from ordersync.schemas import events as ev
from ordersync.schemas.order import Order, StatusChange
from ordersync.services import resources
from ordersync.services import status_machine as sm
from ordersync.services.errors import SyncError
from ordersync.services.store import StoreSnapshot
from ordersync.views.base import BaseView, kitchen_channel

logger = logging.getLogger("ordersync.views.kitchen")

KDS_COLUMNS = (sm.PENDING, sm.PREPARING, sm.READY, sm.SERVED)
TIME_FILTERS = {"all": None, "30m": 30, "60m": 60}


class KitchenBoard(BaseView):
    """Kitchen display: open tickets in status columns."""

    name = "kds"

    def __init__(self, ctx: AppContext, interval: Optional[float] = None,
                 on_new_orders: Optional[Callable[[List[Order]], None]] = None):
        super().__init__(ctx, interval=interval)
        self.store.reset_subject(("kitchen", ctx.settings.RESTAURANT_ID))
        self._time_filter = "all"
        self._known: Set[int] = set()
        self._loaded = False
        self.new_order_ids: List[int] = []
        self._on_new_orders = on_new_orders
        self._loads: Set[asyncio.Task] = set()
        self.store.add_listener(self._track_new_orders)

    def default_interval(self) -> float:
        return self.ctx.settings.KDS_POLL_SECONDS

    def channels(self):
        return [kitchen_channel(self.ctx.settings.RESTAURANT_ID)]

    async def fetch(self) -> List[Order]:
        return await resources.fetch_kds_orders(self.ctx.client)

    def apply_fetch(self, result, ticket) -> None:
        super().apply_fetch(result, ticket)
        # orders present on the first load are not "new"
        self._loaded = True

    def on_event(self, event: str, payload: Any) -> None:
        applied = self.store.apply_realtime_event(event, payload)
        if applied or ev.canonical_event_name(event) != ev.ORDER_STATUS_UPDATED or not isinstance(payload, dict):
            return
        order_id = payload.get("order_id")
        if isinstance(order_id, int) and self.snapshot.order(order_id) is None:
            # status for a ticket the board has not loaded yet; the store
            # holds the status until the order itself arrives
            task = asyncio.create_task(self.load_order(order_id))
            self._loads.add(task)
            task.add_done_callback(self._loads.discard)

    async def load_order(self, order_id: int) -> bool:
        ticket = self.store.begin_fetch()
        try:
            order = await resources.fetch_order(self.ctx.client, order_id)
        except SyncError as e:
            logger.warning(f"Could not load order {order_id}: {e}")
            return False
        return self.store.apply_server_fetch([order], ticket=ticket, complete=False)

    async def stop(self) -> None:
        for task in list(self._loads):
            task.cancel()
        if self._loads:
            await asyncio.gather(*self._loads, return_exceptions=True)
        await super().stop()

    def _track_new_orders(self, snap: StoreSnapshot) -> None:
        ids = {o.id for o in snap.orders}
        fresh = ids - self._known
        self._known = ids
        if not fresh or not self._loaded:
            return
        self.new_order_ids.extend(sorted(fresh))
        logger.info(f"{len(fresh)} new order(s) received")
        if self._on_new_orders is not None:
            self._on_new_orders([o for o in snap.orders if o.id in fresh])

    # -- derived state --

    @property
    def time_filter(self) -> str:
        return self._time_filter

    @time_filter.setter
    def time_filter(self, value: str) -> None:
        if value not in TIME_FILTERS:
            raise ValueError(f"unknown time filter {value!r} (expected one of {', '.join(TIME_FILTERS)})")
        self._time_filter = value

    def visible_orders(self, now: Optional[datetime] = None) -> List[Order]:
        cutoff = TIME_FILTERS[self._time_filter]
        orders = self.snapshot.orders
        if cutoff is None:
            return list(orders)
        out = []
        for o in orders:
            age = minutes_since(o.opened_at, now)
            if age is not None and age <= cutoff:
                out.append(o)
        return out

    def columns(self, now: Optional[datetime] = None) -> Dict[str, List[Order]]:
        cols: Dict[str, List[Order]] = {c: [] for c in KDS_COLUMNS}
        for o in self.visible_orders(now):
            col = sm.SERVED if o.status == sm.COMPLETED else o.status
            if col in cols:
                cols[col].append(o)
        return cols

    def active_count(self, now: Optional[datetime] = None) -> int:
        return sum(1 for o in self.visible_orders(now) if o.status in (sm.PENDING, sm.PREPARING, sm.READY))

    # -- actions --

    async def move_order(self, order_id: int, status: str) -> Optional[StatusChange]:
        order = self.snapshot.order(order_id)
        if order is not None and order.status == sm.normalize_status(status, sm.ORDER):
            return None
        return await self.change_status(sm.ORDER, order_id, status)

    async def bump_item(self, item_id: int, status: str) -> Optional[StatusChange]:
        item = self.snapshot.item(item_id)
        if item is not None and item.status == sm.normalize_status(status, sm.ITEM):
            return None
        return await self.change_status(sm.ITEM, item_id, status)
