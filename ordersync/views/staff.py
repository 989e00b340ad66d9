"""Staff consoles: waiter tasks, cashier billing and the POS register.

All of them work off the restaurant-wide order list and the kitchen feed
and derive their state from store snapshots.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel

from ordersync.core.context import AppContext
from ordersync.schemas.cart import CartTotals, preview_totals
from ordersync.schemas.order import Order, StatusChange
from ordersync.services import resources, store as edits
from ordersync.services import status_machine as sm
from ordersync.services.errors import ApiError, SubmissionFailed
from ordersync.views.base import BaseView, kitchen_channel

logger = logging.getLogger("ordersync.views.staff")

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2}


class WaiterTask(BaseModel):
    id: str
    type: str  # claim | pickup | payment | clear
    title: str
    priority: str
    ref_id: int
    order: Order


class DailyStats(BaseModel):
    completed: int = 0
    sales: Decimal = Decimal("0")


def _table_label(order: Order) -> str:
    return (order.table.name if order.table and order.table.name else None) or "??"


def build_waiter_tasks(orders: List[Order]) -> List[WaiterTask]:
    tasks: List[WaiterTask] = []
    for o in orders:
        table = _table_label(o)
        if o.status == sm.PENDING and o.waiter is None:
            tasks.append(WaiterTask(id=f"claim-{o.id}", type="claim", title=f"New Order • Table {table}",
                                    priority="critical", ref_id=o.id, order=o))
        if o.status == sm.READY:
            tasks.append(WaiterTask(id=f"ready-{o.id}", type="pickup", title=f"Order Ready • Table {table}",
                                    priority="high", ref_id=o.id, order=o))
        if o.status == sm.SERVED and o.payment_status == "unpaid":
            tasks.append(WaiterTask(id=f"pay-{o.id}", type="payment", title=f"Payment • Table {table}",
                                    priority="medium", ref_id=o.id, order=o))
        if o.status == sm.SERVED and o.payment_status == "paid":
            tasks.append(WaiterTask(id=f"clear-{o.id}", type="clear", title=f"Ready for cleaning • Table {table}",
                                    priority="medium", ref_id=o.id, order=o))
    # stable: within one priority tasks keep the order list's order
    return sorted(tasks, key=lambda t: PRIORITY_ORDER[t.priority])


class WaiterConsole(BaseView):
    name = "waiter"

    def __init__(self, ctx: AppContext, waiter_id: Optional[int] = None, interval: Optional[float] = None):
        super().__init__(ctx, interval=interval)
        self.waiter_id = waiter_id
        self.store.reset_subject(("waiter", waiter_id))

    def channels(self):
        return [kitchen_channel(self.ctx.settings.RESTAURANT_ID)]

    async def fetch(self) -> List[Order]:
        return await resources.fetch_orders(self.ctx.client, per_page=100)

    def tasks(self) -> List[WaiterTask]:
        return build_waiter_tasks(self.snapshot.orders)

    def daily_stats(self) -> DailyStats:
        done = [o for o in self.snapshot.orders if o.status == sm.COMPLETED]
        return DailyStats(completed=len(done), sales=sum((o.total for o in done), Decimal("0")))

    async def claim(self, order_id: int) -> StatusChange:
        extra = {"waiter_id": self.waiter_id} if self.waiter_id is not None else {}
        return await self.change_status(sm.ORDER, order_id, sm.PREPARING, **extra)

    async def serve(self, order_id: int) -> StatusChange:
        return await self.change_status(sm.ORDER, order_id, sm.SERVED)

    async def complete_payment(self, order_id: int) -> StatusChange:
        return await self.change_status(sm.ORDER, order_id, sm.COMPLETED)

    async def clear_table(self, order_id: int) -> None:
        order = self.snapshot.order(order_id)
        if order is None or order.table_id is None:
            raise ValueError(f"order {order_id} is not bound to a table")
        await self.change_status(sm.ORDER, order_id, sm.COMPLETED)
        try:
            await resources.update_table_status(self.ctx.client, order.table_id, "needs_cleaning")
        except ApiError as e:
            logger.warning(f"Order {order_id} completed but table {order.table_id} was not marked for cleaning: {e}")
            raise


class BillingGroup(BaseModel):
    """Orders settled together: one table session, else one table, else one order."""

    id: str
    title: str
    orders: List[Order]
    amount: Decimal
    item_count: int
    priority: str
    opened_at: Optional[datetime] = None

    @property
    def session_id(self) -> Optional[int]:
        return self.orders[0].table_session_id if self.orders else None


class CashierStats(BaseModel):
    count: int = 0
    collected: Decimal = Decimal("0")
    to_collect: Decimal = Decimal("0")


def is_unpaid(order: Order) -> bool:
    return order.status not in (sm.CANCELLED, sm.COMPLETED) and order.payment_status == "unpaid"


def group_key(order: Order) -> str:
    if order.table_session_id:
        return f"session-{order.table_session_id}"
    if order.table is not None:
        return f"table-{order.table.id}"
    return f"order-{order.id}"


def build_billing_groups(orders: List[Order]) -> List[BillingGroup]:
    grouped: Dict[str, List[Order]] = {}
    for o in orders:
        if is_unpaid(o):
            grouped.setdefault(group_key(o), []).append(o)

    groups = []
    for key, members in grouped.items():
        first = members[0]
        if first.table is not None:
            title = f"Table {first.table.name or first.table.id}"
        else:
            title = (first.client.name if first.client else None) or "Takeout"
        opened = [o.opened_at for o in members if o.opened_at is not None]
        groups.append(BillingGroup(
            id=key,
            title=title,
            orders=members,
            amount=sum((o.total for o in members), Decimal("0")),
            item_count=sum(len(o.items) for o in members),
            # the whole table is urgent as soon as any of its orders is out
            priority="high" if any(o.status in (sm.SERVED, sm.READY) for o in members) else "medium",
            opened_at=min(opened) if opened else None,
        ))
    return sorted(groups, key=lambda g: PRIORITY_ORDER[g.priority])


class CashierConsole(BaseView):
    name = "cashier"

    def __init__(self, ctx: AppContext, interval: Optional[float] = None):
        super().__init__(ctx, interval=interval)
        self.collected = Decimal("0")
        self.store.reset_subject("cashier")

    def channels(self):
        return [kitchen_channel(self.ctx.settings.RESTAURANT_ID)]

    async def fetch(self) -> List[Order]:
        return await resources.fetch_orders(self.ctx.client, per_page=100)

    def groups(self) -> List[BillingGroup]:
        return build_billing_groups(self.snapshot.orders)

    def stats(self) -> CashierStats:
        orders = self.snapshot.orders
        return CashierStats(
            count=sum(1 for o in orders if o.status == sm.COMPLETED),
            collected=self.collected,
            to_collect=sum((o.total for o in orders if is_unpaid(o)), Decimal("0")),
        )

    async def settle(self, group: BillingGroup, method: str = "cash") -> dict:
        """Record payment for a billing group, then reload the order list.

        A session is settled by id; orders without a session are settled by
        their ids. Raises ``ApiError`` when the transaction is refused.
        """
        record = await resources.create_transaction(
            self.ctx.client,
            amount=group.amount,
            payment_method=method,
            table_session_id=group.session_id,
            order_ids=[o.id for o in group.orders],
        )
        self.collected += group.amount
        logger.info(f"Settled {group.id} ({group.amount}) via {method}")
        await self.refresh()
        return record


class PosRegister(BaseView):
    """Staff register: builds a cart for a table (or takeout) and sends it."""

    name = "register"

    def __init__(self, ctx: AppContext, table_id: Optional[int] = None, interval: Optional[float] = None):
        super().__init__(ctx, interval=interval)
        self.table_id = table_id
        self.store.reset_subject(("register", table_id), table_id=table_id)

    def channels(self):
        return [kitchen_channel(self.ctx.settings.RESTAURANT_ID)]

    async def fetch(self) -> List[Order]:
        if self.table_id is None:
            # takeout: nothing confirmed to show besides what was just sent
            return []
        orders = await resources.fetch_orders(self.ctx.client, status=sorted(sm.ACTIVE_ORDER_STATUSES))
        return [o for o in orders if o.table_id == self.table_id]

    def select_table(self, table_id: Optional[int]) -> None:
        self.table_id = table_id
        self.store.reset_subject(("register", table_id), table_id=table_id)

    def add(self, product, quantity: int = 1, notes: Optional[str] = None):
        return self.store.apply_local_edit(edits.add_line(product, quantity, notes))

    def set_quantity(self, key: str, quantity: int):
        return self.store.apply_local_edit(edits.set_quantity(key, quantity))

    def remove(self, key: str):
        return self.store.apply_local_edit(edits.remove_line(key))

    def totals(self, discount: Decimal = Decimal("0")) -> CartTotals:
        pending = [ln for ln in self.store.get_snapshot().cart if ln.is_pending]
        return preview_totals(pending, self.ctx.settings.TAX_RATE, discount)

    async def submit(self, client_id: Optional[int] = None, discount: Optional[Decimal] = None) -> List[Order]:
        ticket = self.store.begin_submission()
        payload = resources.build_order_payload(ticket.lines, table_id=self.table_id, client_id=client_id,
                                                discount_amount=discount)
        try:
            session, orders = await resources.create_order(self.ctx.client, payload)
        except ApiError as e:
            self.store.fail_submission(ticket, e)
            raise SubmissionFailed(e) from e
        self.store.complete_submission(ticket, session, orders)
        return orders
