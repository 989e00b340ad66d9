import logging
from typing import Any, Iterable, Optional

from ordersync.core.context import AppContext
from ordersync.schemas.events import ORDER_EVENTS
from ordersync.schemas.order import StatusChange
from ordersync.services import resources
from ordersync.services import status_machine as sm
from ordersync.services.errors import ApiError, DeviceLockedError
from ordersync.services.polling import PollingScheduler
from ordersync.services.store import FetchTicket, OrderStore
from ordersync.services.subscriptions import SubscriptionManager

logger = logging.getLogger("ordersync.views")


def kitchen_channel(restaurant_id: int) -> str:
    return f"restaurant.{restaurant_id}.kitchen"


class BaseView:
    """One store, one subscription manager and one poller per view.

    Subclasses provide ``fetch()`` and ``channels()``; everything the view
    shows is derived from ``self.store`` snapshots.
    """

    events: Iterable[str] = ORDER_EVENTS
    private = True
    name = "view"

    def __init__(self, ctx: AppContext, interval: Optional[float] = None, store: Optional[OrderStore] = None):
        self.ctx = ctx
        self.store = store or OrderStore(tax_rate=ctx.settings.TAX_RATE)
        self.subscriptions = SubscriptionManager(ctx.hub, self.events, self.on_event, private=self.private)
        self.poller = PollingScheduler(
            self.fetch,
            store=self.store,
            interval=interval if interval is not None else self.default_interval(),
            apply=self.apply_fetch,
            name=self.name,
        )

    def default_interval(self) -> float:
        return self.ctx.settings.STAFF_POLL_SECONDS

    async def fetch(self) -> Any:
        raise NotImplementedError

    def channels(self) -> Iterable[str]:
        return ()

    def apply_fetch(self, result, ticket: Optional[FetchTicket]) -> None:
        self.store.apply_server_fetch(result, ticket=ticket)

    def on_event(self, event: str, payload: Any) -> None:
        self.store.apply_realtime_event(event, payload)

    @property
    def snapshot(self):
        return self.store.get_snapshot()

    async def refresh(self) -> None:
        """Fetch and merge now, never alongside a poll tick. Errors propagate to the caller."""
        await self.poller.refresh()

    async def start(self) -> None:
        try:
            await self.refresh()
        except ApiError as e:
            # the poller keeps trying
            logger.warning(f"{self.name}: initial load failed: {e}")
        self.subscriptions.set_identity(self.channels())
        self.poller.start()

    async def stop(self) -> None:
        self.subscriptions.close()
        await self.poller.stop()

    async def change_status(self, kind: str, entity_id: int, status: str,
                            order_id: Optional[int] = None, **extra) -> StatusChange:
        """Optimistically move an order or item, then confirm with the server.

        The overlay is visible immediately; a failed request removes it and
        re-raises.
        """
        ticket = self.store.begin_status_change(kind, entity_id, status, order_id=order_id)
        try:
            if kind == sm.ORDER:
                change = await resources.update_order_status(self.ctx.client, entity_id, ticket.status, **extra)
            else:
                change = await resources.update_item_status(self.ctx.client, entity_id, ticket.status)
        except ApiError as e:
            self.store.revert_status_change(ticket)
            logger.warning(f"{self.name}: {kind} {entity_id} -> {status} failed: {e}")
            if e.is_device_locked:
                self.store.block()
                raise DeviceLockedError(payload=e.payload) from e
            raise
        self.store.confirm_status_change(ticket, change)
        return change
