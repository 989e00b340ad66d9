"""Customer table portal: session, cart and live order tracking for one table."""
import logging
from typing import List, Optional

from ordersync.core.context import AppContext
from ordersync.schemas.order import Order, ProductRef
from ordersync.schemas.session import TableSession
from ordersync.services import resources, store as edits
from ordersync.services.errors import ApiError, DeviceLockedError, MalformedPayload, SubmissionFailed
from ordersync.services.store import FetchTicket, StoreSnapshot
from ordersync.views.base import BaseView

logger = logging.getLogger("ordersync.views.portal")


def session_channel(session_id: int) -> str:
    return f"table-session.{session_id}"


class PortalView(BaseView):
    private = False
    name = "portal"

    def __init__(self, ctx: AppContext, table_code: str, device_id: Optional[str] = None,
                 interval: Optional[float] = None):
        super().__init__(ctx, interval=interval)
        self.table_code = table_code
        self.device_id = device_id or ctx.settings.DEVICE_ID or None
        self.store.reset_subject(table_code)

    def channels(self):
        sid = self.store.session_id
        return [session_channel(sid)] if sid is not None else []

    async def fetch(self) -> TableSession:
        try:
            return await resources.fetch_portal_session(self.ctx.client, self.table_code)
        except ApiError as e:
            if e.is_device_locked:
                self.store.block()
                raise DeviceLockedError(payload=e.payload) from e
            raise

    def apply_fetch(self, result: TableSession, ticket: Optional[FetchTicket]) -> None:
        if self.store.apply_session(result, ticket=ticket):
            # the session id may only now be known
            self.subscriptions.set_identity(self.channels())

    async def open_table(self, table_code: str) -> None:
        """Switch to another table; results still in flight for the old one are dropped."""
        self.subscriptions.close()
        self.table_code = table_code
        self.store.reset_subject(table_code)
        await self.refresh()

    # -- cart --

    def add(self, product: ProductRef, quantity: int = 1, notes: Optional[str] = None) -> StoreSnapshot:
        return self.store.apply_local_edit(edits.add_line(product, quantity, notes))

    def set_quantity(self, key: str, quantity: int) -> StoreSnapshot:
        return self.store.apply_local_edit(edits.set_quantity(key, quantity))

    def decrement(self, key: str) -> StoreSnapshot:
        return self.store.apply_local_edit(edits.decrement(key))

    def remove(self, key: str) -> StoreSnapshot:
        return self.store.apply_local_edit(edits.remove_line(key))

    def set_notes(self, key: str, notes: Optional[str]) -> StoreSnapshot:
        return self.store.apply_local_edit(edits.set_notes(key, notes))

    # -- submission --

    async def submit(self) -> List[Order]:
        ticket = self.store.begin_submission()
        try:
            session, orders = await resources.place_portal_order(
                self.ctx.client, self.table_code, ticket.lines, self.device_id, self.store.session_id,
            )
        except ApiError as e:
            self.store.fail_submission(ticket, e)
            if e.is_device_locked:
                raise DeviceLockedError(payload=e.payload) from e
            raise SubmissionFailed(e) from e
        except MalformedPayload as e:
            # the server answered 2xx, so the order probably exists; let the
            # next fetch match the submitted lines instead of re-sending them
            logger.warning(f"Unreadable submission response, waiting for a refresh: {e}")
            self.store.complete_submission(ticket, None, [])
            self.poller.trigger()
            return []
        self.store.complete_submission(ticket, session, orders)
        self.subscriptions.set_identity(self.channels())
        return orders
