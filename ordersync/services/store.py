"""Per-view order state store.

The store is the single source of truth for what one view shows. It owns a
``reconcile.SyncState`` and routes every producer through
``reconcile.merge``. It performs no I/O: views do the network calls and hand
the results (or failures) back through the ticket-based methods below, which
is also where the stale-response guard lives: a ticket issued before
``reset_subject`` is ignored when it comes back.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ValidationError

from ordersync.core.config import settings
from ordersync.schemas import events as ev
from ordersync.schemas.cart import CartLine, CartTotals, normalize_notes, preview_totals
from ordersync.schemas.order import Order, ProductRef, StatusChange
from ordersync.schemas.session import TableSession, session_total_due
from ordersync.services import normalize, reconcile
from ordersync.services import status_machine as sm
from ordersync.services.errors import ApiError, LocalEditRejected

logger = logging.getLogger("ordersync.store")

EditFn = Callable[[List[CartLine]], Optional[List[CartLine]]]
Listener = Callable[["StoreSnapshot"], Any]


class FetchTicket(NamedTuple):
    token: int
    revision: int


class SubmissionTicket(NamedTuple):
    token: int
    lines: Tuple[CartLine, ...]

    @property
    def temp_ids(self) -> Tuple[str, ...]:
        return tuple(ln.temp_id for ln in self.lines)


class StatusTicket(NamedTuple):
    token: int
    kind: str
    entity_id: int
    status: str
    order_id: Optional[int] = None


class StoreSnapshot(BaseModel):
    subject: Any = None
    revision: int = 0
    orders: List[Order] = []
    cart: List[CartLine] = []
    pending_count: int = 0
    cart_count: int = 0
    cart_totals: CartTotals = CartTotals()
    locked_item_ids: List[int] = []
    session_id: Optional[int] = None
    session_closed: bool = False
    total_due: Decimal = Decimal("0")
    blocked: bool = False
    block_reason: Optional[str] = None
    submitting: bool = False

    def order(self, order_id: int) -> Optional[Order]:
        for o in self.orders:
            if o.id == order_id:
                return o
        return None

    def item(self, item_id: int):
        for o in self.orders:
            for it in o.items:
                if it.id == item_id:
                    return it
        return None

    def line(self, key: str) -> Optional[CartLine]:
        for ln in self.cart:
            if ln.key == key:
                return ln
        return None


class OrderStore:
    def __init__(self, subject: Hashable = None, tax_rate: Decimal = None,
                 table_id: Optional[int] = None, session_id: Optional[int] = None):
        self._tax_rate = settings.TAX_RATE if tax_rate is None else Decimal(tax_rate)
        self._listeners: List[Listener] = []
        self._token = 0
        self._reset(subject, table_id, session_id)

    def _reset(self, subject, table_id, session_id):
        self._subject = subject
        self._table_id = table_id
        self._session_id = session_id
        self._session_closed = False
        self._state = reconcile.SyncState()
        self._overlays: Dict[Tuple[str, int], str] = {}
        self._touched: Dict[int, int] = {}
        self._revision = 0
        self._blocked: Optional[str] = None
        self._submitting: Optional[SubmissionTicket] = None
        self._snapshot: Optional[StoreSnapshot] = None

    # -- subject --

    @property
    def subject(self):
        return self._subject

    @property
    def token(self) -> int:
        return self._token

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    @property
    def blocked(self) -> bool:
        return self._blocked is not None

    @property
    def held_events(self) -> int:
        """Status events waiting for an order or item this view has not loaded."""
        return len(self._state.hints)

    def reset_subject(self, subject: Hashable, table_id: Optional[int] = None,
                      session_id: Optional[int] = None) -> None:
        """Switch to a new subject; everything issued before is now stale."""
        self._token += 1
        self._reset(subject, table_id, session_id)
        logger.debug(f"store subject -> {subject!r} (token {self._token})")
        self._changed()

    def _is_current(self, ticket) -> bool:
        if ticket.token != self._token:
            logger.debug(f"Discarding result for an old subject (ticket {ticket.token}, now {self._token})")
            return False
        return True

    # -- listeners --

    def add_listener(self, fn: Listener) -> Callable[[], None]:
        self._listeners.append(fn)

        def remove():
            if fn in self._listeners:
                self._listeners.remove(fn)
        return remove

    def _changed(self, touched: Iterable[int] = ()) -> None:
        self._revision += 1
        for oid in touched:
            self._touched[oid] = self._revision
        self._snapshot = None
        if not self._listeners:
            return
        snap = self.get_snapshot()
        for fn in list(self._listeners):
            try:
                fn(snap)
            except Exception as e:
                logger.warning(f"Store listener failed: {e}")

    # -- snapshot --

    def get_snapshot(self) -> StoreSnapshot:
        if self._snapshot is None:
            self._snapshot = self._build_snapshot()
        return self._snapshot

    def _build_snapshot(self) -> StoreSnapshot:
        orders = [self._with_overlays(self._state.orders[oid]) for oid in sorted(self._state.orders)]
        cart = reconcile.build_draft(self._state)
        pending = list(self._state.pending)
        session_orders = [o for o in orders
                          if self._session_id is None or o.table_session_id in (None, self._session_id)]
        return StoreSnapshot(
            subject=self._subject,
            revision=self._revision,
            orders=orders,
            cart=cart,
            pending_count=len(pending),
            cart_count=sum(ln.quantity for ln in pending),
            cart_totals=preview_totals(pending, self._tax_rate),
            locked_item_ids=sorted(it.id for o in orders for it in o.items
                                   if it.id is not None and sm.is_locked(it.status)),
            session_id=self._session_id,
            session_closed=self._session_closed,
            total_due=session_total_due(session_orders),
            blocked=self._blocked is not None,
            block_reason=self._blocked,
            submitting=self._submitting is not None,
        )

    def _with_overlays(self, order: Order) -> Order:
        if not self._overlays:
            return order
        status = sm.merge_status(order.status, self._overlays.get((sm.ORDER, order.id)))
        items = [
            it.model_copy(update={"status": sm.merge_status(it.status, self._overlays[(sm.ITEM, it.id)])})
            if (sm.ITEM, it.id) in self._overlays else it
            for it in order.items
        ]
        return order.model_copy(update={"status": status, "items": items})

    # -- local edits --

    def apply_local_edit(self, edit_fn: EditFn) -> StoreSnapshot:
        """Apply an optimistic edit to the cart.

        ``edit_fn`` receives a draft (copies of the current cart lines) and
        either mutates it in place or returns a new list. The result is
        validated here, not only in the UI: touching a locked or in-flight
        line raises ``LocalEditRejected`` and leaves the store unchanged.
        """
        if self._blocked is not None:
            raise LocalEditRejected("device_locked")
        if self._session_closed:
            raise LocalEditRejected("session_closed")
        before = reconcile.build_draft(self._state)
        draft = [ln.model_copy(deep=True) for ln in before]
        result = edit_fn(draft)
        after = draft if result is None else list(result)
        self._state = reconcile.apply_edit(self._state, before, after)
        self._changed()
        return self.get_snapshot()

    # -- server fetches --

    def begin_fetch(self) -> FetchTicket:
        return FetchTicket(self._token, self._revision)

    def apply_server_fetch(self, payload, ticket: Optional[FetchTicket] = None, complete: bool = True) -> bool:
        """Merge a fetch result into the confirmed layer.

        ``payload`` is either a list of ``Order`` or a raw list response. With
        ``complete`` the payload is the whole list for this view and orders
        missing from it are dropped, except those changed by events after
        ``ticket`` was issued. Returns False when the ticket is stale.
        """
        if ticket is not None and not self._is_current(ticket):
            return False
        orders = payload if _is_order_list(payload) else normalize.normalize_orders(payload)
        protected = frozenset()
        if ticket is not None:
            protected = frozenset(oid for oid, rev in self._touched.items() if rev > ticket.revision)
        changed = self._merge(reconcile.ServerFetch(
            orders=tuple(orders),
            complete=complete,
            protected=protected,
            promote_scope=self._in_scope,
        ))
        if complete:
            self._touched = {oid: rev for oid, rev in self._touched.items() if oid in self._state.orders}
        return changed

    def apply_session(self, session: TableSession, ticket: Optional[FetchTicket] = None) -> bool:
        if ticket is not None and not self._is_current(ticket):
            return False
        self._session_id = session.id
        if session.table is not None and self._table_id is None:
            self._table_id = session.table.id
        if session.is_closed:
            self._session_closed = True
        if not self.apply_server_fetch(session.orders, ticket=ticket, complete=True):
            # nothing new in the orders; the session fields may still have changed
            self._changed()
        return True

    def mark_session_closed(self) -> None:
        if not self._session_closed:
            self._session_closed = True
            self._changed()

    def _in_scope(self, order: Order) -> bool:
        if self._session_id is not None and order.table_session_id is not None:
            return order.table_session_id == self._session_id
        if self._table_id is not None and order.table_id is not None:
            return order.table_id == self._table_id
        return True

    def _merge(self, incoming, touched: Iterable[int] = ()) -> bool:
        result = reconcile.merge(self._state, incoming)
        self._state = result.state
        if result.changed:
            self._changed(touched)
        return result.changed

    # -- realtime events --

    def apply_realtime_event(self, name: str, payload: Any) -> bool:
        """Apply one push event. Never raises for bad payloads."""
        event = ev.canonical_event_name(name)
        schema = ev.EVENT_SCHEMAS.get(event)
        if schema is None:
            logger.debug(f"Ignoring unhandled event {name!r}")
            return False
        if not isinstance(payload, dict):
            logger.warning(f"Dropping {event}: payload is {type(payload).__name__}, not an object")
            return False
        try:
            parsed = schema.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {event} payload ({e.error_count()} error(s)): {payload!r:.200}")
            return False

        if event == ev.ORDER_CREATED:
            return self._merge(
                reconcile.ServerFetch(orders=(parsed.order,), promote_scope=self._in_scope),
                touched=[parsed.order.id],
            )
        if event == ev.ORDER_STATUS_UPDATED:
            return self._merge(
                reconcile.StatusEvent(kind=sm.ORDER, order_id=parsed.order_id, status=parsed.new_status),
                touched=[parsed.order_id],
            )
        return self._merge(
            reconcile.StatusEvent(kind=sm.ITEM, order_id=parsed.order_id, item_id=parsed.item_id,
                                  status=parsed.new_status),
            touched=[parsed.order_id],
        )

    # -- submission --

    def begin_submission(self) -> SubmissionTicket:
        """Freeze the pending lines for sending; returns what to send."""
        if self._blocked is not None:
            raise LocalEditRejected("device_locked")
        if self._session_closed:
            raise LocalEditRejected("session_closed")
        if self._submitting is not None:
            raise LocalEditRejected("submission_in_flight")
        lines = tuple(ln for ln in self._state.pending if not ln.submitted)
        if not lines:
            raise LocalEditRejected("cart_empty")
        ticket = SubmissionTicket(self._token, lines)
        self._state = reconcile.set_submitted(self._state, ticket.temp_ids, True)
        self._submitting = ticket
        self._changed()
        return ticket

    def complete_submission(self, ticket: SubmissionTicket, session: Optional[TableSession],
                            orders: List[Order]) -> bool:
        if not self._is_current(ticket):
            return False
        self._submitting = None
        if session is not None:
            self._session_id = session.id
            if session.is_closed:
                self._session_closed = True
        elif self._session_id is None:
            ids = {o.table_session_id for o in orders if o.table_session_id is not None}
            if len(ids) == 1:
                self._session_id = ids.pop()
        result = reconcile.merge(self._state, reconcile.ServerFetch(
            orders=tuple(orders), promote_scope=self._in_scope,
        ))
        self._state = result.state
        waiting = [tid for tid in ticket.temp_ids
                   if any(ln.temp_id == tid for ln in self._state.pending)]
        if waiting:
            logger.info(f"{len(waiting)} submitted line(s) not matched yet; keeping them until a fetch confirms them")
        self._changed(o.id for o in orders)
        return True

    def fail_submission(self, ticket: SubmissionTicket, error: Exception) -> bool:
        """Put the submitted lines back in the editable cart, untouched."""
        if not self._is_current(ticket):
            return False
        self._submitting = None
        self._state = reconcile.set_submitted(self._state, ticket.temp_ids, False)
        if isinstance(error, ApiError) and error.is_device_locked:
            self._blocked = "device_locked"
            logger.info("Session is locked by another device; store is now read-only")
        self._changed()
        return True

    # -- device lock --

    def block(self, reason: str = "device_locked") -> None:
        if self._blocked != reason:
            self._blocked = reason
            self._changed()

    # -- optimistic status changes --

    def begin_status_change(self, kind: str, entity_id: int, status: str,
                            order_id: Optional[int] = None) -> StatusTicket:
        if self._blocked is not None:
            raise LocalEditRejected("device_locked")
        target = sm.normalize_status(status, kind)
        snap = self.get_snapshot()
        current = None
        if kind == sm.ORDER:
            o = snap.order(entity_id)
            current = o.status if o else None
        else:
            it = snap.item(entity_id)
            current = it.status if it else None
            if it is not None and order_id is None:
                order_id = it.order_id
        if current is None:
            raise LocalEditRejected("unknown_entity", f"{kind}:{entity_id}")
        if not sm.can_transition(current, target, kind):
            raise LocalEditRejected("illegal_transition", f"{kind}:{entity_id} {current}->{status}")
        self._overlays[(kind, entity_id)] = target
        self._changed([order_id] if order_id is not None else [entity_id] if kind == sm.ORDER else [])
        return StatusTicket(self._token, kind, entity_id, target, order_id)

    def confirm_status_change(self, ticket: StatusTicket, change: Optional[StatusChange] = None) -> bool:
        if not self._is_current(ticket):
            return False
        status = ticket.status
        if change is not None and change.new_status:
            confirmed = sm.normalize_status(change.new_status, ticket.kind)
            if confirmed != ticket.status:
                logger.warning(
                    f"Server confirmed {ticket.kind} {ticket.entity_id} as {change.new_status} "
                    f"(requested {ticket.status}, was {change.old_status})"
                )
            status = confirmed or status
        if self._overlays.get((ticket.kind, ticket.entity_id)) == ticket.status:
            del self._overlays[(ticket.kind, ticket.entity_id)]
        order_id = ticket.entity_id if ticket.kind == sm.ORDER else ticket.order_id
        result = reconcile.merge(self._state, reconcile.StatusEvent(
            kind=ticket.kind,
            order_id=order_id if order_id is not None else 0,
            item_id=ticket.entity_id if ticket.kind == sm.ITEM else None,
            status=status,
        ))
        self._state = result.state
        self._changed([order_id] if order_id is not None else [])
        return True

    def revert_status_change(self, ticket: StatusTicket) -> bool:
        if not self._is_current(ticket):
            return False
        if self._overlays.get((ticket.kind, ticket.entity_id)) != ticket.status:
            return False
        del self._overlays[(ticket.kind, ticket.entity_id)]
        self._changed()
        return True


# -- edit helpers for apply_local_edit --

def add_line(product: ProductRef, quantity: int = 1, notes: Optional[str] = None) -> EditFn:
    """Add ``product`` to the cart, folding into an identical unsent line."""
    def edit(lines: List[CartLine]):
        for ln in lines:
            if (ln.is_pending and not ln.submitted and ln.product.id == product.id
                    and normalize_notes(ln.notes) == normalize_notes(notes)):
                ln.quantity += quantity
                return
        lines.append(CartLine(product=product, quantity=quantity, notes=notes or None))
    return edit


def set_quantity(key: str, quantity: int) -> EditFn:
    def edit(lines: List[CartLine]):
        if quantity <= 0:
            return [ln for ln in lines if ln.key != key]
        _line(lines, key).quantity = quantity
    return edit


def decrement(key: str) -> EditFn:
    def edit(lines: List[CartLine]):
        ln = _line(lines, key)
        if ln.quantity <= 1:
            return [other for other in lines if other.key != key]
        ln.quantity -= 1
    return edit


def remove_line(key: str) -> EditFn:
    def edit(lines: List[CartLine]):
        _line(lines, key)
        return [ln for ln in lines if ln.key != key]
    return edit


def set_notes(key: str, notes: Optional[str]) -> EditFn:
    def edit(lines: List[CartLine]):
        _line(lines, key).notes = (notes or "").strip() or None
    return edit


def _line(lines: List[CartLine], key: str) -> CartLine:
    for ln in lines:
        if ln.key == key:
            return ln
    raise LocalEditRejected("unknown_line", key)


def _is_order_list(payload) -> bool:
    return isinstance(payload, (list, tuple)) and all(isinstance(o, Order) for o in payload)
