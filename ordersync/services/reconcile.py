"""Reconciliation engine.

``merge(state, incoming)`` is a pure function: it never mutates its input and
performs no I/O. Every producer (fetch completion, submission response, push
event) goes through it, so the result does not depend on which of them
arrives first:

- statuses only move forward (``status_machine.merge_status``), cancelled is
  absorbing, regressions are reported as stale and ignored;
- status events for orders/items not seen yet are kept as hints and folded in
  when the entity shows up;
- order items are append-only, so an item missing from a payload is kept;
- pending-local cart lines are promoted to confirmed items by
  (product, notes) with positional matching inside each group.
"""
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from ordersync.schemas.cart import CartLine, normalize_notes
from ordersync.schemas.order import Order, OrderItem, ProductRef
from ordersync.services import status_machine as sm
from ordersync.services.errors import LocalEditRejected

logger = logging.getLogger("ordersync.reconcile")

HintKey = Tuple[str, int]


class Hint(NamedTuple):
    status: str
    # order the event named; the hint goes when that order leaves the view
    order_id: int


@dataclass(frozen=True)
class SyncState:
    # confirmed layer: last fetched/merged server state
    orders: Mapping[int, Order] = field(default_factory=dict)
    # pending-local lines (temp id only), in cart order
    pending: Tuple[CartLine, ...] = ()
    # statuses seen for entities that are not in ``orders`` yet
    hints: Mapping[HintKey, Hint] = field(default_factory=dict)
    # confirmed item ids already matched to a promoted local line
    claimed: FrozenSet[int] = frozenset()
    # temp id -> confirmed item id
    promotions: Mapping[str, int] = field(default_factory=dict)

    def find_item(self, item_id: int, order_id: Optional[int] = None) -> Optional[OrderItem]:
        orders = [self.orders[order_id]] if order_id in self.orders else self.orders.values()
        for o in orders:
            for it in o.items:
                if it.id == item_id:
                    return it
        if order_id is not None and order_id in self.orders:
            return self.find_item(item_id)
        return None

    def item_ids(self) -> FrozenSet[int]:
        return frozenset(it.id for o in self.orders.values() for it in o.items if it.id is not None)


@dataclass(frozen=True)
class ServerFetch:
    """Authoritative orders from a fetch, a submission response or ``order.created``."""

    orders: Tuple[Order, ...]
    # the payload is the complete list for the view: absent orders are pruned
    complete: bool = False
    # orders changed after the fetch started; never pruned by it
    protected: FrozenSet[int] = frozenset()
    # limits which orders may absorb pending-local lines
    promote_scope: Optional[Callable[[Order], bool]] = None


@dataclass(frozen=True)
class StatusEvent:
    kind: str
    order_id: int
    status: str
    item_id: Optional[int] = None


@dataclass
class MergeResult:
    state: SyncState
    changed: bool
    promoted: Dict[str, int] = field(default_factory=dict)
    stale: List[str] = field(default_factory=list)
    deferred: bool = False


def merge(state: SyncState, incoming) -> MergeResult:
    if isinstance(incoming, StatusEvent):
        return _merge_status_event(state, incoming)
    if isinstance(incoming, ServerFetch):
        return _merge_fetch(state, incoming)
    raise TypeError(f"cannot merge {type(incoming).__name__}")


# -- orders --

def merge_order(existing: Optional[Order], incoming: Order, hints: Dict[HintKey, Hint],
                stale: Optional[List[str]] = None) -> Order:
    """Fold ``incoming`` into ``existing``; consumes matching ``hints``."""
    stale = stale if stale is not None else []
    status = incoming.status
    if existing is not None:
        if sm.is_regression(existing.status, incoming.status):
            stale.append(f"order {incoming.id}: {existing.status} -> {incoming.status}")
        status = sm.merge_status(existing.status, status)
    status = sm.merge_status(status, _take_hint(hints, sm.ORDER, incoming.id))

    prev_items = {it.id: it for it in existing.items if it.id is not None} if existing else {}
    items: List[OrderItem] = []
    seen = set()
    for it in incoming.items:
        if it.id is None:
            items.append(it)
            continue
        seen.add(it.id)
        prev = prev_items.get(it.id)
        st = it.status
        if prev is not None:
            if sm.is_regression(prev.status, it.status):
                stale.append(f"item {it.id}: {prev.status} -> {it.status}")
            st = sm.merge_status(prev.status, st)
        st = sm.merge_status(st, _take_hint(hints, sm.ITEM, it.id))
        items.append(it if st == it.status else it.model_copy(update={"status": st}))
    if existing is not None:
        # append-only: an item absent from this payload is still part of the order
        items.extend(it for it in existing.items if it.id is not None and it.id not in seen)

    return incoming.model_copy(update={"status": status, "items": items})


def _take_hint(hints: Dict[HintKey, Hint], kind: str, entity_id: int) -> Optional[str]:
    hint = hints.pop((kind, entity_id), None)
    return hint.status if hint is not None else None


def _merge_fetch(state: SyncState, fetch: ServerFetch) -> MergeResult:
    known_items = state.item_ids()
    orders = dict(state.orders)
    hints = dict(state.hints)
    stale: List[str] = []

    fetched_ids = []
    for o in fetch.orders:
        orders[o.id] = merge_order(orders.get(o.id), o, hints, stale)
        fetched_ids.append(o.id)

    if fetch.complete:
        keep = set(fetched_ids) | set(fetch.protected)
        for oid in list(orders):
            if oid not in keep:
                del orders[oid]

    # new confirmed items, in payload order, that no local line claimed yet
    candidates: List[OrderItem] = []
    for oid in fetched_ids:
        o = orders[oid]
        if fetch.promote_scope is not None and not fetch.promote_scope(o):
            continue
        for it in o.items:
            if it.id is not None and it.id not in known_items and it.id not in state.claimed:
                candidates.append(it)

    pending, promoted, claimed = promote_pending(state.pending, candidates, state.claimed)
    promotions = {**state.promotions, **promoted}

    if fetch.complete:
        # bookkeeping for orders that left the view goes with them
        hints = {k: h for k, h in hints.items() if h.order_id in orders}
        live_items = frozenset(it.id for o in orders.values() for it in o.items if it.id is not None)
        claimed = claimed & live_items
        promotions = {tid: iid for tid, iid in promotions.items() if iid in live_items}

    next_state = replace(
        state,
        orders=orders,
        pending=pending,
        hints=hints,
        claimed=claimed,
        promotions=promotions,
    )
    for note in stale:
        logger.info(f"Ignoring stale status from fetch: {note}")
    if promoted:
        logger.debug(f"Promoted local lines: {promoted}")
    return MergeResult(
        state=next_state,
        changed=next_state != state,
        promoted=promoted,
        stale=stale,
    )


def promote_pending(pending: Sequence[CartLine], candidates: Sequence[OrderItem],
                    claimed: FrozenSet[int]) -> Tuple[Tuple[CartLine, ...], Dict[str, int], FrozenSet[int]]:
    """Match submitted local lines to new confirmed items.

    Key is (product id, normalized notes). Two identical lines in one
    submission are matched positionally: the n-th local line of a group takes
    the n-th unclaimed server item of that group.
    """
    available: Dict[tuple, deque] = {}
    for it in candidates:
        available.setdefault((it.product_id, normalize_notes(it.notes)), deque()).append(it)

    remaining: List[CartLine] = []
    promoted: Dict[str, int] = {}
    claimed_now = set(claimed)
    for ln in pending:
        if not ln.submitted:
            remaining.append(ln)
            continue
        queue = available.get((ln.product.id, normalize_notes(ln.notes)))
        if queue:
            item = queue.popleft()
            promoted[ln.temp_id] = item.id
            claimed_now.add(item.id)
        else:
            remaining.append(ln)
    return tuple(remaining), promoted, frozenset(claimed_now)


# -- status events --

def _merge_status_event(state: SyncState, ev: StatusEvent) -> MergeResult:
    status = sm.normalize_status(ev.status, ev.kind)
    if status is None:
        logger.warning(f"Dropping {ev.kind} status event with unknown status {ev.status!r}")
        return MergeResult(state=state, changed=False, stale=[f"unknown status {ev.status!r}"])

    if ev.kind == sm.ORDER:
        order = state.orders.get(ev.order_id)
        if order is None:
            return _defer(state, (sm.ORDER, ev.order_id), status, ev.order_id)
        new_status = sm.merge_status(order.status, status)
        if new_status == order.status:
            note = f"order {ev.order_id}: {order.status} -> {status}"
            logger.info(f"Ignoring stale/duplicate event: {note}")
            return MergeResult(state=state, changed=False, stale=[note])
        orders = dict(state.orders)
        orders[ev.order_id] = order.model_copy(update={"status": new_status})
        return MergeResult(state=replace(state, orders=orders), changed=True)

    item = state.find_item(ev.item_id, ev.order_id)
    if item is None:
        return _defer(state, (sm.ITEM, ev.item_id), status, ev.order_id)
    new_status = sm.merge_status(item.status, status)
    if new_status == item.status:
        note = f"item {ev.item_id}: {item.status} -> {status}"
        logger.info(f"Ignoring stale/duplicate event: {note}")
        return MergeResult(state=state, changed=False, stale=[note])

    orders = dict(state.orders)
    owner_id = next(oid for oid, o in orders.items() if any(it is item for it in o.items))
    owner = orders[owner_id]
    orders[owner_id] = owner.model_copy(update={
        "items": [it.model_copy(update={"status": new_status}) if it.id == ev.item_id else it
                  for it in owner.items],
    })
    return MergeResult(state=replace(state, orders=orders), changed=True)


def _defer(state: SyncState, key: HintKey, status: str, order_id: int) -> MergeResult:
    hints = dict(state.hints)
    held = hints.get(key)
    hints[key] = Hint(sm.merge_status(held.status if held else None, status), order_id)
    logger.debug(f"Holding status {status} for unseen {key[0]} {key[1]}")
    return MergeResult(state=replace(state, hints=hints), changed=False, deferred=True)


# -- local edits --

def confirmed_lines(state: SyncState) -> List[CartLine]:
    """Read-only lines mirroring the confirmed items of open orders."""
    lines = []
    for oid in sorted(state.orders):
        o = state.orders[oid]
        if sm.is_terminal(o.status, sm.ORDER):
            continue
        for it in o.items:
            if it.id is None or it.status == sm.CANCELLED:
                continue
            lines.append(CartLine(
                item_id=it.id,
                order_id=o.id,
                product=_product_of(it),
                quantity=it.quantity,
                notes=it.notes,
                status=it.status,
            ))
    return lines


def build_draft(state: SyncState) -> List[CartLine]:
    return [ln.model_copy(deep=True) for ln in state.pending] + confirmed_lines(state)


def apply_edit(state: SyncState, before: Sequence[CartLine], after: Sequence[CartLine]) -> SyncState:
    """Validate the edited draft against the original and fold it into state.

    Only unsent local lines can change. Raises ``LocalEditRejected`` without
    touching ``state`` when the edit changes or drops a confirmed line
    (``locked`` once the kitchen has it, ``confirmed`` before that), touches
    an in-flight line, invents a confirmed line or sets a non-positive
    quantity.
    """
    prior = {ln.key: ln for ln in before}
    seen = set()
    lines: List[CartLine] = []
    for ln in after:
        if not isinstance(ln, CartLine):
            raise LocalEditRejected("not_a_cart_line")
        if ln.item_id is None and not ln.temp_id:
            ln = ln.model_copy(update={"temp_id": uuid.uuid4().hex})
        if ln.key in seen:
            raise LocalEditRejected("duplicate_line", ln.key)
        seen.add(ln.key)
        if not isinstance(ln.quantity, int) or ln.quantity <= 0:
            raise LocalEditRejected("invalid_quantity", ln.key)

        old = prior.get(ln.key)
        if old is None:
            if ln.item_id is not None or ln.submitted or ln.status is not None:
                raise LocalEditRejected("unknown_confirmed_line", ln.key)
        else:
            if ln.status != old.status or ln.submitted != old.submitted:
                raise LocalEditRejected("status_is_server_owned", ln.key)
            if _content_changed(old, ln):
                _refuse_change(old)
        lines.append(ln)

    for key, old in prior.items():
        if key not in seen:
            _refuse_change(old)

    return replace(state, pending=tuple(ln for ln in lines if ln.item_id is None))


def _refuse_change(old: CartLine) -> None:
    if old.locked:
        raise LocalEditRejected("locked", old.key)
    if not old.is_pending:
        # the server copy of a sent item is final
        raise LocalEditRejected("confirmed", old.key)
    if old.submitted:
        raise LocalEditRejected("in_flight", old.key)


def set_submitted(state: SyncState, temp_ids, submitted: bool) -> SyncState:
    temp_ids = set(temp_ids)
    pending = tuple(
        ln.model_copy(update={"submitted": submitted}) if ln.temp_id in temp_ids else ln
        for ln in state.pending
    )
    return replace(state, pending=pending)


def _content_changed(old: CartLine, new: CartLine) -> bool:
    return (
        old.quantity != new.quantity
        or (old.notes or None) != (new.notes or None)
        or old.product.id != new.product.id
    )


def _product_of(it: OrderItem) -> ProductRef:
    if it.product is not None:
        return it.product.model_copy()
    return ProductRef(id=it.product_id or 0, name=it.name or "", price=it.unit_price)
