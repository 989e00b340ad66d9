from decimal import Decimal

import pytest

from conftest import item_payload, make_order, order_payload, product
from ordersync.schemas.order import StatusChange
from ordersync.schemas.session import TableSession
from ordersync.services import store as edits
from ordersync.services.errors import ApiError, LocalEditRejected
from ordersync.services.store import OrderStore


def new_store(**kw):
    kw.setdefault("tax_rate", Decimal("0.10"))
    return OrderStore(subject="T1", **kw)


def submit(store, *orders, session=None):
    ticket = store.begin_submission()
    assert store.complete_submission(ticket, session, list(orders))
    return ticket


def test_local_edit_is_visible_immediately():
    store = new_store()
    snap = store.apply_local_edit(edits.add_line(product(1, "4.00"), quantity=2))
    assert snap.cart_count == 2
    assert snap.cart_totals.subtotal == Decimal("8.00")
    assert snap.cart_totals.tax == Decimal("0.80")
    assert snap.cart_totals.total == Decimal("8.80")
    assert store.get_snapshot() is snap


def test_add_line_folds_identical_unsent_lines():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1), notes="no salt"))
    snap = store.apply_local_edit(edits.add_line(product(1), notes="No Salt "))
    assert len(snap.cart) == 1
    assert snap.cart[0].quantity == 2


def test_decrement_to_zero_removes_the_line():
    store = new_store()
    snap = store.apply_local_edit(edits.add_line(product(1)))
    key = snap.cart[0].key
    snap = store.apply_local_edit(edits.decrement(key))
    assert snap.cart == []


def test_unknown_line_is_rejected():
    store = new_store()
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.set_quantity("tmp:nope", 3))
    assert exc.value.reason == "unknown_line"


def test_locked_item_cannot_be_removed_or_changed():
    store = new_store()
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1, status="cooking")])])
    before = store.get_snapshot()
    assert before.locked_item_ids == [10]

    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.remove_line("item:10"))
    assert exc.value.reason == "locked"
    with pytest.raises(LocalEditRejected):
        store.apply_local_edit(edits.set_quantity("item:10", 5))
    with pytest.raises(LocalEditRejected):
        store.apply_local_edit(edits.set_notes("item:10", "well done"))

    after = store.get_snapshot()
    assert after.cart == before.cart
    assert after.revision == before.revision


def test_submission_then_response_promotes_without_duplicates():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1), quantity=2))
    submit(store, make_order(21, items=[item_payload(201, 1, quantity=2)], table_session_id=7))

    snap = store.get_snapshot()
    assert snap.pending_count == 0
    assert [(ln.item_id, ln.quantity) for ln in snap.cart] == [(201, 2)]
    assert snap.session_id == 7
    assert not snap.submitting


def test_event_before_submission_response_converges():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1)))
    ticket = store.begin_submission()
    order = order_payload(21, items=[item_payload(201, 1)])

    assert store.apply_realtime_event(".order.created", {"order": order})
    assert store.get_snapshot().pending_count == 0

    store.complete_submission(ticket, None, [make_order(21, items=[item_payload(201, 1)])])
    snap = store.get_snapshot()
    assert [ln.item_id for ln in snap.cart] == [201]


def test_unmatched_submitted_lines_wait_for_a_fetch():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1)))
    submit(store)
    snap = store.get_snapshot()
    assert snap.pending_count == 1
    assert snap.cart[0].submitted

    store.apply_server_fetch([make_order(21, items=[item_payload(201, 1)])], complete=False)
    assert [ln.item_id for ln in store.get_snapshot().cart] == [201]


def test_failed_submission_keeps_the_cart_editable():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1), quantity=3, notes="spicy"))
    ticket = store.begin_submission()
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.set_quantity(ticket.lines[0].key, 1))
    assert exc.value.reason == "in_flight"

    store.fail_submission(ticket, ApiError(500, {"message": "boom"}))
    snap = store.get_snapshot()
    assert [(ln.quantity, ln.notes, ln.submitted) for ln in snap.cart] == [(3, "spicy", False)]
    assert not snap.blocked
    snap = store.apply_local_edit(edits.set_quantity(snap.cart[0].key, 1))
    assert snap.cart_count == 1


def test_device_lock_blocks_edits():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1)))
    ticket = store.begin_submission()
    store.fail_submission(ticket, ApiError(403, {"code": "DEVICE_LOCKED"}))
    snap = store.get_snapshot()
    assert snap.blocked
    assert snap.block_reason == "device_locked"
    assert snap.cart_count == 1
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.add_line(product(2)))
    assert exc.value.reason == "device_locked"
    with pytest.raises(LocalEditRejected):
        store.begin_submission()


def test_closed_session_rejects_edits():
    store = new_store()
    store.apply_session(TableSession(id=7, status="closed"))
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.add_line(product(1)))
    assert exc.value.reason == "session_closed"


def test_empty_cart_cannot_be_submitted():
    with pytest.raises(LocalEditRejected) as exc:
        new_store().begin_submission()
    assert exc.value.reason == "cart_empty"


def test_stale_fetch_after_subject_switch_is_ignored():
    store = new_store()
    ticket = store.begin_fetch()
    store.reset_subject("T2")
    assert not store.apply_server_fetch([make_order(1)], ticket=ticket)
    snap = store.get_snapshot()
    assert snap.orders == []
    assert snap.subject == "T2"


def test_stale_submission_response_after_subject_switch_is_ignored():
    store = new_store()
    store.apply_local_edit(edits.add_line(product(1)))
    ticket = store.begin_submission()
    store.reset_subject("T2")
    assert not store.complete_submission(ticket, None, [make_order(21, items=[item_payload(201, 1)])])
    assert store.get_snapshot().orders == []


def test_fetch_does_not_drop_orders_created_while_in_flight():
    store = new_store()
    store.apply_server_fetch([make_order(1)])
    ticket = store.begin_fetch()
    store.apply_realtime_event("order.created", {"order": order_payload(2)})
    store.apply_server_fetch([make_order(1)], ticket=ticket)
    assert [o.id for o in store.get_snapshot().orders] == [1, 2]

    # a fetch started after the event is authoritative again
    store.apply_server_fetch([make_order(1)], ticket=store.begin_fetch())
    assert [o.id for o in store.get_snapshot().orders] == [1]


def test_realtime_events_are_idempotent_and_monotonic():
    store = new_store()
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1)])])
    assert store.apply_realtime_event("order.status.updated", {"order_id": 1, "new_status": "ready"})
    assert not store.apply_realtime_event("order.status.updated", {"order_id": 1, "new_status": "ready"})
    assert not store.apply_realtime_event("order.status.updated", {"order_id": 1, "new_status": "preparing"})
    assert store.apply_realtime_event(
        ".order.item.status.updated", {"order_id": 1, "item_id": 10, "new_status": "preparing"}
    )
    snap = store.get_snapshot()
    assert snap.order(1).status == "ready"
    assert snap.item(10).status == "cooking"


@pytest.mark.parametrize("name,payload", [
    ("order.status.updated", {"new_status": "ready"}),
    ("order.status.updated", {"order_id": "abc", "new_status": "ready"}),
    ("order.item.status.updated", {"order_id": 1, "new_status": "ready"}),
    ("order.created", {"id": 5}),
    ("order.created", None),
    ("order.created", ["not", "a", "dict"]),
    ("order.something.else", {"order_id": 1}),
])
def test_malformed_events_are_dropped(name, payload):
    store = new_store()
    store.apply_server_fetch([make_order(1)])
    before = store.get_snapshot()
    assert store.apply_realtime_event(name, payload) is False
    assert store.get_snapshot() == before


def test_item_event_for_unknown_order_is_applied_when_order_arrives():
    store = new_store()
    assert not store.apply_realtime_event(
        "order.item.status.updated", {"order_id": 3, "item_id": 30, "new_status": "ready"}
    )
    store.apply_server_fetch([make_order(3, items=[item_payload(30, 1)])])
    assert store.get_snapshot().item(30).status == "ready"


def test_optimistic_status_change_and_revert():
    store = new_store()
    store.apply_server_fetch([make_order(1)])
    ticket = store.begin_status_change("order", 1, "preparing")
    assert store.get_snapshot().order(1).status == "preparing"
    assert store.revert_status_change(ticket)
    assert store.get_snapshot().order(1).status == "pending"


def test_optimistic_status_change_confirmed():
    store = new_store()
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1)])])
    ticket = store.begin_status_change("item", 10, "cooking")
    assert ticket.order_id == 1
    store.confirm_status_change(ticket, StatusChange(old_status="pending", new_status="cooking"))
    snap = store.get_snapshot()
    assert snap.item(10).status == "cooking"
    # a late revert after confirmation changes nothing
    assert not store.revert_status_change(ticket)
    assert store.get_snapshot().item(10).status == "cooking"


def test_illegal_status_change_is_rejected():
    store = new_store()
    store.apply_server_fetch([make_order(1, status="completed")])
    with pytest.raises(LocalEditRejected) as exc:
        store.begin_status_change("order", 1, "preparing")
    assert exc.value.reason == "illegal_transition"
    with pytest.raises(LocalEditRejected):
        store.begin_status_change("order", 99, "ready")


def test_overlay_loses_to_a_later_server_status():
    store = new_store()
    store.apply_server_fetch([make_order(1)])
    ticket = store.begin_status_change("order", 1, "preparing")
    store.apply_realtime_event("order.status.updated", {"order_id": 1, "new_status": "ready"})
    assert store.get_snapshot().order(1).status == "ready"
    store.revert_status_change(ticket)
    assert store.get_snapshot().order(1).status == "ready"


def test_total_due_excludes_cancelled_orders():
    store = new_store()
    store.apply_session(TableSession(id=7, orders=[
        make_order(1, total="12.00", table_session_id=7),
        make_order(2, total="8.00", table_session_id=7),
    ]))
    assert store.get_snapshot().total_due == Decimal("20.00")
    store.apply_realtime_event("order.status.updated", {"order_id": 2, "new_status": "cancelled"})
    assert store.get_snapshot().total_due == Decimal("12.00")


def test_listeners_are_notified_and_isolated():
    store = new_store()
    seen = []

    def broken(snap):
        raise RuntimeError("listener bug")

    store.add_listener(broken)
    remove = store.add_listener(lambda snap: seen.append(snap.revision))
    store.apply_server_fetch([make_order(1)])
    assert len(seen) == 1
    remove()
    store.apply_server_fetch([make_order(2)], complete=False)
    assert len(seen) == 1


def test_confirmed_item_cannot_be_edited_from_the_cart():
    store = new_store()
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1, quantity=1)])])
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.set_quantity("item:10", 3))
    assert exc.value.reason == "confirmed"
    assert store.get_snapshot().line("item:10").quantity == 1

    store.apply_realtime_event("order.item.status.updated", {"order_id": 1, "item_id": 10, "new_status": "cooking"})
    with pytest.raises(LocalEditRejected) as exc:
        store.apply_local_edit(edits.remove_line("item:10"))
    assert exc.value.reason == "locked"
    assert store.get_snapshot().line("item:10").locked


def test_complete_fetch_releases_events_for_orders_that_never_arrived():
    store = new_store()
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1)])])
    for oid in range(100, 140):
        store.apply_realtime_event("order.status.updated", {"order_id": oid, "new_status": "ready"})
    assert store.held_events == 40

    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1)])], complete=False)
    assert store.held_events == 40
    store.apply_server_fetch([make_order(1, items=[item_payload(10, 1)])])
    assert store.held_events == 0
