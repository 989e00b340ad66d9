from decimal import Decimal

import pytest

from conftest import item_payload, order_payload
from ordersync.services import normalize
from ordersync.services.errors import MalformedPayload

ORDERS = [order_payload(1, items=[item_payload(10, 1)]), order_payload(2, status="ready")]


@pytest.mark.parametrize("payload", [
    ORDERS,
    {"data": ORDERS},
    {"data": ORDERS, "meta": {"current_page": 1, "last_page": 1}, "links": {}},
    {"data": {"data": ORDERS}},
], ids=["bare", "data", "paginated", "double-wrapped"])
def test_normalize_orders_accepts_every_list_shape(payload):
    orders = normalize.normalize_orders(payload)
    assert [o.id for o in orders] == [1, 2]
    assert orders[0].items[0].id == 10
    assert orders[0].items[0].order_id == 1
    assert orders[0].items[0].product_id == 1
    assert orders[1].status == "ready"


@pytest.mark.parametrize("payload", [None, "oops", {"message": "no data here"}, 42])
def test_normalize_orders_unexpected_shape_is_empty(payload):
    assert normalize.normalize_orders(payload) == []


def test_normalize_orders_drops_invalid_rows():
    orders = normalize.normalize_orders({"data": [{"status": "pending"}, order_payload(3)]})
    assert [o.id for o in orders] == [3]


@pytest.mark.parametrize("payload", [
    order_payload(5),
    {"data": order_payload(5)},
    {"message": "Order updated", "data": order_payload(5)},
    {"data": {"data": order_payload(5)}},
], ids=["bare", "data", "message", "double-wrapped"])
def test_normalize_order_single_shapes(payload):
    assert normalize.normalize_order(payload).id == 5


def test_normalize_order_missing_raises():
    with pytest.raises(MalformedPayload):
        normalize.normalize_order({"data": None})
    with pytest.raises(MalformedPayload):
        normalize.normalize_order({"data": {"status": "pending"}})


def test_order_money_and_status_are_canonical():
    order = normalize.normalize_order({
        "id": 9, "status": "IN_PROGRESS", "total": "12.50", "tax_amount": None,
        "items": [{"order_item_id": 90, "product_id": 4, "quantity": 2, "unit_price": 3, "status": "preparing"}],
    })
    assert order.status == "preparing"
    assert order.total == Decimal("12.50")
    assert order.tax_amount == Decimal("0")
    assert order.items[0].id == 90
    assert order.items[0].status == "cooking"


def test_completed_item_is_served_and_unknown_item_is_dropped():
    order = normalize.normalize_order(order_payload(3, items=[
        item_payload(10, 1, status="completed"),
        item_payload(11, 2, status="teleported"),
        {"id": 12, "product_id": 3, "quantity": 1},
    ]))
    assert [(it.id, it.status) for it in order.items] == [(10, "served"), (12, "pending")]


def test_order_with_unknown_status_is_dropped():
    orders = normalize.normalize_orders({"data": [order_payload(1), order_payload(2, status="lost")]})
    assert [o.id for o in orders] == [1]


def test_normalize_session_nested_and_flat():
    flat = {"data": {"id": 7, "status": "active", "orders": [order_payload(1)]}}
    nested = {"data": {"session": {"id": 7, "status": "active"}, "orders": [order_payload(1)]}}
    for payload in (flat, nested):
        session = normalize.normalize_session(payload)
        assert session.id == 7
        assert not session.is_closed
        assert [o.id for o in session.orders] == [1]


def test_normalize_session_closed_status():
    assert normalize.normalize_session({"id": 7, "status": "Closed"}).is_closed


@pytest.mark.parametrize("payload,session_id,order_ids", [
    (order_payload(4), None, [4]),
    ({"data": order_payload(4)}, None, [4]),
    ({"message": "Order placed", "data": {"order": order_payload(4), "session": {"id": 7}}}, 7, [4]),
    ({"data": {"orders": [order_payload(4), order_payload(5)]}}, None, [4, 5]),
    ({"data": {"session": {"id": 7, "orders": [order_payload(3)]}, "order": order_payload(3, status="ready")}}, 7, [3]),
], ids=["bare", "data", "order+session", "orders", "session-with-orders"])
def test_normalize_submission(payload, session_id, order_ids):
    session, orders = normalize.normalize_submission(payload)
    assert (session.id if session else None) == session_id
    assert [o.id for o in orders] == order_ids


def test_normalize_submission_keeps_last_duplicate():
    _, orders = normalize.normalize_submission(
        {"data": {"session": {"id": 7, "orders": [order_payload(3)]}, "order": order_payload(3, status="ready")}}
    )
    assert orders[0].status == "ready"


def test_normalize_submission_empty_raises():
    with pytest.raises(MalformedPayload):
        normalize.normalize_submission({"data": None})
    with pytest.raises(MalformedPayload):
        normalize.normalize_submission({"data": {"session": None, "order": None}})


def test_normalize_tables():
    tables = normalize.normalize_tables({"data": [
        {"id": 1, "name": "T1", "status": "Needs Cleaning"},
        {"id": 2, "name": "T2", "status": "weird"},
    ]})
    assert [t.status for t in tables] == ["needs_cleaning", "free"]


def test_normalize_status_change():
    change = normalize.normalize_status_change({"data": {"old_status": "pending", "new_status": "preparing"}})
    assert change.new_status == "preparing"
    assert normalize.normalize_status_change(None).new_status is None
