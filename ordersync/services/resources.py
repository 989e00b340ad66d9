"""Endpoint calls used by the views, returning normalized models."""
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from ordersync.schemas.cart import CartLine
from ordersync.schemas.order import Order, StatusChange
from ordersync.schemas.session import Table, TableSession
from ordersync.services import normalize
from ordersync.services import status_machine as sm
from ordersync.services.api_client import ResourceClient

KDS_STATUSES = (sm.PENDING, sm.PREPARING, sm.READY, sm.SERVED)


async def fetch_orders(client: ResourceClient, status=None, per_page: int = 100) -> List[Order]:
    params = {"per_page": per_page}
    if isinstance(status, (list, tuple)):
        params["status[]"] = list(status)
    elif status:
        params["status"] = status
    res = await client.get("/v1/orders", params=params)
    return normalize.normalize_orders(res.data)


async def fetch_kds_orders(client: ResourceClient) -> List[Order]:
    return await fetch_orders(client, status=KDS_STATUSES)


async def fetch_order(client: ResourceClient, order_id: int) -> Order:
    res = await client.get(f"/v1/orders/{order_id}")
    return normalize.normalize_order(res.data)


def build_order_payload(lines: Iterable[CartLine], table_id: Optional[int] = None,
                        client_id: Optional[int] = None, source: str = "pos",
                        discount_amount: Optional[Decimal] = None) -> dict:
    """Request body for ``POST /v1/orders``: the full cart plus table identity."""
    return {
        "table_id": table_id,
        "client_id": client_id,
        "source": source,
        "discount_amount": float(discount_amount) if discount_amount else None,
        "items": [
            {"product_id": ln.product.id, "quantity": ln.quantity, "notes": ln.notes or None}
            for ln in lines
        ],
    }


async def create_order(client: ResourceClient, payload: dict) -> Tuple[Optional[TableSession], List[Order]]:
    res = await client.post("/v1/orders", payload)
    return normalize.normalize_submission(res.data)


async def update_order_status(client: ResourceClient, order_id: int, status: str,
                              waiter_id: Optional[int] = None) -> StatusChange:
    body = {"status": status}
    if waiter_id is not None:
        body["waiter_id"] = waiter_id
    res = await client.patch(f"/v1/orders/{order_id}/status", body)
    return normalize.normalize_status_change(res.data)


async def update_item_status(client: ResourceClient, item_id: int, status: str) -> StatusChange:
    res = await client.patch(f"/v1/order-items/{item_id}/status", {"status": status})
    return normalize.normalize_status_change(res.data)


async def fetch_tables(client: ResourceClient) -> List[Table]:
    res = await client.get("/v1/tables")
    return normalize.normalize_tables(res.data)


async def update_table_status(client: ResourceClient, table_id: int, status: str) -> None:
    await client.patch(f"/v1/tables/{table_id}/status", {"status": status})


async def close_table_session(client: ResourceClient, table_code: str, session_id: int) -> None:
    await client.post(f"/v1/tables/{table_code}/sessions/{session_id}/close")


async def fetch_portal_session(client: ResourceClient, table_code: str) -> TableSession:
    res = await client.get(f"/v1/portal/{table_code}/session")
    return normalize.normalize_session(res.data)


async def place_portal_order(client: ResourceClient, table_code: str, lines: Iterable[CartLine],
                             device_id: Optional[str], session_id: Optional[int]) -> Tuple[Optional[TableSession], List[Order]]:
    body = {
        "device_id": device_id,
        "table_session_id": session_id,
        "items": [
            {"product_id": ln.product.id, "quantity": ln.quantity, "notes": ln.notes or None}
            for ln in lines
        ],
    }
    res = await client.post(f"/v1/portal/{table_code}/orders", body)
    return normalize.normalize_submission(res.data)


async def create_transaction(client: ResourceClient, amount: Decimal, payment_method: str,
                             table_session_id: Optional[int] = None,
                             order_ids: Optional[List[int]] = None) -> dict:
    """Record a settlement for a session or, for takeout, a set of orders."""
    body = {
        "amount": float(amount),
        "payment_method": payment_method,
        "table_session_id": table_session_id,
    }
    if not table_session_id:
        body["order_ids"] = list(order_ids or [])
    res = await client.post("/v1/transactions", body)
    return normalize.normalize_record(res.data)


async def fetch_restaurant(client: ResourceClient) -> dict:
    res = await client.get("/v1/restaurant")
    return normalize.normalize_record(res.data)
