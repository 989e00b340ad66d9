"""One narrow normalization function per resource.

The API returns the same logical resource in several wire shapes:

- lists: bare ``[...]``, ``{"data": [...]}`` (optionally with ``meta``/``links``)
  or doubly wrapped ``{"data": {"data": [...]}}``
- single resources: bare ``{...}``, ``{"data": {...}}`` or
  ``{"message": "...", "data": {...}}``

Everything past this module sees exactly one canonical shape.
"""
import logging
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from ordersync.schemas.order import Order, StatusChange
from ordersync.schemas.session import Table, TableSession
from ordersync.services.errors import MalformedPayload

logger = logging.getLogger("ordersync.normalize")


def unwrap_list(payload: Any) -> Optional[list]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return data["data"]
    return None


def unwrap_single(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict):
        # {"data": {"data": {...}}} shows up behind some resource wrappers
        inner = data.get("data")
        if isinstance(inner, dict):
            return inner
        return data
    if "data" in payload and data is None:
        return None
    return payload


def _parse_many(model, rows: list, resource: str) -> list:
    out = []
    for row in rows:
        try:
            out.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Dropping malformed {resource} row: {e.error_count()} error(s) in {row!r:.200}")
    return out


def normalize_orders(payload: Any) -> List[Order]:
    rows = unwrap_list(payload)
    if rows is None:
        logger.warning(f"Unexpected orders response shape: {type(payload).__name__}")
        return []
    return _parse_many(Order, rows, "order")


def normalize_order(payload: Any) -> Order:
    row = unwrap_single(payload)
    if row is None:
        raise MalformedPayload("order response carries no order")
    try:
        return Order.model_validate(row)
    except ValidationError as e:
        raise MalformedPayload(f"invalid order: {e}") from e


def normalize_tables(payload: Any) -> List[Table]:
    rows = unwrap_list(payload)
    if rows is None:
        logger.warning(f"Unexpected tables response shape: {type(payload).__name__}")
        return []
    return _parse_many(Table, rows, "table")


def normalize_session(payload: Any) -> TableSession:
    row = unwrap_single(payload)
    if isinstance(row, dict) and isinstance(row.get("session"), dict):
        row = dict(row["session"], orders=row["session"].get("orders") or row.get("orders") or [])
    if row is None:
        raise MalformedPayload("session response carries no session")
    try:
        return TableSession.model_validate(row)
    except ValidationError as e:
        raise MalformedPayload(f"invalid session: {e}") from e


def normalize_submission(payload: Any) -> Tuple[Optional[TableSession], List[Order]]:
    """Split an order-submission response into (session, orders).

    Accepted shapes: a bare/wrapped order, ``{order, session}``,
    ``{orders, session}`` or a session carrying its ``orders``.
    """
    row = unwrap_single(payload)
    if row is None:
        raise MalformedPayload("submission response is empty")

    if any(k in row for k in ("session", "order", "orders")):
        session = None
        orders: List[Order] = []
        if isinstance(row.get("session"), dict):
            session = normalize_session({"data": row["session"]})
            orders.extend(session.orders)
        if isinstance(row.get("order"), dict):
            orders.append(normalize_order(row["order"]))
        if isinstance(row.get("orders"), list):
            orders.extend(_parse_many(Order, row["orders"], "order"))
        if session is None and not orders:
            raise MalformedPayload("submission response carries neither order nor session")
        return session, _dedupe(orders)

    return None, [normalize_order(row)]


def normalize_status_change(payload: Any) -> StatusChange:
    row = unwrap_single(payload)
    if row is None:
        return StatusChange()
    return StatusChange.model_validate(row)


def normalize_record(payload: Any) -> dict:
    row = unwrap_single(payload)
    return row if isinstance(row, dict) else {}


def _dedupe(orders: List[Order]) -> List[Order]:
    # the same order may appear both inside the session and at top level;
    # keep the last occurrence
    by_id = {}
    for o in orders:
        by_id[o.id] = o
    return list(by_id.values())
