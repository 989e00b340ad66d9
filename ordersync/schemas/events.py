from typing import Optional

from pydantic import BaseModel, ConfigDict

from ordersync.schemas.order import Order

ORDER_CREATED = "order.created"
ORDER_STATUS_UPDATED = "order.status.updated"
ITEM_STATUS_UPDATED = "order.item.status.updated"

ORDER_EVENTS = (ORDER_CREATED, ORDER_STATUS_UPDATED, ITEM_STATUS_UPDATED)


def canonical_event_name(name: str) -> str:
    # broadcasters prefix custom event names with a dot
    return (name or "").strip().lstrip(".")


class OrderCreatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order: Order


class OrderStatusUpdatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: int
    new_status: str
    old_status: Optional[str] = None
    table_id: Optional[int] = None


class ItemStatusUpdatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: int
    item_id: int
    new_status: str
    old_status: Optional[str] = None


EVENT_SCHEMAS = {
    ORDER_CREATED: OrderCreatedEvent,
    ORDER_STATUS_UPDATED: OrderStatusUpdatedEvent,
    ITEM_STATUS_UPDATED: ItemStatusUpdatedEvent,
}
