import logging
from decimal import Decimal
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ordersync.core.time_utils import parse_timestamp
from ordersync.services import status_machine as sm

logger = logging.getLogger("ordersync.schemas")


def _known_status(value, kind: str) -> str:
    # a missing status is a fresh entity; a value outside the machine is refused
    if value is None or (isinstance(value, str) and not value.strip()):
        return sm.PENDING
    status = sm.normalize_status(value, kind)
    if status is None:
        raise ValueError(f"unknown {kind} status {value!r}")
    return status


class MiniRef(BaseModel):
    id: int
    name: Optional[str] = None


class ProductRef(BaseModel):
    id: int
    name: str
    # price snapshot at the moment the product was put in the cart
    price: Decimal = Decimal("0")


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    # KDS payloads sometimes carry the order item id under this name
    order_item_id: Optional[int] = None
    order_id: Optional[int] = None
    product_id: Optional[int] = None
    product: Optional[ProductRef] = None
    name: Optional[str] = None
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    total_price: Optional[Decimal] = None
    notes: Optional[str] = None
    status: str = sm.PENDING

    @field_validator("status", mode="before")
    @classmethod
    def _canonical_status(cls, v):
        return _known_status(v, sm.ITEM)

    @model_validator(mode="after")
    def _fill_refs(self):
        if self.id is None and self.order_item_id is not None:
            self.id = self.order_item_id
        if self.product_id is None and self.product is not None:
            self.product_id = self.product.id
        return self


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    status: str = sm.PENDING
    payment_status: str = "unpaid"
    source: Optional[str] = None

    table: Optional[MiniRef] = None
    waiter: Optional[MiniRef] = None
    client: Optional[MiniRef] = None
    table_session_id: Optional[int] = None

    subtotal: Decimal = Decimal("0")
    tax_amount: Optional[Decimal] = None
    service_charge: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    total: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")

    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    items: List[OrderItem] = []

    @field_validator("status", mode="before")
    @classmethod
    def _canonical_status(cls, v):
        return _known_status(v, sm.ORDER)

    @field_validator("items", mode="before")
    @classmethod
    def _drop_unknown_items(cls, v):
        # one unreadable item must not take the whole order down with it
        if not isinstance(v, list):
            return v
        kept = []
        for raw in v:
            status = raw.get("status") if isinstance(raw, dict) else getattr(raw, "status", None)
            try:
                _known_status(status, sm.ITEM)
            except ValueError:
                logger.warning(f"Dropping order item {raw.get('id') if isinstance(raw, dict) else raw!r}"
                               f" with unknown status {status!r}")
                continue
            kept.append(raw)
        return kept

    @field_validator("opened_at", "closed_at", "updated_at", mode="before")
    @classmethod
    def _timestamps(cls, v):
        return parse_timestamp(v)

    @field_validator("tax_amount", "service_charge", "discount_amount", "paid_amount", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0 if v is None else v

    @model_validator(mode="after")
    def _own_items(self):
        # items are owned by their order; fill the back reference when the
        # payload leaves it out
        for it in self.items:
            if it.order_id is None:
                it.order_id = self.id
        return self

    @property
    def table_id(self) -> Optional[int]:
        return self.table.id if self.table else None


class StatusChange(BaseModel):
    """Echo returned by the PATCH status endpoints."""

    old_status: Optional[str] = None
    new_status: Optional[str] = None
