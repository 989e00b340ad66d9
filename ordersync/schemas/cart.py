from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel

from ordersync.schemas.order import ProductRef
from ordersync.services import status_machine as sm


class CartLine(BaseModel):
    """One editable line as the user sees it.

    A pending-local line has only ``temp_id``; a line mirroring a confirmed
    order item has ``item_id``. ``submitted`` marks pending lines that were
    sent to the server and are waiting to be matched to a confirmed item.
    """

    temp_id: Optional[str] = None
    item_id: Optional[int] = None
    order_id: Optional[int] = None
    product: ProductRef
    quantity: int = 1
    notes: Optional[str] = None
    status: Optional[str] = None
    submitted: bool = False

    @property
    def key(self) -> str:
        if self.item_id is not None:
            return f"item:{self.item_id}"
        return f"tmp:{self.temp_id}"

    @property
    def is_pending(self) -> bool:
        return self.item_id is None

    @property
    def locked(self) -> bool:
        return sm.is_locked(self.status)

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.product.price or 0) * self.quantity


class CartTotals(BaseModel):
    subtotal: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


def normalize_notes(notes: Optional[str]) -> str:
    return " ".join((notes or "").split()).lower()


def preview_totals(lines: List[CartLine], tax_rate: Decimal, discount: Decimal = Decimal("0")) -> CartTotals:
    """Preview of ``subtotal - discount + tax`` for lines not yet confirmed.

    Display only; confirmed orders always show the server's figures.
    """
    subtotal = sum((ln.line_total for ln in lines), Decimal("0"))
    discount = min(Decimal(discount or 0), subtotal)
    tax = ((subtotal - discount) * Decimal(tax_rate)).quantize(Decimal("0.01"))
    return CartTotals(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
    )
