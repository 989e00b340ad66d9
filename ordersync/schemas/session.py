from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, field_validator

from ordersync.schemas.order import MiniRef, Order
from ordersync.services import status_machine as sm

TABLE_STATUSES = ("free", "reserved", "occupied", "needs_cleaning")


class TableSession(BaseModel):
    """A table's continuous visit, grouping its orders for one bill."""

    model_config = ConfigDict(extra="ignore")

    id: int
    status: str = "active"
    table: Optional[MiniRef] = None
    table_code: Optional[str] = None
    device_id: Optional[str] = None
    currency: Optional[str] = None
    orders: List[Order] = []

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        st = str(v or "active").strip().lower()
        return "closed" if st in ("closed", "inactive", "ended") else "active"

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"


def session_total_due(orders) -> Decimal:
    """Sum of order totals for the non-cancelled orders of a session.

    Always recomputed from the orders, never patched incrementally.
    """
    total = Decimal("0")
    for o in orders:
        if o.status != sm.CANCELLED:
            total += Decimal(o.total or 0)
    return total


class Table(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    code: Optional[str] = None
    capacity: Optional[int] = None
    # manual status stored server-side (cleaning workflow, reservations)
    status: str = "free"
    qr_token: Optional[str] = None
    floor_plan: Optional[MiniRef] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        st = str(v or "free").strip().lower().replace(" ", "_")
        return st if st in TABLE_STATUSES else "free"


class TableView(BaseModel):
    table: Table
    effective_status: str
    active_order_ids: List[int] = []
    # manually marked occupied while no active order is bound to it
    mismatch: bool = False
