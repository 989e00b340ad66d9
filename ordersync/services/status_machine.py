"""Order and item status state machines.

Both machines are monotonic with an absorbing ``cancelled`` state:

- order: pending -> preparing -> ready -> served -> completed
- item:  pending -> cooking   -> ready -> served

``cancelled`` is reachable from any non-terminal state. ``preparing`` (order)
and ``cooking`` (item) share a rank so the two machines can be compared in
one canonical ordering. Every "is this locked / editable / a regression"
question in the package is answered here.
"""
from typing import Optional

ORDER = "order"
ITEM = "item"

PENDING = "pending"
PREPARING = "preparing"
COOKING = "cooking"
READY = "ready"
SERVED = "served"
COMPLETED = "completed"
CANCELLED = "cancelled"

ORDER_STATUSES = (PENDING, PREPARING, READY, SERVED, COMPLETED, CANCELLED)
ITEM_STATUSES = (PENDING, COOKING, READY, SERVED, CANCELLED)

_RANK = {
    PENDING: 0,
    PREPARING: 1,
    COOKING: 1,
    READY: 2,
    SERVED: 3,
    COMPLETED: 4,
    # top of the lattice: once seen, nothing moves an entity out of it
    CANCELLED: 100,
}

TERMINAL = {
    ORDER: frozenset({COMPLETED, CANCELLED}),
    ITEM: frozenset({SERVED, CANCELLED}),
}

# a line in one of these states is with the kitchen and may not be edited
LOCKED_STATUSES = frozenset({PREPARING, COOKING, READY, SERVED, COMPLETED})

# order statuses shown as "active" (occupying a table, on the KDS board)
ACTIVE_ORDER_STATUSES = frozenset({PENDING, PREPARING, READY, SERVED})

_ALIASES = {
    ORDER: {COOKING: PREPARING, "in_progress": PREPARING, "canceled": CANCELLED},
    ITEM: {PREPARING: COOKING, "in_progress": COOKING, COMPLETED: SERVED, "canceled": CANCELLED},
}


def normalize_status(value, kind: str = ORDER) -> Optional[str]:
    """Map an incoming status value onto the canonical name for ``kind``.

    Returns None when the value is missing or not part of the machine.
    """
    if value is None:
        return None
    try:
        st = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    except Exception:
        return None
    if not st:
        return None
    st = _ALIASES[kind].get(st, st)
    allowed = ORDER_STATUSES if kind == ORDER else ITEM_STATUSES
    return st if st in allowed else None


def rank(status: Optional[str]) -> int:
    return _RANK.get(status, -1)


def is_terminal(status: Optional[str], kind: str = ORDER) -> bool:
    return status in TERMINAL[kind]


def is_locked(status: Optional[str]) -> bool:
    return status in LOCKED_STATUSES


def is_active_order(status: Optional[str]) -> bool:
    return status in ACTIVE_ORDER_STATUSES


def can_transition(current: Optional[str], new: Optional[str], kind: str = ORDER) -> bool:
    """Whether a requested move from ``current`` to ``new`` is legal."""
    if new is None or normalize_status(new, kind) != new:
        return False
    if current is None:
        return True
    if is_terminal(current, kind):
        return False
    if new == CANCELLED:
        return True
    return rank(new) > rank(current)


def is_regression(current: Optional[str], incoming: Optional[str]) -> bool:
    """True when applying ``incoming`` would move an entity backwards."""
    if current is None or incoming is None:
        return False
    return rank(incoming) < rank(current)


def merge_status(current: Optional[str], incoming: Optional[str]) -> Optional[str]:
    """Join of two observed statuses: the later one under the canonical order.

    Commutative, associative and idempotent, which is what lets fetches and
    push events be applied in any order.
    """
    if current is None:
        return incoming
    if incoming is None:
        return current
    return incoming if rank(incoming) > rank(current) else current
