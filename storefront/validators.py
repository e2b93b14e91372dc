"""
Business-rule validation for order status changes.

The transition table below is the single source of truth for which status
edges are legal. Every write path consults it before touching an order.
"""
from typing import Dict, FrozenSet, Tuple

from .errors import InvalidTransitionError
from .models import OrderStatus

S = OrderStatus

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({S.CANCELLED, S.DELIVERED, S.FAILED})

CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({S.PENDING, S.CONFIRMED, S.PROCESSING})

# The parcel is with the carrier, so a delivery attempt can fail
IN_TRANSIT_STATUSES: FrozenSet[OrderStatus] = frozenset({S.SHIPPED, S.OUT_FOR_DELIVERY, S.DELIVERY_FAILED})

# Fulfilment stages in order. Forward skips are allowed, going back is not.
FULFILMENT_SEQUENCE = (
    S.PENDING,
    S.CONFIRMED,
    S.PROCESSING,
    S.SHIPPED,
    S.OUT_FOR_DELIVERY,
    S.DELIVERED,
)


def _build_transitions() -> Dict[OrderStatus, FrozenSet[OrderStatus]]:
    table = {}
    for index, status in enumerate(FULFILMENT_SEQUENCE):
        table[status] = set(FULFILMENT_SEQUENCE[index + 1:])
    for status in CANCELLABLE_STATUSES:
        table[status].add(S.CANCELLED)
    table[S.PENDING].add(S.FAILED)
    table[S.SHIPPED].add(S.DELIVERY_FAILED)
    table[S.OUT_FOR_DELIVERY].add(S.DELIVERY_FAILED)
    # A failed attempt is followed by another attempt or a late delivery
    table[S.DELIVERY_FAILED] = {S.OUT_FOR_DELIVERY, S.DELIVERED}
    for status in TERMINAL_STATUSES:
        table[status] = set()
    return {status: frozenset(targets) for status, targets in table.items()}


VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = _build_transitions()


def parse_status(value) -> OrderStatus:
    """Coerce a raw value into an OrderStatus, raising ValueError if unknown."""
    if isinstance(value, OrderStatus):
        return value
    return OrderStatus(value)


def validate_order_status_transition(old_status, new_status) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        old = parse_status(old_status)
    except ValueError:
        return False, f"Unknown status: {old_status}"
    try:
        new = parse_status(new_status)
    except ValueError:
        return False, f"Unknown status: {new_status}"

    if old in TERMINAL_STATUSES:
        return False, f"Order is already {old.value}"

    if new not in VALID_TRANSITIONS[old]:
        return False, f"Invalid status transition: {old.value} -> {new.value}"

    return True, ""


def ensure_transition(old_status, new_status) -> OrderStatus:
    """Raise InvalidTransitionError unless ``old_status -> new_status`` is legal."""
    is_valid, message = validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise InvalidTransitionError(str(getattr(old_status, "value", old_status)),
                                     str(getattr(new_status, "value", new_status)),
                                     message)
    return parse_status(new_status)
