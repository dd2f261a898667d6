"""State machines of the order engine.

Each machine is a closed enum plus an explicit table mapping a state to the
set of states it may move to. Order fulfillment and order payment are two
independent axes, so an order can be shipped before or after it is paid.
"""

import enum


class CartStatus(str, enum.Enum):
    OPEN = "OPEN"
    CHECKED_OUT = "CHECKED_OUT"
    ABANDONED = "ABANDONED"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderPaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    REQUIRES_PAYMENT_METHOD = "REQUIRES_PAYMENT_METHOD"
    REQUIRES_CONFIRMATION = "REQUIRES_CONFIRMATION"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

# CONFIRMED -> CANCELLED exists in the table above but is not offered to callers.
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING})

ORDER_TERMINAL_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

ORDER_PAYMENT_TRANSITIONS = {
    OrderPaymentStatus.UNPAID: frozenset({OrderPaymentStatus.PAID}),
    OrderPaymentStatus.PAID: frozenset({OrderPaymentStatus.REFUNDED}),
    OrderPaymentStatus.REFUNDED: frozenset(),
}

_PAYMENT_OPEN = frozenset({
    PaymentStatus.REQUIRES_PAYMENT_METHOD,
    PaymentStatus.REQUIRES_CONFIRMATION,
    PaymentStatus.REQUIRES_ACTION,
    PaymentStatus.PROCESSING,
})

_PAYMENT_EXITS = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.CANCELED, PaymentStatus.FAILED})

PAYMENT_TRANSITIONS = {
    **{state: (_PAYMENT_OPEN - {state}) | _PAYMENT_EXITS for state in _PAYMENT_OPEN},
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.CANCELED: frozenset(),
    # Unrecognized provider statuses land in FAILED.
    PaymentStatus.FAILED: frozenset({PaymentStatus.SUCCEEDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

# Provider (Stripe) status vocabulary. Anything not listed maps to FAILED.
PROVIDER_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.REQUIRES_PAYMENT_METHOD,
    "requires_confirmation": PaymentStatus.REQUIRES_CONFIRMATION,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELED,
    "refunded": PaymentStatus.REFUNDED,
}


def can_transition(table, current, target) -> bool:
    return target in table.get(current, frozenset())


def map_provider_status(provider_status) -> PaymentStatus:
    if not provider_status:
        return PaymentStatus.FAILED
    return PROVIDER_STATUS_MAP.get(str(provider_status).lower(), PaymentStatus.FAILED)
