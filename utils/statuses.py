# utils/statuses.py
from typing import Optional

from database.models.orders import OrderStatus, PaymentStatus


class StatusTransitionError(ValueError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change status from '{current}' to '{target}'")


# --- 1. STATUS GROUPS ---

# Order has been paid for and is being fulfilled
FULFILMENT_STATUSES = {
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
}

# Delivery console shows everything that has been paid for, delivered included
DELIVERY_BOARD_STATUSES = FULFILMENT_STATUSES | {OrderStatus.DELIVERED}

CANCELLABLE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
}

# Money has been received, nothing done yet
PAID_STATUSES = {
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
}

# Payment outcomes the admin console surfaces as "needs attention"
PAYMENT_ISSUE_STATUSES = {
    PaymentStatus.FAILED,
    PaymentStatus.TIMEOUT,
    PaymentStatus.INTASEND_TIMEOUT,
    PaymentStatus.DOCUMENT_PENDING,
}

# A payment reminder can be re-sent for these (order status or payment status)
RESEND_PAYMENT_ELIGIBLE = {
    "pending",
    "intasend_timeout",
    "failed",
    "document_pending",
}

# --- 2. TRANSITIONS ---

_FULFILMENT_LINE = [
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]


def _forward_from(status: OrderStatus) -> set[OrderStatus]:
    idx = _FULFILMENT_LINE.index(status)
    return set(_FULFILMENT_LINE[idx + 1:])


# Forward moves along the fulfilment line (skipping ahead is allowed),
# cancellation from anything not yet delivered. delivered/cancelled are terminal.
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    status: _forward_from(status) | ({OrderStatus.CANCELLED} if status in CANCELLABLE_STATUSES else set())
    for status in _FULFILMENT_LINE
}
ORDER_TRANSITIONS[OrderStatus.CANCELLED] = set()

_GATEWAY_OUTCOMES = {
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.TIMEOUT,
    PaymentStatus.INTASEND_TIMEOUT,
    PaymentStatus.DOCUMENT_PENDING,
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: set(_GATEWAY_OUTCOMES),
    # late webhooks may still settle a timed-out or failed attempt
    PaymentStatus.INTASEND_TIMEOUT: {
        PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.TIMEOUT,
    },
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.COMPLETED},
    PaymentStatus.TIMEOUT: {PaymentStatus.PENDING, PaymentStatus.COMPLETED},
    PaymentStatus.DOCUMENT_PENDING: {
        PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.FAILED,
    },
    PaymentStatus.COMPLETED: set(),
}

# "Next status" the admin console pre-selects
NEXT_STATUS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PAID: OrderStatus.PREPARING,
    OrderStatus.CONFIRMED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY: OrderStatus.DELIVERED,
}

# Status changes that send the customer an email, keyed to the template
NOTIFY_ON_STATUS: dict[OrderStatus, str] = {
    OrderStatus.PREPARING: "orderPreparing",
    OrderStatus.OUT_FOR_DELIVERY: "orderOutForDelivery",
    OrderStatus.DELIVERED: "orderDelivered",
}
ORDER_CONFIRMED_TEMPLATE = "orderConfirmed"

# --- 3. GATEWAY STATE MAPPING ---

GATEWAY_COMPLETE = "COMPLETE"
GATEWAY_FAILED = "FAILED"
GATEWAY_PENDING_STATES = {"PENDING", "PROCESSING"}

# --- 4. DISPLAY ---

status_map = {
    OrderStatus.PENDING: "Payment Pending",
    OrderStatus.PAID: "Payment Confirmed",
    OrderStatus.CONFIRMED: "Order Confirmed",
    OrderStatus.PREPARING: "Preparing Your Order",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

status_messages = {
    OrderStatus.PENDING: "We're waiting for your payment confirmation.",
    OrderStatus.PAID: "Payment received! We're preparing your order.",
    OrderStatus.CONFIRMED: "Your order is confirmed and being prepared.",
    OrderStatus.PREPARING: "Our chefs are preparing your fresh strawberries.",
    OrderStatus.OUT_FOR_DELIVERY: "Your order is on the way to you!",
    OrderStatus.DELIVERED: "Your order has been delivered successfully.",
    OrderStatus.CANCELLED: "Your order has been cancelled.",
}

payment_status_map = {
    PaymentStatus.PENDING: "Awaiting payment",
    PaymentStatus.COMPLETED: "Paid",
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.TIMEOUT: "Expired",
    PaymentStatus.INTASEND_TIMEOUT: "No confirmation from M-Pesa",
    PaymentStatus.DOCUMENT_PENDING: "Awaiting documents",
}


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValueError(f"Unknown order status: {value!r}") from None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ORDER_TRANSITIONS.get(current, set())


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise StatusTransitionError(current.value, target.value)


def allowed_targets(current: OrderStatus) -> list[OrderStatus]:
    """Targets in fulfilment order, cancelled last."""
    targets = ORDER_TRANSITIONS.get(current, set())
    ordered = [s for s in _FULFILMENT_LINE if s in targets]
    if OrderStatus.CANCELLED in targets:
        ordered.append(OrderStatus.CANCELLED)
    return ordered


def can_change_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return current == target or target in PAYMENT_TRANSITIONS.get(current, set())


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    return NEXT_STATUS.get(current)


def notification_template_for(status: OrderStatus) -> Optional[str]:
    return NOTIFY_ON_STATUS.get(status)


def apply_gateway_state(state: Optional[str]) -> tuple[Optional[PaymentStatus], Optional[OrderStatus]]:
    """
    IntaSend invoice state -> (payment_status, order status).
    (None, None) means "still in flight, leave the order alone".
    """
    state = (state or "").upper()
    if state == GATEWAY_COMPLETE:
        return PaymentStatus.COMPLETED, OrderStatus.CONFIRMED
    if state == GATEWAY_FAILED:
        return PaymentStatus.FAILED, OrderStatus.CANCELLED
    return None, None


def settled_status(
        current: OrderStatus,
        current_payment: PaymentStatus,
        target: Optional[OrderStatus],
        target_payment: PaymentStatus,
) -> OrderStatus:
    """
    Order status after a gateway outcome. Follows the transition table, with
    one exception: an order cancelled because its payment failed or expired
    comes back as paid/confirmed when the money arrives late.
    """
    if target is None:
        return current
    if can_transition(current, target):
        return target
    if (
            current == OrderStatus.CANCELLED
            and current_payment in PAYMENT_ISSUE_STATUSES
            and target_payment == PaymentStatus.COMPLETED
            and target in PAID_STATUSES
    ):
        return target
    return current


# --- 5. CONSOLE FILTERS ---

ORDER_FILTERS: dict[str, tuple[Optional[set], Optional[set]]] = {
    "all": (None, None),
    "active": (FULFILMENT_STATUSES, None),
    "issues": (None, PAYMENT_ISSUE_STATUSES),
    **{status.value: ({status}, None) for status in OrderStatus},
}


def resolve_filter(key: Optional[str]) -> tuple[Optional[set], Optional[set]]:
    """
    Filter name -> (order statuses, payment statuses). A comma separated
    list of order statuses is accepted too ("paid,confirmed").
    """
    key = (key or "all").strip().lower()
    if key in ORDER_FILTERS:
        return ORDER_FILTERS[key]
    return {parse_status(part.strip()) for part in key.split(",") if part.strip()}, None
