"""
Shared fakes and fixtures. The order manager fake keeps orders in memory and
applies the same transition rules as the asyncpg-backed one.
"""

import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import aiosmtplib
import pytest

from database.managers.order_manager import OrderNotFoundError, OrderUpdate, generate_tracking_code
from database.models.orders import Order, OrderDraft, OrderStatus, PaymentStatus
from handlers.order_processing import CheckoutService
from utils.cart import CartStore
from utils.notifications import NotificationDispatcher
from utils.statuses import (
    DELIVERY_BOARD_STATUSES, can_change_payment, ensure_transition, settled_status
)

EAT = timezone(timedelta(hours=3))
FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=EAT)
TOMORROW = date(2026, 3, 11)


# ============================================================================
# Fakes
# ============================================================================


class FakeOrderManager:
    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.create_error: Optional[Exception] = None

    async def create_order(self, draft: OrderDraft) -> Order:
        if self.create_error:
            raise self.create_error
        order_id = str(uuid.uuid4())
        order = Order(
            id=order_id,
            status=draft.status,
            payment_status=draft.payment_status,
            payment_method=draft.payment_method,
            subtotal=draft.subtotal,
            vat_amount=draft.vat_amount,
            delivery_fee=draft.delivery_fee,
            total=draft.total,
            customer_first_name=draft.customer_first_name,
            customer_last_name=draft.customer_last_name,
            customer_email=draft.customer_email,
            customer_phone=draft.customer_phone,
            tracking_code=generate_tracking_code(),
            created_at=datetime.now(timezone.utc),
            delivery_address=draft.delivery_address,
            delivery_city=draft.delivery_city,
            delivery_area=draft.delivery_area,
            delivery_date=draft.delivery_date,
            delivery_time=draft.delivery_time,
            special_instructions=draft.special_instructions,
            order_note=draft.order_note,
            client_reference=draft.client_reference,
            payment_reference=draft.payment_reference,
            order_items=[replace(item, order_id=order_id) for item in draft.items],
        )
        self.orders[order_id] = order
        return replace(order)

    def _copy(self, order: Optional[Order]) -> Optional[Order]:
        return replace(order) if order else None

    async def get_order(self, order_id: str) -> Optional[Order]:
        return self._copy(self.orders.get(order_id))

    async def get_order_by_tracking_code(self, code: str) -> Optional[Order]:
        code = code.strip().upper()
        return self._copy(next((o for o in self.orders.values() if o.tracking_code == code), None))

    async def get_order_by_invoice(self, invoice_id: str) -> Optional[Order]:
        return self._copy(next(
            (o for o in self.orders.values() if invoice_id in (o.intasend_invoice_id, o.payment_reference)), None
        ))

    async def list_orders(self, statuses=None, payment_statuses=None, limit: int = 200) -> list[Order]:
        found = [
            o for o in self.orders.values()
            if (not statuses or o.status in statuses)
            and (not payment_statuses or o.payment_status in payment_statuses)
        ]
        found.sort(key=lambda o: o.created_at, reverse=True)
        return [replace(o) for o in found[:limit]]

    async def list_pending_gateway_orders(self) -> list[Order]:
        return [
            replace(o) for o in self.orders.values()
            if o.status == OrderStatus.PENDING
            and o.payment_status in (PaymentStatus.PENDING, PaymentStatus.INTASEND_TIMEOUT)
            and (o.intasend_invoice_id or o.payment_reference)
        ]

    async def count_by_status(self) -> dict[OrderStatus, int]:
        counts = {status: 0 for status in OrderStatus}
        for o in self.orders.values():
            counts[o.status] += 1
        return counts

    async def today_revenue(self) -> Decimal:
        return sum((o.total for o in self.orders.values() if o.status in DELIVERY_BOARD_STATUSES), Decimal("0"))

    async def attach_invoice(self, order_id: str, invoice_id: Optional[str], payment_reference: Optional[str] = None):
        order = self.orders[order_id]
        if invoice_id:
            order.intasend_invoice_id = invoice_id
        order.payment_reference = payment_reference or order.payment_reference or invoice_id

    async def change_status(self, order_id: str, new_status: OrderStatus) -> OrderUpdate:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        previous = order.status
        ensure_transition(previous, new_status)
        order.status = new_status
        return OrderUpdate(replace(order), previous, order.payment_status)

    async def update_payment_state(
            self, order_id, payment_status, status=None, payment_error=None, payment_reference=None
    ) -> OrderUpdate:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        previous_status, previous_payment = order.status, order.payment_status
        if not can_change_payment(previous_payment, payment_status):
            return OrderUpdate(replace(order), previous_status, previous_payment)

        order.status = settled_status(previous_status, previous_payment, status, payment_status)
        order.payment_status = payment_status
        order.payment_error = payment_error or order.payment_error
        order.payment_reference = payment_reference or order.payment_reference
        return OrderUpdate(replace(order), previous_status, previous_payment)

    async def expire_pending_orders(self, older_than_hours: int) -> list[str]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        expired = []
        for o in self.orders.values():
            if (
                    o.status == OrderStatus.PENDING
                    and o.payment_status in (
                        PaymentStatus.PENDING, PaymentStatus.INTASEND_TIMEOUT, PaymentStatus.DOCUMENT_PENDING
                    )
                    and o.created_at < cutoff
            ):
                o.payment_status = PaymentStatus.TIMEOUT
                o.status = OrderStatus.CANCELLED
                expired.append(o.id)
        return expired


class FakeGateway:
    """Stands in for IntaSendClient. `states` is consumed by payment_status()."""

    def __init__(self):
        self.configured = True
        self.calls: list[tuple[str, object]] = []
        self.states: list[str] = []
        self.error: Optional[Exception] = None
        self.stk_response = {"invoice": {"invoice_id": "INV-1", "state": "PENDING"}}
        self.checkout_response = {"id": "CHK-1", "url": "https://payment.intasend.com/checkout/CHK-1"}

    async def mpesa_stk_push(self, **kwargs):
        self.calls.append(("stk", kwargs))
        if self.error:
            raise self.error
        return self.stk_response

    async def create_checkout(self, **kwargs):
        self.calls.append(("checkout", kwargs))
        if self.error:
            raise self.error
        return self.checkout_response

    async def payment_status(self, invoice_id: str):
        self.calls.append(("status", invoice_id))
        if self.error:
            raise self.error
        state = self.states.pop(0) if self.states else "PENDING"
        return {
            "invoice": {
                "invoice_id": invoice_id,
                "state": state,
                "net_amount": 3780,
                "currency": "KES",
                "mpesa_reference": "QWE123RTY" if state == "COMPLETE" else None,
                "failed_reason": "Request cancelled by user" if state == "FAILED" else None,
            }
        }

    def count(self, kind: str) -> int:
        return sum(1 for name, _ in self.calls if name == kind)

    async def close(self):
        pass


class FakeMailer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, Order, dict]] = []

    async def send_template(self, template: str, order: Order, **extra) -> bool:
        if self.fail:
            raise aiosmtplib.SMTPException("connection refused")
        self.sent.append((template, order, extra))
        return True

    def templates(self) -> list[str]:
        return [template for template, _, _ in self.sent]


# ============================================================================
# Payloads
# ============================================================================


def cart_items_payload() -> list[dict]:
    return [{"id": "classic-box", "name": "Classic Box", "price": 1500, "quantity": 2, "category": "Boxes"}]


def initiate_payload(**overrides) -> dict:
    payload = {
        "paymentMethod": "mpesa",
        "amount": 3780,
        "currency": "KES",
        "customerName": "Jane Wanjiru",
        "customerEmail": "jane@example.com",
        "customerPhone": "0712345678",
        "deliveryInfo": {
            "address": "Rhapta Road 12",
            "city": "Nairobi",
            "area": "Westlands",
            "deliveryDate": TOMORROW.isoformat(),
            "deliveryTime": "afternoon",
        },
        "hasAgreedToDeliveryFee": True,
        "cartItems": cart_items_payload(),
    }
    payload.update(overrides)
    return payload


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def order_manager():
    return FakeOrderManager()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def cart_store():
    return CartStore(delivery_fee=Decimal("300"))


@pytest.fixture
def dispatcher(mailer):
    return NotificationDispatcher(mailer)


@pytest.fixture
def make_service(order_manager, gateway, dispatcher, cart_store):
    """Builds a CheckoutService; pollers wait a minute unless told otherwise."""

    def _make(initial_delay: float = 60, interval: float = 60, max_attempts: int = 3) -> CheckoutService:
        return CheckoutService(
            order_manager,
            gateway,
            dispatcher,
            cart_store=cart_store,
            delivery_fee=Decimal("300"),
            poll_initial_delay=initial_delay,
            poll_interval=interval,
            poll_max_attempts=max_attempts,
            clock=lambda: FIXED_NOW,
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
