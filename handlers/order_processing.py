# handlers/order_processing.py
import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from api.intasend import IntaSendClient, IntaSendError, IntaSendTimeout, invoice_id_of
from database.managers.order_manager import OrderManager, OrderNotFoundError, OrderUpdate
from database.models.orders import (
    Order, OrderDraft, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
)
from utils.cart import Cart, CartStore, money
from utils.checkout import CheckoutError, CheckoutForm, local_now, validate_checkout
from utils.config import (
    CURRENCY, DELIVERY_FEE, POLL_INITIAL_DELAY_SECONDS, POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS,
    PUBLIC_BASE_URL, SUPPORT_EMAIL
)
from utils.logger import get_logger
from utils.notifications import NotificationDispatcher, OrderStatusChanged
from utils.payment_poller import PaymentStatusPoller, PollOutcome
from utils.statuses import (
    ORDER_CONFIRMED_TEMPLATE, RESEND_PAYMENT_ELIGIBLE, apply_gateway_state, parse_status
)

log = get_logger("[Checkout]")

AMOUNT_TOLERANCE = Decimal("0.5")

MPESA_SENT_MESSAGE = "M-Pesa STK push sent to your phone. Please enter your PIN to complete payment."
CARD_REDIRECT_MESSAGE = "Redirecting to card payment..."
CARD_UNAVAILABLE_MESSAGE = "Card checkout is unavailable right now. Please try again or use M-Pesa."
TIMEOUT_MESSAGE = "Payment request timed out. Please try again."
GATEWAY_FAILED_MESSAGE = "Payment failed. Please try again or contact support."
GATEWAY_AUTH_MESSAGE = "Payment service authentication failed. Please contact support."
NOT_CONFIGURED_MESSAGE = "Payment service is not properly configured. Please contact support."


class PaymentInitiationError(Exception):
    """Gateway refused or never answered. Shown to the customer as a banner."""

    def __init__(self, message: str, order_id: Optional[str] = None, http_status: int = 502):
        self.message = message
        self.order_id = order_id
        self.http_status = http_status
        super().__init__(message)


class OrderCreationError(Exception):
    """Payment went through but the order could not be saved."""

    def __init__(self, payment_reference: Optional[str]):
        self.payment_reference = payment_reference
        self.message = (
            "Payment successful but failed to save order. Please contact support"
            + (f" with your payment reference {payment_reference}." if payment_reference else ".")
        )
        self.support_email = SUPPORT_EMAIL
        super().__init__(self.message)


class MissingInvoiceError(ValueError):
    pass


class ReminderNotAllowedError(ValueError):
    pass


@dataclass
class InitiationResult:
    order: Order
    invoice_id: Optional[str]
    checkout_url: Optional[str]
    message: str

    def to_response(self) -> dict:
        return {
            "success": True,
            "orderId": self.order.id,
            "trackingCode": self.order.tracking_code,
            "invoiceId": self.invoice_id,
            "paymentMethod": self.order.payment_method.value,
            "checkoutUrl": self.checkout_url,
            "message": self.message,
        }


@dataclass
class StatusChangeResult:
    update: OrderUpdate
    email_queued: bool

    @property
    def message(self) -> str:
        status = self.update.order.status.value
        if not self.update.status_changed:
            return f"Order is already {status}"
        return f"Order status updated to {status}" + (" and email sent" if self.email_queued else "")


def _decimal_or_none(raw) -> Optional[Decimal]:
    if raw in (None, ""):
        return None
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None


class CheckoutService:
    """
    Cart -> order -> IntaSend -> settlement. Owns the server-side pollers
    started for M-Pesa payments.
    """

    def __init__(
            self,
            order_manager: OrderManager,
            gateway: IntaSendClient,
            dispatcher: NotificationDispatcher,
            cart_store: Optional[CartStore] = None,
            delivery_fee: Decimal = DELIVERY_FEE,
            poll_initial_delay: float = POLL_INITIAL_DELAY_SECONDS,
            poll_interval: float = POLL_INTERVAL_SECONDS,
            poll_max_attempts: int = POLL_MAX_ATTEMPTS,
            clock: Callable[[], datetime] = local_now,
    ):
        self.order_manager = order_manager
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.cart_store = cart_store
        self.delivery_fee = delivery_fee
        self.poll_initial_delay = poll_initial_delay
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.clock = clock
        self._pollers: dict[str, PaymentStatusPoller] = {}
        self._poll_tasks: set[asyncio.Task] = set()
        self._cart_sessions: dict[str, str] = {}

    # --- payment initiation ---

    def _build_cart(self, payload: dict, session_id: Optional[str]) -> Cart:
        cart = Cart.from_payload(payload.get("cartItems"), delivery_fee=self.delivery_fee)
        if cart.is_empty() and session_id and self.cart_store:
            stored = self.cart_store.get(session_id)
            if stored and not stored.is_empty():
                cart = Cart(stored.items, delivery_fee=self.delivery_fee)
        if cart.is_empty():
            raise CheckoutError("cartItems", "Your cart is empty")
        return cart

    def _draft(
            self,
            form: CheckoutForm,
            cart: Cart,
            payment_method: PaymentMethod,
            status: OrderStatus = OrderStatus.PENDING,
            payment_status: PaymentStatus = PaymentStatus.PENDING,
            total: Optional[Decimal] = None,
            client_reference: Optional[str] = None,
            payment_reference: Optional[str] = None,
    ) -> OrderDraft:
        return OrderDraft(
            customer_first_name=form.first_name or "Customer",
            customer_last_name=form.last_name or "",
            customer_email=form.email,
            customer_phone=form.phone,
            subtotal=cart.get_total_price(),
            vat_amount=cart.get_vat_amount(),
            delivery_fee=cart.get_delivery_fee(),
            total=total if total is not None else cart.get_grand_total(),
            items=[OrderItem.from_cart_item(item) for item in cart.items],
            payment_method=payment_method,
            status=status,
            payment_status=payment_status,
            delivery_address=form.address or None,
            delivery_city=form.city or None,
            delivery_area=form.area or None,
            delivery_date=form.delivery_date,
            delivery_time=form.delivery_time or None,
            special_instructions=form.special_instructions or None,
            order_note=form.order_note or None,
            client_reference=client_reference,
            payment_reference=payment_reference,
        )

    async def _mark_initiation_failed(self, order_id: str, reason: str) -> None:
        self._cart_sessions.pop(order_id, None)
        try:
            await self.order_manager.update_payment_state(order_id, PaymentStatus.FAILED, payment_error=reason)
        except Exception as e:
            log.exception(f"[Checkout] Could not mark order {order_id} as failed: {e}")

    async def initiate_payment(self, payload: dict, session_id: Optional[str] = None) -> InitiationResult:
        # 1) the form, including the delivery fee acknowledgement
        form = validate_checkout(CheckoutForm.from_payload(payload), now=self.clock())
        method = PaymentMethod(form.payment_method)

        # 2) totals are derived from the cart, never taken from the client
        cart = self._build_cart(payload, session_id)
        total = cart.get_grand_total()
        client_amount = _decimal_or_none(payload.get("amount"))
        if client_amount is not None and abs(client_amount - total) > AMOUNT_TOLERANCE:
            log.warning(
                f"[Checkout] Client amount {client_amount} differs from derived total {total}, using derived total"
            )

        if not self.gateway.configured:
            log.error("[Checkout] IntaSend keys are missing, cannot take payments")
            raise PaymentInitiationError(NOT_CONFIGURED_MESSAGE, http_status=503)

        # 3) the order exists before the gateway is asked for money
        order = await self.order_manager.create_order(
            self._draft(form, cart, method, client_reference=payload.get("orderId"))
        )
        if session_id:
            self._cart_sessions[order.id] = session_id

        # 4) one gateway call, no automatic retry
        gateway_kwargs = dict(
            amount=total,
            phone=form.phone,
            email=form.email,
            api_ref=order.id,
            first_name=form.first_name,
            last_name=form.last_name,
            address=form.address,
            city=form.city,
            area=form.area,
        )
        try:
            if method == PaymentMethod.MPESA:
                response = await self.gateway.mpesa_stk_push(**gateway_kwargs)
            else:
                response = await self.gateway.create_checkout(
                    currency=payload.get("currency") or CURRENCY,
                    redirect_url=f"{PUBLIC_BASE_URL}/order-success/{order.id}",
                    **gateway_kwargs,
                )
        except IntaSendTimeout as e:
            await self._mark_initiation_failed(order.id, str(e))
            raise PaymentInitiationError(TIMEOUT_MESSAGE, order_id=order.id, http_status=504) from e
        except IntaSendError as e:
            await self._mark_initiation_failed(order.id, str(e))
            message = GATEWAY_AUTH_MESSAGE if e.is_auth_error else GATEWAY_FAILED_MESSAGE
            raise PaymentInitiationError(message, order_id=order.id) from e

        # 5) remember the invoice so status checks and webhooks can find the order
        invoice_id = invoice_id_of(response)
        checkout_url = response.get("url") or response.get("checkout_url") or response.get("payment_link")
        await self.order_manager.attach_invoice(order.id, invoice_id)
        order.intasend_invoice_id = invoice_id
        order.payment_reference = order.payment_reference or invoice_id

        # 6) card payments need the hosted page
        if method == PaymentMethod.CARD:
            if not checkout_url:
                await self._mark_initiation_failed(order.id, "checkout url missing")
                raise PaymentInitiationError(CARD_UNAVAILABLE_MESSAGE, order_id=order.id)
            log.info(f"[Checkout] Card checkout for order {order.short_id} ready")
            return InitiationResult(order, invoice_id, checkout_url, CARD_REDIRECT_MESSAGE)

        # 7) M-Pesa: watch the invoice from the server side as well
        if invoice_id:
            self.start_poller(order.id, invoice_id)
        log.info(f"[Checkout] STK push for order {order.short_id} sent, invoice {invoice_id} [✓]")
        return InitiationResult(order, invoice_id, checkout_url, MPESA_SENT_MESSAGE)

    # --- polling ---

    def start_poller(self, order_id: str, invoice_id: str) -> PaymentStatusPoller:
        existing = self._pollers.get(order_id)
        if existing and not existing.cancelled:
            existing.cancel()

        poller = PaymentStatusPoller(
            self.check_payment_status,
            invoice_id=invoice_id,
            order_id=order_id,
            initial_delay=self.poll_initial_delay,
            interval=self.poll_interval,
            max_attempts=self.poll_max_attempts,
        )
        self._pollers[order_id] = poller
        task = asyncio.create_task(self._watch_payment(poller), name=f"watch-{order_id}")
        self._poll_tasks.add(task)
        task.add_done_callback(self._poll_tasks.discard)
        return poller

    def cancel_poller(self, order_id: str) -> None:
        poller = self._pollers.get(order_id)
        if poller:
            poller.cancel()

    async def _watch_payment(self, poller: PaymentStatusPoller) -> None:
        order_id = poller.order_id
        try:
            result = await poller.start()
            if result.outcome == PollOutcome.TIMEOUT:
                self._cart_sessions.pop(order_id, None)
                update = await self.order_manager.update_payment_state(order_id, PaymentStatus.INTASEND_TIMEOUT)
                if update.payment_changed:
                    log.warning(f"[Checkout] No M-Pesa confirmation for order {order_id} after {result.attempts} checks")
        except Exception as e:
            log.exception(f"[Checkout] Payment watcher for order {order_id} crashed: {e}")
        finally:
            if self._pollers.get(order_id) is poller:
                self._pollers.pop(order_id, None)

    @property
    def active_pollers(self) -> int:
        return len(self._pollers)

    @property
    def tracked_cart_sessions(self) -> int:
        return len(self._cart_sessions)

    def prune_cart_sessions(self) -> int:
        """Forgets order -> cart links whose cart is no longer in the store."""
        if self.cart_store is None:
            dropped = len(self._cart_sessions)
            self._cart_sessions.clear()
            return dropped
        stale = [oid for oid, sid in self._cart_sessions.items() if sid not in self.cart_store]
        for order_id in stale:
            del self._cart_sessions[order_id]
        return len(stale)

    # --- settlement ---

    async def apply_gateway_result(
            self,
            order_id: str,
            state: Optional[str],
            failed_reason: Optional[str] = None,
            reference: Optional[str] = None,
    ) -> Optional[OrderUpdate]:
        """
        Shared by the status endpoint, the poller, the webhook and the
        scheduler. PENDING / PROCESSING leave the order untouched.
        """
        payment_status, status = apply_gateway_state(state)
        if payment_status is None:
            return None

        update = await self.order_manager.update_payment_state(
            order_id,
            payment_status,
            status,
            payment_error=failed_reason if payment_status == PaymentStatus.FAILED else None,
            payment_reference=reference if payment_status == PaymentStatus.COMPLETED else None,
        )

        if update.payment_changed:
            self.cancel_poller(order_id)
            session_id = self._cart_sessions.pop(order_id, None)
            if update.order.payment_status == PaymentStatus.COMPLETED:
                if self.cart_store:
                    self.cart_store.discard(session_id)
                if update.order.status == OrderStatus.CANCELLED:
                    log.warning(
                        f"[Checkout] Order {update.order.short_id} was cancelled by staff but payment "
                        f"{update.order.payment_reference} completed, refund needed"
                    )
                else:
                    self.dispatcher.emit(OrderStatusChanged(
                        update.order, update.previous_status, template=ORDER_CONFIRMED_TEMPLATE
                    ))
        return update

    async def check_payment_status(self, invoice_id: Optional[str] = None, order_id: Optional[str] = None) -> dict:
        if not invoice_id and not order_id:
            raise MissingInvoiceError("Missing invoiceId or orderId parameter")

        order = None
        if not invoice_id:
            order = await self.order_manager.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            invoice_id = order.intasend_invoice_id or order.payment_reference
            if not invoice_id:
                raise MissingInvoiceError("No invoice ID found for this order")

        response = await self.gateway.payment_status(invoice_id)
        invoice = response.get("invoice") or {}
        state = invoice.get("state") or "UNKNOWN"

        if order is None:
            order = (
                await self.order_manager.get_order(order_id) if order_id
                else await self.order_manager.get_order_by_invoice(invoice_id)
            )
        if order is not None:
            await self.apply_gateway_result(
                order.id, state, invoice.get("failed_reason"), invoice.get("mpesa_reference")
            )

        return {
            "success": True,
            "status": state,
            "paid": state == "COMPLETE",
            "amount": invoice.get("net_amount") or 0,
            "currency": invoice.get("currency") or CURRENCY,
            "reference": invoice.get("invoice_id") or invoice_id,
        }

    async def handle_webhook(self, payload: dict) -> Order:
        """
        IntaSend server-to-server callback. The order is looked up by api_ref
        (our order id) first, then by invoice id.
        """
        api_ref = payload.get("api_ref")
        invoice_id = payload.get("invoice_id")
        if not api_ref and not invoice_id:
            raise MissingInvoiceError("Missing invoice_id or api_ref")

        order = await self.order_manager.get_order(api_ref) if api_ref else None
        if order is None and invoice_id:
            order = await self.order_manager.get_order_by_invoice(invoice_id)
        if order is None:
            raise OrderNotFoundError(api_ref or invoice_id)

        state = payload.get("state")
        update = await self.apply_gateway_result(
            order.id, state, payload.get("failed_reason"), payload.get("mpesa_reference")
        )
        if update is None:
            log.info(f"[Checkout] Webhook for order {order.short_id}: state {state}, nothing to change")
            return order
        return update.order

    # --- orders created after a client-side payment ---

    async def create_paid_order(self, payload: dict) -> Order:
        customer = payload.get("customer") or {}
        reference = payload.get("paymentIntentId")
        if not customer or not payload.get("items") or not reference:
            raise CheckoutError("customer", "Missing required fields")
        if not customer.get("email") or not customer.get("firstName") or not customer.get("lastName"):
            raise CheckoutError("customer", "Missing customer information")

        form = CheckoutForm.from_payload(customer)
        cart = Cart.from_payload(payload.get("items"), delivery_fee=self.delivery_fee)
        if cart.is_empty():
            raise CheckoutError("items", "Your cart is empty")

        total = cart.get_grand_total()
        client_total = _decimal_or_none(payload.get("total"))
        if client_total is not None and abs(client_total - total) > AMOUNT_TOLERANCE:
            log.warning(f"[Checkout] Paid order {reference}: client total {client_total}, derived {total}")
            # the customer was charged the client total
            total = money(client_total)

        raw_method = str(payload.get("paymentMethod") or "").lower()
        method = PaymentMethod(raw_method) if raw_method in {m.value for m in PaymentMethod} else PaymentMethod.MANUAL

        try:
            order = await self.order_manager.create_order(self._draft(
                form, cart, method,
                status=OrderStatus.PAID,
                payment_status=PaymentStatus.COMPLETED,
                total=total,
                payment_reference=str(reference),
            ))
        except Exception as e:
            log.exception(f"[Checkout] Payment {reference} succeeded but the order was not saved: {e}")
            raise OrderCreationError(str(reference)) from e

        self.dispatcher.emit(OrderStatusChanged(order, None, template=ORDER_CONFIRMED_TEMPLATE))
        return order

    # --- operator transitions ---

    async def change_status(self, order_id: str, status: str) -> StatusChangeResult:
        """
        Raises ValueError for an unknown status, OrderNotFoundError and
        StatusTransitionError. The email goes out after the commit.
        """
        target = parse_status(status)
        update = await self.order_manager.change_status(order_id, target)

        email_queued = False
        if update.status_changed:
            email_queued = self.dispatcher.emit(OrderStatusChanged(update.order, update.previous_status))
            if target == OrderStatus.CANCELLED:
                self.cancel_poller(order_id)
                self._cart_sessions.pop(order_id, None)
        return StatusChangeResult(update, email_queued)

    async def resend_payment_reminder(self, order_id: str) -> Order:
        order = await self.order_manager.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if (
                order.status.value not in RESEND_PAYMENT_ELIGIBLE
                and order.payment_status.value not in RESEND_PAYMENT_ELIGIBLE
        ):
            raise ReminderNotAllowedError("Order is not eligible for payment resend")

        self.dispatcher.emit(OrderStatusChanged(
            order, order.status, template="paymentReminder",
            extra={"payment_url": f"{PUBLIC_BASE_URL}/checkout?order={order.id}"},
        ))
        return order

    # --- lifecycle ---

    async def shutdown(self) -> None:
        for poller in list(self._pollers.values()):
            poller.cancel()
        if self._poll_tasks:
            await asyncio.gather(*list(self._poll_tasks), return_exceptions=True)
        log.info("[Checkout] Payment pollers stopped [✓]")
