# database/models/orders.py

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, TYPE_CHECKING

import asyncpg

if TYPE_CHECKING:
    from utils.cart import CartItem


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"  # auto-expired by the scheduler
    INTASEND_TIMEOUT = "intasend_timeout"  # poller gave up, gateway may still settle
    DOCUMENT_PENDING = "document_pending"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    MANUAL = "manual"


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class OrderItem:
    """
    Snapshot of a cart line taken when the order is created.
    Never joined back to the live catalogue.
    """
    product_name: str
    product_category: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal
    product_image_url: Optional[str] = None
    is_gift: bool = False
    recipient_name: Optional[str] = None
    gift_note: Optional[str] = None
    id: Optional[int] = None
    order_id: Optional[str] = None

    @classmethod
    def from_cart_item(cls, item: "CartItem") -> "OrderItem":
        unit_price = _money(item.price)
        return cls(
            product_name=item.name,
            product_category=item.category or "Strawberry Dips",
            unit_price=unit_price,
            quantity=item.quantity,
            total_price=_money(unit_price * item.quantity),
            product_image_url=item.image,
            is_gift=item.is_gift,
            recipient_name=item.recipient_name,
            gift_note=item.gift_note,
        )

    @classmethod
    def from_record(cls, record: asyncpg.Record) -> "OrderItem":
        return cls(
            id=record["id"],
            order_id=str(record["order_id"]),
            product_name=record["product_name"],
            product_category=record["product_category"],
            unit_price=_money(record["unit_price"]),
            quantity=record["quantity"],
            total_price=_money(record["total_price"]),
            product_image_url=record.get("product_image_url"),
            is_gift=bool(record.get("is_gift")),
            recipient_name=record.get("recipient_name"),
            gift_note=record.get("gift_note"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrderDraft:
    """Everything the materializer needs to write an order and its items in one go."""
    customer_first_name: str
    customer_last_name: str
    customer_email: str
    customer_phone: str
    subtotal: Decimal
    vat_amount: Decimal
    delivery_fee: Decimal
    total: Decimal
    items: list[OrderItem]
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    delivery_address: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_area: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    special_instructions: Optional[str] = None
    order_note: Optional[str] = None
    client_reference: Optional[str] = None
    payment_reference: Optional[str] = None


@dataclass
class Order:
    id: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    subtotal: Decimal
    vat_amount: Decimal
    delivery_fee: Decimal
    total: Decimal
    customer_first_name: str
    customer_last_name: str
    customer_email: str
    customer_phone: str
    tracking_code: str
    created_at: datetime

    delivery_address: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_area: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    special_instructions: Optional[str] = None
    order_note: Optional[str] = None
    client_reference: Optional[str] = None
    intasend_invoice_id: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_error: Optional[str] = None
    updated_at: Optional[datetime] = None
    order_items: list[OrderItem] = field(default_factory=list)

    @property
    def customer_name(self) -> str:
        return f"{self.customer_first_name} {self.customer_last_name}".strip()

    @property
    def short_id(self) -> str:
        return self.id[:8].upper()

    @classmethod
    def from_record(cls, record: asyncpg.Record, items: Optional[list[OrderItem]] = None) -> Optional["Order"]:
        """
        Factory for an asyncpg row of `orders`. Returns None for an empty record.
        """
        if not record:
            return None

        return cls(
            id=str(record["id"]),
            status=OrderStatus(record["status"]),
            payment_status=PaymentStatus(record["payment_status"]),
            payment_method=PaymentMethod(record["payment_method"]),
            subtotal=_money(record["subtotal"]),
            vat_amount=_money(record.get("vat_amount")),
            delivery_fee=_money(record["delivery_fee"]),
            total=_money(record["total"]),
            customer_first_name=record["customer_first_name"],
            customer_last_name=record["customer_last_name"],
            customer_email=record["customer_email"],
            customer_phone=record["customer_phone"],
            tracking_code=record["tracking_code"],
            created_at=record["created_at"],
            delivery_address=record.get("delivery_address"),
            delivery_city=record.get("delivery_city"),
            delivery_area=record.get("delivery_area"),
            delivery_date=record.get("delivery_date"),
            delivery_time=record.get("delivery_time"),
            special_instructions=record.get("special_instructions"),
            order_note=record.get("order_note"),
            client_reference=record.get("client_reference"),
            intasend_invoice_id=record.get("intasend_invoice_id"),
            payment_reference=record.get("payment_reference"),
            payment_error=record.get("payment_error"),
            updated_at=record.get("updated_at"),
            order_items=list(items or []),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["payment_status"] = self.payment_status.value
        data["payment_method"] = self.payment_method.value
        data["order_items"] = [item.to_dict() for item in self.order_items]
        return data
