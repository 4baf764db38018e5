# utils/cart.py
import time
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, Optional

from utils.config import DELIVERY_FEE
from utils.logger import get_logger

log = get_logger("[Cart]")

VAT_RATE = Decimal("0.16")
CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Rounds to cents, half-up, the way receipts are printed."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_price(raw) -> Decimal:
    try:
        price = Decimal(str(raw))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0.00")
    if not price.is_finite() or price < 0:
        return Decimal("0.00")
    return money(price)


def _parse_quantity(raw) -> int:
    try:
        qty = int(raw)
    except (ValueError, TypeError):
        return 1
    return qty if qty >= 1 else 1


@dataclass
class CartItem:
    id: str
    name: str
    price: Decimal
    quantity: int = 1
    category: Optional[str] = None
    image: Optional[str] = None
    is_gift: bool = False
    recipient_name: Optional[str] = None
    gift_note: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return money(self.price * self.quantity)

    @classmethod
    def from_payload(cls, data: dict) -> "CartItem":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name") or ""),
            price=_parse_price(data.get("price")),
            quantity=_parse_quantity(data.get("quantity", 1)),
            category=data.get("category"),
            image=data.get("image"),
            is_gift=bool(data.get("isGift", False)),
            recipient_name=data.get("recipientName"),
            gift_note=data.get("giftNote"),
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": float(self.price),
            "quantity": self.quantity,
            "category": self.category,
            "image": self.image,
            "isGift": self.is_gift,
            "recipientName": self.recipient_name,
            "giftNote": self.gift_note,
        }


class Cart:
    """
    Ordered collection of cart lines. Every line holds quantity >= 1;
    setting a quantity to zero or below removes the line.
    """

    def __init__(self, items: Optional[list[CartItem]] = None, delivery_fee: Decimal = DELIVERY_FEE):
        self._items: list[CartItem] = []
        self.delivery_fee = money(delivery_fee)
        for item in items or []:
            if item.quantity >= 1:
                self._items.append(item)

    @property
    def items(self) -> list[CartItem]:
        return list(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def _find(self, item_id: str) -> Optional[CartItem]:
        return next((i for i in self._items if i.id == item_id), None)

    def add_item(self, item: CartItem) -> CartItem:
        existing = self._find(item.id)
        if existing:
            existing.quantity += 1
            return existing

        new_item = CartItem(**{**asdict(item), "quantity": 1})
        self._items.append(new_item)
        return new_item

    def update_quantity(self, item_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(item_id)
            return

        item = self._find(item_id)
        if item is None:
            log.debug(f"[Cart] update_quantity for unknown item {item_id}, ignored")
            return
        item.quantity = quantity

    def remove_item(self, item_id: str) -> None:
        self._items = [i for i in self._items if i.id != item_id]

    def clear_cart(self) -> None:
        self._items = []

    def get_total_price(self) -> Decimal:
        return money(sum((i.price * i.quantity for i in self._items), Decimal("0")))

    def get_vat_amount(self) -> Decimal:
        return money(self.get_total_price() * VAT_RATE)

    def get_delivery_fee(self) -> Decimal:
        return self.delivery_fee

    def get_grand_total(self) -> Decimal:
        return money(self.get_total_price() + self.get_vat_amount() + self.get_delivery_fee())

    def get_total_items(self) -> int:
        return sum(i.quantity for i in self._items)

    def summary(self) -> dict:
        return {
            "items": [i.to_payload() for i in self._items],
            "totalItems": self.get_total_items(),
            "subtotal": float(self.get_total_price()),
            "vat": float(self.get_vat_amount()),
            "deliveryFee": float(self.get_delivery_fee()),
            "total": float(self.get_grand_total()),
        }

    @classmethod
    def from_payload(cls, payload: Optional[list], delivery_fee: Decimal = DELIVERY_FEE) -> "Cart":
        """
        Rebuilds a cart from the client's snapshot. Broken prices become 0,
        non-positive quantities become 1, entries without an id are dropped.
        """
        items = []
        for raw in payload or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                log.warning(f"[Cart] Skipping malformed cart entry: {raw!r}")
                continue
            items.append(CartItem.from_payload(raw))
        return cls(items, delivery_fee=delivery_fee)

    def to_payload(self) -> list[dict]:
        return [i.to_payload() for i in self._items]


class CartStore:
    """Per-session carts for the HTTP API. Lives on the web application."""

    def __init__(self, delivery_fee: Decimal = DELIVERY_FEE, clock: Callable[[], float] = time.monotonic):
        self.delivery_fee = delivery_fee
        self.clock = clock
        self._carts: dict[str, Cart] = {}
        self._touched: dict[str, float] = {}

    def get(self, session_id: str) -> Optional[Cart]:
        cart = self._carts.get(session_id)
        if cart is not None:
            self._touched[session_id] = self.clock()
        return cart

    def get_or_create(self, session_id: str) -> Cart:
        cart = self.get(session_id)
        if cart is None:
            cart = Cart(delivery_fee=self.delivery_fee)
            self._carts[session_id] = cart
            self._touched[session_id] = self.clock()
            log.debug(f"[Cart] New cart for session {session_id}")
        return cart

    def discard(self, session_id: Optional[str]) -> None:
        if session_id and self._carts.pop(session_id, None) is not None:
            self._touched.pop(session_id, None)
            log.debug(f"[Cart] Cart for session {session_id} discarded")

    def evict_idle(self, max_idle_seconds: float) -> list[str]:
        """Drops carts nobody has touched for max_idle_seconds. Returns their session ids."""
        cutoff = self.clock() - max_idle_seconds
        idle = [sid for sid, touched in self._touched.items() if touched < cutoff]
        for session_id in idle:
            self._carts.pop(session_id, None)
            self._touched.pop(session_id, None)
        return idle

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._carts

    def __len__(self) -> int:
        return len(self._carts)
