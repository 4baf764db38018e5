import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from database.models.orders import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from utils.cart import Cart, CartItem
from utils.phone import normalize_phone, to_msisdn
from utils.serializers import dumps


def _order_record(**overrides) -> dict:
    record = {
        "id": "3f2b8c1e-5d4a-4b7e-9c0f-1a2b3c4d5e6f",
        "status": "paid",
        "payment_status": "completed",
        "payment_method": "mpesa",
        "subtotal": Decimal("2000"),
        "vat_amount": Decimal("320"),
        "delivery_fee": Decimal("300"),
        "total": Decimal("2620"),
        "customer_first_name": "Jane",
        "customer_last_name": "Wanjiru",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "tracking_code": "AB12CD34",
        "created_at": datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc),
        "delivery_date": date(2026, 3, 11),
        "delivery_time": "afternoon",
    }
    record.update(overrides)
    return record


class TestOrderItemSnapshot:
    def test_snapshot_from_cart_item(self):
        item = CartItem(id="p1", name="Classic Box", price=Decimal("1000"), quantity=2, category="Boxes",
                        is_gift=True, recipient_name="Amina", gift_note="Happy birthday")
        snapshot = OrderItem.from_cart_item(item)
        assert snapshot.product_name == "Classic Box"
        assert snapshot.unit_price == Decimal("1000.00")
        assert snapshot.total_price == Decimal("2000.00")
        assert snapshot.recipient_name == "Amina"

    def test_later_catalogue_edits_do_not_leak(self):
        cart = Cart(delivery_fee=Decimal("300"))
        cart.add_item(CartItem(id="p1", name="Classic Box", price=Decimal("1000")))
        snapshots = [OrderItem.from_cart_item(i) for i in cart.items]

        live = cart.items[0]
        live.name = "Classic Box (new recipe)"
        live.price = Decimal("1500")
        live.quantity = 9

        assert snapshots[0].product_name == "Classic Box"
        assert snapshots[0].unit_price == Decimal("1000.00")
        assert snapshots[0].quantity == 1

    def test_snapshot_is_frozen(self):
        snapshot = OrderItem.from_cart_item(CartItem(id="p1", name="Classic", price=Decimal("10")))
        with pytest.raises(AttributeError):
            snapshot.unit_price = Decimal("1")

    def test_default_category(self):
        snapshot = OrderItem.from_cart_item(CartItem(id="p1", name="Classic", price=Decimal("10")))
        assert snapshot.product_category == "Strawberry Dips"


class TestOrder:
    def test_from_record(self):
        order = Order.from_record(_order_record())
        assert order.status == OrderStatus.PAID
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_method == PaymentMethod.MPESA
        assert order.total == Decimal("2620.00")
        assert order.customer_name == "Jane Wanjiru"
        assert order.short_id == "3F2B8C1E"

    def test_from_empty_record(self):
        assert Order.from_record(None) is None

    def test_to_dict_is_json_ready(self):
        item = OrderItem(product_name="Classic", product_category="Boxes", unit_price=Decimal("1000.00"),
                         quantity=2, total_price=Decimal("2000.00"))
        order = Order.from_record(_order_record(), [item])
        data = json.loads(dumps(order.to_dict()))
        assert data["status"] == "paid"
        assert data["total"] == 2620.0
        assert data["delivery_date"] == "2026-03-11"
        assert data["order_items"][0]["quantity"] == 2


class TestPhone:
    @pytest.mark.parametrize("raw", ["0712345678", "+254712345678", "0712 345 678"])
    def test_normalize(self, raw):
        assert normalize_phone(raw) == "+254712345678"

    def test_invalid(self):
        assert normalize_phone("12345") is None
        assert normalize_phone("") is None

    def test_msisdn(self):
        assert to_msisdn("0712345678") == "254712345678"
