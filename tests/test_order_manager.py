from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import asyncpg
import pytest

import database.managers.order_manager as order_manager_module
from database.async_db import AsyncDatabase
from database.managers.order_manager import OrderManager, OrderNotFoundError
from database.models.orders import OrderDraft, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from utils.statuses import StatusTransitionError

ORDER_ID = "3f2b8c1e-5d4a-4b7e-9c0f-1a2b3c4d5e6f"


def _order_row(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING, **overrides) -> dict:
    row = {
        "id": ORDER_ID,
        "status": status.value,
        "payment_status": payment_status.value,
        "payment_method": "mpesa",
        "subtotal": Decimal("2000.00"),
        "vat_amount": Decimal("320.00"),
        "delivery_fee": Decimal("300.00"),
        "total": Decimal("2620.00"),
        "customer_first_name": "Jane",
        "customer_last_name": "Wanjiru",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "tracking_code": "AB12CD34",
        "created_at": datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def _item_row(item_id=1, **overrides) -> dict:
    row = {
        "id": item_id,
        "order_id": ORDER_ID,
        "product_name": "Classic Box",
        "product_category": "Boxes",
        "unit_price": Decimal("1000.00"),
        "quantity": 2,
        "total_price": Decimal("2000.00"),
    }
    row.update(overrides)
    return row


def _locked_then_written(row: dict):
    """fetchrow side effect: the FOR UPDATE read returns row, the UPDATE echoes what it wrote."""

    async def fetchrow(query, *args):
        if "FOR UPDATE" in query:
            return row
        return _order_row(OrderStatus(args[2]), PaymentStatus(args[1]))

    return fetchrow


class FakeDatabase(AsyncDatabase):
    """Hands out one mocked connection; counts the transactions opened on it."""

    def __init__(self):
        super().__init__("test", "test", "test")
        self.conn = AsyncMock()
        self.conn.fetch.return_value = [_item_row()]
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self.conn


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def manager(db):
    return OrderManager(db)


def _queries(mock) -> list[str]:
    return [" ".join(c.args[0].split()) for c in mock.await_args_list]


def _draft(items=2) -> OrderDraft:
    return OrderDraft(
        customer_first_name="Jane",
        customer_last_name="Wanjiru",
        customer_email="jane@example.com",
        customer_phone="0712345678",
        subtotal=Decimal("2000.00"),
        vat_amount=Decimal("320.00"),
        delivery_fee=Decimal("300.00"),
        total=Decimal("2620.00"),
        items=[
            OrderItem(product_name=f"Box {n}", product_category="Boxes", unit_price=Decimal("1000.00"),
                      quantity=1, total_price=Decimal("1000.00"))
            for n in range(items)
        ],
        payment_method=PaymentMethod.MPESA,
    )


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_order_and_items_share_one_transaction(self, manager, db):
        db.conn.fetchval.return_value = None

        async def fetchrow(query, *args):
            if "INSERT INTO orders" in query:
                return _order_row()
            return _item_row(product_name=args[1])

        db.conn.fetchrow.side_effect = fetchrow

        order = await manager.create_order(_draft(items=2))

        assert db.transactions == 1
        inserts = db.conn.fetchrow.await_args_list
        assert len(inserts) == 3
        assert "INSERT INTO orders" in inserts[0].args[0]
        for call in inserts[1:]:
            assert "INSERT INTO order_items" in call.args[0]
            assert call.args[1] == ORDER_ID
        assert [i.product_name for i in order.order_items] == ["Box 0", "Box 1"]
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_tracking_code_collision_is_retried(self, manager, db, monkeypatch):
        codes = iter(["TAKEN001", "FREE0002"])
        monkeypatch.setattr(order_manager_module, "generate_tracking_code", lambda: next(codes))
        db.conn.fetchval.side_effect = [1, None]
        db.conn.fetchrow.return_value = _order_row(tracking_code="FREE0002")

        await manager.create_order(_draft(items=0))

        assert [c.args[1] for c in db.conn.fetchval.await_args_list] == ["TAKEN001", "FREE0002"]
        assert db.conn.fetchrow.await_args.args[1] == "FREE0002"

    @pytest.mark.asyncio
    async def test_item_failure_propagates(self, manager, db):
        db.conn.fetchval.return_value = None
        db.conn.fetchrow.side_effect = [_order_row(), asyncpg.PostgresError("insert failed")]

        with pytest.raises(asyncpg.PostgresError):
            await manager.create_order(_draft(items=1))


class TestChangeStatus:
    @pytest.mark.asyncio
    async def test_legal_transition_is_written(self, manager, db):
        db.conn.fetchrow.side_effect = [
            _order_row(OrderStatus.PAID, PaymentStatus.COMPLETED),
            _order_row(OrderStatus.PREPARING, PaymentStatus.COMPLETED),
        ]

        update = await manager.change_status(ORDER_ID, OrderStatus.PREPARING)

        queries = _queries(db.conn.fetchrow)
        assert queries[0].endswith("FOR UPDATE")
        assert queries[1].startswith("UPDATE orders")
        assert db.conn.fetchrow.await_args.args[1:] == (ORDER_ID, "preparing")
        assert update.previous_status == OrderStatus.PAID
        assert update.order.status == OrderStatus.PREPARING
        assert update.status_changed
        assert len(update.order.order_items) == 1

    @pytest.mark.asyncio
    async def test_illegal_transition_writes_nothing(self, manager, db):
        db.conn.fetchrow.return_value = _order_row(OrderStatus.DELIVERED, PaymentStatus.COMPLETED)

        with pytest.raises(StatusTransitionError):
            await manager.change_status(ORDER_ID, OrderStatus.PREPARING)

        assert db.conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, manager, db):
        db.conn.fetchrow.return_value = _order_row(OrderStatus.PREPARING, PaymentStatus.COMPLETED)

        update = await manager.change_status(ORDER_ID, OrderStatus.PREPARING)

        assert db.conn.fetchrow.await_count == 1
        assert not update.status_changed

    @pytest.mark.asyncio
    async def test_missing_order(self, manager, db):
        db.conn.fetchrow.return_value = None

        with pytest.raises(OrderNotFoundError):
            await manager.change_status(ORDER_ID, OrderStatus.CANCELLED)


class TestUpdatePaymentState:
    @pytest.mark.asyncio
    async def test_settled_payment_is_not_overwritten(self, manager, db):
        db.conn.fetchrow.return_value = _order_row(OrderStatus.CONFIRMED, PaymentStatus.COMPLETED)

        update = await manager.update_payment_state(ORDER_ID, PaymentStatus.FAILED, OrderStatus.CANCELLED)

        assert db.conn.fetchrow.await_count == 1
        assert not update.payment_changed
        assert update.order.status == OrderStatus.CONFIRMED
        assert len(update.order.order_items) == 1

    @pytest.mark.asyncio
    async def test_completion_confirms_pending_order(self, manager, db):
        db.conn.fetchrow.side_effect = [
            _order_row(),
            _order_row(OrderStatus.CONFIRMED, PaymentStatus.COMPLETED),
        ]

        update = await manager.update_payment_state(
            ORDER_ID, PaymentStatus.COMPLETED, OrderStatus.CONFIRMED, payment_reference="QWE123RTY",
        )

        args = db.conn.fetchrow.await_args.args
        assert args[1:] == (ORDER_ID, "completed", "confirmed", None, "QWE123RTY")
        assert update.payment_changed and update.status_changed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment", [PaymentStatus.FAILED, PaymentStatus.TIMEOUT])
    async def test_late_completion_revives_cancelled_order(self, manager, db, payment):
        db.conn.fetchrow.side_effect = _locked_then_written(_order_row(OrderStatus.CANCELLED, payment))

        update = await manager.update_payment_state(ORDER_ID, PaymentStatus.COMPLETED, OrderStatus.CONFIRMED)

        assert db.conn.fetchrow.await_args.args[3] == "confirmed"
        assert update.order.status == OrderStatus.CONFIRMED
        assert update.previous_status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_staff_cancel_survives_completion(self, manager, db):
        staff_cancelled = _order_row(OrderStatus.CANCELLED, PaymentStatus.PENDING)
        db.conn.fetchrow.side_effect = _locked_then_written(staff_cancelled)

        update = await manager.update_payment_state(ORDER_ID, PaymentStatus.COMPLETED, OrderStatus.CONFIRMED)

        args = db.conn.fetchrow.await_args.args
        assert args[2] == "completed"
        assert args[3] == "cancelled"
        assert update.order.status == OrderStatus.CANCELLED
        assert update.payment_changed

    @pytest.mark.asyncio
    async def test_missing_order(self, manager, db):
        db.conn.fetchrow.return_value = None

        with pytest.raises(OrderNotFoundError):
            await manager.update_payment_state(ORDER_ID, PaymentStatus.COMPLETED)


class TestReads:
    @pytest.mark.asyncio
    async def test_malformed_id_reads_as_missing(self, manager, db):
        db.conn.fetchrow.side_effect = asyncpg.DataError("invalid input syntax for type uuid")
        assert await manager.get_order("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_get_order_with_items(self, manager, db):
        db.conn.fetchrow.return_value = _order_row()
        order = await manager.get_order(ORDER_ID)
        assert order.tracking_code == "AB12CD34"
        assert order.order_items[0].product_name == "Classic Box"

    @pytest.mark.asyncio
    async def test_tracking_code_is_normalised(self, manager, db):
        db.conn.fetchrow.return_value = None
        assert await manager.get_order_by_tracking_code(" ab12cd34 ") is None
        assert db.conn.fetchrow.await_args.args[1] == "AB12CD34"

    @pytest.mark.asyncio
    async def test_count_by_status_fills_gaps(self, manager, db):
        db.conn.fetch.return_value = [{"status": "paid", "cnt": 3}]
        counts = await manager.count_by_status()
        assert counts[OrderStatus.PAID] == 3
        assert counts[OrderStatus.DELIVERED] == 0


class TestExpirePendingOrders:
    @pytest.mark.asyncio
    async def test_returns_expired_ids(self, manager, db):
        db.conn.fetch.return_value = [{"id": ORDER_ID}]

        assert await manager.expire_pending_orders(2) == [ORDER_ID]
        assert db.conn.fetch.await_args.args[1] == 2
