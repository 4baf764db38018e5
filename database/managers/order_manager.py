import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

import asyncpg

from database.async_db import AsyncDatabase
from database.models.orders import Order, OrderDraft, OrderItem, OrderStatus, PaymentStatus
from utils.config import TIMEZONE_OFFSET
from utils.logger import get_logger
from utils.statuses import (
    DELIVERY_BOARD_STATUSES, can_change_payment, ensure_transition, settled_status
)

log = get_logger("[OrderManager]")

TRACKING_ALPHABET = string.ascii_uppercase + string.digits
TRACKING_CODE_LENGTH = 8


class OrderNotFoundError(LookupError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


@dataclass
class OrderUpdate:
    order: Order
    previous_status: OrderStatus
    previous_payment_status: PaymentStatus

    @property
    def status_changed(self) -> bool:
        return self.order.status != self.previous_status

    @property
    def payment_changed(self) -> bool:
        return self.order.payment_status != self.previous_payment_status


def generate_tracking_code() -> str:
    return "".join(secrets.choice(TRACKING_ALPHABET) for _ in range(TRACKING_CODE_LENGTH))


class OrderManager:
    def __init__(self, db: AsyncDatabase):
        self.db = db

    # --- creation ---

    async def create_order(self, draft: OrderDraft) -> Order:
        """
        Writes the order row and every item snapshot in one transaction.
        """
        async with self.db.transaction() as conn:
            # 1) unique tracking code
            tracking_code = generate_tracking_code()
            while await conn.fetchval("SELECT 1 FROM orders WHERE tracking_code = $1", tracking_code):
                tracking_code = generate_tracking_code()

            # 2) order row
            rec = await conn.fetchrow(
                """
                INSERT INTO orders (tracking_code, status, payment_status, payment_method,
                                    subtotal, vat_amount, delivery_fee, total,
                                    customer_first_name, customer_last_name, customer_email, customer_phone,
                                    delivery_address, delivery_city, delivery_area, delivery_date, delivery_time,
                                    special_instructions, order_note, client_reference, payment_reference)
                VALUES ($1, $2::order_status, $3::payment_status, $4,
                        $5, $6, $7, $8,
                        $9, $10, $11, $12,
                        $13, $14, $15, $16, $17,
                        $18, $19, $20, $21)
                RETURNING *
                """,
                tracking_code, draft.status.value, draft.payment_status.value, draft.payment_method.value,
                draft.subtotal, draft.vat_amount, draft.delivery_fee, draft.total,
                draft.customer_first_name, draft.customer_last_name, draft.customer_email, draft.customer_phone,
                draft.delivery_address, draft.delivery_city, draft.delivery_area, draft.delivery_date,
                draft.delivery_time, draft.special_instructions, draft.order_note, draft.client_reference,
                draft.payment_reference,
            )

            # 3) item snapshots
            item_recs = []
            for item in draft.items:
                item_recs.append(await conn.fetchrow(
                    """
                    INSERT INTO order_items (order_id, product_name, product_category, unit_price, quantity,
                                             total_price, product_image_url, is_gift, recipient_name, gift_note)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING *
                    """,
                    rec["id"], item.product_name, item.product_category, item.unit_price, item.quantity,
                    item.total_price, item.product_image_url, item.is_gift, item.recipient_name, item.gift_note,
                ))

        order = Order.from_record(rec, [OrderItem.from_record(r) for r in item_recs])
        log.info(f"[OrderManager] Order {order.short_id} created ({order.payment_method.value}, {order.total}) [✓]")
        return order

    # --- reads ---

    async def _items_for(self, conn: asyncpg.Connection, order_ids: list) -> dict[str, list[OrderItem]]:
        if not order_ids:
            return {}
        recs = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = ANY ($1::uuid[]) ORDER BY id",
            order_ids,
        )
        grouped: dict[str, list[OrderItem]] = {}
        for r in recs:
            grouped.setdefault(str(r["order_id"]), []).append(OrderItem.from_record(r))
        return grouped

    async def _one(self, where: str, *args) -> Optional[Order]:
        async with self.db.transaction() as conn:
            rec = await conn.fetchrow(f"SELECT * FROM orders WHERE {where}", *args)
            if not rec:
                return None
            items = await self._items_for(conn, [rec["id"]])
        return Order.from_record(rec, items.get(str(rec["id"]), []))

    async def get_order(self, order_id: str) -> Optional[Order]:
        try:
            return await self._one("id = $1::uuid", order_id)
        except asyncpg.DataError:
            # not a uuid
            return None

    async def get_order_by_tracking_code(self, code: str) -> Optional[Order]:
        return await self._one("tracking_code = $1", code.strip().upper())

    async def get_order_by_invoice(self, invoice_id: str) -> Optional[Order]:
        return await self._one(
            "intasend_invoice_id = $1 OR payment_reference = $1 ORDER BY created_at DESC LIMIT 1",
            invoice_id,
        )

    async def list_orders(
            self,
            statuses: Optional[Iterable[OrderStatus]] = None,
            payment_statuses: Optional[Iterable[PaymentStatus]] = None,
            limit: int = 200,
    ) -> list[Order]:
        """
        Newest first. Both filters are optional and combined with AND.
        """
        status_values = [s.value for s in statuses] if statuses else None
        payment_values = [s.value for s in payment_statuses] if payment_statuses else None
        async with self.db.transaction() as conn:
            recs = await conn.fetch(
                """
                SELECT *
                FROM orders
                WHERE ($1::order_status[] IS NULL OR status = ANY ($1::order_status[]))
                  AND ($2::payment_status[] IS NULL OR payment_status = ANY ($2::payment_status[]))
                ORDER BY created_at DESC
                LIMIT $3
                """,
                status_values, payment_values, limit,
            )
            items = await self._items_for(conn, [r["id"] for r in recs])
        return [Order.from_record(r, items.get(str(r["id"]), [])) for r in recs]

    async def list_pending_gateway_orders(self) -> list[Order]:
        """Orders still waiting on IntaSend, oldest first."""
        recs = await self.db.fetch(
            """
            SELECT *
            FROM orders
            WHERE payment_status IN ('pending', 'intasend_timeout')
              AND status = 'pending'
              AND (intasend_invoice_id IS NOT NULL OR payment_reference IS NOT NULL)
            ORDER BY created_at
            """
        )
        return [Order.from_record(r) for r in recs]

    async def count_by_status(self) -> dict[OrderStatus, int]:
        recs = await self.db.fetch("SELECT status, COUNT(*) AS cnt FROM orders GROUP BY status")
        counts = {status: 0 for status in OrderStatus}
        for r in recs:
            counts[OrderStatus(r["status"])] = r["cnt"]
        return counts

    async def today_revenue(self) -> Decimal:
        tz = timezone(timedelta(hours=TIMEZONE_OFFSET))
        start = datetime.now(tz).replace(hour=0, minute=0, second=0, microsecond=0)
        total = await self.db.fetchval(
            """
            SELECT COALESCE(SUM(total), 0)
            FROM orders
            WHERE created_at >= $1
              AND status = ANY ($2::order_status[])
            """,
            start, [s.value for s in DELIVERY_BOARD_STATUSES],
        )
        return Decimal(total or 0)

    # --- mutations ---

    async def attach_invoice(
            self, order_id: str, invoice_id: Optional[str], payment_reference: Optional[str] = None
    ) -> None:
        await self.db.execute(
            """
            UPDATE orders
            SET intasend_invoice_id = COALESCE($2, intasend_invoice_id),
                payment_reference   = COALESCE($3, payment_reference, $2),
                updated_at          = now()
            WHERE id = $1::uuid
            """,
            order_id, invoice_id, payment_reference,
        )

    async def change_status(self, order_id: str, new_status: OrderStatus) -> OrderUpdate:
        """
        Operator-driven transition. Locks the row, checks the transition table
        and writes the new status. Re-applying the current status is a no-op.
        """
        async with self.db.transaction() as conn:
            rec = await conn.fetchrow("SELECT * FROM orders WHERE id = $1::uuid FOR UPDATE", order_id)
            if not rec:
                raise OrderNotFoundError(order_id)

            current = Order.from_record(rec)
            ensure_transition(current.status, new_status)
            if current.status == new_status:
                return OrderUpdate(current, current.status, current.payment_status)

            rec = await conn.fetchrow(
                """
                UPDATE orders
                SET status = $2::order_status, updated_at = now()
                WHERE id = $1::uuid
                RETURNING *
                """,
                order_id, new_status.value,
            )
            items = await self._items_for(conn, [rec["id"]])

        order = Order.from_record(rec, items.get(str(rec["id"]), []))
        log.info(f"[OrderManager] Order {order.short_id}: {current.status.value} -> {new_status.value}")
        return OrderUpdate(order, current.status, current.payment_status)

    async def update_payment_state(
            self,
            order_id: str,
            payment_status: PaymentStatus,
            status: Optional[OrderStatus] = None,
            payment_error: Optional[str] = None,
            payment_reference: Optional[str] = None,
    ) -> OrderUpdate:
        """
        Gateway-driven update. An out-of-order payment outcome is ignored.
        The order status moves as settled_status() allows from where the
        order is now.
        """
        async with self.db.transaction() as conn:
            rec = await conn.fetchrow("SELECT * FROM orders WHERE id = $1::uuid FOR UPDATE", order_id)
            if not rec:
                raise OrderNotFoundError(order_id)

            current = Order.from_record(rec)
            if not can_change_payment(current.payment_status, payment_status):
                log.info(
                    f"[OrderManager] Order {current.short_id}: payment {current.payment_status.value} "
                    f"-> {payment_status.value} ignored"
                )
                items = await self._items_for(conn, [rec["id"]])
                current.order_items = items.get(str(rec["id"]), [])
                return OrderUpdate(current, current.status, current.payment_status)

            target_status = settled_status(current.status, current.payment_status, status, payment_status)

            rec = await conn.fetchrow(
                """
                UPDATE orders
                SET payment_status    = $2::payment_status,
                    status            = $3::order_status,
                    payment_error     = COALESCE($4, payment_error),
                    payment_reference = COALESCE($5, payment_reference),
                    updated_at        = now()
                WHERE id = $1::uuid
                RETURNING *
                """,
                order_id, payment_status.value, target_status.value, payment_error, payment_reference,
            )
            items = await self._items_for(conn, [rec["id"]])

        order = Order.from_record(rec, items.get(str(rec["id"]), []))
        log.info(
            f"[OrderManager] Order {order.short_id}: payment {current.payment_status.value} -> "
            f"{order.payment_status.value}, status {current.status.value} -> {order.status.value}"
        )
        return OrderUpdate(order, current.status, current.payment_status)

    async def expire_pending_orders(self, older_than_hours: int) -> list[str]:
        """
        Unpaid orders older than the cutoff: payment_status -> timeout,
        status -> cancelled. Returns the ids touched.
        """
        recs = await self.db.fetch(
            """
            UPDATE orders
            SET payment_status = 'timeout',
                status         = 'cancelled',
                updated_at     = now()
            WHERE status = 'pending'
              AND payment_status IN ('pending', 'intasend_timeout', 'document_pending')
              AND created_at < now() - make_interval(hours => $1)
            RETURNING id
            """,
            older_than_hours,
        )
        return [str(r["id"]) for r in recs]
