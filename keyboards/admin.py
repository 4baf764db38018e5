from math import ceil

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from database.models.orders import Order, OrderStatus
from utils.statuses import allowed_targets, next_status, status_map

FILTER_LABELS = {
    "active": "🚚 Delivery board",
    "all": "📦 All orders",
    "paid": "💳 Paid",
    "confirmed": "✅ Confirmed",
    "preparing": "🍫 Preparing",
    "out_for_delivery": "🛵 Out for delivery",
    "delivered": "🏁 Delivered",
    "cancelled": "✖️ Cancelled",
    "pending": "⏳ Awaiting payment",
    "issues": "⚠️ Payment issues",
}

STATUS_ICONS = {
    OrderStatus.PENDING: "⏳",
    OrderStatus.PAID: "💳",
    OrderStatus.CONFIRMED: "✅",
    OrderStatus.PREPARING: "🍫",
    OrderStatus.OUT_FOR_DELIVERY: "🛵",
    OrderStatus.DELIVERED: "🏁",
    OrderStatus.CANCELLED: "✖️",
}


def get_admin_main_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📊 Orders", callback_data="orders")],
        [InlineKeyboardButton(text=FILTER_LABELS["active"], callback_data="adm-orders:list:active")],
        [InlineKeyboardButton(text=FILTER_LABELS["issues"], callback_data="adm-orders:list:issues")],
    ])


def get_admin_orders_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for key, label in FILTER_LABELS.items():
        builder.button(text=label, callback_data=f"adm-orders:list:{key}")
    builder.adjust(2)
    builder.row(InlineKeyboardButton(text="⬅️ Back", callback_data="back-admin-main"))
    return builder.as_markup()


def get_admin_orders_list_kb(
        orders: list[Order],
        filter_key: str,
        page: int = 1,
        page_size: int = 20,
) -> InlineKeyboardMarkup:
    total = len(orders)
    total_pages = max(1, ceil(total / page_size))
    page = max(1, min(page, total_pages))  # clamp

    start = (page - 1) * page_size
    end = start + page_size
    page_orders = orders[start:end]

    rows: list[list[InlineKeyboardButton]] = [
        [
            InlineKeyboardButton(
                text=f"{STATUS_ICONS.get(o.status, '')} #{o.short_id} {o.customer_name} ({o.created_at:%d.%m})",
                callback_data=f"adm-order:view:{o.tracking_code}:{filter_key}",
            )
        ]
        for o in page_orders
    ]

    if total_pages > 1:
        prev_page = page - 1 if page > 1 else 1
        next_page = page + 1 if page < total_pages else total_pages
        rows.append([
            InlineKeyboardButton(text="«", callback_data=f"adm-orders:page:{filter_key}:1" if page > 1 else "noop"),
            InlineKeyboardButton(text="‹",
                                 callback_data=f"adm-orders:page:{filter_key}:{prev_page}" if page > 1 else "noop"),
            InlineKeyboardButton(text=f"{page}/{total_pages}", callback_data="noop"),
            InlineKeyboardButton(text="›",
                                 callback_data=f"adm-orders:page:{filter_key}:{next_page}"
                                 if page < total_pages else "noop"),
            InlineKeyboardButton(text="»",
                                 callback_data=f"adm-orders:page:{filter_key}:{total_pages}"
                                 if page < total_pages else "noop"),
        ])

    rows.append([InlineKeyboardButton(text="🔄 Refresh", callback_data=f"adm-orders:list:{filter_key}")])
    rows.append([InlineKeyboardButton(text="⬅️ Back", callback_data="adm-orders:menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def admin_orders_retry_kb(filter_key: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="🔁 Try Again", callback_data=f"adm-orders:list:{filter_key}")],
        [InlineKeyboardButton(text="⬅️ Back", callback_data="adm-orders:menu")],
    ])


def admin_order_detail_kb(order: Order, *, filter_key: str) -> InlineKeyboardMarkup:
    """
    The suggested next status goes first, then every other status the
    order may move to. Cancelling always asks for confirmation.
    """
    builder = InlineKeyboardBuilder()
    code = order.tracking_code
    suggested = next_status(order.status)

    if suggested is not None:
        builder.button(
            text=f"➡️ Mark as {status_map[suggested]}",
            callback_data=f"adm-order:set:{suggested.value}:{code}:{filter_key}",
        )

    for target in allowed_targets(order.status):
        if target == suggested:
            continue
        if target == OrderStatus.CANCELLED:
            builder.button(text="✖️ Cancel order", callback_data=f"adm-order:cancel:{code}:{filter_key}")
        else:
            builder.button(
                text=f"{STATUS_ICONS.get(target, '')} {status_map[target]}",
                callback_data=f"adm-order:set:{target.value}:{code}:{filter_key}",
            )

    builder.button(text="⬅️ Back to list", callback_data=f"adm-orders:list:{filter_key}")
    builder.adjust(1)
    return builder.as_markup()


def admin_cancel_confirm_kb(code: str, filter_key: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="Yes, cancel", callback_data=f"adm-order:cancel-yes:{code}:{filter_key}")],
        [InlineKeyboardButton(text="Keep it", callback_data=f"adm-order:view:{code}:{filter_key}")],
    ])


def order_alert_kb(code: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="Open order", callback_data=f"adm-order:view:{code}:active")],
    ])
