import asyncio
from decimal import Decimal

import asyncpg
from aiogram import Router, F
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command
from aiogram.types import Message, CallbackQuery
from aiogram.utils.markdown import hbold, hcode, hitalic
from aiogram.utils.text_decorations import html_decoration

from database.managers.order_manager import OrderManager, OrderNotFoundError
from database.models.orders import Order, OrderStatus
from handlers.order_processing import CheckoutService
from keyboards.admin import (
    FILTER_LABELS,
    admin_cancel_confirm_kb,
    admin_order_detail_kb,
    admin_orders_retry_kb,
    get_admin_main_kb,
    get_admin_orders_keyboard,
    get_admin_orders_list_kb,
)
from utils.checkout import window_label
from utils.config import CURRENCY
from utils.decorators import admin_only, handle_telegram_error, retry_async
from utils.logger import get_logger
from utils.statuses import StatusTransitionError, payment_status_map, resolve_filter, status_map

log = get_logger("[Bot.Admin]")

admin_router = Router()

LIST_FETCH_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@retry_async(retries=2, backoff=1.0, exceptions=LIST_FETCH_ERRORS)
async def fetch_orders(order_manager: OrderManager, filter_key: str) -> list[Order]:
    statuses, payment_statuses = resolve_filter(filter_key)
    return await order_manager.list_orders(statuses, payment_statuses)


def _admin_summary_text(counts: dict[OrderStatus, int], today_revenue: Decimal) -> str:
    lines = [
        "*Orders overview*",
        "",
        f"Revenue today: `{today_revenue:,.2f} {CURRENCY}`",
        "",
    ]
    for status in OrderStatus:
        lines.append(f"{status_map[status]}: `{counts.get(status, 0)}`")
    lines.append(f"\nTotal: `{sum(counts.values())}`")
    return "\n".join(lines)


def _order_detail_text(o: Order) -> str:
    """HTML, every customer-supplied value is escaped."""
    q = html_decoration.quote
    items = "\n".join(
        f"• {q(i.product_name)} x {i.quantity} = {hcode(i.total_price)} {CURRENCY}"
        + (f"\n   🎁 for {q(i.recipient_name)}" if i.is_gift and i.recipient_name else "")
        + (f"\n   {hitalic(i.gift_note)}" if i.is_gift and i.gift_note else "")
        for i in o.order_items
    ) or hitalic("no items")

    where = ", ".join(p for p in (o.delivery_address, o.delivery_area, o.delivery_city) if p) or "not provided"
    when = o.delivery_date.strftime("%d.%m.%Y") if o.delivery_date else "not set"

    text = (
        f"{hbold(f'Order #{o.short_id}')} ({hcode(o.tracking_code)})\n\n"
        f"{hbold('Customer:')} {q(o.customer_name)}\n"
        f"{hbold('Phone:')} {hcode(o.customer_phone)}\n"
        f"{hbold('Email:')} {q(o.customer_email)}\n\n"
        f"{hbold('Items:')}\n{items}\n\n"
        f"{hbold('Subtotal:')} {hcode(o.subtotal)} {CURRENCY}\n"
        f"{hbold('VAT:')} {hcode(o.vat_amount)} {CURRENCY}\n"
        f"{hbold('Delivery fee (to confirm):')} {hcode(o.delivery_fee)} {CURRENCY}\n"
        f"{hbold('Total:')} {hcode(o.total)} {CURRENCY}\n\n"
        f"{hbold('Delivery:')} {q(where)}\n"
        f"{hbold('When:')} {when}, {window_label(o.delivery_time) or 'any time'}\n"
        f"{hbold('Status:')} {status_map.get(o.status, o.status.value)}\n"
        f"{hbold('Payment:')} {payment_status_map.get(o.payment_status, o.payment_status.value)}"
        f" ({o.payment_method.value})\n"
        f"{hbold('Placed:')} {o.created_at:%d.%m.%Y %H:%M}\n"
    )
    if o.special_instructions:
        text += f"\n{hbold('Instructions:')}\n{hitalic(o.special_instructions)}\n"
    if o.order_note:
        text += f"\n{hbold('Note:')}\n{hitalic(o.order_note)}\n"
    if o.payment_error:
        text += f"\n⚠️ {hbold('Payment error:')} {q(o.payment_error)}\n"
    return text


async def _show_orders(call: CallbackQuery, order_manager: OrderManager, filter_key: str, page: int = 1):
    try:
        orders = await fetch_orders(order_manager, filter_key)
    except LIST_FETCH_ERRORS as e:
        log.error(f"[Bot.Admin] Orders list '{filter_key}' failed after retries: {e}")
        try:
            await call.message.edit_text(
                "Could not load orders. Please try again.",
                reply_markup=admin_orders_retry_kb(filter_key),
            )
            await call.answer()
        except TelegramBadRequest as tg_err:
            await handle_telegram_error(tg_err, call=call)
        return

    header = f"{FILTER_LABELS.get(filter_key, filter_key)}: `{len(orders)}`"
    try:
        await call.message.edit_text(
            header,
            parse_mode="Markdown",
            reply_markup=get_admin_orders_list_kb(orders, filter_key, page=page),
        )
        await call.answer()
    except TelegramBadRequest as e:
        log.error(e)
        await handle_telegram_error(e, call=call)


async def _show_order(call: CallbackQuery, order: Order, filter_key: str, notice: str = None):
    try:
        await call.message.edit_text(
            _order_detail_text(order),
            parse_mode="HTML",
            reply_markup=admin_order_detail_kb(order, filter_key=filter_key),
        )
        await call.answer(notice)
    except TelegramBadRequest as e:
        log.error(e)
        await handle_telegram_error(e, call=call)


@admin_router.message(Command("start", "admin"))
@admin_only
async def admin_start(msg: Message):
    await msg.answer("Strawberry Dips admin console. Choose an action:", reply_markup=get_admin_main_kb())


@admin_router.callback_query(F.data == "noop")
async def noop(call: CallbackQuery):
    await call.answer()


@admin_router.callback_query(F.data == "back-admin-main")
@admin_only
async def back_admin_main(call: CallbackQuery):
    try:
        await call.message.edit_text("Choose an action:", reply_markup=get_admin_main_kb())
        await call.answer()
    except TelegramBadRequest as e:
        log.error(f"[Bot.Admin] Could not edit message: {e}")
        await handle_telegram_error(e, call=call)


@admin_router.callback_query(F.data.in_({"orders", "adm-orders:menu"}))
@admin_only
async def adm_orders_menu(call: CallbackQuery, order_manager: OrderManager):
    counts = await order_manager.count_by_status()
    today_rev = await order_manager.today_revenue()
    try:
        await call.message.edit_text(
            _admin_summary_text(counts, today_rev),
            parse_mode="Markdown",
            reply_markup=get_admin_orders_keyboard(),
        )
        await call.answer()
    except TelegramBadRequest as e:
        log.error(e)
        await handle_telegram_error(e, call=call)


@admin_router.callback_query(F.data.startswith("adm-orders:list:"))
@admin_only
async def adm_orders_list(call: CallbackQuery, order_manager: OrderManager):
    filter_key = call.data.split(":", 2)[2]
    await _show_orders(call, order_manager, filter_key)


@admin_router.callback_query(F.data.startswith("adm-orders:page:"))
@admin_only
async def adm_orders_page(call: CallbackQuery, order_manager: OrderManager):
    _, _, filter_key, page_str = call.data.split(":")
    try:
        page = int(page_str)
    except ValueError:
        page = 1
    await _show_orders(call, order_manager, filter_key, page=page)


@admin_router.callback_query(F.data.startswith("adm-order:view:"))
@admin_only
async def adm_order_detail(call: CallbackQuery, order_manager: OrderManager):
    _, _, code, filter_key = call.data.split(":")
    order = await order_manager.get_order_by_tracking_code(code)
    if not order:
        await call.answer("Order not found", show_alert=True)
        return
    await _show_order(call, order, filter_key)


async def _apply_status(
        call: CallbackQuery,
        order_manager: OrderManager,
        checkout_service: CheckoutService,
        code: str,
        to_status: str,
        filter_key: str,
):
    order = await order_manager.get_order_by_tracking_code(code)
    if not order:
        await call.answer("Order not found", show_alert=True)
        return

    try:
        result = await checkout_service.change_status(order.id, to_status)
    except StatusTransitionError:
        await call.answer("This status change is not allowed", show_alert=True)
        return
    except OrderNotFoundError:
        await call.answer("Order not found", show_alert=True)
        return

    log.info(f"[Bot.Admin] {call.from_user.id} set order {order.short_id} to {to_status}")
    notice = "Status updated" + (", customer emailed" if result.email_queued else "")
    await _show_order(call, result.update.order, filter_key, notice=notice)


@admin_router.callback_query(F.data.startswith("adm-order:set:"))
@admin_only
async def adm_order_set_status(call: CallbackQuery, order_manager: OrderManager, checkout_service: CheckoutService):
    _, _, to_status, code, filter_key = call.data.split(":")
    await _apply_status(call, order_manager, checkout_service, code, to_status, filter_key)


@admin_router.callback_query(F.data.startswith("adm-order:cancel:"))
@admin_only
async def adm_order_cancel_confirm(call: CallbackQuery):
    _, _, code, filter_key = call.data.split(":")
    try:
        await call.message.edit_text(
            f"Cancel order `{code}`? The customer will not be charged again.",
            parse_mode="Markdown",
            reply_markup=admin_cancel_confirm_kb(code, filter_key),
        )
        await call.answer()
    except TelegramBadRequest as e:
        log.error(e)
        await handle_telegram_error(e, call=call)


@admin_router.callback_query(F.data.startswith("adm-order:cancel-yes:"))
@admin_only
async def adm_order_cancel_yes(call: CallbackQuery, order_manager: OrderManager, checkout_service: CheckoutService):
    _, _, code, filter_key = call.data.split(":")
    await _apply_status(call, order_manager, checkout_service, code, OrderStatus.CANCELLED.value, filter_key)
