# utils/notifications.py
import asyncio
from dataclasses import dataclass, field
from typing import Optional, Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.markdown import hbold, hcode, hitalic
from aiogram.utils.text_decorations import html_decoration

from database.models.orders import Order, OrderStatus
from keyboards.admin import order_alert_kb
from utils.checkout import window_label
from utils.config import get_admin_ids, CURRENCY
from utils.logger import get_logger
from utils.statuses import ORDER_CONFIRMED_TEMPLATE, notification_template_for, status_map

log = get_logger("[Notifications]")


class TemplateMailer(Protocol):
    async def send_template(self, template: str, order: Order, **extra) -> bool: ...


@dataclass(frozen=True)
class OrderStatusChanged:
    """
    Emitted after a status or payment transition has been committed.
    `template` overrides the status-based choice (confirmation, reminders).
    """
    order: Order
    previous_status: Optional[OrderStatus] = None
    template: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @property
    def template_key(self) -> Optional[str]:
        if self.template:
            return self.template
        if self.previous_status == self.order.status:
            return None
        return notification_template_for(self.order.status)


class NotificationDispatcher:
    """
    One background task per event. emit() never waits for the mail server and
    never raises because of it; the transition that produced the event is
    already committed.
    """

    def __init__(self, mailer: TemplateMailer, bot: Optional[Bot] = None):
        self.mailer = mailer
        self.bot = bot
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def emit(self, event: OrderStatusChanged) -> bool:
        """Returns True when an email was queued for this event."""
        template = event.template_key
        if template is None:
            log.debug(f"[Notifications] No email for order {event.order.short_id} -> {event.order.status.value}")
            return False

        task = asyncio.create_task(self._deliver(template, event), name=f"notify-{template}-{event.order.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _deliver(self, template: str, event: OrderStatusChanged) -> None:
        order = event.order
        try:
            sent = await self.mailer.send_template(template, order, **event.extra)
            if sent:
                log.info(f"[Notifications] '{template}' for order {order.short_id} delivered [✓]")
        except Exception as e:
            log.exception(f"[Notifications] '{template}' for order {order.short_id} failed: {e}")

        if template == ORDER_CONFIRMED_TEMPLATE and self.bot is not None:
            text, kb = format_order_for_admin(order)
            await notify_admins(self.bot, text, reply_markup=kb)

    async def drain(self) -> None:
        """Waits for every queued delivery. Used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def notify_admins(bot: Bot, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None):
    """
    Sends an HTML message to every admin in ADMIN_IDS.
    """
    admin_ids = get_admin_ids()
    if not admin_ids:
        log.warning("ADMIN_IDS is empty, admin alert skipped.")
        return

    for admin_id in admin_ids:
        try:
            await bot.send_message(
                chat_id=admin_id,
                text=text,
                parse_mode="HTML",
                reply_markup=reply_markup
            )
        except TelegramAPIError as e:
            # blocked bot, wrong id and so on
            log.error(f"Could not notify admin {admin_id}: {e}")


def format_order_for_admin(order: Order) -> tuple[str, InlineKeyboardMarkup]:
    """
    HTML summary of a freshly paid order for the admin chat, plus a button
    that opens it in the console. Customer-supplied values are escaped.
    """
    q = html_decoration.quote
    items_text = "\n".join(
        f"• {q(item.product_name)} x {item.quantity} = {item.total_price} {CURRENCY}"
        + (f" 🎁 {q(item.recipient_name)}" if item.is_gift and item.recipient_name else "")
        for item in order.order_items
    ) or hitalic("no items")

    delivery_date = order.delivery_date.strftime("%d.%m.%Y") if order.delivery_date else "not set"
    where = ", ".join(p for p in (order.delivery_address, order.delivery_area, order.delivery_city) if p)
    divider = hbold("- - - - - - - - - - - - - - - - -")

    message_lines = [
        f"🎉 {hbold(f'New paid order #{order.short_id}')}",
        divider,
        f"👤 {hbold('Customer:')}",
        f"   Name: {q(order.customer_name)}",
        f"   Phone: {hcode(order.customer_phone)}",
        f"   Email: {q(order.customer_email)}",
        divider,
        f"📋 {hbold('Items:')}",
        items_text,
        divider,
        f"🚚 {hbold('Delivery:')}",
        f"   Where: {hcode(where or 'not provided')}",
        f"   When: {delivery_date}, {window_label(order.delivery_time) or 'any time'}",
    ]
    if order.order_note:
        message_lines.append(f"   Note: {hitalic(order.order_note)}")

    message_lines.extend([
        divider,
        f"💰 {hbold('Totals:')}",
        f"   Items: {hcode(order.subtotal)} {CURRENCY}",
        f"   VAT: {hcode(order.vat_amount)} {CURRENCY}",
        f"   Delivery (to confirm): {hcode(order.delivery_fee)} {CURRENCY}",
        f"   {hbold('Total:')} {hcode(order.total)} {CURRENCY}",
        f"   Status: {status_map.get(order.status, order.status.value)}",
    ])

    return "\n".join(message_lines), order_alert_kb(order.tracking_code)
