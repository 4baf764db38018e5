from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.types import CallbackQuery, Message

import handlers.admin as admin
import utils.decorators as decorators
from conftest import cart_items_payload
from database.models.orders import OrderStatus
from utils.decorators import retry_async

ADMIN_ID = 42


def _callback(data: str, user_id: int = ADMIN_ID):
    call = MagicMock(spec=CallbackQuery)
    call.data = data
    call.from_user = MagicMock(id=user_id)
    call.answer = AsyncMock()
    call.message = MagicMock()
    call.message.edit_text = AsyncMock()
    call.message.answer = AsyncMock()
    return call


def _buttons(markup) -> list[str]:
    return [button.callback_data for row in markup.inline_keyboard for button in row]


@pytest.fixture(autouse=True)
def admin_ids(monkeypatch):
    monkeypatch.setattr(decorators, "get_admin_ids", lambda: [ADMIN_ID])


async def _paid_order(service):
    return await service.create_paid_order({
        "customer": {"firstName": "Jane", "lastName": "Wanjiru", "email": "jane@example.com", "phone": "0712345678"},
        "items": cart_items_payload(),
        "paymentIntentId": "QWE123RTY",
    })


class TestAdminAccess:
    @pytest.mark.asyncio
    async def test_strangers_are_turned_away(self, order_manager):
        call = _callback("orders", user_id=7)
        await admin.adm_orders_menu(call, order_manager=order_manager)
        call.answer.assert_awaited_once_with("Sorry, this console is for staff only.", show_alert=True)
        call.message.edit_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_command(self):
        msg = MagicMock(spec=Message)
        msg.from_user = MagicMock(id=ADMIN_ID)
        msg.answer = AsyncMock()
        await admin.admin_start(msg)
        assert "orders" in _buttons(msg.answer.await_args.kwargs["reply_markup"])


class TestOrdersConsole:
    @pytest.mark.asyncio
    async def test_summary(self, service, order_manager):
        await _paid_order(service)
        call = _callback("orders")
        await admin.adm_orders_menu(call, order_manager=order_manager)
        text = call.message.edit_text.await_args.args[0]
        assert "Orders overview" in text
        assert "Payment Confirmed: `1`" in text
        assert "3,780.00" in text

    @pytest.mark.asyncio
    async def test_list(self, service, order_manager):
        order = await _paid_order(service)
        call = _callback("adm-orders:list:active")
        await admin.adm_orders_list(call, order_manager=order_manager)
        markup = call.message.edit_text.await_args.kwargs["reply_markup"]
        assert f"adm-order:view:{order.tracking_code}:active" in _buttons(markup)

    @pytest.mark.asyncio
    async def test_list_failure_offers_retry(self, order_manager, monkeypatch):
        monkeypatch.setattr(admin, "fetch_orders", AsyncMock(side_effect=OSError("pool closed")))
        call = _callback("adm-orders:list:issues")
        await admin.adm_orders_list(call, order_manager=order_manager)
        args = call.message.edit_text.await_args
        assert args.args[0] == "Could not load orders. Please try again."
        assert "adm-orders:list:issues" in _buttons(args.kwargs["reply_markup"])

    @pytest.mark.asyncio
    async def test_detail(self, service, order_manager):
        order = await _paid_order(service)
        call = _callback(f"adm-order:view:{order.tracking_code}:active")
        await admin.adm_order_detail(call, order_manager=order_manager)
        args = call.message.edit_text.await_args
        assert order.tracking_code in args.args[0]
        buttons = _buttons(args.kwargs["reply_markup"])
        assert buttons[0] == f"adm-order:set:preparing:{order.tracking_code}:active"
        assert f"adm-order:cancel:{order.tracking_code}:active" in buttons

    @pytest.mark.asyncio
    async def test_detail_escapes_customer_text(self, service, order_manager):
        order = await service.create_paid_order({
            "customer": {"firstName": "Jane", "lastName": "<Wanjiru>", "email": "jane_doe@example.com",
                         "phone": "0712345678", "address": "Moi Ave & 2nd St",
                         "orderNote": "no *nuts*, leave at gate_2"},
            "items": cart_items_payload(),
            "paymentIntentId": "QWE123RTY",
        })
        call = _callback(f"adm-order:view:{order.tracking_code}:active")
        await admin.adm_order_detail(call, order_manager=order_manager)

        args = call.message.edit_text.await_args
        text = args.args[0]
        assert args.kwargs["parse_mode"] == "HTML"
        assert "jane_doe@example.com" in text
        assert "Jane &lt;Wanjiru&gt;" in text
        assert "Moi Ave &amp; 2nd St" in text
        assert "<i>no *nuts*, leave at gate_2</i>" in text
        assert "<Wanjiru>" not in text

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_manager):
        call = _callback("adm-order:view:NOPE1234:active")
        await admin.adm_order_detail(call, order_manager=order_manager)
        call.answer.assert_awaited_once_with("Order not found", show_alert=True)


class TestStatusButtons:
    @pytest.mark.asyncio
    async def test_mark_as_preparing(self, service, order_manager, dispatcher, mailer):
        order = await _paid_order(service)
        await dispatcher.drain()
        mailer.sent.clear()

        call = _callback(f"adm-order:set:preparing:{order.tracking_code}:active")
        await admin.adm_order_set_status(call, order_manager=order_manager, checkout_service=service)
        await dispatcher.drain()

        assert order_manager.orders[order.id].status == OrderStatus.PREPARING
        call.answer.assert_awaited_once_with("Status updated, customer emailed")
        assert mailer.templates() == ["orderPreparing"]

    @pytest.mark.asyncio
    async def test_rejected_transition(self, service, order_manager):
        order = await _paid_order(service)
        await service.change_status(order.id, "delivered")

        call = _callback(f"adm-order:set:preparing:{order.tracking_code}:active")
        await admin.adm_order_set_status(call, order_manager=order_manager, checkout_service=service)

        call.answer.assert_awaited_once_with("This status change is not allowed", show_alert=True)
        assert order_manager.orders[order.id].status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_cancel_asks_first(self, service, order_manager):
        order = await _paid_order(service)
        call = _callback(f"adm-order:cancel:{order.tracking_code}:active")
        await admin.adm_order_cancel_confirm(call)

        assert order_manager.orders[order.id].status == OrderStatus.PAID
        buttons = _buttons(call.message.edit_text.await_args.kwargs["reply_markup"])
        assert buttons[0] == f"adm-order:cancel-yes:{order.tracking_code}:active"

        call = _callback(f"adm-order:cancel-yes:{order.tracking_code}:active")
        await admin.adm_order_cancel_yes(call, order_manager=order_manager, checkout_service=service)
        assert order_manager.orders[order.id].status == OrderStatus.CANCELLED
        call.answer.assert_awaited_once_with("Status updated")


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        pauses = []

        async def fake_sleep(delay):
            pauses.append(delay)

        attempts = []

        @retry_async(retries=2, backoff=1.0, exceptions=(OSError,), sleep=fake_sleep)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise OSError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert pauses == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up(self):
        sleep = AsyncMock()

        @retry_async(retries=2, exceptions=(OSError,), sleep=sleep)
        async def broken():
            raise OSError("reset")

        with pytest.raises(OSError):
            await broken()
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        sleep = AsyncMock()

        @retry_async(retries=2, exceptions=(OSError,), sleep=sleep)
        async def broken():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await broken()
        sleep.assert_not_awaited()
