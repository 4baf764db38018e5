from aiogram import BaseMiddleware, Bot

from database.async_db import AsyncDatabase
from database.managers.order_manager import OrderManager
from handlers.order_processing import CheckoutService


class ManagerMiddleware(BaseMiddleware):
    def __init__(
            self,
            db: AsyncDatabase,
            order_manager: OrderManager,
            checkout_service: CheckoutService,
            bot: Bot,
    ):
        super().__init__()
        self.db = db
        self.order_manager = order_manager
        self.checkout_service = checkout_service
        self.bot = bot

    async def __call__(self, handler, event, data):
        data["db"] = self.db
        data["order_manager"] = self.order_manager
        data["checkout_service"] = self.checkout_service
        data["bot"] = self.bot

        return await handler(event, data)
