from typing import TYPE_CHECKING, Optional

from aiohttp import web

if TYPE_CHECKING:
    from api.mailer import Mailer
    from database.managers.order_manager import OrderManager
    from handlers.order_processing import CheckoutService
    from utils.cart import CartStore

CHECKOUT_SERVICE_KEY: "web.AppKey[CheckoutService]" = web.AppKey("checkout_service")
ORDER_MANAGER_KEY: "web.AppKey[OrderManager]" = web.AppKey("order_manager")
CART_STORE_KEY: "web.AppKey[CartStore]" = web.AppKey("cart_store")
MAILER_KEY: "web.AppKey[Mailer]" = web.AppKey("mailer")
ADMIN_TOKEN_KEY: "web.AppKey[Optional[str]]" = web.AppKey("admin_token")
WEBHOOK_CHALLENGE_KEY: "web.AppKey[Optional[str]]" = web.AppKey("webhook_challenge")
