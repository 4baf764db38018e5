# handlers/web.py
from typing import Optional

from aiohttp import web

from api.mailer import Mailer
from database.managers.order_manager import OrderManager
from handlers.cart import routes as cart_routes
from handlers.order_processing import CheckoutService
from handlers.orders import routes as order_routes
from handlers.payments import routes as payment_routes
from middleware.web_middleware import error_middleware
from utils.app_keys import (
    ADMIN_TOKEN_KEY, CART_STORE_KEY, CHECKOUT_SERVICE_KEY, MAILER_KEY, ORDER_MANAGER_KEY, WEBHOOK_CHALLENGE_KEY
)
from utils.cart import CartStore
from utils.web import json_response

health_routes = web.RouteTableDef()


@health_routes.get("/api/health")
async def health(request: web.Request) -> web.Response:
    return json_response({"status": "ok"})


def create_web_app(
        checkout_service: CheckoutService,
        order_manager: OrderManager,
        cart_store: CartStore,
        mailer: Mailer,
        admin_token: Optional[str] = None,
        webhook_challenge: Optional[str] = None,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[CHECKOUT_SERVICE_KEY] = checkout_service
    app[ORDER_MANAGER_KEY] = order_manager
    app[CART_STORE_KEY] = cart_store
    app[MAILER_KEY] = mailer
    app[ADMIN_TOKEN_KEY] = admin_token
    app[WEBHOOK_CHALLENGE_KEY] = webhook_challenge

    app.add_routes(health_routes)
    app.add_routes(payment_routes)
    app.add_routes(cart_routes)
    app.add_routes(order_routes)
    return app
