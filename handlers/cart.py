# handlers/cart.py
import uuid

from aiohttp import web

from utils.app_keys import CART_STORE_KEY
from utils.cart import Cart, CartItem
from utils.web import CART_SESSION_HEADER, error_response, json_response, read_json

routes = web.RouteTableDef()


def _session(request: web.Request) -> str:
    return request.headers.get(CART_SESSION_HEADER) or uuid.uuid4().hex


def _existing_cart(request: web.Request, session_id: str) -> Cart:
    """Stored cart for the session, or an empty one that is not kept."""
    store = request.app[CART_STORE_KEY]
    return store.get(session_id) or Cart(delivery_fee=store.delivery_fee)


def _cart_response(session_id: str, cart: Cart) -> web.Response:
    return json_response(
        {"success": True, "sessionId": session_id, "cart": cart.summary()},
        headers={CART_SESSION_HEADER: session_id},
    )


@routes.get("/api/cart")
async def get_cart(request: web.Request) -> web.Response:
    session_id = _session(request)
    return _cart_response(session_id, _existing_cart(request, session_id))


@routes.post("/api/cart/items")
async def add_cart_item(request: web.Request) -> web.Response:
    body = await read_json(request)
    if not body.get("id") or not body.get("name"):
        return error_response("id and name are required", 400)

    # the only route that creates a cart
    session_id = _session(request)
    cart = request.app[CART_STORE_KEY].get_or_create(session_id)
    cart.add_item(CartItem.from_payload(body))
    return _cart_response(session_id, cart)


@routes.patch("/api/cart/items/{item_id}")
async def update_cart_item(request: web.Request) -> web.Response:
    body = await read_json(request)
    try:
        quantity = int(body.get("quantity"))
    except (TypeError, ValueError):
        return error_response("quantity must be a whole number", 400)

    session_id = _session(request)
    cart = _existing_cart(request, session_id)
    cart.update_quantity(request.match_info["item_id"], quantity)
    return _cart_response(session_id, cart)


@routes.delete("/api/cart/items/{item_id}")
async def remove_cart_item(request: web.Request) -> web.Response:
    session_id = _session(request)
    cart = _existing_cart(request, session_id)
    cart.remove_item(request.match_info["item_id"])
    return _cart_response(session_id, cart)


@routes.delete("/api/cart")
async def clear_cart(request: web.Request) -> web.Response:
    session_id = _session(request)
    cart = _existing_cart(request, session_id)
    cart.clear_cart()
    return _cart_response(session_id, cart)
