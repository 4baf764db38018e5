# handlers/orders.py
import aiosmtplib
from aiohttp import web

from utils.app_keys import CART_STORE_KEY, CHECKOUT_SERVICE_KEY, MAILER_KEY, ORDER_MANAGER_KEY
from utils.config import IS_DEVELOPMENT
from utils.decorators import admin_required
from utils.logger import get_logger
from utils.statuses import ORDER_CONFIRMED_TEMPLATE, parse_status, resolve_filter
from utils.web import CART_SESSION_HEADER, error_response, json_response, read_json

log = get_logger("[API.Orders]")

routes = web.RouteTableDef()


async def _change_status(request: web.Request, order_id, status) -> web.Response:
    if not order_id or not status:
        return error_response("orderId and status are required", 400)
    try:
        parse_status(str(status))
    except ValueError as e:
        return error_response(str(e), 400)

    result = await request.app[CHECKOUT_SERVICE_KEY].change_status(str(order_id), str(status))
    return json_response({
        "success": True,
        "message": result.message,
        "emailSent": result.email_queued,
        "order": result.update.order.to_dict(),
    })


@routes.get("/api/orders")
@admin_required
async def list_orders(request: web.Request) -> web.Response:
    try:
        statuses, payment_statuses = resolve_filter(request.query.get("status"))
    except ValueError as e:
        return error_response(str(e), 400)
    orders = await request.app[ORDER_MANAGER_KEY].list_orders(statuses, payment_statuses)
    return json_response({"orders": [o.to_dict() for o in orders]})


@routes.put("/api/orders")
@admin_required
async def update_order_status(request: web.Request) -> web.Response:
    body = await read_json(request)
    return await _change_status(request, body.get("orderId"), body.get("status"))


@routes.post("/api/orders/create")
async def create_order(request: web.Request) -> web.Response:
    payload = await read_json(request)
    order = await request.app[CHECKOUT_SERVICE_KEY].create_paid_order(payload)
    request.app[CART_STORE_KEY].discard(request.headers.get(CART_SESSION_HEADER))
    return json_response({
        "success": True,
        "orderId": order.id,
        "trackingCode": order.tracking_code,
        "message": "Order created successfully",
    })


@routes.post("/api/orders/send-confirmation")
async def send_confirmation(request: web.Request) -> web.Response:
    body = await read_json(request)
    order_id = body.get("orderId")
    if not order_id:
        return error_response("Order ID is required", 400)

    order = await request.app[ORDER_MANAGER_KEY].get_order(str(order_id))
    if order is None:
        return error_response("Order not found", 404)

    mailer = request.app[MAILER_KEY]
    email = mailer.render(ORDER_CONFIRMED_TEMPLATE, order)
    if IS_DEVELOPMENT:
        log.info(f"[API.Orders] Confirmation for {order.short_id} rendered, not sent (development)")
        return json_response({
            "success": True,
            "message": "Confirmation email sent successfully",
            "emailContent": email.html,
        })

    try:
        await mailer.send(email)
    except aiosmtplib.SMTPException:
        return error_response("Failed to send confirmation email", 502)
    return json_response({"success": True, "message": "Confirmation email sent successfully"})


@routes.get("/api/orders/track/{code}")
async def track_order(request: web.Request) -> web.Response:
    order = await request.app[ORDER_MANAGER_KEY].get_order_by_tracking_code(request.match_info["code"])
    if order is None:
        return error_response("Order not found with this tracking code", 404)
    return json_response({"success": True, "order": order.to_dict()})


@routes.post("/api/orders/{order_id}/resend-payment")
async def resend_payment(request: web.Request) -> web.Response:
    order = await request.app[CHECKOUT_SERVICE_KEY].resend_payment_reminder(request.match_info["order_id"])
    return json_response({
        "success": True,
        "message": f"Payment reminder sent to {order.customer_email}",
    })


@routes.get("/api/orders/{order_id}")
async def get_order(request: web.Request) -> web.Response:
    order = await request.app[ORDER_MANAGER_KEY].get_order(request.match_info["order_id"])
    if order is None:
        return error_response("Order not found", 404)
    return json_response({"order": order.to_dict()})


@routes.put("/api/orders/{order_id}")
@routes.patch("/api/orders/{order_id}")
@admin_required
async def update_order(request: web.Request) -> web.Response:
    body = await read_json(request)
    return await _change_status(request, request.match_info["order_id"], body.get("status"))
