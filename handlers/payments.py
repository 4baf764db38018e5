# handlers/payments.py
from datetime import date

from aiohttp import web

from utils.app_keys import CHECKOUT_SERVICE_KEY, WEBHOOK_CHALLENGE_KEY
from utils.checkout import local_now, time_window_options
from utils.logger import get_logger
from utils.web import CART_SESSION_HEADER, error_response, json_response, read_json

log = get_logger("[API.Payments]")

routes = web.RouteTableDef()


@routes.post("/api/intasend/initiate")
async def initiate_payment(request: web.Request) -> web.Response:
    payload = await read_json(request)
    log.info(
        f"[API.Payments] Initiate: method={payload.get('paymentMethod')} amount={payload.get('amount')} "
        f"email={payload.get('customerEmail')}"
    )
    result = await request.app[CHECKOUT_SERVICE_KEY].initiate_payment(
        payload, session_id=request.headers.get(CART_SESSION_HEADER)
    )
    return json_response(result.to_response())


@routes.get("/api/intasend/status")
async def payment_status(request: web.Request) -> web.Response:
    data = await request.app[CHECKOUT_SERVICE_KEY].check_payment_status(
        invoice_id=request.query.get("invoiceId"),
        order_id=request.query.get("orderId"),
    )
    return json_response(data)


@routes.post("/api/intasend/webhook")
async def payment_webhook(request: web.Request) -> web.Response:
    payload = await read_json(request)
    log.info(
        f"[API.Payments] Webhook: invoice={payload.get('invoice_id')} api_ref={payload.get('api_ref')} "
        f"state={payload.get('state')}"
    )

    expected = request.app.get(WEBHOOK_CHALLENGE_KEY)
    if expected and payload.get("challenge") != expected:
        log.warning(f"[API.Payments] Webhook with a wrong challenge from {request.remote}")
        return error_response("Invalid challenge", 401)

    await request.app[CHECKOUT_SERVICE_KEY].handle_webhook(payload)
    return json_response({"success": True, "message": "Webhook processed successfully"})


@routes.get("/api/checkout/time-windows")
async def delivery_time_windows(request: web.Request) -> web.Response:
    raw = request.query.get("date")
    try:
        delivery_date = date.fromisoformat(raw) if raw else None
    except ValueError:
        return error_response("date must be YYYY-MM-DD", 400)
    return json_response({"success": True, "options": time_window_options(delivery_date, local_now())})
