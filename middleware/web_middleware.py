from aiohttp import web

from api.intasend import IntaSendError, IntaSendTimeout
from database.managers.order_manager import OrderNotFoundError
from handlers.order_processing import (
    MissingInvoiceError, OrderCreationError, PaymentInitiationError, ReminderNotAllowedError
)
from utils.checkout import CheckoutError
from utils.logger import get_logger
from utils.statuses import StatusTransitionError
from utils.web import error_response, json_response

log = get_logger("[API]")


@web.middleware
async def error_middleware(request: web.Request, handler):
    """
    Turns the domain errors into JSON bodies at the HTTP boundary.
    Anything else is logged and answered with a 500.
    """
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except CheckoutError as e:
        return error_response(e.message, 400, field=e.field)
    except PaymentInitiationError as e:
        log.warning(f"[API] Payment initiation failed for order {e.order_id}: {e.__cause__ or e.message}")
        return json_response(
            {"success": False, "error": "IntaSend payment failed", "message": e.message, "orderId": e.order_id},
            status=e.http_status,
        )
    except OrderCreationError as e:
        return error_response(e.message, 500, paymentReference=e.payment_reference)
    except IntaSendTimeout as e:
        return error_response(str(e), 504)
    except IntaSendError as e:
        return error_response(f"Failed to check payment status: {e}", 502)
    except OrderNotFoundError:
        return error_response("Order not found", 404)
    except StatusTransitionError as e:
        return error_response(str(e), 409, currentStatus=e.current, requestedStatus=e.target)
    except (MissingInvoiceError, ReminderNotAllowedError) as e:
        return error_response(str(e), 400)
    except Exception as e:
        log.exception(f"[API] Unhandled error on {request.method} {request.path}: {e}")
        return error_response("Internal server error", 500)
