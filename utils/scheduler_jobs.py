# utils/scheduler_jobs.py

from api.intasend import IntaSendError
from database.managers.order_manager import OrderManager
from handlers.order_processing import CheckoutService
from utils.cart import CartStore
from utils.logger import get_logger

log = get_logger("[SchedulerJobs]")


async def sync_pending_payments(checkout_service: CheckoutService, order_manager: OrderManager):
    """
    Re-checks invoices the customer walked away from, so orders settle even
    when nobody is polling and the webhook never arrived.
    """
    log.info("Starting pending payment sync...")

    # 1) orders that reached IntaSend but have no final payment state
    pending = await order_manager.list_pending_gateway_orders()
    if not pending:
        log.info("No pending IntaSend payments to check.")
        return

    log.info(f"Found {len(pending)} pending payments to check.")

    settled = 0
    # 2) ask the gateway about each invoice
    for order in pending:
        invoice_id = order.intasend_invoice_id or order.payment_reference
        try:
            response = await checkout_service.gateway.payment_status(invoice_id)
            invoice = response.get("invoice") or {}
            update = await checkout_service.apply_gateway_result(
                order.id, invoice.get("state"), invoice.get("failed_reason"), invoice.get("mpesa_reference")
            )
            if update and update.payment_changed:
                settled += 1
                log.info(
                    f"Order #{order.short_id} settled from IntaSend:"
                    f" payment {update.order.payment_status.value}, status {update.order.status.value}."
                )
        except IntaSendError as e:
            log.warning(f"Could not check invoice {invoice_id} for order #{order.short_id}: {e}")
        except Exception as e:
            log.exception(f"Error syncing payment for order #{order.short_id} (invoice {invoice_id}): {e}")

    log.info(f"Pending payment sync finished. Settled: {settled}.")


async def cleanup_abandoned_orders(order_manager: OrderManager, timeout_hours: int):
    """
    Cancels orders whose payment never completed within the timeout.
    """
    log.info(f"Starting cleanup of abandoned orders (older than {timeout_hours} hours)...")

    try:
        cancelled_ids = await order_manager.expire_pending_orders(timeout_hours)
        if cancelled_ids:
            log.info(f"Cleanup finished. Cancelled abandoned orders: {len(cancelled_ids)}.")
        else:
            log.info("Cleanup finished. No abandoned orders found.")
    except Exception as e:
        log.exception(f"Critical error in abandoned order cleanup: {e}")


async def evict_idle_carts(cart_store: CartStore, checkout_service: CheckoutService, idle_hours: float):
    """
    Drops session carts nobody has touched for idle_hours, and the
    order -> cart links that pointed at them.
    """
    try:
        evicted = cart_store.evict_idle(idle_hours * 3600)
        unlinked = checkout_service.prune_cart_sessions()
        log.info(f"Idle cart sweep finished. Carts dropped: {len(evicted)}, order links dropped: {unlinked}.")
    except Exception as e:
        log.exception(f"Error in idle cart sweep: {e}")
