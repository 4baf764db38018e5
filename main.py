import sys
import signal
import asyncio
import logging
from contextlib import suppress
from typing import Optional

from aiogram import Bot, Dispatcher
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from api.intasend import IntaSendClient
from api.mailer import Mailer
from database.async_db import AsyncDatabase
from database.managers.order_manager import OrderManager
from handlers.order_processing import CheckoutService
from handlers.web import create_web_app
from utils.cart import CartStore
from utils.logger import get_logger, setup_logging
from utils.config import (
    BOT_TOKEN, DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD, DB_MIN_POOL_SIZE, DB_MAX_POOL_SIZE,
    WEB_HOST, WEB_PORT, ADMIN_API_TOKEN, IS_DEVELOPMENT, DELIVERY_FEE, PENDING_ORDER_TIMEOUT_HOURS,
    INTASEND_PUBLISHABLE_KEY, INTASEND_SECRET_KEY, INTASEND_TEST_MODE, INTASEND_WEBHOOK_CHALLENGE,
    SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, MAIL_FROM, CART_IDLE_HOURS,
)
from utils.notifications import NotificationDispatcher
from utils.scheduler_jobs import cleanup_abandoned_orders, evict_idle_carts, sync_pending_payments

from middleware.manager_middleware import ManagerMiddleware
from handlers import register_handlers

setup_logging(level=logging.DEBUG if IS_DEVELOPMENT else logging.INFO, log_to_file=True)
log = get_logger("[App]")


async def shutdown(
        scheduler: AsyncIOScheduler,
        checkout_service: CheckoutService,
        notifications: NotificationDispatcher,
        gateway: IntaSendClient,
        runner: web.AppRunner,
        db: AsyncDatabase,
        bot: Optional[Bot] = None,
):
    log.info("[App] Shutting down")

    if scheduler.running:
        scheduler.shutdown(wait=False)
        log.debug("[Scheduler] Scheduler stopped [✓]")

    with suppress(Exception):
        await runner.cleanup()
        log.debug("[Web] HTTP server stopped [✓]")

    with suppress(Exception):
        await checkout_service.shutdown()

    with suppress(Exception):
        await notifications.drain()
        log.debug("[Notifications] Pending emails flushed [✓]")

    with suppress(Exception):
        await gateway.close()
        log.debug("[App] IntaSend session closed [✓]")

    if bot is not None:
        with suppress(Exception):
            await bot.session.close()
            log.debug("[Bot] Bot session closed [✓]")

    with suppress(Exception):
        await db.close()

    log.info("[App] Shutdown complete [✓]")
    log.info("-" * 80)


async def main():
    log.info("[App] Starting main process")

    db = AsyncDatabase(
        db_name=DB_NAME, user=DB_USER, password=DB_PASSWORD, host=DB_HOST, port=DB_PORT,
        min_size=DB_MIN_POOL_SIZE, max_size=DB_MAX_POOL_SIZE,
    )
    await db.connect()
    log.info("[App] Database connection established [✓]")

    order_manager = OrderManager(db)
    gateway = IntaSendClient(
        publishable_key=INTASEND_PUBLISHABLE_KEY, secret_key=INTASEND_SECRET_KEY, test_mode=INTASEND_TEST_MODE,
    )
    if not gateway.configured:
        log.warning("[App] IntaSend keys are not set, payment initiation will be refused")

    mailer = Mailer(host=SMTP_HOST, port=SMTP_PORT, username=SMTP_USER, password=SMTP_PASSWORD, sender=MAIL_FROM)
    if not mailer.configured:
        log.warning("[App] SMTP credentials are not set, emails will only be logged")

    bot = Bot(token=BOT_TOKEN) if BOT_TOKEN else None
    notifications = NotificationDispatcher(mailer, bot=bot)
    cart_store = CartStore(delivery_fee=DELIVERY_FEE)
    checkout_service = CheckoutService(
        order_manager, gateway, notifications, cart_store=cart_store, delivery_fee=DELIVERY_FEE,
    )

    app = create_web_app(
        checkout_service, order_manager, cart_store, mailer,
        admin_token=ADMIN_API_TOKEN, webhook_challenge=INTASEND_WEBHOOK_CHALLENGE,
    )
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, WEB_HOST, WEB_PORT).start()
    log.info(f"[Web] HTTP API listening on {WEB_HOST}:{WEB_PORT} [✓]")

    scheduler = AsyncIOScheduler(timezone="Africa/Nairobi")
    scheduler.add_job(
        sync_pending_payments, trigger="interval", minutes=5,
        args=[checkout_service, order_manager]
    )
    scheduler.add_job(
        cleanup_abandoned_orders, trigger="interval", minutes=30,
        args=[order_manager, PENDING_ORDER_TIMEOUT_HOURS]
    )
    scheduler.add_job(
        evict_idle_carts, trigger="interval", minutes=30,
        args=[cart_store, checkout_service, CART_IDLE_HOURS]
    )

    try:
        scheduler.start()
        log.info("[Scheduler] Scheduler started [✓]")

        if bot is not None:
            dp = Dispatcher()
            dp.update.middleware(
                ManagerMiddleware(db=db, order_manager=order_manager, checkout_service=checkout_service, bot=bot)
            )
            log.info("[Bot] Middleware configured [✓]")
            register_handlers(dp)
            log.info("[Bot] Handlers registered [✓]")
            log.info("[Bot] Admin console running. Stop with Ctrl+C")
            await dp.start_polling(bot)
        else:
            log.warning("[App] BOT_TOKEN is not set, admin console disabled")
            stop = asyncio.Event()
            if sys.platform != "win32":
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, stop.set)
            await stop.wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        log.warning("[App] Received shutdown signal")
    finally:
        await shutdown(scheduler, checkout_service, notifications, gateway, runner, db, bot)


if __name__ == "__main__":
    log.info("-" * 80)
    log.info("[App] Launching application")
    asyncio.run(main())
