import asyncio
import hmac
from functools import wraps
from typing import Callable, Optional

from aiogram import types
from aiogram.exceptions import TelegramBadRequest
from aiohttp import web

from utils.app_keys import ADMIN_TOKEN_KEY
from keyboards.admin import get_admin_main_kb
from utils.config import get_admin_ids
from utils.logger import get_logger

log = get_logger("[Bot.Decorator]")


async def handle_telegram_error(
        e: TelegramBadRequest,
        message: types.Message = None,
        call: types.CallbackQuery = None,
) -> bool:
    error_text = str(e).lower()

    if "message is not modified" in error_text:
        log.debug("[Bot.Decorator] Message is not modified")
        return True

    if (
            "message to delete not found" in error_text
            or "message can't be deleted" in error_text
            or "message to edit not found" in error_text
    ):
        user = call.from_user if call else message.from_user if message else None
        target = call.message if call else message if message else None
        if target:
            await target.answer(
                text="Could not update the previous message. Choose an action:",
                reply_markup=get_admin_main_kb()
            )
            log.info(f"[Bot.Decorator] Telegram error handled for user {user.id if user else 'unknown'}")
        return True

    log.warning(f"[Bot.Decorator] [UNHANDLED TelegramBadRequest] {e}")
    return False


def _get_ctx(args):
    message = next((a for a in args if isinstance(a, types.Message)), None)
    call = next((a for a in args if isinstance(a, types.CallbackQuery)), None)
    return message, call


def admin_only(handler):
    @wraps(handler)
    async def wrapper(*args, **kwargs):
        message, call = _get_ctx(args)
        user_id = (message.from_user.id if message else call.from_user.id if call else None)

        if user_id not in get_admin_ids():
            log.warning(f"[Bot.Decorator] User {user_id} tried to open {handler.__name__} without admin rights")
            if call:
                await call.answer("Sorry, this console is for staff only.", show_alert=True)
            elif message:
                await message.answer("Sorry, this console is for staff only.")
            return
        return await handler(*args, **kwargs)

    return wrapper


def retry_async(
        retries: int = 2,
        backoff: float = 1.0,
        exceptions: tuple = (Exception,),
        sleep: Optional[Callable] = None,
):
    """
    Re-runs a coroutine up to `retries` extra times, waiting backoff * n
    seconds before the n-th retry (1 s, 2 s with the defaults). The last
    error is re-raised.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            pause = sleep or asyncio.sleep
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= retries:
                        raise
                    attempt += 1
                    log.warning(f"[Retry] {func.__name__} failed ({e}), retry {attempt}/{retries}")
                    await pause(backoff * attempt)

        return wrapper

    return decorator


def admin_required(handler):
    """
    aiohttp handler guard: `Authorization: Bearer <ADMIN_API_TOKEN>`.
    With no token configured the admin routes stay closed.
    """
    @wraps(handler)
    async def wrapper(request: web.Request):
        expected = request.app.get(ADMIN_TOKEN_KEY)
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token, expected):
            log.warning(f"[API] Unauthorized admin call to {request.path} from {request.remote}")
            return web.json_response({"success": False, "error": "Unauthorized"}, status=401)
        return await handler(request)

    return wrapper
