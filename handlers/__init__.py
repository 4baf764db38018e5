# handlers/__init__.py
from aiogram import Dispatcher

from .admin import admin_router


def register_handlers(dp: Dispatcher):
    """
    Registers the bot routers. HTTP routes are wired in handlers.web.
    """
    dp.include_router(admin_router)
