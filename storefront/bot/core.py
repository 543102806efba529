# storefront/bot/core.py
from typing import Optional

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from storefront.core.config import settings

default_properties = DefaultBotProperties(parse_mode=ParseMode.HTML)

_bot: Optional[Bot] = None


def get_bot() -> Optional[Bot]:
    """Shared bot instance, or None when TELEGRAM_BOT_TOKEN is not set (alerts disabled)."""
    global _bot
    if not settings.TELEGRAM_BOT_TOKEN:
        return None
    if _bot is None:
        _bot = Bot(token=settings.TELEGRAM_BOT_TOKEN, default=default_properties)
    return _bot
