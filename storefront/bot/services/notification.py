# storefront/bot/services/notification.py
import html
import logging

from aiogram.exceptions import TelegramForbiddenError

from storefront.bot.core import get_bot
from storefront.core.config import settings

logger = logging.getLogger(__name__)


async def _send_to_admins(text: str) -> int:
    """
    Sends ``text`` to every admin chat. Delivery errors are logged, never raised.
    Returns how many chats got the message.
    """
    bot = get_bot()
    if bot is None or not settings.ADMIN_CHAT_IDS:
        logger.info("Telegram admin alerts are not configured. Skipping message.")
        return 0

    sent = 0
    for chat_id in settings.ADMIN_CHAT_IDS:
        try:
            await bot.send_message(chat_id=chat_id, text=text)
            sent += 1
        except TelegramForbiddenError:
            logger.error(f"Admin chat {chat_id} has blocked the bot.")
        except Exception as e:
            logger.error(f"Failed to send message to admin chat {chat_id}: {e}")
    return sent


async def send_settlement_report_to_admins(
    discount_code: str,
    influencer_name: str | None,
    total_amount,
    currency: str,
    commissions_count: int,
    influencer_payment_id: int | None,
) -> int:
    """Report for a code that has just been settled."""
    lines = [
        f"<b>📊 Discount code settled: {html.escape(discount_code)}</b>\n",
        f"👤 <b>Influencer:</b> {html.escape(influencer_name or '-')}",
        f"🧾 <b>Commissions:</b> {commissions_count}",
        f"💰 <b>Total:</b> {total_amount} {currency}",
    ]
    if influencer_payment_id is not None:
        lines.append(f"🏦 <b>Payout:</b> #{influencer_payment_id} (pending)")
    else:
        lines.append("<i>Nothing to pay out.</i>")
    return await _send_to_admins("\n".join(lines))


async def send_error_to_super_admins(text: str) -> int:
    return await _send_to_admins(text)
