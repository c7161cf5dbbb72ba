"""
Telegram Bot для уведомлений пользователей и админов

Команды бота обслуживаются отдельно, здесь только отправка сообщений.
"""
import logging
from typing import Optional

from telegram import Bot

from shared.config import TELEGRAM_BOT_TOKEN

logger = logging.getLogger(__name__)

# Глобальный bot instance
_bot: Optional[Bot] = None


async def setup_bot(token: str = TELEGRAM_BOT_TOKEN) -> Optional[Bot]:
    """
    Настройка бота
    """
    global _bot

    if not token:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set, notifications disabled")
        return None

    _bot = Bot(token=token)
    await _bot.initialize()
    logger.info("✅ Notification bot initialized")
    return _bot


async def shutdown_bot():
    """
    Остановка бота
    """
    global _bot

    if _bot:
        await _bot.shutdown()
        _bot = None
        logger.info("✅ Notification bot shutdown")


def get_bot() -> Bot:
    """
    Получить bot instance
    """
    if not _bot:
        raise RuntimeError("Bot not initialized. Call setup_bot() first.")
    return _bot


# ========== Вспомогательные функции ==========

async def send_message(chat_id: int, text: str, **kwargs):
    """
    Отправить сообщение (ошибки пробрасываются)
    """
    bot = get_bot()
    await bot.send_message(chat_id=chat_id, text=text, **kwargs)


async def notify_user(telegram_id: int, text: str):
    """
    Уведомление пользователю: best-effort, никогда не бросает
    """
    if not _bot:
        logger.debug(f"Bot not initialized, skipping notification to {telegram_id}")
        return
    try:
        await send_message(telegram_id, text)
    except Exception as e:
        logger.error(f"Error sending notification to {telegram_id}: {e}")
