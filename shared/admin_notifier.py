"""
Утилита для отправки уведомлений админам
"""
import logging
from typing import Optional
from shared.config import ADMIN_IDS

logger = logging.getLogger(__name__)


async def notify_admin(message: str, level: str = "error", send_func=None, admin_ids=None):
    """
    Отправить уведомление всем админам

    Args:
        message: Текст уведомления
        level: Уровень (info, warning, error, critical)
        send_func: Функция для отправки сообщения (async callable)
        admin_ids: Список получателей (по умолчанию ADMIN_IDS)
    """
    recipients = ADMIN_IDS if admin_ids is None else admin_ids

    if not recipients:
        logger.warning("ADMIN_IDS is empty, cannot send notification")
        return

    if send_func is None:
        logger.warning("send_func not provided, cannot send notification")
        return

    emoji = {
        "info": "ℹ️",
        "warning": "⚠️",
        "error": "🚨",
        "critical": "🔴",
        "success": "✅"
    }.get(level.lower(), "📝")

    formatted_message = f"{emoji} {level.upper()}\n\n{message}"

    success_count = 0
    failed_count = 0

    for admin_id in recipients:
        try:
            await send_func(admin_id, formatted_message)
            success_count += 1
        except Exception as e:
            failed_count += 1
            logger.error(f"Failed to notify admin {admin_id}: {e}")

    logger.info(f"Admin notification sent: {success_count} success, {failed_count} failed")


async def notify_fraud_alert(user_id: int, alert_type: str, risk_score: int, flags: list, send_func=None):
    """
    Уведомить о новом антифрод-алерте (админам можно видеть сигналы)
    """
    message = (
        f"Fraud alert: {alert_type}\n"
        f"User: {user_id}\n"
        f"Risk score: {risk_score}\n"
        f"Flags: {', '.join(flags) if flags else '-'}"
    )
    await notify_admin(message, level="warning", send_func=send_func)


async def notify_withdrawal_request(user_id: int, amount: str, address: str, send_func=None,
                                    withdrawal_id: Optional[str] = None):
    """
    Уведомить о новой заявке на вывод
    """
    message = (
        f"New withdrawal request\n"
        f"ID: {withdrawal_id or '-'}\n"
        f"User: {user_id}\n"
        f"Amount: {amount} TON\n"
        f"Address: {address}"
    )
    await notify_admin(message, level="info", send_func=send_func)
