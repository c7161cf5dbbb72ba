"""
Watchdog для брошенных заданий
"""
import asyncio
import logging
from datetime import timedelta

from shared.config import TASK_EXPIRY_HOURS, WATCHDOG_INTERVAL
from arb_api.services.task_service import TaskService

logger = logging.getLogger(__name__)


class TaskWatchdog:
    """
    Watchdog для заданий, по которым постбэк так и не пришёл
    STARTED старше TASK_EXPIRY_HOURS переводятся в REJECTED, слот оффера освобождается
    """

    def __init__(self, session_factory, check_interval: int = WATCHDOG_INTERVAL,
                 expiry: timedelta = timedelta(hours=TASK_EXPIRY_HOURS)):
        """
        Args:
            session_factory: Фабрика сессий БД
            check_interval: Интервал проверки в секундах
            expiry: Возраст задания, после которого оно считается брошенным
        """
        self.session_factory = session_factory
        self.check_interval = check_interval
        self.expiry = expiry
        self.running = False

    async def start(self):
        """Запуск watchdog"""
        self.running = True
        logger.info("🐕 Task watchdog started")

        while self.running:
            await self.check_stale_tasks()
            await asyncio.sleep(self.check_interval)

    def stop(self):
        """Остановка watchdog"""
        self.running = False
        logger.info("🐕 Task watchdog stopped")

    async def check_stale_tasks(self) -> int:
        """
        Истечь брошенные задания

        Returns:
            Количество истёкших заданий
        """
        async with self.session_factory() as session:
            try:
                return await TaskService.expire_stale_tasks(session, older_than=self.expiry)
            except Exception as e:
                logger.error(f"Error in task watchdog: {e}", exc_info=True)
                return 0
