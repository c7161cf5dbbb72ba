"""
Worker: синхронизация офферов, watchdog заданий, антифрод-анализ
"""
import asyncio
import logging
import sys
from pathlib import Path

# Добавляем корневую директорию в путь
sys.path.insert(0, str(Path(__file__).parent.parent))

from shared.database import AsyncSessionLocal, init_db, close_db
from shared.redis_client import fraud_analysis_queue, close_redis
from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR, OFFER_SYNC_INTERVAL
from arb_api.bot import setup_bot, shutdown_bot, send_message
from arb_api.cpa.registry import build_registry
from arb_api.services.risk_service import RiskService
from worker.tasks import run_offer_sync, process_fraud_analysis
from worker.watchdog import TaskWatchdog

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "worker.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


class Worker:
    """Worker для фоновых задач платформы"""

    def __init__(self, session_factory=AsyncSessionLocal, queue=fraud_analysis_queue):
        self.running = False
        self.session_factory = session_factory
        self.queue = queue
        self.registry = build_registry()
        self.risk_service = RiskService(session_factory)
        self.watchdog = TaskWatchdog(session_factory)
        self._background = []

    async def start(self):
        """Запуск worker"""
        self.running = True
        logger.info("🚀 Worker started")

        # Инициализация БД
        await init_db()
        logger.info("✅ Database initialized")

        bot = await setup_bot()
        if bot:
            self.risk_service.send_func = send_message

        # Запуск watchdog и синхронизации офферов в фоне
        self._background = [
            asyncio.create_task(self.watchdog.start()),
            asyncio.create_task(self.sync_loop()),
        ]
        logger.info("✅ Watchdog and offer sync started")

        try:
            await self.process_jobs()
        except asyncio.CancelledError:
            logger.info("Received cancel signal, shutting down...")
            raise
        finally:
            self.running = False
            await self.cleanup()

    async def process_jobs(self):
        """Основной цикл обработки очереди антифрод-анализа"""
        while self.running:
            try:
                # Получаем задачу из очереди (блокирующая операция с таймаутом)
                job_data = await self.queue.dequeue(timeout=5)

                if job_data:
                    logger.info(f"📥 Received fraud analysis job: {job_data}")
                    await process_fraud_analysis(job_data, self.session_factory, self.risk_service)

            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def sync_loop(self):
        """Периодическая синхронизация офферов"""
        while self.running:
            await run_offer_sync(self.session_factory, self.registry)
            await asyncio.sleep(OFFER_SYNC_INTERVAL)

    async def cleanup(self):
        """Очистка ресурсов"""
        logger.info("🧹 Cleaning up...")

        self.watchdog.stop()
        for task in self._background:
            task.cancel()

        await shutdown_bot()
        await close_db()
        await close_redis()
        logger.info("✅ Worker stopped")

    def stop(self):
        """Остановка worker"""
        self.running = False


async def run():
    """Главная корутина"""
    worker = Worker()

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")
        worker.stop()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
