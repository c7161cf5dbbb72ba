"""
FastAPI приложение Traffic Arb API
Постбэки CPA сетей, задания, кошелёк и админка
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.database import init_db, close_db, AsyncSessionLocal
from shared.redis_client import close_redis, get_redis, fraud_analysis_queue
from shared.config import (
    LOG_LEVEL, LOG_FORMAT, DATA_DIR, RATE_LIMIT_BACKEND, IP_INTEL_URL, IP_INTEL_TIMEOUT
)
from shared.errors import ArbError, RateLimitedError
from arb_api.bot import setup_bot, shutdown_bot, notify_user, send_message
from arb_api.cpa.registry import ProviderRegistry, build_registry
from arb_api.health import router as health_router
from arb_api.routes.admin import router as admin_router
from arb_api.routes.tasks import router as tasks_router
from arb_api.routes.users import router as users_router
from arb_api.routes.wallet import router as wallet_router
from arb_api.services.ip_intelligence import IPIntelligence, build_ip_intelligence
from arb_api.services.postback_service import SettlementService
from arb_api.services.rate_limiter import AdaptiveRateLimiter, MemoryRateLimitStore, RedisRateLimitStore
from arb_api.services.risk_service import RiskService
from arb_api.services.risk_signals import SignalCollector
from arb_api.services.ton_verifier import TonVerifier
from arb_api.services.withdrawal_service import WithdrawalService
from arb_api.webhooks.postback import router as postback_router

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "arb_api.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


def configure_services(
    app: FastAPI,
    session_factory,
    registry: ProviderRegistry,
    rate_limit_store=None,
    ip_intel: IPIntelligence = None,
    fraud_queue=None,
    verifier=None,
    notify_func=None,
    admin_send_func=None
):
    """
    Собрать сервисы и положить их в app.state
    """
    risk_service = RiskService(
        session_factory,
        SignalCollector(ip_intel=ip_intel),
        send_func=admin_send_func
    )

    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.risk_service = risk_service
    app.state.rate_limiter = AdaptiveRateLimiter(rate_limit_store or MemoryRateLimitStore())
    app.state.settlement_service = SettlementService(
        session_factory, registry, notify_func=notify_func, fraud_queue=fraud_queue
    )
    app.state.withdrawal_service = WithdrawalService(
        risk_service, verifier=verifier, notify_func=notify_func, admin_send_func=admin_send_func
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager для FastAPI
    """
    # Startup
    logger.info("🚀 Starting Traffic Arb API...")

    # Инициализация БД
    await init_db()
    logger.info("✅ Database initialized")

    # Бот для уведомлений
    bot = await setup_bot()

    store = None
    if RATE_LIMIT_BACKEND == "redis":
        store = RedisRateLimitStore(await get_redis())
        logger.info("✅ Redis rate limit store configured")

    configure_services(
        app,
        AsyncSessionLocal,
        build_registry(),
        rate_limit_store=store,
        ip_intel=build_ip_intelligence(IP_INTEL_URL, IP_INTEL_TIMEOUT),
        fraud_queue=fraud_analysis_queue,
        verifier=TonVerifier(),
        notify_func=notify_user,
        admin_send_func=send_message if bot else None
    )
    logger.info("✅ Services configured")

    yield

    # Shutdown
    logger.info("🛑 Shutting down Traffic Arb API...")
    await shutdown_bot()
    await close_db()
    await close_redis()
    logger.info("✅ Traffic Arb API stopped")


# Создание FastAPI приложения
app = FastAPI(
    title="Traffic Arb API",
    description="CPA offer rewards with fraud scoring and referral ledger",
    version="1.0.0",
    lifespan=lifespan
)


# Подключение роутеров
app.include_router(health_router)
app.include_router(postback_router)
app.include_router(users_router)
app.include_router(tasks_router)
app.include_router(wallet_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": "Traffic Arb API",
        "version": "1.0.0"
    }


@app.exception_handler(ArbError)
async def arb_error_handler(request: Request, exc: ArbError):
    """
    Бизнес-ошибки: стабильный код и сообщение; детали только для админки
    """
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.to_dict(include_details=request.url.path.startswith("/admin"))
        },
        headers=headers
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик ошибок
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}}
    )


def main():
    import uvicorn
    from shared.config import API_HOST, API_PORT

    uvicorn.run(
        "arb_api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
