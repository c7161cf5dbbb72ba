"""
Конфигурация приложения
"""
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Базовые пути
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# Окружение: development / production / test
APP_ENV = os.getenv("APP_ENV", "development")

# Telegram (только для уведомлений)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

# PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost/traffic_arb")

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# CPA сети
CPAGRIP_API_KEY = os.getenv("CPAGRIP_API_KEY", "")
CPAGRIP_PUBLISHER_ID = os.getenv("CPAGRIP_PUBLISHER_ID", "")
CPAGRIP_POSTBACK_SECRET = os.getenv("CPAGRIP_POSTBACK_SECRET", "")
OGADS_API_KEY = os.getenv("OGADS_API_KEY", "")
OGADS_PUBLISHER_ID = os.getenv("OGADS_PUBLISHER_ID", "")
OGADS_POSTBACK_SECRET = os.getenv("OGADS_POSTBACK_SECRET", "")
ADGATE_API_KEY = os.getenv("ADGATE_API_KEY", "")
ADGATE_PUBLISHER_ID = os.getenv("ADGATE_PUBLISHER_ID", "")
ADGATE_POSTBACK_SECRET = os.getenv("ADGATE_POSTBACK_SECRET", "")

CPA_MARGIN_PERCENT = int(os.getenv("CPA_MARGIN_PERCENT", "55"))  # доля платформы, %
TON_USD_RATE = os.getenv("TON_USD_RATE", "2")  # строка, парсится в Decimal
CPA_HTTP_TIMEOUT = int(os.getenv("CPA_HTTP_TIMEOUT", "15"))
OFFER_SYNC_INTERVAL = int(os.getenv("OFFER_SYNC_INTERVAL", "1800"))  # 30 минут

# Постбэки без подписи принимаются только в development
ALLOW_UNSIGNED_POSTBACKS = os.getenv(
    "ALLOW_UNSIGNED_POSTBACKS",
    "true" if APP_ENV == "development" else "false"
).lower() == "true"

# Деньги: 1 TON = 10^9 nano
NANO_PER_UNIT = 1_000_000_000

# Выводы
ENABLE_WITHDRAWALS = os.getenv("ENABLE_WITHDRAWALS", "true").lower() == "true"
MIN_WITHDRAWAL_NANO = int(os.getenv("MIN_WITHDRAWAL_NANO", str(NANO_PER_UNIT // 10)))
WITHDRAWAL_DAILY_CAP_NANO = int(os.getenv("WITHDRAWAL_DAILY_CAP_NANO", str(10 * NANO_PER_UNIT)))
MAX_PENDING_WITHDRAWALS = 3

# Ежедневный бонус: база + шаг за каждый день серии, с потолком
DAILY_BONUS_BASE_NANO = NANO_PER_UNIT // 100
DAILY_BONUS_STREAK_STEP_NANO = NANO_PER_UNIT // 200
DAILY_BONUS_MAX_NANO = NANO_PER_UNIT // 10

EARNING_VELOCITY_THRESHOLD_NANO = int(
    os.getenv("EARNING_VELOCITY_THRESHOLD_NANO", str(50 * NANO_PER_UNIT))
)

# Реферальные ставки по уровням: (числитель, знаменатель)
REFERRAL_RATES = {
    1: (10, 100),
    2: (3, 100),
    3: (1, 100),
}
MAX_REFERRAL_DEPTH = 3

# Антифрод
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")  # memory | redis
RATE_LIMIT_WINDOW_SECONDS = 60
IP_INTEL_URL = os.getenv("IP_INTEL_URL", "")  # например http://ip-api.com/json/{ip}?fields=proxy,hosting,countryCode
IP_INTEL_TIMEOUT = float(os.getenv("IP_INTEL_TIMEOUT", "2"))

# TON
TON_NETWORK = os.getenv("TON_NETWORK", "testnet")
TON_API_KEY = os.getenv("TON_API_KEY", "")
TON_VERIFY_TIMEOUT = float(os.getenv("TON_VERIFY_TIMEOUT", "10"))

# Задания
TASK_EXPIRY_HOURS = int(os.getenv("TASK_EXPIRY_HOURS", "72"))
WATCHDOG_INTERVAL = 300

# Администраторы (список Telegram ID)
ADMIN_IDS_STR = os.getenv("ADMIN_IDS", "")  # Через запятую: "123456789,987654321"
ADMIN_IDS: List[int] = [int(id.strip()) for id in ADMIN_IDS_STR.split(",") if id.strip()]
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

# API Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PORT", "8080"))

# Логирование
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Создание директорий
DATA_DIR.mkdir(exist_ok=True)
(DATA_DIR / "logs").mkdir(exist_ok=True)
