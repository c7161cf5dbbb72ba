"""
Базовый интерфейс CPA сети

Все сетевые названия полей и схемы подписей живут внутри адаптеров,
ядро видит только NormalizedOffer и NormalizedPostback.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

logger = logging.getLogger(__name__)

POSTBACK_APPROVED = "approved"
POSTBACK_PENDING = "pending"
POSTBACK_REJECTED = "rejected"

CATEGORY_MAP = {
    "install": "APP_INSTALL",
    "mobile": "APP_INSTALL",
    "app": "APP_INSTALL",
    "download": "APP_INSTALL",
    "trial": "APP_INSTALL",
    "subscription": "APP_INSTALL",
    "game": "GAME",
    "games": "GAME",
    "survey": "SURVEY",
    "surveys": "SURVEY",
    "email": "SIGNUP",
    "email submit": "SIGNUP",
    "signup": "SIGNUP",
    "registration": "SIGNUP",
    "video": "VIDEO",
    "watch": "VIDEO",
    "social": "SOCIAL",
    "follow": "SOCIAL",
}

BASE_MINUTES = {
    "APP_INSTALL": 5,
    "GAME": 15,
    "SURVEY": 5,
    "SIGNUP": 3,
    "VIDEO": 2,
    "SOCIAL": 2,
    "OTHER": 5,
}

DEVICE_MAP = {
    "mobile": "mobile",
    "phone": "mobile",
    "android": "mobile",
    "ios": "mobile",
    "iphone": "mobile",
    "ipad": "tablet",
    "tablet": "tablet",
    "desktop": "desktop",
    "windows": "desktop",
    "mac": "desktop",
}

DEFAULT_DEVICES = ["mobile", "desktop"]

SIGNATURE_FIELDS = ("sig", "signature")


@dataclass
class ProviderConfig:
    """Настройки одной сети"""
    network: str
    api_key: str = ""
    publisher_id: str = ""
    base_url: str = ""
    postback_secret: str = ""
    is_enabled: bool = True


@dataclass
class NormalizedOffer:
    external_id: str
    network: str
    name: str
    network_payout_cents: int
    user_payout_cents: int
    description: str = ""
    category: str = "OTHER"
    difficulty: str = "EASY"
    estimated_minutes: Optional[int] = None
    countries: List[str] = field(default_factory=list)
    devices: List[str] = field(default_factory=list)
    tracking_url: str = ""
    is_active: bool = True


@dataclass
class NormalizedPostback:
    network: str
    session_token: str
    status: str  # approved | pending | rejected
    payout_cents: int = 0
    offer_id: str = ""
    click_id: str = ""
    ip_address: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_cents(value: Any) -> int:
    """'1.25' -> 125; мусор -> 0"""
    try:
        amount = Decimal(str(value if value not in (None, "") else "0"))
    except InvalidOperation:
        return 0
    if not amount.is_finite():
        return 0
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


class BaseCPAProvider(ABC):
    """Базовый класс CPA сети"""

    network: str = ""
    default_base_url: str = ""

    def __init__(self, config: ProviderConfig, margin_percent: int = 55, timeout: float = 15):
        self.config = config
        if not self.config.base_url:
            self.config.base_url = self.default_base_url
        self.margin_percent = margin_percent
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def is_configured(self) -> bool:
        return bool(self.config.api_key and self.config.publisher_id and self.config.is_enabled)

    # ========== Офферы ==========

    async def fetch_offers(self) -> List[NormalizedOffer]:
        """
        Получить офферы сети

        Любая ошибка сети логируется, результатом будет пустой список.
        """
        if not self.is_configured():
            logger.warning(f"{self.network} is not configured")
            return []

        try:
            data = await self._get_json(*self._offers_request())
        except Exception as e:
            logger.error(f"Failed to fetch {self.network} offers: {e}")
            return []

        raw_offers = self._extract_offers(data)
        if not raw_offers:
            logger.warning(f"{self.network} returned no offers")
            return []

        offers = []
        for raw in raw_offers:
            try:
                offers.append(self.map_offer(raw))
            except Exception as e:
                logger.warning(f"Skipping malformed {self.network} offer: {e}")
        return offers

    async def _get_json(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
        async with aiohttp.ClientSession(timeout=self.timeout) as http:
            async with http.get(url, params=params, headers=headers) as response:
                if response.status != 200:
                    raise RuntimeError(f"{self.network} API error: {response.status}")
                return await response.json(content_type=None)

    @abstractmethod
    def _offers_request(self) -> tuple:
        """(url, params, headers) запроса списка офферов"""

    @staticmethod
    def _extract_offers(data: Any) -> list:
        offers = data.get("offers") if isinstance(data, dict) else None
        return offers if isinstance(offers, list) else []

    @abstractmethod
    def map_offer(self, raw: dict) -> NormalizedOffer:
        """Сырой оффер сети -> NormalizedOffer"""

    @abstractmethod
    def generate_tracking_url(self, offer_id: str, session_token: str, user_id: int) -> str:
        """Ссылка на оффер с session token в subid"""

    def _url(self, path: str, params: dict) -> str:
        return f"{self.config.base_url}{path}?{urlencode(params)}"

    # ========== Постбэки ==========

    @abstractmethod
    def parse_postback(self, params: Dict[str, Any]) -> Optional[NormalizedPostback]:
        """Разобрать постбэк, None если обязательных полей нет"""

    def extract_signature(self, params: Dict[str, Any]) -> str:
        for name in SIGNATURE_FIELDS:
            if params.get(name):
                return str(params[name])
        return ""

    def signature_payload(self, params: Dict[str, Any]) -> str:
        """
        Строка для подписи по умолчанию: отсортированные key=value без полей подписи
        """
        return "&".join(
            f"{key}={params[key]}"
            for key in sorted(params)
            if key not in SIGNATURE_FIELDS
        )

    def expected_signature(self, params: Dict[str, Any], secret: Optional[str] = None) -> Optional[str]:
        """HMAC-SHA256 hex; None если секрет не настроен"""
        secret = self.config.postback_secret if secret is None else secret
        if not secret:
            return None
        return hmac.new(
            secret.encode(), self.signature_payload(params).encode(), hashlib.sha256
        ).hexdigest()

    # ========== Хелперы ==========

    def calculate_user_payout(self, payout_cents: int) -> int:
        """Доля пользователя после маржи платформы, с округлением вниз"""
        return payout_cents * (100 - self.margin_percent) // 100

    @staticmethod
    def map_category(category: Any) -> str:
        return CATEGORY_MAP.get(str(category or "").lower().strip(), "OTHER")

    @staticmethod
    def estimate_difficulty(payout_cents: int) -> str:
        if payout_cents < 50:
            return "EASY"
        if payout_cents < 150:
            return "MEDIUM"
        return "HARD"

    @staticmethod
    def estimate_minutes(category: str, difficulty: str) -> int:
        base = BASE_MINUTES.get(category, 5)
        multiplier = {"HARD": Decimal(2), "MEDIUM": Decimal("1.5")}.get(difficulty, Decimal(1))
        return int((base * multiplier).to_integral_value(rounding=ROUND_HALF_UP))

    @staticmethod
    def parse_countries(countries: Any) -> List[str]:
        if not countries:
            return []
        if isinstance(countries, (list, tuple)):
            return [str(c).strip().upper() for c in countries if str(c).strip()]
        return [c.strip().upper() for c in str(countries).split(",") if c.strip()]

    @staticmethod
    def parse_devices(devices: Any) -> List[str]:
        if not devices:
            return list(DEFAULT_DEVICES)
        items = devices if isinstance(devices, (list, tuple)) else str(devices).split(",")
        result = []
        for item in items:
            name = str(item).strip().lower()
            if name:
                result.append(DEVICE_MAP.get(name, name))
        return result

    @staticmethod
    def map_status(status: Any, approved: tuple, rejected: tuple) -> str:
        value = str(status or "").lower()
        if value in approved:
            return POSTBACK_APPROVED
        if value in rejected:
            return POSTBACK_REJECTED
        return POSTBACK_PENDING
