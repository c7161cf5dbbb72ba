"""
IP intelligence: классификация IP (VPN/прокси, страна)

Внешний коллаборатор. Недоступность никогда не блокирует запрос:
сборщик сигналов считает такие сигналы ложными.
"""
import logging
from dataclasses import dataclass
from ipaddress import ip_address

import aiohttp

from shared.errors import ExternalUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class IPClassification:
    is_vpn_or_proxy: bool = False
    country_code: str = ""


class IPIntelligence:
    """Базовый классификатор: ничего не знает"""

    async def classify(self, ip: str) -> IPClassification:
        return IPClassification()


class PrivateRangeIntelligence(IPIntelligence):
    """
    Упрощённая проверка без внешнего API: непубличные адреса
    (частные сети, loopback, link-local) считаются прокси
    """

    async def classify(self, ip: str) -> IPClassification:
        try:
            address = ip_address(ip)
        except ValueError:
            return IPClassification()
        return IPClassification(is_vpn_or_proxy=not address.is_global)


class HttpIPIntelligence(IPIntelligence):
    """
    HTTP API в стиле ip-api.com: ожидаются поля proxy, hosting, countryCode
    """

    def __init__(self, url_template: str, timeout: float = 2.0):
        self.url_template = url_template
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def classify(self, ip: str) -> IPClassification:
        url = self.url_template.format(ip=ip)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as http:
                async with http.get(url) as response:
                    if response.status != 200:
                        raise ExternalUnavailableError(f"IP intelligence returned {response.status}")
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ExternalUnavailableError(f"IP intelligence request failed: {e}")

        return IPClassification(
            is_vpn_or_proxy=bool(data.get("proxy") or data.get("hosting")),
            country_code=str(data.get("countryCode") or "").upper(),
        )


def build_ip_intelligence(url_template: str = "", timeout: float = 2.0) -> IPIntelligence:
    """Выбрать классификатор по конфигурации"""
    if url_template:
        return HttpIPIntelligence(url_template, timeout=timeout)
    return PrivateRangeIntelligence()
