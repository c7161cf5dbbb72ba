"""
Реестр CPA сетей и синхронизация офферов

Реестр создаётся явно при старте и передаётся зависимостям,
глобального экземпляра нет.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select

from shared.config import (
    CPA_MARGIN_PERCENT, TON_USD_RATE, CPA_HTTP_TIMEOUT,
    CPAGRIP_API_KEY, CPAGRIP_PUBLISHER_ID, CPAGRIP_POSTBACK_SECRET,
    OGADS_API_KEY, OGADS_PUBLISHER_ID, OGADS_POSTBACK_SECRET,
    ADGATE_API_KEY, ADGATE_PUBLISHER_ID, ADGATE_POSTBACK_SECRET,
)
from shared.database import Offer
from shared.money import cents_to_nano
from arb_api.cpa.base import BaseCPAProvider, NormalizedOffer, ProviderConfig
from arb_api.cpa.providers.cpagrip import CPAGripProvider
from arb_api.cpa.providers.ogads import OGAdsProvider
from arb_api.cpa.providers.adgate import AdGateProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Набор адаптеров CPA сетей по имени сети"""

    def __init__(self, margin_percent: int = CPA_MARGIN_PERCENT, usd_rate: str = TON_USD_RATE):
        self.margin_percent = margin_percent
        self.usd_rate = Decimal(str(usd_rate))
        self._providers: Dict[str, BaseCPAProvider] = {}

    def register(self, provider: BaseCPAProvider):
        self._providers[provider.network.upper()] = provider
        logger.info(f"{provider.network} provider registered (configured={provider.is_configured()})")

    def get(self, network: str) -> Optional[BaseCPAProvider]:
        return self._providers.get((network or "").upper())

    def active(self) -> List[BaseCPAProvider]:
        return [p for p in self._providers.values() if p.is_configured()]

    def networks(self) -> List[str]:
        return list(self._providers)

    def postback_secret(self, network: str) -> str:
        provider = self.get(network)
        return provider.config.postback_secret if provider else ""

    def margin_config(self) -> dict:
        return {
            "margin_percent": self.margin_percent,
            "user_percent": 100 - self.margin_percent,
            "usd_rate": str(self.usd_rate),
        }

    async def fetch_all_offers(self) -> List[NormalizedOffer]:
        """Офферы всех настроенных сетей; ошибка одной сети не мешает остальным"""
        all_offers = []
        for provider in self.active():
            try:
                offers = await provider.fetch_offers()
                all_offers.extend(offers)
                logger.info(f"Fetched {len(offers)} offers from {provider.network}")
            except Exception as e:
                logger.error(f"Failed to fetch offers from {provider.network}: {e}")
        return all_offers


def build_registry(margin_percent: int = CPA_MARGIN_PERCENT, usd_rate: str = TON_USD_RATE) -> ProviderRegistry:
    """
    Создать реестр из конфигурации

    Все три сети регистрируются всегда, чтобы постбэки распознавались
    даже без ключа API; офферы берутся только из настроенных.
    """
    registry = ProviderRegistry(margin_percent=margin_percent, usd_rate=usd_rate)

    registry.register(CPAGripProvider(
        ProviderConfig("CPAGRIP", CPAGRIP_API_KEY, CPAGRIP_PUBLISHER_ID, postback_secret=CPAGRIP_POSTBACK_SECRET),
        margin_percent, timeout=CPA_HTTP_TIMEOUT
    ))
    registry.register(OGAdsProvider(
        ProviderConfig("OGADS", OGADS_API_KEY, OGADS_PUBLISHER_ID, postback_secret=OGADS_POSTBACK_SECRET),
        margin_percent, timeout=CPA_HTTP_TIMEOUT
    ))
    registry.register(AdGateProvider(
        ProviderConfig("ADGATE", ADGATE_API_KEY, ADGATE_PUBLISHER_ID, postback_secret=ADGATE_POSTBACK_SECRET),
        margin_percent, timeout=CPA_HTTP_TIMEOUT
    ))

    logger.info(f"CPA registry ready: {len(registry.active())} active of {len(registry.networks())}")
    return registry


async def sync_offers(session_factory, registry: ProviderRegistry) -> Dict[str, int]:
    """
    Загрузить офферы всех сетей и сохранить в БД (upsert по external_id + network)

    Returns:
        {"created", "updated", "skipped", "errors"}
    """
    stats = {"created": 0, "updated": 0, "skipped": 0, "errors": 0}

    offers = await registry.fetch_all_offers()
    logger.info(f"Starting offer sync: {len(offers)} offers")

    async with session_factory() as session:
        for item in offers:
            try:
                payout_nano = cents_to_nano(item.user_payout_cents, registry.usd_rate)

                if item.user_payout_cents >= item.network_payout_cents or payout_nano <= 0:
                    logger.warning(
                        f"Skipping {item.network} offer {item.external_id}: "
                        f"user payout {item.user_payout_cents} vs network {item.network_payout_cents}"
                    )
                    stats["skipped"] += 1
                    continue

                values = dict(
                    name=item.name[:255],
                    description=item.description,
                    category=item.category,
                    difficulty=item.difficulty,
                    estimated_minutes=item.estimated_minutes,
                    network_payout_cents=item.network_payout_cents,
                    user_payout_cents=item.user_payout_cents,
                    user_payout_nano=payout_nano,
                    countries=item.countries,
                    devices=item.devices,
                    tracking_url=item.tracking_url,
                    is_active=item.is_active,
                )

                result = await session.execute(
                    select(Offer).where(
                        Offer.external_id == item.external_id,
                        Offer.network == item.network
                    )
                )
                offer = result.scalar_one_or_none()

                created = offer is None
                if created:
                    session.add(Offer(external_id=item.external_id, network=item.network, **values))
                else:
                    for key, value in values.items():
                        setattr(offer, key, value)
                    offer.updated_at = datetime.now()

                await session.commit()
                stats["created" if created else "updated"] += 1

            except Exception as e:
                await session.rollback()
                stats["errors"] += 1
                logger.error(f"Failed to sync {item.network} offer {item.external_id}: {e}")

    logger.info(f"Offer sync completed: {stats}")
    return stats
