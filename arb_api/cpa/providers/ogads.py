"""
OGAds

Постбэк: ?aff_sub={session}&aff_sub2={user}&payout={payout}&status={status}&offer_id={offer_id}
Подпись: HMAC-SHA256 по отсортированным параметрам (схема по умолчанию)
"""
from typing import Any, Dict, Optional

from arb_api.cpa.base import BaseCPAProvider, NormalizedOffer, NormalizedPostback, parse_cents


class OGAdsProvider(BaseCPAProvider):
    network = "OGADS"
    default_base_url = "https://api.ogads.com"

    def _offers_request(self) -> tuple:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        return f"{self.config.base_url}/v1/offers", None, headers

    def map_offer(self, raw: dict) -> NormalizedOffer:
        payout_cents = parse_cents(raw.get("payout"))
        category = self.map_category(raw.get("category") or raw.get("vertical") or "other")
        difficulty = self.estimate_difficulty(payout_cents)

        return NormalizedOffer(
            external_id=str(raw.get("id") or raw.get("offer_id")),
            network=self.network,
            name=raw.get("name") or raw.get("title") or "Unknown Offer",
            description=raw.get("description") or "",
            network_payout_cents=payout_cents,
            user_payout_cents=self.calculate_user_payout(payout_cents),
            category=category,
            difficulty=difficulty,
            estimated_minutes=self.estimate_minutes(category, difficulty),
            countries=self.parse_countries(raw.get("countries") or raw.get("geo")),
            devices=self.parse_devices(raw.get("platforms") or raw.get("devices")),
            tracking_url=raw.get("link") or raw.get("tracking_url") or "",
            is_active=raw.get("status") == "active" or raw.get("active") is True,
        )

    def generate_tracking_url(self, offer_id: str, session_token: str, user_id: int) -> str:
        return self._url(f"/offer/{offer_id}", {
            "aff_id": self.config.publisher_id,
            "aff_sub": session_token,
            "aff_sub2": str(user_id),
        })

    def parse_postback(self, params: Dict[str, Any]) -> Optional[NormalizedPostback]:
        session_token = params.get("aff_sub")
        if not session_token:
            return None

        return NormalizedPostback(
            network=self.network,
            session_token=str(session_token),
            status=self.map_status(
                params.get("status"),
                approved=("1", "approved", "converted"),
                rejected=("rejected", "reversed", "chargeback"),
            ),
            payout_cents=parse_cents(params.get("payout")),
            offer_id=str(params.get("offer_id") or ""),
            click_id=str(params.get("transaction_id") or ""),
            ip_address=str(params.get("ip_address") or ""),
            raw=dict(params),
        )
