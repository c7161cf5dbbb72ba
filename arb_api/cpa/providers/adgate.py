"""
AdGate Media

Постбэк: ?s1={session}&s2={user}&points={points}&status={status}&offer_id={offer_id}&signature={sig}
Подпись: HMAC-SHA256(secret, s1 + (payout или points) + offer_id)
"""
from typing import Any, Dict, Optional

from arb_api.cpa.base import BaseCPAProvider, NormalizedOffer, NormalizedPostback, parse_cents


class AdGateProvider(BaseCPAProvider):
    network = "ADGATE"
    default_base_url = "https://api.adgatemedia.com"

    def _offers_request(self) -> tuple:
        params = {"api_key": self.config.api_key, "wall_code": self.config.publisher_id}
        return f"{self.config.base_url}/v1/offers", params, None

    @staticmethod
    def _extract_offers(data: Any) -> list:
        offers = data.get("data") if isinstance(data, dict) else None
        return offers if isinstance(offers, list) else []

    def map_offer(self, raw: dict) -> NormalizedOffer:
        payout_cents = parse_cents(raw.get("points_value") or raw.get("payout"))
        category = self.map_category(raw.get("category") or raw.get("type") or "other")
        difficulty = self.estimate_difficulty(payout_cents)

        estimated = raw.get("estimated_time")
        try:
            estimated_minutes = int(estimated) if estimated else self.estimate_minutes(category, difficulty)
        except (TypeError, ValueError):
            estimated_minutes = self.estimate_minutes(category, difficulty)

        return NormalizedOffer(
            external_id=str(raw.get("id") or raw.get("offer_id")),
            network=self.network,
            name=raw.get("anchor") or raw.get("name") or "Unknown Offer",
            description=raw.get("description") or raw.get("requirements") or "",
            network_payout_cents=payout_cents,
            user_payout_cents=self.calculate_user_payout(payout_cents),
            category=category,
            difficulty=difficulty,
            estimated_minutes=estimated_minutes,
            countries=self.parse_countries(raw.get("countries") or raw.get("geo_targeting")),
            devices=self.parse_devices(raw.get("devices") or raw.get("platform")),
            tracking_url=raw.get("click_url") or raw.get("tracking_link") or "",
            is_active=raw.get("status") not in ("paused", "inactive"),
        )

    def generate_tracking_url(self, offer_id: str, session_token: str, user_id: int) -> str:
        return self._url("/vc/click", {
            "wall_code": self.config.publisher_id,
            "offer_id": offer_id,
            "s1": session_token,
            "s2": str(user_id),
        })

    @staticmethod
    def _payout_value(params: Dict[str, Any]) -> str:
        return str(params.get("payout") or params.get("points") or "")

    def signature_payload(self, params: Dict[str, Any]) -> str:
        return f"{params.get('s1', '')}{self._payout_value(params)}{params.get('offer_id', '')}"

    def parse_postback(self, params: Dict[str, Any]) -> Optional[NormalizedPostback]:
        session_token = params.get("s1")
        if not session_token:
            return None

        return NormalizedPostback(
            network=self.network,
            session_token=str(session_token),
            status=self.map_status(
                params.get("status"),
                approved=("1", "approved", "credited"),
                rejected=("rejected", "reversed", "chargedback"),
            ),
            payout_cents=parse_cents(self._payout_value(params)),
            offer_id=str(params.get("offer_id") or ""),
            click_id=str(params.get("transaction_id") or ""),
            ip_address=str(params.get("user_ip") or ""),
            raw=dict(params),
        )
