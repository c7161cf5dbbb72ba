"""
CPAGrip

Постбэк: ?s1={session}&s2={user}&payout={payout}&status={status}&oid={offer_id}&sig={signature}
Подпись: HMAC-SHA256(secret, s1 + payout + oid)
"""
from typing import Any, Dict, Optional

from arb_api.cpa.base import BaseCPAProvider, NormalizedOffer, NormalizedPostback, parse_cents


class CPAGripProvider(BaseCPAProvider):
    network = "CPAGRIP"
    default_base_url = "https://www.cpagrip.com"

    def _offers_request(self) -> tuple:
        params = {"pubkey": self.config.api_key, "tracking_id": self.config.publisher_id}
        return f"{self.config.base_url}/common/offer_feed_json.php", params, None

    def map_offer(self, raw: dict) -> NormalizedOffer:
        payout_cents = parse_cents(raw.get("payout"))
        category = self.map_category(raw.get("category") or "other")
        difficulty = self.estimate_difficulty(payout_cents)

        return NormalizedOffer(
            external_id=str(raw.get("campid") or raw.get("offerid")),
            network=self.network,
            name=raw.get("title") or raw.get("campaign_name") or "Unknown Offer",
            description=raw.get("description") or "",
            network_payout_cents=payout_cents,
            user_payout_cents=self.calculate_user_payout(payout_cents),
            category=category,
            difficulty=difficulty,
            estimated_minutes=self.estimate_minutes(category, difficulty),
            countries=self.parse_countries(raw.get("countries") or raw.get("country")),
            devices=self.parse_devices(raw.get("devices") or raw.get("platform")),
            tracking_url=raw.get("url") or raw.get("offer_url") or "",
            is_active=raw.get("status") != "inactive",
        )

    def generate_tracking_url(self, offer_id: str, session_token: str, user_id: int) -> str:
        return self._url("/show.php", {
            "l": offer_id,
            "u": self.config.publisher_id,
            "s1": session_token,
            "s2": str(user_id),
        })

    def signature_payload(self, params: Dict[str, Any]) -> str:
        return f"{params.get('s1', '')}{params.get('payout', '')}{params.get('oid', '')}"

    def parse_postback(self, params: Dict[str, Any]) -> Optional[NormalizedPostback]:
        session_token = params.get("s1")
        if not session_token:
            return None

        return NormalizedPostback(
            network=self.network,
            session_token=str(session_token),
            status=self.map_status(
                params.get("status"),
                approved=("1", "approved", "converted"),
                rejected=("2", "rejected", "reversed"),
            ),
            payout_cents=parse_cents(params.get("payout")),
            offer_id=str(params.get("oid") or ""),
            click_id=str(params.get("click_id") or ""),
            ip_address=str(params.get("ip") or ""),
            raw=dict(params),
        )
