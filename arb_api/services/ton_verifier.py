"""
Проверка TON транзакций через TonCenter

Используется только админским подтверждением вывода. Вызывается до
открытия транзакции БД, поэтому таймаут не держит блокировки.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from shared.config import TON_NETWORK, TON_API_KEY, TON_VERIFY_TIMEOUT

logger = logging.getLogger(__name__)

TONCENTER_MAINNET = "https://toncenter.com/api/v2/jsonRPC"
TONCENTER_TESTNET = "https://testnet.toncenter.com/api/v2/jsonRPC"


@dataclass
class VerificationResult:
    verified: bool
    message: str = ""
    amount_nano: Optional[int] = None
    destination: Optional[str] = None


def explorer_link(tx_hash: str, network: str = TON_NETWORK) -> str:
    base = "https://tonscan.org/tx/" if network == "mainnet" else "https://testnet.tonscan.org/tx/"
    return f"{base}{tx_hash}"


class TonVerifier:
    """verify(tx_hash, amount, address) -> VerificationResult"""

    def __init__(self, network: str = TON_NETWORK, api_key: str = TON_API_KEY, timeout: float = TON_VERIFY_TIMEOUT):
        self.endpoint = TONCENTER_MAINNET if network == "mainnet" else TONCENTER_TESTNET
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _call(self, tx_hash: str) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        payload = {
            "id": 1,
            "jsonrpc": "2.0",
            "method": "getTransactions",
            "params": {"hash": tx_hash, "limit": 1},
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as http:
            async with http.post(self.endpoint, json=payload, headers=headers) as response:
                return await response.json(content_type=None)

    async def verify(self, tx_hash: str, expected_amount: Optional[int] = None,
                     expected_address: Optional[str] = None) -> VerificationResult:
        try:
            data = await self._call(tx_hash)
        except Exception as e:
            logger.error(f"Failed to verify TON transaction {tx_hash}: {e}")
            return VerificationResult(False, f"Verifier unavailable: {e}")

        if data.get("error"):
            error = data["error"]
            return VerificationResult(False, error.get("message", str(error)) if isinstance(error, dict) else str(error))

        transactions = data.get("result") or []
        if not transactions:
            return VerificationResult(False, "Transaction not found")

        tx = transactions[0]
        messages = tx.get("out_msgs") or []
        message = messages[0] if messages else (tx.get("in_msg") or {})

        try:
            amount = int(message.get("value") or 0)
        except (TypeError, ValueError):
            amount = 0
        destination = message.get("destination")

        if expected_amount is not None and amount != expected_amount:
            return VerificationResult(
                False, f"Amount mismatch: expected {expected_amount}, got {amount}", amount, destination
            )
        if expected_address and destination != expected_address:
            return VerificationResult(
                False, f"Recipient mismatch: expected {expected_address}, got {destination}", amount, destination
            )

        logger.info(f"TON transaction verified: {tx_hash}, amount={amount}, to={destination}")
        return VerificationResult(True, "Verified", amount, destination)
